"""Configuration models for monitors and the notification/DNS providers."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_PING_COUNT = 5
DEFAULT_FAILURE_THRESHOLD = 3


class CheckType(str, Enum):
    PING = "ping"
    HTTP = "http"
    HTTPS = "https"
    TCP = "tcp"


_CHECK_TYPE_ALIASES = {
    "": "ping",
    "icmp": "ping",
    "ping": "ping",
    "http": "http",
    "https": "https",
    "tcp": "tcp",
    "tcping": "tcp",
}


def normalize_check_type(value: Any) -> CheckType:
    if isinstance(value, CheckType):
        return value
    s = str(value or "").strip().lower()
    if s not in _CHECK_TYPE_ALIASES:
        raise ValueError(f"unsupported check_type {value!r}; expected ping, http, https or tcp")
    return CheckType(_CHECK_TYPE_ALIASES[s])


class MonitorConfig(BaseModel):
    """One watched (primary IP, backup IP) pair. Immutable once activated."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    id: str = Field(default="", description="Unique monitor id")
    name: str = Field(default="", description="Display name")
    zone_id: str = Field(default="", description="DNS zone holding the subdomains")
    subdomains: list[str] = Field(default_factory=list, description="Records switched between the two IPs")

    check_type: CheckType = Field(default=CheckType.PING, description="ping, http, https or tcp")
    check_target: str = Field(default="", description="IP/host for ping, URL for http(s), host:port for tcp")
    original_ip: str = Field(default="", description="Primary IP")
    backup_ip: str = Field(default="", description="Backup IP")

    failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, description="Consecutive failures before failover")
    success_threshold: int = Field(default=3, description="Consecutive successes before restore")
    ping_count: int = Field(default=DEFAULT_PING_COUNT, description="Echo requests per ping probe")
    interval: int = Field(default=DEFAULT_INTERVAL_SECONDS, description="Seconds between probes")
    timeout_seconds: int = Field(default=0, description="Probe timeout; 0 uses the check type default")

    original_ip_cdn_enabled: bool = Field(default=False, description="Proxy the record while on the primary IP")
    backup_ip_cdn_enabled: bool = Field(default=False, description="Proxy the record while on the backup IP")

    schedule_enabled: bool = Field(default=False, description="Enable timer-driven switching")
    schedule_hours: int = Field(default=0, description="Hours between scheduled switches")
    schedule_switch_ip: str = Field(default="", description="Fixed target IP; empty toggles primary/backup")

    @field_validator("check_type", mode="before")
    @classmethod
    def _normalize_check_type(cls, value: Any) -> CheckType:
        return normalize_check_type(value)

    @field_validator("subdomains", mode="before")
    @classmethod
    def _clean_subdomains(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        out: list[str] = []
        for item in value:
            s = str(item or "").strip()
            if s:
                out.append(s)
        return out

    def proxied_for(self, ip: str) -> bool:
        if ip and ip == self.original_ip:
            return self.original_ip_cdn_enabled
        if ip and ip == self.backup_ip:
            return self.backup_ip_cdn_enabled
        return False

    @property
    def schedule_active(self) -> bool:
        return self.schedule_enabled and self.schedule_hours > 0


class CloudflareConfig(BaseModel):
    api_token: str = ""
    api_key: str = ""
    email: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.api_token or (self.api_key and self.email))


class CloudflareAccount(BaseModel):
    id: str = ""
    name: str = ""
    api_token: str = ""
    api_key: str = ""
    email: str = ""

    def credentials(self) -> CloudflareConfig:
        return CloudflareConfig(api_token=self.api_token, api_key=self.api_key, email=self.email)


class DingTalkConfig(BaseModel):
    enabled: bool = False
    access_token: str = ""
    secret: str = ""


class EmailConfig(BaseModel):
    enabled: bool = False
    host: str = ""
    port: int = 0
    username: str = ""
    password: str = ""
    to: str = Field(default="", description="Comma-separated recipients")


class TelegramConfig(BaseModel):
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""


class ServerConfig(BaseModel):
    port: int = Field(default=8081, description="Admin API port")
    auth: str = Field(default="", description="Admin token; empty until first login")


class BootstrapConfig(BaseModel):
    """Initial configuration read from config.yaml."""

    cloudflare: CloudflareConfig = Field(default_factory=CloudflareConfig)
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    monitors: list[MonitorConfig] = Field(default_factory=list)
    server: ServerConfig = Field(default_factory=ServerConfig)


def _apply_env_overrides(data: dict[str, Any]) -> None:
    port = os.getenv("FAILOVER_PORT")
    if port:
        data.setdefault("server", {})["port"] = int(port)
    auth = os.getenv("FAILOVER_AUTH_TOKEN")
    if auth:
        data.setdefault("server", {})["auth"] = auth

    cf_token = os.getenv("CF_API_TOKEN")
    if cf_token:
        data.setdefault("cloudflare", {})["api_token"] = cf_token

    tg_token = os.getenv("TELEGRAM_BOT_TOKEN")
    tg_chat = os.getenv("TELEGRAM_CHAT_ID")
    if tg_token and tg_chat:
        tg = data.setdefault("telegram", {})
        tg["bot_token"] = tg_token
        tg["chat_id"] = tg_chat
        tg.setdefault("enabled", True)


def load_config(config_path: str | Path | None = None) -> BootstrapConfig:
    """Load configuration from the YAML file (if present) and environment variables."""
    if config_path is None:
        config_path = os.getenv("FAILOVER_CONFIG", "config.yaml")
    path = Path(config_path)

    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config YAML must be a mapping")
        data = raw

    for section in ("server", "cloudflare", "dingtalk", "email", "telegram", "monitors"):
        if data.get(section) is None:
            data.pop(section, None)
    _apply_env_overrides(data)
    return BootstrapConfig(**data)
