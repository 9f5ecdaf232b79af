from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from failover.config import (
    CloudflareAccount,
    CloudflareConfig,
    DingTalkConfig,
    EmailConfig,
    MonitorConfig,
    ServerConfig,
    TelegramConfig,
)
from failover.errors import StoreError


logger = structlog.get_logger(__name__)

SWITCH_HISTORY_MAX = 200
IP_DOWN_EVENTS_MAX = 2000


class SwitchEvent(BaseModel):
    timestamp: int = Field(description="Unix time in milliseconds")
    monitor_id: str
    name: str = ""
    from_ip: str = ""
    to_ip: str = ""
    to_backup: bool = False
    check_type: str = ""
    reason: str = Field(default="", description="failover, restore or schedule")


class IPDownEvent(BaseModel):
    timestamp: int
    monitor_id: str
    name: str = ""
    ip: str = ""
    role: str = Field(default="", description="original or backup")


class GlobalConfig(BaseModel):
    cloudflare: CloudflareConfig = Field(default_factory=CloudflareConfig)
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class StoreData(BaseModel):
    cloudflare: CloudflareConfig = Field(default_factory=CloudflareConfig)
    cloudflare_accounts: list[CloudflareAccount] = Field(default_factory=list)
    active_account_index: int = 0
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    monitors: list[MonitorConfig] = Field(default_factory=list)
    server: ServerConfig = Field(default_factory=ServerConfig)
    history: list[SwitchEvent] = Field(default_factory=list)
    ip_down: list[IPDownEvent] = Field(default_factory=list)


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def _newest_first(items: list, limit: int) -> list:
    if limit <= 0 or limit > len(items):
        limit = len(items)
    return list(reversed(items[len(items) - limit:]))


class Store:
    """Monitor definitions, provider settings and event logs in one JSON document.

    Every mutation is written through to disk. Readers get copies, so callers
    never observe a half-applied update.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data = StoreData()

    def load(self) -> None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read data file; starting empty", path=str(self.path), error=str(exc))
            return
        if not isinstance(raw, dict):
            logger.warning("Data file is not a JSON object; starting empty", path=str(self.path))
            return
        try:
            data = StoreData.model_validate(raw)
        except ValidationError as exc:
            raise StoreError(f"invalid data file {self.path}: {exc}") from exc
        with self._lock:
            self._data = data

    def save(self) -> None:
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        try:
            _write_json_atomic(self.path, self._data.model_dump(mode="json"))
        except OSError as exc:
            raise StoreError(f"failed to write {self.path}: {exc}") from exc

    def snapshot(self) -> StoreData:
        with self._lock:
            return self._data.model_copy(deep=True)

    # --- monitors ---

    def list_monitors(self) -> list[MonitorConfig]:
        with self._lock:
            return list(self._data.monitors)

    def get_monitor(self, monitor_id: str) -> MonitorConfig | None:
        with self._lock:
            for m in self._data.monitors:
                if m.id == monitor_id:
                    return m
        return None

    def upsert_monitor(self, cfg: MonitorConfig) -> None:
        with self._lock:
            for i, item in enumerate(self._data.monitors):
                if item.id == cfg.id:
                    self._data.monitors[i] = cfg
                    break
            else:
                self._data.monitors.append(cfg)
            self._save_locked()

    def delete_monitor(self, monitor_id: str) -> bool:
        with self._lock:
            before = len(self._data.monitors)
            self._data.monitors = [m for m in self._data.monitors if m.id != monitor_id]
            self._save_locked()
            return len(self._data.monitors) != before

    # --- provider settings ---

    def get_cloudflare_config(self) -> CloudflareConfig:
        """Credentials of the active account, falling back to the default credentials."""
        with self._lock:
            accounts = self._data.cloudflare_accounts
            idx = self._data.active_account_index
            if accounts and 0 <= idx < len(accounts):
                return accounts[idx].credentials()
            return self._data.cloudflare.model_copy()

    def get_global_config(self) -> GlobalConfig:
        with self._lock:
            return GlobalConfig(
                cloudflare=self._data.cloudflare.model_copy(),
                dingtalk=self._data.dingtalk.model_copy(),
                email=self._data.email.model_copy(),
                telegram=self._data.telegram.model_copy(),
            )

    def update_global_config(self, cfg: GlobalConfig) -> None:
        with self._lock:
            self._data.cloudflare = cfg.cloudflare
            self._data.dingtalk = cfg.dingtalk
            self._data.email = cfg.email
            self._data.telegram = cfg.telegram
            self._save_locked()

    def list_cloudflare_accounts(self) -> tuple[list[CloudflareAccount], int]:
        with self._lock:
            return [a.model_copy() for a in self._data.cloudflare_accounts], self._data.active_account_index

    def add_cloudflare_account(self, account: CloudflareAccount) -> None:
        with self._lock:
            self._data.cloudflare_accounts.append(account)
            self._save_locked()

    def update_cloudflare_account(self, account: CloudflareAccount) -> bool:
        with self._lock:
            for i, item in enumerate(self._data.cloudflare_accounts):
                if item.id == account.id:
                    self._data.cloudflare_accounts[i] = account
                    self._save_locked()
                    return True
        return False

    def delete_cloudflare_account(self, account_id: str) -> bool:
        with self._lock:
            accounts = self._data.cloudflare_accounts
            for i, item in enumerate(accounts):
                if item.id != account_id:
                    continue
                del accounts[i]
                if self._data.active_account_index == i:
                    self._data.active_account_index = 0
                elif self._data.active_account_index > i:
                    self._data.active_account_index -= 1
                self._save_locked()
                return True
        return False

    def activate_cloudflare_account(self, account_id: str) -> bool:
        with self._lock:
            for i, item in enumerate(self._data.cloudflare_accounts):
                if item.id == account_id:
                    self._data.active_account_index = i
                    self._save_locked()
                    return True
        return False

    # --- admin token ---

    def get_auth_token(self) -> str:
        with self._lock:
            return self._data.server.auth

    def has_auth_token(self) -> bool:
        return bool(self.get_auth_token())

    def set_auth_token(self, token: str) -> None:
        with self._lock:
            self._data.server.auth = token
            self._save_locked()

    # --- event logs ---

    def append_switch_event(self, evt: SwitchEvent, max_items: int = SWITCH_HISTORY_MAX) -> None:
        with self._lock:
            self._data.history.append(evt)
            if max_items > 0 and len(self._data.history) > max_items:
                self._data.history = self._data.history[-max_items:]
            self._save_locked()

    def append_ip_down_event(self, evt: IPDownEvent, max_items: int = IP_DOWN_EVENTS_MAX) -> None:
        with self._lock:
            self._data.ip_down.append(evt)
            if max_items > 0 and len(self._data.ip_down) > max_items:
                self._data.ip_down = self._data.ip_down[-max_items:]
            self._save_locked()

    def list_switch_history(self, limit: int = 0) -> list[SwitchEvent]:
        with self._lock:
            return _newest_first(self._data.history, limit)

    def list_ip_down_events(self, limit: int = 0) -> list[IPDownEvent]:
        with self._lock:
            return _newest_first(self._data.ip_down, limit)
