"""Health probes: one ping / TCP connect / HTTP GET reduced to a boolean."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

import httpx
import icmplib
import structlog

from failover.config import DEFAULT_PING_COUNT, CheckType, MonitorConfig
from failover.errors import ProbeSetupError


logger = structlog.get_logger(__name__)

# A ping probe fails when at least this share of echo requests is lost.
PING_MAX_LOSS = 0.6
PING_INTERVAL_SECONDS = 0.2

DEFAULT_PING_TIMEOUT_SECONDS = 2
DEFAULT_TCP_TIMEOUT_SECONDS = 2
DEFAULT_HTTP_TIMEOUT_SECONDS = 10


class Prober(Protocol):
    target: str

    async def probe(self) -> bool: ...


@dataclass(frozen=True)
class PingProbe:
    target: str
    count: int = DEFAULT_PING_COUNT
    timeout_seconds: float = DEFAULT_PING_TIMEOUT_SECONDS

    async def probe(self) -> bool:
        try:
            host = await icmplib.async_ping(
                self.target,
                count=self.count,
                interval=PING_INTERVAL_SECONDS,
                timeout=self.timeout_seconds,
                privileged=False,
            )
        except (icmplib.ICMPLibError, OSError) as exc:
            logger.warning("Ping error", target=self.target, error=f"{type(exc).__name__}: {exc}")
            return False
        return host.packet_loss < PING_MAX_LOSS


@dataclass(frozen=True)
class TcpProbe:
    target: str
    host: str
    port: int
    timeout_seconds: float = DEFAULT_TCP_TIMEOUT_SECONDS

    async def probe(self) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout_seconds
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("TCP check error", target=self.target, error=f"{type(exc).__name__}: {exc}")
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


@dataclass(frozen=True)
class HttpProbe:
    target: str
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    client: httpx.AsyncClient | None = field(default=None, compare=False, repr=False)

    async def probe(self) -> bool:
        try:
            if self.client is None:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(self.target, follow_redirects=True, timeout=self.timeout_seconds)
            else:
                resp = await self.client.get(self.target, follow_redirects=True, timeout=self.timeout_seconds)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("HTTP check error", target=self.target, error=f"{type(exc).__name__}: {exc}")
            return False
        return 200 <= resp.status_code < 400


def split_host_port(target: str) -> tuple[str, int]:
    s = (target or "").strip()
    if s.startswith("["):
        host, sep, rest = s[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ProbeSetupError(f"tcp target must be host:port, got {target!r}")
        port_s = rest[1:]
    else:
        host, sep, port_s = s.rpartition(":")
        if not sep or ":" in host:
            raise ProbeSetupError(f"tcp target must be host:port, got {target!r}")
    try:
        port = int(port_s)
    except ValueError as exc:
        raise ProbeSetupError(f"invalid port in tcp target {target!r}") from exc
    if not host or not (0 < port < 65536):
        raise ProbeSetupError(f"tcp target must be host:port, got {target!r}")
    return host, port


def _http_url(cfg: MonitorConfig) -> str:
    target = cfg.check_target
    if "://" not in target:
        target = f"{cfg.check_type.value}://{target}"
    try:
        url = httpx.URL(target)
    except httpx.InvalidURL as exc:
        raise ProbeSetupError(f"invalid check URL {cfg.check_target!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ProbeSetupError(f"invalid check URL {cfg.check_target!r}")
    return str(url)


def _timeout(cfg: MonitorConfig, default: int) -> float:
    return float(cfg.timeout_seconds) if cfg.timeout_seconds > 0 else float(default)


def _ping_count(cfg: MonitorConfig) -> int:
    return cfg.ping_count if cfg.ping_count > 0 else DEFAULT_PING_COUNT


def build_prober(cfg: MonitorConfig, *, http_client: httpx.AsyncClient | None = None) -> Prober:
    """Pick the probe strategy for a monitor. Raises ProbeSetupError for a malformed target."""
    if cfg.check_type is CheckType.PING:
        target = cfg.check_target or cfg.original_ip
        if not target:
            raise ProbeSetupError("ping check needs check_target or original_ip")
        return PingProbe(
            target=target,
            count=_ping_count(cfg),
            timeout_seconds=_timeout(cfg, DEFAULT_PING_TIMEOUT_SECONDS),
        )

    if cfg.check_type in (CheckType.HTTP, CheckType.HTTPS):
        if not cfg.check_target:
            raise ProbeSetupError(f"{cfg.check_type.value} check needs a check_target URL")
        return HttpProbe(
            target=_http_url(cfg),
            timeout_seconds=_timeout(cfg, DEFAULT_HTTP_TIMEOUT_SECONDS),
            client=http_client,
        )

    if cfg.check_type is CheckType.TCP:
        host, port = split_host_port(cfg.check_target)
        return TcpProbe(
            target=cfg.check_target,
            host=host,
            port=port,
            timeout_seconds=_timeout(cfg, DEFAULT_TCP_TIMEOUT_SECONDS),
        )

    raise ProbeSetupError(f"unsupported check_type {cfg.check_type!r}")


def build_backup_prober(cfg: MonitorConfig) -> Prober | None:
    """Ping prober for the backup IP, or None when backup watching does not apply."""
    if cfg.check_type is not CheckType.PING or not cfg.backup_ip:
        return None
    return PingProbe(
        target=cfg.backup_ip,
        count=_ping_count(cfg),
        timeout_seconds=_timeout(cfg, DEFAULT_PING_TIMEOUT_SECONDS),
    )
