"""Transition events emitted by the engine and the callback contract that consumes them."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Protocol

from failover.config import MonitorConfig


class Role(str, Enum):
    ORIGINAL = "original"
    BACKUP = "backup"


class FailoverCallbacks(Protocol):
    """Side effects bound to monitor transitions (DNS update, notification, event log).

    Implementations handle and log their own failures; anything they raise is
    logged by the engine and dropped.
    """

    async def on_switch(self, cfg: MonitorConfig, to_backup: bool) -> None: ...

    async def on_scheduled_switch(self, cfg: MonitorConfig, from_ip: str, to_ip: str) -> None: ...

    async def on_ip_down(self, cfg: MonitorConfig, ip: str, role: Role) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SwitchTransition:
    """Health-driven failover (to_backup=True) or restore (to_backup=False)."""

    kind: ClassVar[str] = "switch"

    config: MonitorConfig
    to_backup: bool
    at_ms: int = field(default_factory=_now_ms)

    async def deliver(self, callbacks: FailoverCallbacks) -> None:
        await callbacks.on_switch(self.config, self.to_backup)


@dataclass(frozen=True)
class ScheduledSwitchTransition:
    kind: ClassVar[str] = "scheduled_switch"

    config: MonitorConfig
    from_ip: str
    to_ip: str
    at_ms: int = field(default_factory=_now_ms)

    async def deliver(self, callbacks: FailoverCallbacks) -> None:
        await callbacks.on_scheduled_switch(self.config, self.from_ip, self.to_ip)


@dataclass(frozen=True)
class IPDownTransition:
    kind: ClassVar[str] = "ip_down"

    config: MonitorConfig
    ip: str
    role: Role
    at_ms: int = field(default_factory=_now_ms)

    async def deliver(self, callbacks: FailoverCallbacks) -> None:
        await callbacks.on_ip_down(self.config, self.ip, self.role)


Transition = SwitchTransition | ScheduledSwitchTransition | IPDownTransition
