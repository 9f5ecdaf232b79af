"""Per-monitor health state and the hysteresis rules that move it.

All mutators are synchronous and return the transitions they caused; the
engine runs them on the event loop and queues the returned events for
delivery, so a mutation and the snapshot taken after it are never interleaved
with another coroutine's update of the same monitor.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from failover.config import DEFAULT_FAILURE_THRESHOLD, MonitorConfig
from failover.events import IPDownTransition, Role, ScheduledSwitchTransition, SwitchTransition, Transition


class MonitorStatus(str, Enum):
    NORMAL = "Normal"
    DOWN = "Down"


@dataclass(frozen=True)
class MonitorSnapshot:
    id: str
    name: str
    status: MonitorStatus
    current_ip: str
    fail_count: int
    succ_count: int
    backup_fail_count: int
    backup_down: bool
    check_type: str

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Monitor:
    config: MonitorConfig
    status: MonitorStatus = MonitorStatus.NORMAL
    current_ip: str = ""
    fail_count: int = 0
    succ_count: int = 0
    backup_fail_count: int = 0
    backup_down: bool = False

    @classmethod
    def fresh(cls, cfg: MonitorConfig) -> Monitor:
        return cls(config=cfg, current_ip=cfg.original_ip)

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    def _reset_backup(self) -> None:
        self.backup_fail_count = 0
        self.backup_down = False

    def record_probe(self, ok: bool) -> list[Transition]:
        """Feed one primary probe outcome through the Normal/Down hysteresis."""
        cfg = self.config
        failure_threshold = max(1, cfg.failure_threshold)
        success_threshold = max(1, cfg.success_threshold)

        if ok:
            if self.status is MonitorStatus.NORMAL:
                self.fail_count = 0
                self.succ_count = 0
                return []
            self.succ_count += 1
            if self.succ_count < success_threshold:
                return []
            self.status = MonitorStatus.NORMAL
            self.current_ip = cfg.original_ip
            self.succ_count = 0
            self._reset_backup()
            return [SwitchTransition(config=cfg, to_backup=False)]

        if self.status is MonitorStatus.DOWN:
            self.succ_count = 0
            return []
        self.fail_count += 1
        if self.fail_count < failure_threshold:
            return []
        down = IPDownTransition(config=cfg, ip=cfg.original_ip, role=Role.ORIGINAL)
        self.status = MonitorStatus.DOWN
        self.current_ip = cfg.backup_ip
        self.fail_count = 0
        return [down, SwitchTransition(config=cfg, to_backup=True)]

    def record_backup_probe(self, ok: bool) -> list[Transition]:
        """Feed one backup ping outcome; alerts once per backup down-episode."""
        if self.status is not MonitorStatus.DOWN:
            # Failover ended while the probe was in flight.
            return []
        if ok:
            self._reset_backup()
            return []

        threshold = self.config.failure_threshold
        if threshold <= 0:
            threshold = DEFAULT_FAILURE_THRESHOLD
        self.backup_fail_count += 1
        if self.backup_fail_count < threshold or self.backup_down:
            return []
        self.backup_down = True
        self.backup_fail_count = 0
        return [IPDownTransition(config=self.config, ip=self.config.backup_ip, role=Role.BACKUP)]

    def scheduled_switch(self) -> ScheduledSwitchTransition | None:
        if self.status is MonitorStatus.DOWN:
            return None
        cfg = self.config
        from_ip = self.current_ip
        if cfg.schedule_switch_ip:
            to_ip = cfg.schedule_switch_ip
        elif from_ip == cfg.original_ip:
            to_ip = cfg.backup_ip
        else:
            to_ip = cfg.original_ip
        if not to_ip or to_ip == from_ip:
            return None
        self.current_ip = to_ip
        self.fail_count = 0
        self.succ_count = 0
        return ScheduledSwitchTransition(config=cfg, from_ip=from_ip, to_ip=to_ip)

    def force_restore(self) -> str:
        """Back to Normal on the primary IP; returns the IP in effect before the call."""
        previous_ip = self.current_ip
        self.status = MonitorStatus.NORMAL
        self.current_ip = self.config.original_ip
        self.fail_count = 0
        self.succ_count = 0
        self._reset_backup()
        return previous_ip

    def snapshot(self) -> MonitorSnapshot:
        return MonitorSnapshot(
            id=self.config.id,
            name=self.config.name,
            status=self.status,
            current_ip=self.current_ip,
            fail_count=self.fail_count,
            succ_count=self.succ_count,
            backup_fail_count=self.backup_fail_count,
            backup_down=self.backup_down,
            check_type=self.config.check_type.value,
        )
