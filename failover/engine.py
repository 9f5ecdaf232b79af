"""Monitoring engine: per-monitor check loops, scheduled switching and event dispatch."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from failover.config import DEFAULT_INTERVAL_SECONDS, MonitorConfig
from failover.errors import UnknownMonitorError
from failover.events import FailoverCallbacks, Transition
from failover.probes import Prober, build_backup_prober, build_prober
from failover.state import Monitor, MonitorSnapshot, MonitorStatus


logger = structlog.get_logger(__name__)

ProberFactory = Callable[[MonitorConfig], Prober]
BackupProberFactory = Callable[[MonitorConfig], "Prober | None"]


@dataclass(eq=False)
class MonitorRuntime:
    """A registered monitor plus the tasks and job that belong to it."""

    monitor: Monitor
    prober: Prober
    backup_prober: Prober | None
    queue: asyncio.Queue[Transition | None] = field(default_factory=asyncio.Queue)
    check_task: asyncio.Task | None = None
    dispatch_task: asyncio.Task | None = None
    schedule_job_id: str | None = None
    active: bool = True


class Engine:
    """Owns the monitor registry and drives every monitor independently.

    Each monitor gets a check-loop task, an optional interval job on the
    scheduler for timed switches, and a dispatcher task that delivers its
    transitions to the callbacks in the order they happened. Callback work
    never runs inside a check tick.
    """

    def __init__(
        self,
        callbacks: FailoverCallbacks,
        *,
        prober_factory: ProberFactory | None = None,
        backup_prober_factory: BackupProberFactory = build_backup_prober,
        http_client: httpx.AsyncClient | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.callbacks = callbacks
        self.scheduler = scheduler or AsyncIOScheduler()
        self.running = False
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._prober_factory = prober_factory or self._default_prober
        self._backup_prober_factory = backup_prober_factory
        self._runtimes: dict[str, MonitorRuntime] = {}
        self._retired: set[asyncio.Task] = set()

    def _default_prober(self, cfg: MonitorConfig) -> Prober:
        return build_prober(cfg, http_client=self._http_client)

    def start(self) -> None:
        """Start the scheduler. Must be called from the running event loop."""
        if self.running:
            logger.warning("Engine already running")
            return
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        self.scheduler.start()
        self.running = True
        logger.info("Engine started")

    async def shutdown(self) -> None:
        """Cancel every monitor's loop, job and dispatcher."""
        tasks: list[asyncio.Task] = []
        for monitor_id in list(self._runtimes):
            rt = self._runtimes.pop(monitor_id)
            rt.active = False
            self._remove_schedule_job(rt)
            for task in (rt.check_task, rt.dispatch_task):
                if task is not None:
                    task.cancel()
                    tasks.append(task)
        for task in list(self._retired):
            task.cancel()
            tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self.running = False
        logger.info("Engine stopped")

    # --- registry ---

    def start_monitor(self, cfg: MonitorConfig) -> Monitor:
        """Register (or replace) a monitor and start its loops from a clean Normal state.

        Raises ProbeSetupError before touching the registry when the check
        target is malformed, so a bad update leaves the running instance alone.
        """
        if not cfg.id:
            raise ValueError("monitor config needs an id")
        prober = self._prober_factory(cfg)
        backup_prober = self._backup_prober_factory(cfg)

        if self.stop_monitor(cfg.id):
            logger.info("Replacing monitor", monitor_id=cfg.id)

        rt = MonitorRuntime(monitor=Monitor.fresh(cfg), prober=prober, backup_prober=backup_prober)
        rt.dispatch_task = asyncio.create_task(self._dispatch_loop(rt), name=f"dispatch:{cfg.id}")
        rt.check_task = asyncio.create_task(self._check_loop(rt), name=f"check:{cfg.id}")
        if cfg.schedule_active:
            job_id = f"schedule:{cfg.id}"
            self.scheduler.add_job(
                self._scheduled_tick,
                trigger=IntervalTrigger(hours=cfg.schedule_hours),
                id=job_id,
                name=f"scheduled switch {cfg.name or cfg.id}",
                args=(rt,),
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            rt.schedule_job_id = job_id
        self._runtimes[cfg.id] = rt

        logger.info(
            "Monitor started",
            monitor_id=cfg.id,
            name=cfg.name,
            check_type=cfg.check_type.value,
            target=prober.target,
            schedule_hours=cfg.schedule_hours if cfg.schedule_active else None,
        )
        return rt.monitor

    def stop_monitor(self, monitor_id: str) -> bool:
        """Cancel a monitor's loops and drop it. Queued events are still delivered."""
        rt = self._runtimes.pop(monitor_id, None)
        if rt is None:
            return False
        rt.active = False
        if rt.check_task is not None:
            rt.check_task.cancel()
        self._remove_schedule_job(rt)
        rt.queue.put_nowait(None)
        if rt.dispatch_task is not None and not rt.dispatch_task.done():
            self._retired.add(rt.dispatch_task)
            rt.dispatch_task.add_done_callback(self._retired.discard)
        logger.info("Monitor stopped", monitor_id=monitor_id)
        return True

    def force_restore(self, monitor_id: str) -> str:
        """Administrative reset to Normal on the primary IP.

        Returns the IP in effect before the call. Emits no switch event; the
        caller owns the DNS update and event logging.
        """
        rt = self._runtime(monitor_id)
        previous_ip = rt.monitor.force_restore()
        logger.info(
            "Monitor force-restored",
            monitor_id=monitor_id,
            from_ip=previous_ip,
            to_ip=rt.monitor.current_ip,
        )
        return previous_ip

    def get_status(self) -> list[MonitorSnapshot]:
        snaps = [rt.monitor.snapshot() for rt in self._runtimes.values()]
        snaps.sort(key=lambda s: (s.name, s.id))
        return snaps

    def get_monitor(self, monitor_id: str) -> Monitor | None:
        rt = self._runtimes.get(monitor_id)
        return rt.monitor if rt is not None else None

    def has_schedule_job(self, monitor_id: str) -> bool:
        return self.scheduler.get_job(f"schedule:{monitor_id}") is not None

    def task_count(self) -> int:
        count = 0
        for rt in self._runtimes.values():
            count += sum(1 for t in (rt.check_task, rt.dispatch_task) if t is not None and not t.done())
        return count + len(self._retired)

    def __contains__(self, monitor_id: object) -> bool:
        return monitor_id in self._runtimes

    def __len__(self) -> int:
        return len(self._runtimes)

    def _runtime(self, monitor_id: str) -> MonitorRuntime:
        rt = self._runtimes.get(monitor_id)
        if rt is None:
            raise UnknownMonitorError(monitor_id)
        return rt

    def _remove_schedule_job(self, rt: MonitorRuntime) -> None:
        if rt.schedule_job_id and self.scheduler.get_job(rt.schedule_job_id) is not None:
            self.scheduler.remove_job(rt.schedule_job_id)
        rt.schedule_job_id = None

    # --- ticks ---

    async def run_check(self, monitor_id: str) -> None:
        """Run one check tick for a registered monitor."""
        await self._check(self._runtime(monitor_id))

    def run_scheduled_switch(self, monitor_id: str) -> None:
        """Fire the scheduled-switch timer for a registered monitor once."""
        self._scheduled_switch(self._runtime(monitor_id))

    async def drain(self) -> None:
        """Wait until every queued transition has been delivered."""
        await asyncio.gather(*(rt.queue.join() for rt in list(self._runtimes.values())))
        if self._retired:
            await asyncio.wait(list(self._retired))

    async def _check_loop(self, rt: MonitorRuntime) -> None:
        interval = rt.monitor.config.interval
        if interval <= 0:
            interval = DEFAULT_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            await self._check(rt)

    async def _probe(self, prober: Prober, rt: MonitorRuntime) -> bool:
        try:
            return bool(await prober.probe())
        except Exception:
            logger.exception("Probe raised; counting as failure", monitor_id=rt.monitor.id, target=prober.target)
            return False

    async def _check(self, rt: MonitorRuntime) -> None:
        monitor = rt.monitor
        cfg = monitor.config

        ok = await self._probe(rt.prober, rt)
        if not rt.active:
            return
        events = monitor.record_probe(ok)
        if not ok and monitor.status is MonitorStatus.NORMAL and monitor.fail_count:
            logger.info(
                "Probe failed",
                monitor_id=cfg.id,
                name=cfg.name,
                fail_count=monitor.fail_count,
                failure_threshold=cfg.failure_threshold,
            )
        elif ok and monitor.status is MonitorStatus.DOWN and monitor.succ_count:
            logger.info(
                "Probe succeeded while failed over",
                monitor_id=cfg.id,
                name=cfg.name,
                succ_count=monitor.succ_count,
                success_threshold=cfg.success_threshold,
            )
        self._emit(rt, events)

        if rt.backup_prober is None or monitor.status is not MonitorStatus.DOWN:
            return
        was_down = monitor.backup_down
        backup_ok = await self._probe(rt.backup_prober, rt)
        if not rt.active:
            return
        events = monitor.record_backup_probe(backup_ok)
        if backup_ok and was_down and not monitor.backup_down:
            logger.info("Backup IP reachable again", monitor_id=cfg.id, ip=cfg.backup_ip)
        self._emit(rt, events)

    async def _scheduled_tick(self, rt: MonitorRuntime) -> None:
        self._scheduled_switch(rt)

    def _scheduled_switch(self, rt: MonitorRuntime) -> None:
        if not rt.active:
            return
        monitor = rt.monitor
        if monitor.status is MonitorStatus.DOWN:
            logger.info("Scheduled switch skipped during failover", monitor_id=monitor.id)
            return
        event = monitor.scheduled_switch()
        if event is not None:
            self._emit(rt, [event])

    # --- dispatch ---

    def _emit(self, rt: MonitorRuntime, events: list[Transition]) -> None:
        for event in events:
            logger.info("Transition", kind=event.kind, monitor_id=rt.monitor.id, **_event_fields(event))
            rt.queue.put_nowait(event)

    async def _dispatch_loop(self, rt: MonitorRuntime) -> None:
        while True:
            event = await rt.queue.get()
            try:
                if event is None:
                    return
                try:
                    await event.deliver(self.callbacks)
                except Exception:
                    logger.exception("Callback failed", kind=event.kind, monitor_id=event.config.id)
            finally:
                rt.queue.task_done()


def _event_fields(event: Transition) -> dict[str, object]:
    fields: dict[str, object] = {}
    for name in ("to_backup", "from_ip", "to_ip", "ip"):
        if hasattr(event, name):
            fields[name] = getattr(event, name)
    role = getattr(event, "role", None)
    if role is not None:
        fields["role"] = role.value
    return fields
