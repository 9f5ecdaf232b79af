"""Side effects of monitor transitions: DNS update, notification and event log."""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx
import structlog

from failover.config import CloudflareConfig, MonitorConfig
from failover.dns_provider import CloudflareDNS
from failover.errors import DNSProviderError, StoreError
from failover.events import Role
from failover.notify import Notifier
from failover.store import IPDownEvent, Store, SwitchEvent


logger = structlog.get_logger(__name__)

DNSFactory = Callable[[CloudflareConfig], CloudflareDNS]
NotifierFactory = Callable[[], Notifier]


def _now_ms() -> int:
    return int(time.time() * 1000)


class FailoverActions:
    """FailoverCallbacks backed by the store, Cloudflare and the notification channels.

    Provider settings are read from the store on every event so edits made
    through the admin API apply to the next transition.
    """

    def __init__(
        self,
        store: Store,
        *,
        dns_factory: DNSFactory | None = None,
        notifier_factory: NotifierFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.store = store
        self._client = http_client
        self._dns_factory = dns_factory or (lambda cfg: CloudflareDNS(cfg, client=self._client))
        self._notifier_factory = notifier_factory or self._default_notifier

    def _default_notifier(self) -> Notifier:
        g = self.store.get_global_config()
        return Notifier(dingtalk=g.dingtalk, email=g.email, telegram=g.telegram, client=self._client)

    async def _notify(self, message: str, *, monitor_id: str) -> None:
        # Delivery problems never undo or block a switch that already happened.
        try:
            await self._notifier_factory().notify(message)
        except Exception:
            logger.exception("Notification failed", monitor_id=monitor_id)

    async def _record_switch(self, evt: SwitchEvent) -> None:
        # The whole document is rewritten on every append; keep that off the event loop.
        try:
            await asyncio.to_thread(self.store.append_switch_event, evt)
        except StoreError as exc:
            logger.error("Failed to record switch event", monitor_id=evt.monitor_id, error=str(exc))

    async def _point_subdomains(self, cfg: MonitorConfig, ip: str, proxied: bool) -> int:
        """Update every subdomain; failures are logged per record. Returns the number updated."""
        if not cfg.subdomains:
            return 0
        try:
            dns = self._dns_factory(self.store.get_cloudflare_config())
        except DNSProviderError as exc:
            logger.error("DNS provider unavailable", monitor_id=cfg.id, error=str(exc))
            return 0
        updated = 0
        for sub in cfg.subdomains:
            try:
                await dns.update_record_by_name(cfg.zone_id, sub, ip, proxied)
                updated += 1
            except DNSProviderError as exc:
                logger.error("Failed to update DNS", monitor_id=cfg.id, subdomain=sub, ip=ip, error=str(exc))
        return updated

    async def on_switch(self, cfg: MonitorConfig, to_backup: bool) -> None:
        if to_backup:
            from_ip, to_ip = cfg.original_ip, cfg.backup_ip
            proxied = cfg.backup_ip_cdn_enabled
            reason = "failover"
            msg = f"Server {cfg.name} is down, switched to backup IP: {to_ip}"
        else:
            from_ip, to_ip = cfg.backup_ip, cfg.original_ip
            proxied = cfg.original_ip_cdn_enabled
            reason = "restore"
            msg = f"Server {cfg.name} recovered, switched back to original IP: {to_ip}"

        logger.info(msg, monitor_id=cfg.id)
        await self._point_subdomains(cfg, to_ip, proxied)
        await self._record_switch(
            SwitchEvent(
                timestamp=_now_ms(),
                monitor_id=cfg.id,
                name=cfg.name,
                from_ip=from_ip,
                to_ip=to_ip,
                to_backup=to_backup,
                check_type=cfg.check_type.value,
                reason=reason,
            )
        )
        await self._notify(msg, monitor_id=cfg.id)

    async def on_scheduled_switch(self, cfg: MonitorConfig, from_ip: str, to_ip: str) -> None:
        if not cfg.zone_id:
            logger.info("Scheduled switch without zone; DNS untouched", monitor_id=cfg.id)
            return
        msg = f"Scheduled switch: {cfg.name} {from_ip} -> {to_ip}"
        logger.info(msg, monitor_id=cfg.id)
        await self._point_subdomains(cfg, to_ip, cfg.proxied_for(to_ip))
        await self._record_switch(
            SwitchEvent(
                timestamp=_now_ms(),
                monitor_id=cfg.id,
                name=cfg.name,
                from_ip=from_ip,
                to_ip=to_ip,
                to_backup=to_ip == cfg.backup_ip,
                check_type=cfg.check_type.value,
                reason="schedule",
            )
        )
        await self._notify(msg, monitor_id=cfg.id)

    async def on_ip_down(self, cfg: MonitorConfig, ip: str, role: Role) -> None:
        evt = IPDownEvent(timestamp=_now_ms(), monitor_id=cfg.id, name=cfg.name, ip=ip, role=role.value)
        try:
            await asyncio.to_thread(self.store.append_ip_down_event, evt)
        except StoreError as exc:
            logger.error("Failed to record IP down event", monitor_id=cfg.id, error=str(exc))
        if role is Role.BACKUP:
            await self._notify(f"Backup IP {ip} of {cfg.name} is unreachable while failed over", monitor_id=cfg.id)

    async def manual_restore(self, cfg: MonitorConfig, from_ip: str, proxied: bool | None = None) -> None:
        """Point every subdomain back at the primary IP after an administrative restore.

        Raises DNSProviderError on the first failed record update; history and
        notification only happen once DNS is fully restored.
        """
        if proxied is None:
            proxied = cfg.original_ip_cdn_enabled
        dns = self._dns_factory(self.store.get_cloudflare_config())
        for sub in cfg.subdomains:
            await dns.update_record_by_name(cfg.zone_id, sub, cfg.original_ip, proxied)

        await self._record_switch(
            SwitchEvent(
                timestamp=_now_ms(),
                monitor_id=cfg.id,
                name=cfg.name,
                from_ip=from_ip or cfg.backup_ip,
                to_ip=cfg.original_ip,
                to_backup=False,
                check_type=cfg.check_type.value,
                reason="restore",
            )
        )
        msg = f"Manual restore: {cfg.name} switched back to original IP: {cfg.original_ip}"
        logger.info(msg, monitor_id=cfg.id)
        await self._notify(msg, monitor_id=cfg.id)
