from __future__ import annotations

import threading
from pathlib import Path

import httpx
import pytest

from failover.actions import FailoverActions
from failover.config import CloudflareAccount, CloudflareConfig, MonitorConfig, TelegramConfig
from failover.errors import DNSProviderError
from failover.events import Role
from failover.notify import Notifier
from failover.store import Store


PRIMARY = "203.0.113.10"
BACKUP = "198.51.100.20"


class FakeDNS:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.updates: list[tuple] = []
        self.fail_on = fail_on or set()

    async def update_record_by_name(self, zone_id: str, name: str, ip: str, proxied: bool) -> dict:
        if name in self.fail_on:
            raise DNSProviderError(f"no DNS record found for {name}")
        self.updates.append((zone_id, name, ip, proxied))
        return {}


class FakeNotifier:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def notify(self, message: str) -> None:
        self.messages.append(message)


def _cfg(**overrides) -> MonitorConfig:
    base = dict(
        id="m1",
        name="web",
        zone_id="z1",
        subdomains=["www.example.com", "example.com"],
        original_ip=PRIMARY,
        backup_ip=BACKUP,
        original_ip_cdn_enabled=True,
        backup_ip_cdn_enabled=False,
    )
    base.update(overrides)
    return MonitorConfig(**base)


def _actions(tmp_path: Path, dns: FakeDNS) -> tuple[FailoverActions, Store, FakeNotifier, list]:
    store = Store(tmp_path / "data.json")
    notifier = FakeNotifier()
    seen_creds: list[CloudflareConfig] = []

    def dns_factory(cfg: CloudflareConfig) -> FakeDNS:
        seen_creds.append(cfg)
        return dns

    actions = FailoverActions(store, dns_factory=dns_factory, notifier_factory=lambda: notifier)
    return actions, store, notifier, seen_creds


@pytest.mark.asyncio
async def test_failover_updates_dns_history_and_notifies(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, notifier, _ = _actions(tmp_path, dns)

    await actions.on_switch(_cfg(), to_backup=True)

    assert dns.updates == [
        ("z1", "www.example.com", BACKUP, False),
        ("z1", "example.com", BACKUP, False),
    ]
    [evt] = store.list_switch_history()
    assert (evt.from_ip, evt.to_ip, evt.to_backup, evt.reason) == (PRIMARY, BACKUP, True, "failover")
    assert evt.check_type == "ping"
    assert len(notifier.messages) == 1
    assert BACKUP in notifier.messages[0]


@pytest.mark.asyncio
async def test_restore_uses_primary_cdn_flag(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, _, _ = _actions(tmp_path, dns)

    await actions.on_switch(_cfg(), to_backup=False)

    assert {u[2:] for u in dns.updates} == {(PRIMARY, True)}
    [evt] = store.list_switch_history()
    assert (evt.from_ip, evt.to_ip, evt.reason) == (BACKUP, PRIMARY, "restore")


@pytest.mark.asyncio
async def test_dns_failure_on_one_record_continues_with_others(tmp_path: Path) -> None:
    dns = FakeDNS(fail_on={"www.example.com"})
    actions, store, notifier, _ = _actions(tmp_path, dns)

    await actions.on_switch(_cfg(), to_backup=True)

    assert dns.updates == [("z1", "example.com", BACKUP, False)]
    assert len(store.list_switch_history()) == 1
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_scheduled_switch_uses_target_role_flag(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, notifier, _ = _actions(tmp_path, dns)

    await actions.on_scheduled_switch(_cfg(), PRIMARY, BACKUP)
    await actions.on_scheduled_switch(_cfg(), BACKUP, PRIMARY)
    await actions.on_scheduled_switch(_cfg(), PRIMARY, "192.0.2.9")

    assert [u[2:] for u in dns.updates[::2]] == [(BACKUP, False), (PRIMARY, True), ("192.0.2.9", False)]
    reasons = {e.reason for e in store.list_switch_history()}
    assert reasons == {"schedule"}
    assert [e.to_backup for e in reversed(store.list_switch_history())] == [True, False, False]
    assert len(notifier.messages) == 3


@pytest.mark.asyncio
async def test_scheduled_switch_without_zone_is_skipped(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, notifier, _ = _actions(tmp_path, dns)

    await actions.on_scheduled_switch(_cfg(zone_id=""), PRIMARY, BACKUP)

    assert dns.updates == []
    assert store.list_switch_history() == []
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_ip_down_logs_event_and_alerts_for_backup(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, notifier, _ = _actions(tmp_path, dns)

    await actions.on_ip_down(_cfg(), PRIMARY, Role.ORIGINAL)
    await actions.on_ip_down(_cfg(), BACKUP, Role.BACKUP)

    events = store.list_ip_down_events()
    assert [(e.ip, e.role) for e in events] == [(BACKUP, "backup"), (PRIMARY, "original")]
    assert len(notifier.messages) == 1
    assert BACKUP in notifier.messages[0]


@pytest.mark.asyncio
async def test_manual_restore(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, notifier, _ = _actions(tmp_path, dns)

    await actions.manual_restore(_cfg(), BACKUP, proxied=False)

    assert {u[2:] for u in dns.updates} == {(PRIMARY, False)}
    [evt] = store.list_switch_history()
    assert (evt.from_ip, evt.to_ip, evt.reason) == (BACKUP, PRIMARY, "restore")
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_manual_restore_defaults(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, _, _ = _actions(tmp_path, dns)

    await actions.manual_restore(_cfg(), "")

    assert {u[3] for u in dns.updates} == {True}
    assert store.list_switch_history()[0].from_ip == BACKUP


@pytest.mark.asyncio
async def test_manual_restore_raises_before_recording(tmp_path: Path) -> None:
    dns = FakeDNS(fail_on={"example.com"})
    actions, store, notifier, _ = _actions(tmp_path, dns)

    with pytest.raises(DNSProviderError):
        await actions.manual_restore(_cfg(), BACKUP)

    assert store.list_switch_history() == []
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_dns_credentials_read_per_event(tmp_path: Path) -> None:
    dns = FakeDNS()
    actions, store, _, seen = _actions(tmp_path, dns)

    store.add_cloudflare_account(CloudflareAccount(id="a1", api_token="first"))
    await actions.on_switch(_cfg(), to_backup=True)
    store.add_cloudflare_account(CloudflareAccount(id="a2", api_token="second"))
    store.activate_cloudflare_account("a2")
    await actions.on_switch(_cfg(), to_backup=False)

    assert [c.api_token for c in seen] == ["first", "second"]


class ExplodingNotifier:
    def __init__(self, log: list) -> None:
        self.log = log

    async def notify(self, message: str) -> None:
        self.log.append("notify")
        raise RuntimeError("smtp relay on fire")


class LoggingDNS(FakeDNS):
    def __init__(self, log: list) -> None:
        super().__init__()
        self.log = log

    async def update_record_by_name(self, zone_id: str, name: str, ip: str, proxied: bool) -> dict:
        self.log.append(f"dns:{name}")
        return await super().update_record_by_name(zone_id, name, ip, proxied)


@pytest.mark.asyncio
async def test_notification_failure_does_not_block_dns(tmp_path: Path) -> None:
    log: list[str] = []
    dns = LoggingDNS(log)
    store = Store(tmp_path / "data.json")
    actions = FailoverActions(store, dns_factory=lambda cfg: dns, notifier_factory=lambda: ExplodingNotifier(log))

    await actions.on_switch(_cfg(), to_backup=True)
    await actions.on_scheduled_switch(_cfg(), BACKUP, PRIMARY)
    await actions.on_ip_down(_cfg(), BACKUP, Role.BACKUP)
    await actions.manual_restore(_cfg(), BACKUP)

    assert log == [
        "dns:www.example.com", "dns:example.com", "notify",
        "dns:www.example.com", "dns:example.com", "notify",
        "notify",
        "dns:www.example.com", "dns:example.com", "notify",
    ]
    assert [e.reason for e in store.list_switch_history()] == ["restore", "schedule", "failover"]
    assert len(store.list_ip_down_events()) == 1


@pytest.mark.asyncio
async def test_failover_reaches_dns_when_telegram_answers_garbage(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["unexpected"])

    dns = FakeDNS()
    store = Store(tmp_path / "data.json")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = Notifier(telegram=TelegramConfig(enabled=True, bot_token="123:abc", chat_id="-1"), client=client)
        actions = FailoverActions(store, dns_factory=lambda cfg: dns, notifier_factory=lambda: notifier)
        await actions.on_switch(_cfg(), to_backup=True)

    assert {u[2] for u in dns.updates} == {BACKUP}
    assert len(dns.updates) == 2
    assert len(store.list_switch_history()) == 1


@pytest.mark.asyncio
async def test_event_log_writes_run_off_the_event_loop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    dns = FakeDNS()
    actions, store, _, _ = _actions(tmp_path, dns)
    writers: list[str] = []

    for name in ("append_switch_event", "append_ip_down_event"):
        original = getattr(store, name)

        def recording(evt, _original=original):
            writers.append(threading.current_thread().name)
            return _original(evt)

        monkeypatch.setattr(store, name, recording)

    await actions.on_switch(_cfg(), to_backup=True)
    await actions.on_ip_down(_cfg(), PRIMARY, Role.ORIGINAL)

    loop_thread = threading.current_thread().name
    assert len(writers) == 2
    assert loop_thread not in writers
    assert len(store.list_switch_history()) == 1
