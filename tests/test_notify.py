from __future__ import annotations

import base64
import hashlib
import hmac
import json
import smtplib
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from failover import notify
from failover.config import DingTalkConfig, EmailConfig, TelegramConfig
from failover.notify import (
    TELEGRAM_MAX_MESSAGE_LEN,
    Notifier,
    build_email,
    dingtalk_webhook_url,
    email_ready,
    split_recipients,
    split_telegram_message,
)


def test_split_telegram_message_respects_max_len() -> None:
    text = ("line\n" * 2000).strip()
    parts = split_telegram_message(text, max_len=500)
    assert len(parts) > 1
    assert all(0 < len(p) <= 500 for p in parts)


def test_split_telegram_message_default_limit() -> None:
    text = "a" * (TELEGRAM_MAX_MESSAGE_LEN + 10)
    parts = split_telegram_message(text)
    assert len(parts) == 2
    assert len(parts[0]) <= TELEGRAM_MAX_MESSAGE_LEN
    assert len(parts[1]) <= TELEGRAM_MAX_MESSAGE_LEN


def test_dingtalk_url_unsigned() -> None:
    url = dingtalk_webhook_url(DingTalkConfig(enabled=True, access_token="abc"))
    assert url == "https://oapi.dingtalk.com/robot/send?access_token=abc"


def test_dingtalk_url_signed() -> None:
    cfg = DingTalkConfig(enabled=True, access_token="abc", secret="SECxyz")
    url = dingtalk_webhook_url(cfg, now_ms=1700000000000)
    q = parse_qs(urlsplit(url).query)
    assert q["access_token"] == ["abc"]
    assert q["timestamp"] == ["1700000000000"]

    expected = base64.b64encode(
        hmac.new(b"SECxyz", b"1700000000000\nSECxyz", hashlib.sha256).digest()
    ).decode("ascii")
    assert q["sign"] == [expected]


def test_email_recipients_and_readiness() -> None:
    assert split_recipients(" a@x.com, ,b@x.com ") == ["a@x.com", "b@x.com"]
    full = EmailConfig(enabled=True, host="smtp.x.com", port=465, username="u@x.com", password="p", to="a@x.com")
    assert email_ready(full) is True
    assert email_ready(full.model_copy(update={"password": ""})) is False
    assert email_ready(full.model_copy(update={"to": " , "})) is False
    assert email_ready(full.model_copy(update={"enabled": False})) is False


def test_build_email_headers() -> None:
    cfg = EmailConfig(enabled=True, host="h", port=587, username="alerts@x.com", password="p", to="a@x.com,b@x.com")
    msg = build_email(cfg, "Server web is down")
    assert msg["From"] == "alerts@x.com"
    assert msg["To"] == "a@x.com, b@x.com"
    assert "Server web is down" in msg.get_content()


def test_channels_only_enabled_and_complete() -> None:
    n = Notifier(
        dingtalk=DingTalkConfig(enabled=True, access_token=""),
        telegram=TelegramConfig(enabled=True, bot_token="t", chat_id="c"),
        email=EmailConfig(enabled=False),
    )
    assert n.channels() == ["telegram"]
    assert Notifier().channels() == []


@pytest.mark.asyncio
async def test_notify_fans_out_over_http() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "api.telegram.org":
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})
        return httpx.Response(200, json={"errcode": 0})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        n = Notifier(
            dingtalk=DingTalkConfig(enabled=True, access_token="ding"),
            telegram=TelegramConfig(enabled=True, bot_token="123:abc", chat_id="-100"),
            client=client,
        )
        await n.notify("Server web is down")

    hosts = sorted(r.url.host for r in seen)
    assert hosts == ["api.telegram.org", "oapi.dingtalk.com"]
    tg = next(r for r in seen if r.url.host == "api.telegram.org")
    assert tg.url.path == "/bot123:abc/sendMessage"
    assert json.loads(tg.content) == {"chat_id": "-100", "text": "Server web is down"}
    ding = next(r for r in seen if r.url.host == "oapi.dingtalk.com")
    assert json.loads(ding.content) == {"msgtype": "text", "text": {"content": "Server web is down"}}


@pytest.mark.asyncio
async def test_notify_swallows_channel_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.telegram.org":
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        n = Notifier(
            dingtalk=DingTalkConfig(enabled=True, access_token="ding"),
            telegram=TelegramConfig(enabled=True, bot_token="123:abc", chat_id="-100"),
            client=client,
        )
        await n.notify("hello")


@pytest.mark.asyncio
async def test_telegram_error_redacts_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        error = await notify.send_telegram_message(
            client, TelegramConfig(enabled=True, bot_token="123:secret", chat_id="1"), "x"
        )
    assert error is not None
    assert "123:secret" not in error
    assert "<redacted>" in error


@pytest.mark.asyncio
async def test_telegram_reports_api_rejection_and_odd_bodies() -> None:
    bodies = iter([
        {"ok": True, "result": {"message_id": 1}},
        {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"},
        ["unexpected"],
    ])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=next(bodies))

    cfg = TelegramConfig(enabled=True, bot_token="123:abc", chat_id="-100")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        errors = await notify.send_telegram_message_chunked(client, cfg, "one\ntwo\nsix", max_len=4)
    assert errors == ["Bad Request: chat not found", "unexpected response body: list"]


@pytest.mark.asyncio
async def test_notify_survives_non_object_telegram_body() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        return httpx.Response(200, json=["unexpected"])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        n = Notifier(telegram=TelegramConfig(enabled=True, bot_token="123:abc", chat_id="-100"), client=client)
        await n.notify("Server web is down")
    assert seen == ["api.telegram.org"]


@pytest.mark.asyncio
async def test_email_encoding_error_does_not_escape(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_send(cfg: EmailConfig, text: str) -> None:
        cfg.password.encode("ascii")

    monkeypatch.setattr(notify, "send_email", fake_send)
    cfg = EmailConfig(enabled=True, host="smtp.x.com", port=465, username="u@x.com", password="pässwort", to="a@x.com")
    assert await Notifier(email=cfg)._send_email("restored") is False
    await Notifier(email=cfg).notify("restored")


@pytest.mark.asyncio
async def test_one_failing_channel_does_not_stop_the_others(monkeypatch: pytest.MonkeyPatch) -> None:
    async def broken_dingtalk(client, config, text) -> bool:
        raise RuntimeError("webhook exploded")

    sent: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content)["text"])
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    monkeypatch.setattr(notify, "send_dingtalk_message", broken_dingtalk)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        n = Notifier(
            dingtalk=DingTalkConfig(enabled=True, access_token="ding"),
            telegram=TelegramConfig(enabled=True, bot_token="123:abc", chat_id="-100"),
            client=client,
        )
        await n.notify("failover done")
    assert sent == ["failover done"]


@pytest.mark.asyncio
async def test_email_sent_off_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[tuple] = []

    def fake_send(cfg: EmailConfig, text: str) -> None:
        sent.append((cfg.host, text))

    monkeypatch.setattr(notify, "send_email", fake_send)
    cfg = EmailConfig(enabled=True, host="smtp.x.com", port=465, username="u@x.com", password="p", to="a@x.com")
    await Notifier(email=cfg).notify("restored")
    assert sent == [("smtp.x.com", "restored")]


@pytest.mark.asyncio
async def test_email_failure_is_logged_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_send(cfg: EmailConfig, text: str) -> None:
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(notify, "send_email", fake_send)
    cfg = EmailConfig(enabled=True, host="smtp.x.com", port=587, username="u@x.com", password="p", to="a@x.com")
    await Notifier(email=cfg).notify("restored")


def test_send_email_uses_implicit_tls_on_465(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    class FakeSMTP:
        def __init__(self, host, port, **kwargs) -> None:
            calls.append(f"{type(self).__name__}:{host}:{port}")

        def __enter__(self):
            return self

        def __exit__(self, *exc) -> None:
            return None

        def ehlo(self) -> None:
            calls.append("ehlo")

        def has_extn(self, name: str) -> bool:
            return name == "starttls"

        def starttls(self, **kwargs) -> None:
            calls.append("starttls")

        def login(self, user: str, password: str) -> None:
            calls.append(f"login:{user}")

        def send_message(self, msg) -> None:
            calls.append(f"send:{msg['To']}")

    class FakeSMTPSSL(FakeSMTP):
        pass

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTPSSL)

    cfg = EmailConfig(enabled=True, host="smtp.x.com", port=465, username="u@x.com", password="p", to="a@x.com")
    notify.send_email(cfg, "hi")
    assert calls == ["FakeSMTPSSL:smtp.x.com:465", "login:u@x.com", "send:a@x.com"]

    calls.clear()
    notify.send_email(cfg.model_copy(update={"port": 587}), "hi")
    assert calls == ["FakeSMTP:smtp.x.com:587", "ehlo", "starttls", "ehlo", "login:u@x.com", "send:a@x.com"]
