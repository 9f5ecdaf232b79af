from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import smtplib
import ssl
import time
from email.message import EmailMessage
from urllib.parse import quote_plus

import httpx
import structlog

from failover.config import DingTalkConfig, EmailConfig, TelegramConfig


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900
DINGTALK_ROBOT_URL = "https://oapi.dingtalk.com/robot/send"
EMAIL_SUBJECT = "DNS failover notification"
SMTP_TIMEOUT_SECONDS = 20


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Cut a message into sendable parts, preferring line breaks in the last 40% of each part."""
    rest = (text or "").strip()
    limit = max(1, int(max_len))
    parts: list[str] = []
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit + 1)
        if cut < limit * 0.6:
            cut = limit
        parts.append(rest[:cut].rstrip())
        rest = rest[cut:].lstrip()
    parts.append(rest)
    return parts


def _redact(msg: str, secret: str) -> str:
    return msg.replace(secret, "<redacted>") if secret else msg


def _telegram_error(body: object) -> str | None:
    """None when the Bot API accepted the message, otherwise a short reason."""
    if not isinstance(body, dict):
        return f"unexpected response body: {type(body).__name__}"
    if body.get("ok"):
        return None
    return str(body.get("description") or body.get("error_code") or "not ok")


async def send_telegram_message(client: httpx.AsyncClient, config: TelegramConfig, text: str) -> str | None:
    """Send one message part. Returns None on success, else the (token-redacted) failure reason."""
    url = f"https://api.telegram.org/bot{config.bot_token}/sendMessage"
    try:
        resp = await client.post(url, json={"chat_id": config.chat_id, "text": text}, timeout=15.0)
        return _telegram_error(resp.json())
    except Exception as e:
        return _redact(f"{type(e).__name__}: {e}", config.bot_token)


async def send_telegram_message_chunked(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
) -> list[str]:
    """Send every part in order; returns the failure reasons (empty when all parts went through)."""
    errors: list[str] = []
    for part in split_telegram_message(text, max_len=max_len):
        error = await send_telegram_message(client, config, part)
        if error is not None:
            errors.append(error)
    return errors


def dingtalk_webhook_url(config: DingTalkConfig, *, now_ms: int | None = None) -> str:
    """Robot webhook URL, signed with HMAC-SHA256 over "{timestamp}\\n{secret}" when a secret is set."""
    url = f"{DINGTALK_ROBOT_URL}?access_token={config.access_token}"
    if not config.secret:
        return url
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    string_to_sign = f"{timestamp}\n{config.secret}"
    digest = hmac.new(config.secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha256).digest()
    sign = quote_plus(base64.b64encode(digest).decode("ascii"))
    return f"{url}&timestamp={timestamp}&sign={sign}"


async def send_dingtalk_message(client: httpx.AsyncClient, config: DingTalkConfig, text: str) -> bool:
    payload = {"msgtype": "text", "text": {"content": text}}
    try:
        resp = await client.post(dingtalk_webhook_url(config), json=payload, timeout=15.0)
    except httpx.HTTPError as e:
        logger.warning("DingTalk send failed", error=_redact(f"{type(e).__name__}: {e}", config.access_token))
        return False
    if resp.status_code != 200:
        logger.warning("DingTalk returned non-OK status", status_code=resp.status_code)
        return False
    return True


def split_recipients(value: str) -> list[str]:
    return [p.strip() for p in (value or "").split(",") if p.strip()]


def email_ready(config: EmailConfig) -> bool:
    return bool(
        config.enabled
        and config.host
        and config.port
        and config.username
        and config.password
        and split_recipients(config.to)
    )


def build_email(config: EmailConfig, text: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = config.username
    msg["To"] = ", ".join(split_recipients(config.to))
    msg["Subject"] = EMAIL_SUBJECT
    sent_at = time.strftime("%Y-%m-%d %H:%M:%S")
    msg.set_content(f"{text}\n\nSent at: {sent_at}\n")
    return msg


def send_email(config: EmailConfig, text: str) -> None:
    """Blocking SMTP send. Port 465 uses implicit TLS; other ports upgrade with STARTTLS when offered."""
    msg = build_email(config, text)
    context = ssl.create_default_context()
    if config.port == 465:
        with smtplib.SMTP_SSL(config.host, config.port, timeout=SMTP_TIMEOUT_SECONDS, context=context) as smtp:
            smtp.login(config.username, config.password)
            smtp.send_message(msg)
        return
    with smtplib.SMTP(config.host, config.port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
        smtp.ehlo()
        if smtp.has_extn("starttls"):
            smtp.starttls(context=context)
            smtp.ehlo()
        smtp.login(config.username, config.password)
        smtp.send_message(msg)


class Notifier:
    """Fans a message out to every enabled channel.

    A channel that fails is logged and skipped; `notify` itself does not raise.
    """

    def __init__(
        self,
        *,
        dingtalk: DingTalkConfig | None = None,
        email: EmailConfig | None = None,
        telegram: TelegramConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.dingtalk = dingtalk or DingTalkConfig()
        self.email = email or EmailConfig()
        self.telegram = telegram or TelegramConfig()
        self._client = client

    def channels(self) -> list[str]:
        out: list[str] = []
        if self.dingtalk.enabled and self.dingtalk.access_token:
            out.append("dingtalk")
        if email_ready(self.email):
            out.append("email")
        if self.telegram.enabled and self.telegram.bot_token and self.telegram.chat_id:
            out.append("telegram")
        return out

    async def notify(self, message: str) -> None:
        channels = self.channels()
        if not channels:
            logger.debug("No notification channel enabled")
            return
        if self._client is None:
            async with httpx.AsyncClient() as client:
                await self._fan_out(client, channels, message)
        else:
            await self._fan_out(self._client, channels, message)

    async def _fan_out(self, client: httpx.AsyncClient, channels: list[str], message: str) -> None:
        senders = {
            "dingtalk": lambda: send_dingtalk_message(client, self.dingtalk, message),
            "email": lambda: self._send_email(message),
            "telegram": lambda: self._send_telegram(client, message),
        }
        results = await asyncio.gather(*(senders[name]() for name in channels), return_exceptions=True)
        for name, result in zip(channels, results):
            if isinstance(result, Exception):
                logger.warning("Notification channel failed", channel=name, error=self._safe_error(result))

    def _safe_error(self, exc: BaseException) -> str:
        msg = f"{type(exc).__name__}: {exc}"
        for secret in (self.telegram.bot_token, self.dingtalk.access_token, self.email.password):
            msg = _redact(msg, secret)
        return msg

    async def _send_telegram(self, client: httpx.AsyncClient, message: str) -> bool:
        errors = await send_telegram_message_chunked(client, self.telegram, message)
        if errors:
            logger.warning("Telegram send failed", chat_id=self.telegram.chat_id, errors=errors)
        return not errors

    async def _send_email(self, message: str) -> bool:
        try:
            await asyncio.to_thread(send_email, self.email, message)
        except Exception as e:
            logger.warning("Email send failed", host=self.email.host, port=self.email.port, error=self._safe_error(e))
            return False
        return True
