"""
auth/mailer.py -- One-time passcode email delivery.

OtpMailer picks a delivery for each message:
  1. The console-only address (OTP_CONSOLE_ONLY_EMAIL, "mock@email.com" by
     default outside production) always goes to the console log, in every
     environment. It exists so a demo account can sign in without a mailbox.
  2. Otherwise the configured provider: console, resend or brevo.
  3. No provider -> DeliveryResult(ok=False, reason="provider_unavailable").

Failure contract:
  send() returns a DeliveryResult and does not raise for delivery problems.
  Transport errors, timeouts and non-2xx responses become "send_failed"; the
  redacted recipient, the HTTP status and the first 500 characters of the
  response body are logged. A networked provider without an API key or a
  valid from-identity is "provider_unavailable".

  Every call is bounded twice: by the httpx client timeout and by an outer
  asyncio.wait_for, so a stalled connection cannot hold a send open.

Only ConsoleDelivery ever writes a code to the log.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol

import httpx

from auth.emails import normalize_email, redact_email
from auth.models import DeliveryResult
from core.config import Settings

logger = logging.getLogger("accessgate.mailer")

RESEND_API_URL = "https://api.resend.com/emails"
BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

_PRODUCT_NAME = "AccessGate"
_LOOSE_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_FROM_WITH_NAME_RE = re.compile(r"^(.*)<([^<>]+)>$")
_ERROR_BODY_LIMIT = 500


@dataclass(frozen=True)
class OtpMessage:
    email: str
    code: str
    expires_minutes: int
    magic_link_url: str | None = None


@dataclass(frozen=True)
class EmailContent:
    subject: str
    text: str
    html: str


@dataclass(frozen=True)
class FromIdentity:
    email: str
    name: str | None = None

    def formatted(self) -> str:
        return f"{self.name} <{self.email}>" if self.name else self.email


def parse_from_identity(raw: str | None) -> FromIdentity | None:
    """Parse 'Name <addr@host>' or a bare address. Returns None if invalid."""
    value = (raw or "").strip()
    if not value:
        return None
    match = _FROM_WITH_NAME_RE.match(value)
    if match:
        name = match.group(1).strip().strip('"').strip() or None
        email = match.group(2).strip().lower()
    else:
        name, email = None, value.lower()
    if not _LOOSE_EMAIL_RE.match(email):
        return None
    return FromIdentity(email=email, name=name)


def build_otp_email(message: OtpMessage) -> EmailContent:
    """Render subject, plain-text and HTML bodies for a passcode email."""
    subject = f"Your {_PRODUCT_NAME} access code: {message.code}"
    expires_text = f"This code expires in {message.expires_minutes} minutes."
    ignore_text = "If you did not request this code, you can ignore this email."

    lines = [f"Your access code is: {message.code}", expires_text]
    if message.magic_link_url:
        lines = ["Sign in with one click:", message.magic_link_url, "This link can only be used once.", ""] + lines
    text = "\n".join(lines + ["", ignore_text, "", _PRODUCT_NAME])

    parts = [
        '<div style="font-family:Arial,sans-serif;line-height:1.6;color:#0f172a;max-width:560px;margin:0 auto;">',
        f'  <p style="font-size:18px;font-weight:700;">{_PRODUCT_NAME}</p>',
    ]
    if message.magic_link_url:
        link = html.escape(message.magic_link_url, quote=True)
        parts += [
            f'  <p><a href="{link}" style="display:inline-block;padding:10px 16px;background:#0f172a;'
            f'color:#ffffff;text-decoration:none;border-radius:10px;">Sign in now</a></p>',
            '  <p style="color:#475569;font-size:13px;">This link can only be used once.</p>',
        ]
    parts += [
        "  <p>Your access code is:</p>",
        f'  <p style="font-size:28px;font-weight:700;letter-spacing:0.24em;">{html.escape(message.code)}</p>',
        f"  <p>{html.escape(expires_text)}</p>",
        f'  <p style="color:#64748b;font-size:13px;">{html.escape(ignore_text)}</p>',
        "</div>",
    ]
    return EmailContent(subject=subject, text=text, html="\n".join(parts))


# ---------------------------------------------------------------------------
# Deliveries
# ---------------------------------------------------------------------------


class OtpDelivery(Protocol):
    name: str
    configured: bool

    async def deliver(self, message: OtpMessage) -> DeliveryResult: ...


class ConsoleDelivery:
    """Write the code to the application log. Development and demo accounts only."""

    name = "console"
    configured = True

    async def deliver(self, message: OtpMessage) -> DeliveryResult:
        logger.info(
            "[OTP console delivery] email=%s code=%s expires_in_minutes=%d",
            message.email,
            message.code,
            message.expires_minutes,
        )
        if message.magic_link_url:
            logger.info("[OTP console delivery] magic_link=%s", message.magic_link_url)
        return DeliveryResult(ok=True, provider=self.name)


class _HttpDelivery(ABC):
    """Shared POST-and-check logic for JSON email APIs."""

    name = "http"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        from_identity: FromIdentity | None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._client = client
        self._api_key = api_key.strip()
        self._from = from_identity
        self._timeout = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._api_key) and self._from is not None

    @abstractmethod
    def _build_request(self, message: OtpMessage, content: EmailContent) -> tuple[str, dict, dict]:
        """Return (url, headers, json body) for the provider API."""

    async def deliver(self, message: OtpMessage) -> DeliveryResult:
        if not self.configured:
            logger.warning(
                "%s provider unavailable (has_api_key=%s has_from=%s)",
                self.name,
                bool(self._api_key),
                self._from is not None,
            )
            return DeliveryResult(ok=False, reason="provider_unavailable", provider=self.name)

        url, headers, payload = self._build_request(message, build_otp_email(message))
        try:
            response = await asyncio.wait_for(
                self._client.post(url, headers=headers, json=payload, timeout=self._timeout),
                timeout=self._timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning(
                "%s send failed to=%s error=%s",
                self.name,
                redact_email(message.email),
                type(exc).__name__,
            )
            return DeliveryResult(ok=False, reason="send_failed", provider=self.name)

        if not response.is_success:
            logger.warning(
                "%s send failed to=%s status=%d response=%s",
                self.name,
                redact_email(message.email),
                response.status_code,
                response.text[:_ERROR_BODY_LIMIT],
            )
            return DeliveryResult(ok=False, reason="send_failed", provider=self.name)
        return DeliveryResult(ok=True, provider=self.name)


class ResendDelivery(_HttpDelivery):
    name = "resend"

    def _build_request(self, message: OtpMessage, content: EmailContent) -> tuple[str, dict, dict]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        payload = {
            "from": self._from.formatted(),
            "to": [message.email],
            "subject": content.subject,
            "text": content.text,
            "html": content.html,
        }
        return RESEND_API_URL, headers, payload


class BrevoDelivery(_HttpDelivery):
    name = "brevo"

    def _build_request(self, message: OtpMessage, content: EmailContent) -> tuple[str, dict, dict]:
        sender = {"email": self._from.email}
        if self._from.name:
            sender["name"] = self._from.name
        headers = {"api-key": self._api_key}
        payload = {
            "sender": sender,
            "to": [{"email": message.email}],
            "subject": content.subject,
            "textContent": content.text,
            "htmlContent": content.html,
        }
        return BREVO_API_URL, headers, payload


# ---------------------------------------------------------------------------
# Mailer
# ---------------------------------------------------------------------------


class OtpMailer:
    """Route passcode emails to the right delivery.

    Usage:
        async with httpx.AsyncClient() as client:
            mailer = OtpMailer.from_settings(get_settings(), client)
            result = await mailer.send("alice@example.com", "123456", 10)
    """

    def __init__(
        self,
        provider: OtpDelivery | None,
        console_only_email: str = "",
        console: OtpDelivery | None = None,
    ) -> None:
        self.provider = provider
        self.console_only_email = normalize_email(console_only_email)
        self._console = console or ConsoleDelivery()

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> "OtpMailer":
        name = settings.resolved_email_provider
        timeout = settings.mail_timeout_seconds
        provider: OtpDelivery | None
        if name == "console":
            provider = ConsoleDelivery()
        elif name == "resend":
            provider = ResendDelivery(
                client,
                settings.resend_api_key,
                parse_from_identity(settings.resend_from_email or settings.otp_from_email),
                timeout,
            )
        elif name == "brevo":
            provider = BrevoDelivery(
                client,
                settings.brevo_api_key,
                parse_from_identity(settings.brevo_from_email or settings.otp_from_email),
                timeout,
            )
        else:
            if name:
                logger.warning("Unknown OTP_EMAIL_PROVIDER %r; OTP email delivery is disabled", name)
            provider = None
        return cls(provider, settings.resolved_console_only_email)

    def can_deliver(self, email: str) -> bool:
        """True when a send to this address has a usable delivery.

        Depends only on configuration and the console-only address, never on
        whether the address is on the roster.
        """
        if self.console_only_email and normalize_email(email) == self.console_only_email:
            return True
        return self.provider is not None and self.provider.configured

    async def send(
        self,
        email: str,
        code: str,
        expires_minutes: int,
        magic_link_url: str | None = None,
    ) -> DeliveryResult:
        message = OtpMessage(email=email, code=code, expires_minutes=expires_minutes, magic_link_url=magic_link_url)
        if self.console_only_email and normalize_email(email) == self.console_only_email:
            return await self._console.deliver(message)
        if self.provider is None:
            logger.warning("No OTP email provider configured; cannot deliver to %s", redact_email(email))
            return DeliveryResult(ok=False, reason="provider_unavailable")
        return await self.provider.deliver(message)
