"""Unit tests for auth/mailer.py -- OTP email rendering and delivery.

Covers:
- parse_from_identity() accepts "Name <addr>" and bare addresses
- build_otp_email() includes the code, escapes HTML and adds the magic link
- Resend and Brevo payloads, via httpx.MockTransport
- Non-2xx responses and transport errors become send_failed
- Missing key or sender becomes provider_unavailable
- can_deliver() reflects configuration, not the recipient
- The console-only address bypasses the provider
- from_settings() provider selection
- Provider deliveries must supply their own request builder
"""

import json
import logging

import httpx
import pytest

from auth.mailer import (
    BREVO_API_URL,
    RESEND_API_URL,
    BrevoDelivery,
    ConsoleDelivery,
    FromIdentity,
    OtpMailer,
    OtpMessage,
    ResendDelivery,
    _HttpDelivery,
    build_otp_email,
    parse_from_identity,
)
from core.config import Settings

pytestmark = pytest.mark.anyio

SECRET = "m" * 40
SENDER = FromIdentity(email="auth@example.com", name="AccessGate")
MESSAGE = OtpMessage(email="alice@example.com", code="123456", expires_minutes=10)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class Recorder:
    """MockTransport handler that keeps every request and answers with a fixed status."""

    def __init__(self, status: int = 200, body: str = "{}") -> None:
        self.requests: list[httpx.Request] = []
        self.status = status
        self.body = body

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, text=self.body)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("AccessGate <Auth@Example.com>", FromIdentity(email="auth@example.com", name="AccessGate")),
        ('"Access Gate" <auth@example.com>', FromIdentity(email="auth@example.com", name="Access Gate")),
        ("auth@example.com", FromIdentity(email="auth@example.com")),
        ("", None),
        ("not an address", None),
        ("Name <broken>", None),
    ],
)
def test_parse_from_identity(raw, expected) -> None:
    assert parse_from_identity(raw) == expected


def test_email_contains_code_and_expiry() -> None:
    content = build_otp_email(MESSAGE)
    assert "123456" in content.subject
    assert "123456" in content.text
    assert "expires in 10 minutes" in content.text
    assert "123456" in content.html


def test_magic_link_is_escaped_in_html() -> None:
    message = OtpMessage(
        email="alice@example.com",
        code="123456",
        expires_minutes=10,
        magic_link_url='https://app.example.com/api/v1/session/magic?token=a"b&c=<d>',
    )
    content = build_otp_email(message)
    assert message.magic_link_url in content.text
    assert "&quot;" in content.html
    assert "&lt;d&gt;" in content.html
    assert '"b&c' not in content.html


def test_no_link_section_without_url() -> None:
    assert "Sign in" not in build_otp_email(MESSAGE).html


# ---------------------------------------------------------------------------
# HTTP providers
# ---------------------------------------------------------------------------


async def test_resend_request_shape() -> None:
    recorder = Recorder()
    async with _client(recorder) as client:
        result = await ResendDelivery(client, "re_key", SENDER).deliver(MESSAGE)
    assert result.ok
    assert result.provider == "resend"
    [request] = recorder.requests
    assert str(request.url) == RESEND_API_URL
    assert request.headers["Authorization"] == "Bearer re_key"
    payload = json.loads(request.content)
    assert payload["from"] == "AccessGate <auth@example.com>"
    assert payload["to"] == ["alice@example.com"]
    assert "123456" in payload["text"]


async def test_brevo_request_shape() -> None:
    recorder = Recorder(status=201)
    async with _client(recorder) as client:
        result = await BrevoDelivery(client, "xkeysib", SENDER).deliver(MESSAGE)
    assert result.ok
    [request] = recorder.requests
    assert str(request.url) == BREVO_API_URL
    assert request.headers["api-key"] == "xkeysib"
    payload = json.loads(request.content)
    assert payload["sender"] == {"email": "auth@example.com", "name": "AccessGate"}
    assert payload["to"] == [{"email": "alice@example.com"}]


def test_http_delivery_base_is_abstract() -> None:
    with pytest.raises(TypeError):
        _HttpDelivery(httpx.AsyncClient(), "key", SENDER)


async def test_non_2xx_is_send_failed_and_logged(caplog) -> None:
    recorder = Recorder(status=422, body="x" * 2000)
    async with _client(recorder) as client:
        with caplog.at_level(logging.WARNING, logger="accessgate.mailer"):
            result = await ResendDelivery(client, "re_key", SENDER).deliver(MESSAGE)
    assert not result.ok
    assert result.reason == "send_failed"
    assert "status=422" in caplog.text
    assert "a***@example.com" in caplog.text
    assert "x" * 501 not in caplog.text


async def test_transport_error_is_send_failed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        result = await BrevoDelivery(client, "xkeysib", SENDER).deliver(MESSAGE)
    assert result.reason == "send_failed"


@pytest.mark.parametrize("api_key,sender", [("", SENDER), ("re_key", None)])
async def test_missing_configuration_is_provider_unavailable(api_key, sender) -> None:
    recorder = Recorder()
    async with _client(recorder) as client:
        result = await ResendDelivery(client, api_key, sender).deliver(MESSAGE)
    assert result.reason == "provider_unavailable"
    assert recorder.requests == []


# ---------------------------------------------------------------------------
# OtpMailer routing
# ---------------------------------------------------------------------------


async def test_console_only_email_bypasses_provider(caplog) -> None:
    recorder = Recorder()
    async with _client(recorder) as client:
        mailer = OtpMailer(ResendDelivery(client, "re_key", SENDER), console_only_email="Demo@Example.com")
        with caplog.at_level(logging.INFO, logger="accessgate.mailer"):
            result = await mailer.send("demo@example.com", "654321", 10)
    assert result.ok
    assert result.provider == "console"
    assert recorder.requests == []
    assert "654321" in caplog.text


async def test_no_provider_is_unavailable() -> None:
    result = await OtpMailer(None).send("alice@example.com", "123456", 10)
    assert not result.ok
    assert result.reason == "provider_unavailable"


async def test_can_deliver_depends_on_configuration_only() -> None:
    async with _client(Recorder()) as client:
        configured = OtpMailer(ResendDelivery(client, "re_key", SENDER))
        keyless = OtpMailer(ResendDelivery(client, "", SENDER), console_only_email="demo@example.com")
        assert configured.can_deliver("anyone@example.com")
        assert not keyless.can_deliver("anyone@example.com")
        assert keyless.can_deliver("Demo@Example.com")
    assert not OtpMailer(None).can_deliver("alice@example.com")
    assert OtpMailer(ConsoleDelivery()).can_deliver("alice@example.com")


async def test_console_delivery_logs_link(caplog) -> None:
    message = OtpMessage("alice@example.com", "123456", 10, magic_link_url="https://x.example/m?token=t")
    with caplog.at_level(logging.INFO, logger="accessgate.mailer"):
        await ConsoleDelivery().deliver(message)
    assert "magic_link=https://x.example/m?token=t" in caplog.text


@pytest.mark.parametrize(
    "overrides,expected",
    [
        ({}, ConsoleDelivery),
        ({"otp_email_provider": "resend", "resend_api_key": "k"}, ResendDelivery),
        ({"otp_email_provider": "Brevo"}, BrevoDelivery),
        ({"environment": "production"}, type(None)),
        ({"otp_email_provider": "carrier-pigeon"}, type(None)),
    ],
)
async def test_from_settings_selects_provider(overrides, expected) -> None:
    settings = Settings(_env_file=None, auth_secret=SECRET, **{"environment": "development", **overrides})
    async with httpx.AsyncClient() as client:
        mailer = OtpMailer.from_settings(settings, client)
    assert type(mailer.provider) is expected


async def test_production_has_no_default_console_address() -> None:
    settings = Settings(_env_file=None, auth_secret=SECRET, environment="production", otp_email_provider="console")
    async with httpx.AsyncClient() as client:
        mailer = OtpMailer.from_settings(settings, client)
    assert mailer.console_only_email == ""
