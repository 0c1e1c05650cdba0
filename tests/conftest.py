"""
tests/conftest.py -- Shared test fixtures for AccessGate.

This module provides:
  - FakeClock: settable UTC clock shared by the services under test
  - RecordingDelivery: OTP delivery that keeps messages instead of sending them
  - store: fresh in-memory AuthStore per test (async)
  - services: every service wired around one store, clock and mailer
  - api / api_with_links: ApiHarness -- TestClient on the real app with test wiring

Design: the in-memory SQLite URL ("sqlite+aiosqlite://") gets a StaticPool,
so every connection in a test sees the same database. Each store fixture
builds its own engine, which gives each test a blank schema.

AUTH_SECRET and ENVIRONMENT must be set before any auth/core import so
get_settings() validates instead of raising.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import -- Settings refuses to load without AUTH_SECRET.
os.environ.setdefault("AUTH_SECRET", "test-secret-0123456789abcdef0123456789abcdef")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import anyio
import pytest
from fastapi.testclient import TestClient

from api.main import app, configure_state
from auth.audit import SecurityAuditLog
from auth.directory import UserDirectoryService
from auth.invites import InviteService
from auth.mailer import OtpMailer
from auth.models import DeliveryResult, LoginMethod, Role
from auth.otp import OtpService
from auth.ratelimit import RateLimiter, policies_from_settings
from auth.store import AuthStore
from auth.telemetry import SecurityTelemetry
from auth.tokens import SessionTokenCodec
from core.config import Settings, get_settings
from core.database import build_engine

SECRET = os.environ["AUTH_SECRET"]
ORIGIN = "http://testserver"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingDelivery:
    """OTP delivery that records messages.

    Set `fail_with` to simulate a provider error, `delay` to simulate a slow
    one and `configured = False` for a provider with no credentials.
    """

    def __init__(self) -> None:
        self.messages = []
        self.fail_with: str | None = None
        self.delay = 0.0
        self.configured = True

    async def deliver(self, message) -> DeliveryResult:
        if self.delay:
            await anyio.sleep(self.delay)
        if self.fail_with:
            return DeliveryResult(ok=False, reason=self.fail_with, provider="recording")
        self.messages.append(message)
        return DeliveryResult(ok=True, provider="recording")

    def last_code(self, email: str) -> str:
        for message in reversed(self.messages):
            if message.email == email:
                return message.code
        raise AssertionError(f"no OTP delivered to {email}")


@dataclass
class Services:
    store: AuthStore
    clock: FakeClock
    delivery: RecordingDelivery
    codec: SessionTokenCodec
    limiter: RateLimiter
    audit: SecurityAuditLog
    otp: OtpService
    invites: InviteService
    directory: UserDirectoryService
    telemetry: SecurityTelemetry


def build_services(store: AuthStore, settings: Settings, magic_link_base_url: str = "") -> Services:
    clock = FakeClock()
    delivery = RecordingDelivery()
    mailer = OtpMailer(delivery)
    codec = SessionTokenCodec(SECRET, settings.session_ttl_seconds, clock=clock)
    limiter = RateLimiter(store, SECRET, policies_from_settings(settings), clock=clock)
    audit = SecurityAuditLog(SECRET, store, clock=clock)
    return Services(
        store=store,
        clock=clock,
        delivery=delivery,
        codec=codec,
        limiter=limiter,
        audit=audit,
        otp=OtpService(
            store, limiter, mailer, codec, audit, SECRET, magic_link_base_url=magic_link_base_url, clock=clock
        ),
        invites=InviteService(store, limiter, codec, audit, clock=clock),
        directory=UserDirectoryService(store, clock=clock),
        telemetry=SecurityTelemetry(store, clock=clock),
    )


# ---------------------------------------------------------------------------
# Async fixtures (service-level tests)
# ---------------------------------------------------------------------------


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(anyio_backend):
    engine_store = AuthStore(build_engine("sqlite+aiosqlite://"))
    await engine_store.initialize()
    yield engine_store
    await engine_store.close()


@pytest.fixture
async def services(store) -> Services:
    return build_services(store, get_settings())


@pytest.fixture
async def file_store(tmp_path, anyio_backend):
    """File-backed store with a real connection pool, for tests that race writers."""
    pooled = AuthStore(build_engine(f"sqlite+aiosqlite:///{tmp_path / 'accessgate.db'}"))
    await pooled.initialize()
    yield pooled
    await pooled.close()


@pytest.fixture
async def file_services(file_store) -> Services:
    return build_services(file_store, get_settings())


@pytest.fixture
async def services_with_links(store) -> Services:
    return build_services(store, get_settings(), magic_link_base_url=ORIGIN)


# ---------------------------------------------------------------------------
# HTTP fixtures (route-level tests)
# ---------------------------------------------------------------------------


class ApiHarness:
    """TestClient plus helpers to seed data inside the app's event loop."""

    def __init__(self, client: TestClient, clock: FakeClock, delivery: RecordingDelivery) -> None:
        self.client = client
        self.clock = clock
        self.delivery = delivery

    @property
    def store(self) -> AuthStore:
        return app.state.store

    def run(self, func, *args):
        return self.client.portal.call(func, *args)

    def add_users(self, emails: list[str], role: Role = Role.WHITELISTED) -> None:
        self.run(self.store.upsert_users, emails, role, self.clock())

    def login_as(self, email: str, role: Role) -> None:
        """Put a valid session cookie for (email, role) on the client."""
        token = app.state.codec.create(role, LoginMethod.OTP, email)
        self.client.cookies.set("access_token", token)

    def logout(self) -> None:
        self.client.cookies.clear()


def _api_harness(settings: Settings, magic_link_base_url: str = "") -> Generator[ApiHarness, None, None]:
    clock = FakeClock()
    delivery = RecordingDelivery()
    with TestClient(app, headers={"Origin": ORIGIN}) as client:
        test_settings = settings.model_copy(update={"public_base_url": magic_link_base_url})
        configure_state(app, app.state.store, OtpMailer(delivery), test_settings, clock=clock)
        yield ApiHarness(client, clock, delivery)


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Real app, real lifespan (fresh in-memory DB), recording mailer and fake clock."""
    yield from _api_harness(get_settings())


@pytest.fixture
def api_with_links() -> Generator[ApiHarness, None, None]:
    """Same as `api`, with magic links enabled."""
    yield from _api_harness(get_settings(), magic_link_base_url=ORIGIN)
