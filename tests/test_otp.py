"""Unit tests for auth/otp.py -- email passcode request and verification.

Covers:
- Roster members receive a code; only a keyed hash is stored
- Unknown and inactive emails get the same response and no email
- Sending is deferred, so a slow provider delays neither branch
- A new request replaces the previous challenge (latest wins)
- Correct code yields a session token; codes are single-use
- Wrong codes count attempts; the limit locks the challenge
- Expiry, malformed codes and rate limits
- Delivery failures are audited, never returned to the caller
- Magic links redeem through the same path
- Every attempt leaves an audit event
"""

import time
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import text

from auth import audit as audit_events
from auth.models import LoginMethod, Role
from auth.otp import MAGIC_LINK_PATH
from core.network import UNKNOWN_NETWORK, fingerprint_for

pytestmark = pytest.mark.anyio

ALICE = "alice@example.com"
NETWORK = fingerprint_for("203.0.113.9")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _enroll(services, email: str = ALICE, role: Role = Role.WHITELISTED) -> None:
    await services.store.upsert_users([email], role, services.clock())


async def _request_code(services, email: str = ALICE) -> str:
    result = await services.otp.request(email, NETWORK)
    assert result.ok, result.reason
    await result.send()
    return services.delivery.last_code(email)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


async def _outcomes(services, event_type: str) -> list[str]:
    events = await services.store.recent_audit_events(200)
    return [e.outcome for e in reversed(events) if e.event_type == event_type]


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class TestRequest:
    async def test_roster_member_receives_code(self, services) -> None:
        await _enroll(services)
        result = await services.otp.request("  Alice@Example.com ", NETWORK)
        assert result.ok
        assert result.email == ALICE
        assert result.expires_minutes == 10
        assert services.delivery.messages == []
        await result.send()
        [message] = services.delivery.messages
        assert message.email == ALICE
        assert len(message.code) == 6 and message.code.isdigit()

    async def test_only_hash_is_stored(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        challenge = await services.store.latest_active_challenge(ALICE, services.clock())
        assert challenge.code_hash != code
        assert challenge.code_hash == services.otp.hash_code(ALICE, code)
        assert challenge.attempts == 0

    async def test_unknown_email_looks_identical(self, services) -> None:
        await _enroll(services)
        known = await services.otp.request(ALICE, NETWORK)
        unknown = await services.otp.request("mallory@example.com", NETWORK)
        assert (known.ok, known.expires_minutes, known.reason) == (unknown.ok, unknown.expires_minutes, unknown.reason)
        assert unknown.send is None
        await known.send()
        assert [m.email for m in services.delivery.messages] == [ALICE]
        assert await _outcomes(services, audit_events.OTP_REQUEST) == ["ok", "not_allowed"]

    async def test_slow_provider_does_not_delay_either_branch(self, services) -> None:
        await _enroll(services)
        services.delivery.delay = 0.5

        started = time.perf_counter()
        known = await services.otp.request(ALICE, NETWORK)
        known_elapsed = time.perf_counter() - started

        started = time.perf_counter()
        unknown = await services.otp.request("mallory@example.com", NETWORK)
        unknown_elapsed = time.perf_counter() - started

        assert known.ok and unknown.ok
        assert known_elapsed < 0.25
        assert unknown_elapsed < 0.25
        assert services.delivery.messages == []
        await known.send()
        assert [m.email for m in services.delivery.messages] == [ALICE]

    async def test_inactive_user_gets_no_code(self, services) -> None:
        await _enroll(services)
        async with services.store.engine.begin() as conn:
            await conn.execute(text("UPDATE users SET is_active = 0 WHERE email = :e"), {"e": ALICE})
        result = await services.otp.request(ALICE, NETWORK)
        assert result.ok
        assert result.send is None
        assert services.delivery.messages == []

    async def test_non_roster_request_discards_stale_challenge(self, services) -> None:
        await _enroll(services)
        await _request_code(services)
        async with services.store.engine.begin() as conn:
            await conn.execute(text("UPDATE users SET is_active = 0 WHERE email = :e"), {"e": ALICE})
        services.clock.advance(seconds=60)
        assert (await services.otp.request(ALICE, NETWORK)).ok
        assert await services.store.latest_active_challenge(ALICE, services.clock()) is None

    async def test_invalid_email_rejected(self, services) -> None:
        result = await services.otp.request("not-an-email", NETWORK)
        assert not result.ok
        assert result.reason == "invalid_email"

    async def test_second_request_within_a_minute_is_rate_limited(self, services) -> None:
        await _enroll(services)
        await _request_code(services)
        again = await services.otp.request(ALICE, NETWORK)
        assert not again.ok
        assert again.reason == "rate_limited"
        assert again.retry_after_seconds == 30

    async def test_latest_challenge_wins(self, services, monkeypatch) -> None:
        codes = iter(["111111", "222222"])
        monkeypatch.setattr(services.otp, "generate_code", lambda: next(codes))
        await _enroll(services)
        first = await _request_code(services)
        services.clock.advance(seconds=60)
        second = await _request_code(services)
        assert (first, second) == ("111111", "222222")
        stale = await services.otp.verify(ALICE, first, NETWORK)
        assert stale.reason == "invalid_code"
        fresh = await services.otp.verify(ALICE, second, NETWORK)
        assert fresh.ok

    async def test_ip_limit_spans_emails(self, services) -> None:
        for i in range(10):
            assert (await services.otp.request(f"user{i}@example.com", NETWORK)).ok
        blocked = await services.otp.request("user10@example.com", NETWORK)
        assert blocked.reason == "rate_limited"

    async def test_subnet_limit_spans_addresses(self, services) -> None:
        # 30 per /24 per window; rotate the host part so the ip limit never trips.
        for i in range(30):
            fp = fingerprint_for(f"198.51.100.{i + 1}")
            assert (await services.otp.request(f"user{i}@example.com", fp)).ok
        blocked = await services.otp.request("late@example.com", fingerprint_for("198.51.100.200"))
        assert blocked.reason == "rate_limited"

    async def test_unknown_network_skips_network_limits(self, services) -> None:
        for i in range(15):
            assert (await services.otp.request(f"user{i}@example.com", UNKNOWN_NETWORK)).ok

    async def test_delivery_failure_is_audited_not_returned(self, services) -> None:
        await _enroll(services)
        services.delivery.fail_with = "send_failed"
        result = await services.otp.request(ALICE, NETWORK)
        assert result.ok
        await result.send()
        assert await services.store.latest_active_challenge(ALICE, services.clock()) is None
        assert await _outcomes(services, audit_events.OTP_REQUEST) == ["ok"]
        assert await _outcomes(services, audit_events.OTP_DELIVERY) == ["delivery_failed"]

    async def test_missing_provider_is_delivery_unavailable(self, services) -> None:
        await _enroll(services)
        services.delivery.fail_with = "provider_unavailable"
        result = await services.otp.request(ALICE, NETWORK)
        await result.send()
        assert await _outcomes(services, audit_events.OTP_DELIVERY) == ["delivery_unavailable"]

    async def test_unconfigured_provider_is_reported_for_every_address(self, services) -> None:
        await _enroll(services)
        services.delivery.configured = False
        known = await services.otp.request(ALICE, NETWORK)
        unknown = await services.otp.request("mallory@example.com", NETWORK)
        assert (known.ok, known.reason) == (unknown.ok, unknown.reason) == (False, "delivery_unavailable")
        assert await services.store.latest_active_challenge(ALICE, services.clock()) is None

    async def test_successful_send_is_audited(self, services) -> None:
        await _enroll(services)
        await _request_code(services)
        assert await _outcomes(services, audit_events.OTP_DELIVERY) == ["ok"]


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


class TestVerify:
    async def test_correct_code_issues_session(self, services) -> None:
        await _enroll(services, role=Role.ADMIN)
        code = await _request_code(services)
        result = await services.otp.verify(ALICE, code, NETWORK)
        assert result.ok
        assert result.role is Role.ADMIN
        claims = services.codec.verify(result.token)
        assert claims.email == ALICE
        assert claims.role is Role.ADMIN
        assert claims.login_method is LoginMethod.OTP
        assert claims.trust_device is False

    async def test_trusted_device_is_carried_in_the_token(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        result = await services.otp.verify(ALICE, code, NETWORK, trust_device=True)
        assert result.trust_device
        assert services.codec.verify(result.token).trust_device is True

    async def test_code_is_single_use(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        assert (await services.otp.verify(ALICE, code, NETWORK)).ok
        replay = await services.otp.verify(ALICE, code, NETWORK)
        assert not replay.ok
        assert replay.reason == "not_found"

    async def test_five_wrong_codes_lock_the_challenge(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        challenge = await services.store.latest_active_challenge(ALICE, services.clock())
        for _ in range(5):
            assert (await services.otp.verify(ALICE, _wrong(code), NETWORK)).reason == "invalid_code"
        assert (await services.store.get_challenge(challenge.id)).attempts == 5
        locked = await services.otp.verify(ALICE, code, NETWORK)
        assert not locked.ok
        assert locked.reason == "too_many_attempts"

    async def test_new_request_unlocks(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        for _ in range(5):
            await services.otp.verify(ALICE, _wrong(code), NETWORK)
        services.clock.advance(seconds=60)
        fresh = await _request_code(services)
        assert (await services.otp.verify(ALICE, fresh, NETWORK)).ok

    async def test_expired_code_rejected(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        services.clock.advance(minutes=10)
        result = await services.otp.verify(ALICE, code, NETWORK)
        assert result.reason == "not_found"

    async def test_no_challenge_is_not_found(self, services) -> None:
        result = await services.otp.verify(ALICE, "123456", NETWORK)
        assert result.reason == "not_found"

    @pytest.mark.parametrize("bad", ["12345", "1234567", "12a456", "", "１２３４５６"])
    async def test_malformed_code_costs_no_attempt(self, services, bad) -> None:
        await _enroll(services)
        await _request_code(services)
        result = await services.otp.verify(ALICE, bad, NETWORK)
        assert result.reason == "invalid_code"
        challenge = await services.store.latest_active_challenge(ALICE, services.clock())
        assert challenge.attempts == 0

    async def test_removed_user_cannot_redeem(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        await services.directory.delete(ALICE, "admin@example.com")
        result = await services.otp.verify(ALICE, code, NETWORK)
        assert result.reason == "not_allowed"

    async def test_verify_email_limit(self, services) -> None:
        await _enroll(services)
        for _ in range(10):
            await services.otp.verify(ALICE, "123456", NETWORK)
        limited = await services.otp.verify(ALICE, "123456", NETWORK)
        assert limited.reason == "rate_limited"
        assert limited.retry_after_seconds >= 1

    async def test_outcomes_are_audited(self, services) -> None:
        await _enroll(services)
        code = await _request_code(services)
        await services.otp.verify(ALICE, _wrong(code), NETWORK)
        await services.otp.verify(ALICE, code, NETWORK)
        assert await _outcomes(services, audit_events.OTP_VERIFY) == ["invalid_code", "ok"]
        events = await services.store.recent_audit_events(10)
        assert all(e.ip_key_hash and "203.0.113" not in e.ip_key_hash for e in events)


# ---------------------------------------------------------------------------
# Magic links
# ---------------------------------------------------------------------------


class TestMagicLink:
    async def test_link_is_emailed_and_redeems(self, services_with_links) -> None:
        services = services_with_links
        await _enroll(services)
        await _request_code(services)
        [message] = services.delivery.messages
        assert MAGIC_LINK_PATH in message.magic_link_url
        token = parse_qs(urlsplit(message.magic_link_url).query)["token"][0]
        result = await services.otp.verify_magic_link(token, NETWORK)
        assert result.ok
        assert services.codec.verify(result.token).trust_device is False
        assert (await services.otp.verify_magic_link(token, NETWORK)).reason == "not_found"

    async def test_no_link_without_base_url(self, services) -> None:
        await _enroll(services)
        await _request_code(services)
        assert services.delivery.messages[0].magic_link_url is None

    async def test_forged_link_rejected(self, services) -> None:
        result = await services.otp.verify_magic_link("forged.token", NETWORK)
        assert not result.ok
        assert result.reason == "invalid_link"
        assert await _outcomes(services, audit_events.OTP_VERIFY) == ["invalid_link"]
