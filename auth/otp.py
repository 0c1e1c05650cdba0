"""
auth/otp.py -- Email one-time passcode login.

Challenge lifecycle (per email):

    pending --correct code--> verified   (consumed, session issued)
    pending --expiry--------> expired
    pending --max attempts--> locked     (until expiry or a new request)

Rules:
  - Latest challenge wins: requesting a new code deletes every earlier
    challenge for that email in the same transaction.
  - Codes are stored as HMAC-SHA256(AUTH_SECRET, "email|code"), never raw.
  - Attempts are reserved with a conditional UPDATE before the candidate code
    is compared, so concurrent guesses cannot exceed the limit.
  - Consumption is a conditional UPDATE too: two correct submissions racing
    each other produce one session.
  - Unknown and inactive emails get the same response as roster members.
    The code is generated and hashed on that path as well, and the email's
    stale challenges are deleted in place of the insert. A missing challenge
    at verify time still costs one HMAC.
  - Sending is deferred: request() returns before the provider is called.
    Delivery failures discard the challenge and are audited as
    auth.otp.delivery; the caller never sees them. Only a missing provider
    configuration is reported (delivery_unavailable), and it is reported for
    every address alike.

Results are typed values (OtpRequestResult / OtpVerifyResult) with a reason
string; only programming errors raise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
from datetime import timedelta
from functools import partial
from urllib.parse import quote

from sqlalchemy.exc import SQLAlchemyError

from auth import audit as audit_events
from auth.audit import SecurityAuditLog
from auth.emails import is_valid_email, normalize_email, redact_email
from auth.mailer import OtpMailer
from auth.models import LoginMethod, OtpChallenge, OtpRequestResult, OtpVerifyResult
from auth.ratelimit import (
    OTP_REQUEST_EMAIL,
    OTP_REQUEST_IP,
    OTP_REQUEST_SUBNET,
    OTP_VERIFY_EMAIL,
    OTP_VERIFY_IP,
    RateLimiter,
)
from auth.store import AuthStore
from auth.tokens import SessionTokenCodec, keyed_hash
from core.clock import Clock, utcnow
from core.network import UNKNOWN_NETWORK, NetworkFingerprint

logger = logging.getLogger("accessgate.otp")

MAGIC_LINK_PATH = "/api/v1/session/magic"

_DELIVERY_REASONS = {
    "provider_unavailable": "delivery_unavailable",
    "send_failed": "delivery_failed",
}


def _network_checks(network: NetworkFingerprint, ip_action: str, subnet_action: str | None = None):
    """Network-keyed limiter checks; unknown fingerprints are skipped."""
    if network.is_unknown:
        return []
    checks = [(ip_action, network.ip_key)]
    if subnet_action is not None:
        checks.append((subnet_action, network.subnet_key))
    return checks


class OtpService:
    """Issue and verify email passcodes.

    Usage:
        service = OtpService(store, limiter, mailer, codec, audit, secret)
        requested = await service.request("alice@example.com", fingerprint)
        if requested.send is not None:
            background_tasks.add_task(requested.send)
        result = await service.verify("alice@example.com", "123456", fingerprint)
        if result.ok:
            set_session_cookie(response, result.token)
    """

    def __init__(
        self,
        store: AuthStore,
        limiter: RateLimiter,
        mailer: OtpMailer,
        codec: SessionTokenCodec,
        audit: SecurityAuditLog,
        secret: str,
        code_length: int = 6,
        ttl_minutes: int = 10,
        max_attempts: int = 5,
        magic_link_base_url: str = "",
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._mailer = mailer
        self._codec = codec
        self._audit = audit
        self._secret = secret
        self.code_length = code_length
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self._magic_link_base_url = magic_link_base_url.rstrip("/")
        self._clock = clock
        self._code_re = re.compile(rf"[0-9]{{{code_length}}}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def generate_code(self) -> str:
        return f"{secrets.randbelow(10**self.code_length):0{self.code_length}d}"

    def hash_code(self, email: str, code: str) -> str:
        return keyed_hash(self._secret, f"{email}|{code}")

    def _magic_link_url(self, email: str, code: str) -> str | None:
        if not self._magic_link_base_url:
            return None
        token = self._codec.create_magic_link_token(email, code, self.ttl_minutes * 60)
        return f"{self._magic_link_base_url}{MAGIC_LINK_PATH}?token={quote(token, safe='')}"

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request(self, email: str, network: NetworkFingerprint | None = None) -> OtpRequestResult:
        """Store a challenge for a roster email and hand back its deferred send.

        Roster and non-roster emails do the same work before returning: one
        rate-limit pass, one code hash, one user read, one challenge write and
        one audit row. The email itself goes out through `result.send`, which
        the caller runs after the response, so neither provider latency nor
        provider failures reach the caller.
        """
        network = network or UNKNOWN_NETWORK
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            await self._audit.record(audit_events.OTP_REQUEST, "invalid_email", network=network)
            return OtpRequestResult(ok=False, email=normalized, reason="invalid_email")

        decision = await self._limiter.check_all(
            [(OTP_REQUEST_EMAIL, normalized)] + _network_checks(network, OTP_REQUEST_IP, OTP_REQUEST_SUBNET)
        )
        if not decision.allowed:
            await self._audit.record(audit_events.OTP_REQUEST, decision.reason, target_email=normalized, network=network)
            return OtpRequestResult(
                ok=False,
                email=normalized,
                reason=decision.reason,
                retry_after_seconds=decision.retry_after_seconds,
            )

        if not self._mailer.can_deliver(normalized):
            await self._audit.record(
                audit_events.OTP_REQUEST, "delivery_unavailable", target_email=normalized, network=network
            )
            return OtpRequestResult(ok=False, email=normalized, reason="delivery_unavailable")

        code = self.generate_code()
        code_hash = self.hash_code(normalized, code)
        challenge = None
        try:
            user = await self._store.get_user(normalized)
            if user is not None and user.is_active:
                now = self._clock()
                challenge = await self._store.replace_challenge(
                    normalized, code_hash, now + timedelta(minutes=self.ttl_minutes), now
                )
            else:
                await self._store.discard_challenges(normalized)
        except SQLAlchemyError:
            logger.exception("OTP request storage failure for %s", redact_email(normalized))
            await self._audit.record(audit_events.OTP_REQUEST, "db_unavailable", target_email=normalized, network=network)
            return OtpRequestResult(ok=False, email=normalized, reason="db_unavailable")

        await self._audit.record(
            audit_events.OTP_REQUEST,
            "ok" if challenge is not None else "not_allowed",
            target_email=normalized,
            network=network,
        )
        send = partial(self._deliver, challenge, code, network) if challenge is not None else None
        return OtpRequestResult(ok=True, email=normalized, expires_minutes=self.ttl_minutes, send=send)

    async def _deliver(self, challenge: OtpChallenge, code: str, network: NetworkFingerprint) -> None:
        """Email the code. On failure the challenge is discarded and the outcome audited."""
        delivery = await self._mailer.send(
            challenge.email,
            code,
            self.ttl_minutes,
            magic_link_url=self._magic_link_url(challenge.email, code),
        )
        outcome = "ok"
        if not delivery.ok:
            outcome = _DELIVERY_REASONS.get(delivery.reason or "", "delivery_failed")
            logger.warning(
                "OTP email to %s not delivered (%s via %s)", redact_email(challenge.email), outcome, delivery.provider
            )
            try:
                await self._store.delete_challenge(challenge.id)
            except SQLAlchemyError:
                logger.warning("Could not discard undelivered OTP challenge %s", challenge.id, exc_info=True)
        await self._audit.record(
            audit_events.OTP_DELIVERY,
            outcome,
            target_email=challenge.email,
            network=network,
            metadata={"provider": delivery.provider},
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(
        self,
        email: str,
        code: str,
        network: NetworkFingerprint | None = None,
        via: str = "code",
        trust_device: bool = False,
    ) -> OtpVerifyResult:
        """Check a code and mint a session token on success.

        trust_device marks the session for a persistent cookie; otherwise the
        cookie lasts for the browser session.
        """
        network = network or UNKNOWN_NETWORK
        result = await self._verify(normalize_email(email), (code or "").strip(), network, trust_device)
        await self._audit.record(
            audit_events.OTP_VERIFY,
            "ok" if result.ok else result.reason,
            actor_email=result.email if result.ok else None,
            target_email=result.email or None,
            network=network,
            metadata={
                "via": via,
                "role": result.role.value if result.role else None,
                "trust_device": trust_device,
            },
        )
        return result

    async def _verify(
        self, email: str, code: str, network: NetworkFingerprint, trust_device: bool
    ) -> OtpVerifyResult:
        if not is_valid_email(email):
            return OtpVerifyResult(ok=False, email=email, reason="invalid_email")
        if not self._code_re.fullmatch(code):
            return OtpVerifyResult(ok=False, email=email, reason="invalid_code")

        decision = await self._limiter.check_all(
            [(OTP_VERIFY_EMAIL, email)] + _network_checks(network, OTP_VERIFY_IP)
        )
        if not decision.allowed:
            return OtpVerifyResult(
                ok=False,
                email=email,
                reason=decision.reason,
                retry_after_seconds=decision.retry_after_seconds,
            )

        try:
            now = self._clock()
            challenge = await self._store.latest_active_challenge(email, now)
            if challenge is None:
                self.hash_code(email, code)
                return OtpVerifyResult(ok=False, email=email, reason="not_found")

            attempts = await self._store.reserve_attempt(challenge.id, self.max_attempts, now)
            if attempts is None:
                return OtpVerifyResult(ok=False, email=email, reason="too_many_attempts")

            if not hmac.compare_digest(challenge.code_hash, self.hash_code(email, code)):
                logger.info("OTP mismatch for %s (attempt %d/%d)", redact_email(email), attempts, self.max_attempts)
                return OtpVerifyResult(ok=False, email=email, reason="invalid_code")

            if not await self._store.consume_challenge(challenge.id, now):
                return OtpVerifyResult(ok=False, email=email, reason="not_found")

            user = await self._store.get_user(email)
        except SQLAlchemyError:
            logger.exception("OTP verify storage failure for %s", redact_email(email))
            return OtpVerifyResult(ok=False, email=email, reason="db_unavailable")

        if user is None or not user.is_active:
            return OtpVerifyResult(ok=False, email=email, reason="not_allowed")

        token = self._codec.create(user.role, LoginMethod.OTP, user.email, trust_device=trust_device)
        return OtpVerifyResult(ok=True, email=user.email, role=user.role, token=token, trust_device=trust_device)

    async def verify_magic_link(self, token: str, network: NetworkFingerprint | None = None) -> OtpVerifyResult:
        """Redeem a magic-link token through the normal verification path.

        Magic-link sessions are never trusted-device sessions.
        """
        resolved = self._codec.read_magic_link_token((token or "").strip())
        if resolved is None:
            await self._audit.record(
                audit_events.OTP_VERIFY, "invalid_link", network=network, metadata={"via": "magic_link"}
            )
            return OtpVerifyResult(ok=False, reason="invalid_link")
        email, code = resolved
        return await self.verify(email, code, network, via="magic_link")
