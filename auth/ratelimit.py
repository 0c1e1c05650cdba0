"""
auth/ratelimit.py -- Fixed-window, database-backed rate limiting.

A policy maps an action name ("otp_request:email") to a limit and a window.
Each hit lands in the bucket (action, HMAC(identity), window, bucket_start)
where bucket_start = floor(now / window) * window. The store increments the
bucket with a single conditional upsert and returns the new count, so two
concurrent callers never read the same total: with a limit of 1 exactly one
of them is allowed.

Buckets live in the shared database rather than process memory, so limits
hold across every worker and restart.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.models import ALLOWED, RateLimitDecision
from auth.store import AuthStore
from auth.tokens import keyed_hash
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("accessgate.ratelimit")

OTP_REQUEST_EMAIL = "otp_request:email"
OTP_REQUEST_IP = "otp_request:ip"
OTP_REQUEST_SUBNET = "otp_request:subnet"
OTP_VERIFY_EMAIL = "otp_verify:email"
OTP_VERIFY_IP = "otp_verify:ip"
INVITE_ACTIVATE_IP = "invite_activate:ip"


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int


def policies_from_settings(settings: Settings) -> dict[str, RateLimitPolicy]:
    s = settings
    return {
        OTP_REQUEST_EMAIL: RateLimitPolicy(s.otp_request_email_limit, s.otp_request_email_window),
        OTP_REQUEST_IP: RateLimitPolicy(s.otp_request_ip_limit, s.otp_request_ip_window),
        OTP_REQUEST_SUBNET: RateLimitPolicy(s.otp_request_subnet_limit, s.otp_request_subnet_window),
        OTP_VERIFY_EMAIL: RateLimitPolicy(s.otp_verify_email_limit, s.otp_verify_email_window),
        OTP_VERIFY_IP: RateLimitPolicy(s.otp_verify_ip_limit, s.otp_verify_ip_window),
        INVITE_ACTIVATE_IP: RateLimitPolicy(s.invite_activate_ip_limit, s.invite_activate_ip_window),
    }


class RateLimiter:
    """Count hits per (action, identity) and decide allow / deny.

    Usage:
        limiter = RateLimiter(store, secret, policies_from_settings(settings))
        decision = await limiter.hit(OTP_REQUEST_EMAIL, "alice@example.com")
        if not decision.allowed:
            ...  # decision.retry_after_seconds
    """

    def __init__(
        self,
        store: AuthStore,
        secret: str,
        policies: dict[str, RateLimitPolicy],
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._secret = secret
        self._policies = policies
        self._clock = clock

    def policy(self, action: str) -> RateLimitPolicy:
        try:
            return self._policies[action]
        except KeyError:
            raise ValueError(f"no rate-limit policy for action {action!r}") from None

    async def hit(self, action: str, identity: str) -> RateLimitDecision:
        """Record one hit and return whether the caller is still within the limit."""
        policy = self.policy(action)
        now = self._clock()
        now_ts = now.timestamp()
        bucket_start = int(now_ts // policy.window_seconds) * policy.window_seconds
        bucket_end = bucket_start + policy.window_seconds
        key_hash = keyed_hash(self._secret, f"{action}:{identity}")

        try:
            hits = await self._store.hit_bucket(
                scope=action,
                key_hash=key_hash,
                window_seconds=policy.window_seconds,
                bucket_start=bucket_start,
                expires_at=datetime.fromtimestamp(bucket_end, tz=timezone.utc) + timedelta(seconds=1),
                now=now,
            )
        except SQLAlchemyError:
            logger.exception("Rate-limit bucket update failed for %s", action)
            return RateLimitDecision(allowed=False, reason="db_unavailable")

        if hits > policy.limit:
            retry_after = max(1, math.ceil(bucket_end - now_ts))
            logger.info("Rate limit hit: %s (%d/%d, retry in %ds)", action, hits, policy.limit, retry_after)
            return RateLimitDecision(allowed=False, reason="rate_limited", retry_after_seconds=retry_after)
        return ALLOWED

    async def check_all(self, checks: list[tuple[str, str | None]]) -> RateLimitDecision:
        """Apply several (action, identity) checks in order, stopping at the first denial.

        Checks whose identity is None are skipped; that is how unknown network
        fingerprints stay out of a shared "unknown" bucket.
        """
        for action, identity in checks:
            if identity is None:
                continue
            decision = await self.hit(action, identity)
            if not decision.allowed:
                return decision
        return ALLOWED
