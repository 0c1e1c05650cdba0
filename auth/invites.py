"""
auth/invites.py -- Invite issuance, activation and history.

An invite is a single-use, expiring bearer token that grants its role to one
email address. Status moves one way:

    open --activate-----> activated
    open --new invite---> replaced
    open --past expiry--> expired   (applied lazily, on activation or history)

At most one open invite exists per email. create() replaces the prior open
invite and inserts the new one in one transaction, and a partial unique index
backs that up under concurrency.

Activation consumes the invite with a conditional UPDATE and upserts the
roster row in the same transaction, then mints a session token.

The raw token is returned to the caller exactly once and is never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import audit as audit_events
from auth.audit import SecurityAuditLog
from auth.emails import is_valid_email, normalize_email, redact_email
from auth.models import (
    ROSTER_ROLES,
    InviteActivateResult,
    InviteCreateResult,
    InviteHistory,
    InviteStatus,
    LoginMethod,
    Role,
)
from auth.ratelimit import INVITE_ACTIVATE_IP, RateLimiter
from auth.store import AuthStore
from auth.tokens import SessionTokenCodec
from core.clock import Clock, utcnow
from core.network import UNKNOWN_NETWORK, NetworkFingerprint

logger = logging.getLogger("accessgate.invites")

ACTIVATE_PATH = "/activate"
HISTORY_LIMIT_DEFAULT = 400
HISTORY_LIMIT_MAX = 1000
_MAX_TOKEN_LENGTH = 256


def parse_role(value: str | Role | None) -> Role | None:
    """Return the roster role for the given value, or None if it is not one."""
    try:
        role = Role(value)
    except ValueError:
        return None
    return role if role in ROSTER_ROLES else None


def clamp(value: int | None, default: int, low: int, high: int) -> int:
    if value is None:
        return default
    return max(low, min(high, int(value)))


class InviteService:
    """Create, activate and list invites.

    Usage:
        service = InviteService(store, limiter, codec, audit)
        created = await service.create("bob@example.com", Role.WHITELISTED, created_by_email=admin)
        activated = await service.activate(created.token, fingerprint)
    """

    def __init__(
        self,
        store: AuthStore,
        limiter: RateLimiter,
        codec: SessionTokenCodec,
        audit: SecurityAuditLog,
        default_hours: int = 72,
        max_hours: int = 720,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._codec = codec
        self._audit = audit
        self.max_hours = max_hours
        self.default_hours = min(default_hours, max_hours)
        self._clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        email: str,
        role: str | Role,
        expires_hours: int | None = None,
        created_by_email: str | None = None,
    ) -> InviteCreateResult:
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return InviteCreateResult(ok=False, email=normalized, reason="invalid_email")
        parsed_role = parse_role(role)
        if parsed_role is None:
            return InviteCreateResult(ok=False, email=normalized, reason="invalid_role")

        hours = clamp(expires_hours, self.default_hours, 1, self.max_hours)
        creator = normalize_email(created_by_email) or None

        invite = None
        replaced = 0
        for attempt in range(2):
            now = self._clock()
            try:
                invite, replaced = await self._store.create_invite(
                    token=secrets.token_urlsafe(32),
                    email=normalized,
                    role=parsed_role,
                    expires_at=now + timedelta(hours=hours),
                    created_by_email=creator,
                    now=now,
                )
                break
            except IntegrityError:
                # A concurrent create for the same email committed first.
                if attempt == 1:
                    logger.warning("Invite create conflict persisted for %s", redact_email(normalized))
                    return InviteCreateResult(ok=False, email=normalized, reason="db_unavailable")
            except SQLAlchemyError:
                logger.exception("Invite create failed for %s", redact_email(normalized))
                return InviteCreateResult(ok=False, email=normalized, reason="db_unavailable")

        await self._audit.record(
            audit_events.INVITE_CREATE,
            "ok",
            actor_email=creator,
            target_email=normalized,
            metadata={"role": parsed_role.value, "expires_hours": hours, "replaced": replaced},
        )
        return InviteCreateResult(
            ok=True,
            email=normalized,
            token=invite.token,
            role=parsed_role,
            expires_at=invite.expires_at,
            replaced=replaced,
        )

    # ------------------------------------------------------------------
    # Activate
    # ------------------------------------------------------------------

    async def activate(self, token: str, network: NetworkFingerprint | None = None) -> InviteActivateResult:
        network = network or UNKNOWN_NETWORK
        result = await self._activate((token or "").strip(), network)
        await self._audit.record(
            audit_events.INVITE_ACTIVATE,
            "ok" if result.ok else result.reason,
            actor_email=result.email if result.ok else None,
            target_email=result.email,
            network=network,
            metadata={"role": result.role.value if result.role else None},
        )
        return result

    async def _activate(self, token: str, network: NetworkFingerprint) -> InviteActivateResult:
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return InviteActivateResult(ok=False, reason="not_found")

        if not network.is_unknown:
            decision = await self._limiter.hit(INVITE_ACTIVATE_IP, network.ip_key)
            if not decision.allowed:
                return InviteActivateResult(
                    ok=False,
                    reason=decision.reason,
                    retry_after_seconds=decision.retry_after_seconds,
                )

        now = self._clock()
        try:
            invite = await self._store.activate_invite(token, now)
            if invite is None:
                existing = await self._store.get_invite_by_token(token)
                if existing is None:
                    return InviteActivateResult(ok=False, reason="not_found")
                # Past expires_at reads as expired whatever the status.
                if existing.expires_at <= now or existing.status is InviteStatus.EXPIRED:
                    if existing.status is InviteStatus.OPEN:
                        await self._store.expire_stale_invites(now, token=token)
                    return InviteActivateResult(ok=False, reason="expired", email=existing.email)
                return InviteActivateResult(ok=False, reason="not_found")
        except SQLAlchemyError:
            logger.exception("Invite activation storage failure")
            return InviteActivateResult(ok=False, reason="db_unavailable")

        session = self._codec.create(invite.role, LoginMethod.INVITE, invite.email)
        logger.info("Invite activated for %s as %s", redact_email(invite.email), invite.role.value)
        return InviteActivateResult(ok=True, email=invite.email, role=invite.role, token=session)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def history(self, limit: int | None = None) -> InviteHistory:
        """Invites partitioned by status, most recent first.

        Stale open invites are moved to expired first so the partitions
        reflect the current state. Raises SQLAlchemyError on storage failure;
        this is an admin read path and the route layer maps it to 503.
        """
        bounded = clamp(limit, HISTORY_LIMIT_DEFAULT, 1, HISTORY_LIMIT_MAX)
        await self._store.expire_stale_invites(self._clock())
        history = InviteHistory()
        buckets = {
            InviteStatus.OPEN: history.open,
            InviteStatus.ACTIVATED: history.activated,
            InviteStatus.REPLACED: history.replaced,
            InviteStatus.EXPIRED: history.expired,
        }
        for invite in await self._store.list_invites(bounded):
            buckets[invite.status].append(invite)
        return history


def activation_url(base_url: str, token: str) -> str:
    """URL of the activation page an invitee opens; the page POSTs the token back."""
    return f"{base_url.rstrip('/')}{ACTIVATE_PATH}?{urlencode({'token': token})}"
