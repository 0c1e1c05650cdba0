"""
auth/models.py -- Domain dataclasses for access-control entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store and the services do the work. Result types carry an
`ok` flag plus a machine-readable `reason` so callers branch on values rather
than on exceptions.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Access level. VISITOR is the role of anyone without a valid session."""

    VISITOR = "visitor"
    WHITELISTED = "whitelisted"
    ADMIN = "admin"


# Roles that may be stored on the roster. Visitors are never persisted.
ROSTER_ROLES = frozenset({Role.WHITELISTED, Role.ADMIN})


class AuthMethod(str, Enum):
    """How a roster account authenticates. Accounts have no password column."""

    OTP = "otp"


class LoginMethod(str, Enum):
    """How a particular session was obtained."""

    OTP = "otp"
    INVITE = "invite"


class InviteStatus(str, Enum):
    OPEN = "open"
    ACTIVATED = "activated"
    REPLACED = "replaced"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A roster entry. email is normalized lowercase and unique."""

    email: str
    role: Role
    id: int | None = None
    auth_method: AuthMethod = AuthMethod.OTP
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class DeletedUser:
    """A roster entry moved to the deleted ledger."""

    email: str
    role: Role
    deleted_at: datetime
    id: int | None = None
    auth_method: AuthMethod = AuthMethod.OTP
    was_active: bool = True
    created_at: datetime | None = None
    deleted_by_email: str | None = None


@dataclass
class OtpChallenge:
    """A pending one-time passcode.

    code_hash is HMAC-SHA256(AUTH_SECRET, "email|code"). The raw code is never
    stored. attempts counts reserved verification attempts.
    """

    email: str
    code_hash: str
    expires_at: datetime
    id: int | None = None
    attempts: int = 0
    created_at: datetime | None = None
    consumed_at: datetime | None = None


@dataclass
class InviteToken:
    """A single-use activation token bound to one email and role.

    The token value lives only in this row; it is never logged.
    """

    token: str
    email: str
    role: Role
    status: InviteStatus
    expires_at: datetime
    id: int | None = None
    created_by_email: str | None = None
    created_at: datetime | None = None
    activated_at: datetime | None = None
    replaced_at: datetime | None = None


@dataclass
class SecurityAuditEvent:
    event_type: str
    outcome: str
    id: int | None = None
    actor_email: str | None = None
    target_email: str | None = None
    ip_key_hash: str | None = None
    subnet_key_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token. Not persisted."""

    role: Role
    email: str | None = None
    login_method: LoginMethod | None = None
    issued_at: int | None = None
    expires_at: int | None = None
    trust_device: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.role is not Role.VISITOR


VISITOR_SESSION = SessionClaims(role=Role.VISITOR)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: str | None = None
    retry_after_seconds: int | None = None


ALLOWED = RateLimitDecision(allowed=True)


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    reason: str | None = None  # "provider_unavailable" | "send_failed"
    provider: str | None = None


@dataclass(frozen=True)
class OtpRequestResult:
    ok: bool
    email: str = ""
    reason: str | None = None
    retry_after_seconds: int | None = None
    expires_minutes: int | None = None
    # Deferred email send for roster members; run it after the response is written.
    send: Callable[[], Awaitable[None]] | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class OtpVerifyResult:
    ok: bool
    email: str = ""
    reason: str | None = None
    role: Role | None = None
    token: str | None = None
    retry_after_seconds: int | None = None
    trust_device: bool = False


@dataclass(frozen=True)
class InviteCreateResult:
    ok: bool
    email: str = ""
    reason: str | None = None
    token: str | None = None
    role: Role | None = None
    expires_at: datetime | None = None
    replaced: int = 0


@dataclass(frozen=True)
class InviteActivateResult:
    ok: bool
    reason: str | None = None
    email: str | None = None
    role: Role | None = None
    token: str | None = None
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class InviteHistory:
    open: list[InviteToken] = field(default_factory=list)
    activated: list[InviteToken] = field(default_factory=list)
    replaced: list[InviteToken] = field(default_factory=list)
    expired: list[InviteToken] = field(default_factory=list)


@dataclass(frozen=True)
class DirectoryResult:
    ok: bool
    reason: str | None = None
    user: User | None = None


@dataclass(frozen=True)
class UpsertResult:
    ok: bool
    reason: str | None = None
    upserted: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
