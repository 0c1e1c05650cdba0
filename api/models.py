"""
API request and response models for AccessGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.access import capabilities_for
from auth.invites import activation_url
from auth.models import DeletedUser, InviteToken, SessionClaims, User

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RosterRoleEnum(str, Enum):
    whitelisted = "whitelisted"
    admin = "admin"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Session -- requests
# ---------------------------------------------------------------------------


class OtpRequestBody(BaseModel):
    """Request body for POST /api/v1/session/otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class OtpVerifyBody(BaseModel):
    """Request body for POST /api/v1/session/verify.

    The code is kept as a string so leading zeros survive. trust_device asks
    for a persistent cookie instead of a browser-session one.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    code: str = Field(min_length=1, max_length=24)
    trust_device: bool = False


class InviteActivateBody(BaseModel):
    """Request body for POST /api/v1/session/invite."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=256)


# ---------------------------------------------------------------------------
# Session -- responses
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Response for GET /api/v1/session and for successful logins."""

    model_config = ConfigDict(frozen=True)

    role: str
    email: Optional[str] = None
    login_method: Optional[str] = None
    trust_device: bool = False
    capabilities: dict[str, bool]

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "SessionResponse":
        return cls(
            role=claims.role.value,
            email=claims.email,
            login_method=claims.login_method.value if claims.login_method else None,
            trust_device=claims.trust_device,
            capabilities=capabilities_for(claims.role),
        )


class OtpRequestAccepted(BaseModel):
    """Uniform response for an accepted OTP request, whether or not the email is on the roster."""

    model_config = ConfigDict(frozen=True)

    ok: bool = True
    email: str
    expires_minutes: int


# ---------------------------------------------------------------------------
# Admin -- invites
# ---------------------------------------------------------------------------


class InviteCreateBody(BaseModel):
    """Request body for POST /api/v1/admin/invites.

    `email` accepts a single address, a list, or a comma / semicolon /
    newline separated string (at most 500 addresses).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Union[str, list[str]]
    role: RosterRoleEnum = RosterRoleEnum.whitelisted
    expires_hours: Optional[int] = Field(default=None)


class InviteCreated(BaseModel):
    """One created invite. The token is shown here and nowhere else."""

    model_config = ConfigDict(frozen=True)

    email: str
    role: str
    token: str
    activation_url: str
    expires_at: datetime
    replaced: int


class InviteCreateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    created: list[InviteCreated]
    invalid: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class InviteRow(BaseModel):
    """An invite in history listings. Tokens are never listed."""

    model_config = ConfigDict(frozen=True)

    email: str
    role: str
    status: str
    expires_at: datetime
    created_by_email: Optional[str]
    created_at: Optional[datetime]
    activated_at: Optional[datetime]
    replaced_at: Optional[datetime]

    @classmethod
    def from_invite(cls, invite: InviteToken) -> "InviteRow":
        return cls(
            email=invite.email,
            role=invite.role.value,
            status=invite.status.value,
            expires_at=invite.expires_at,
            created_by_email=invite.created_by_email,
            created_at=invite.created_at,
            activated_at=invite.activated_at,
            replaced_at=invite.replaced_at,
        )


class InviteHistoryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    open: list[InviteRow]
    activated: list[InviteRow]
    replaced: list[InviteRow]
    expired: list[InviteRow]


def build_invite_created(base_url: str, email: str, role: str, token: str, expires_at, replaced: int) -> InviteCreated:
    return InviteCreated(
        email=email,
        role=role,
        token=token,
        activation_url=activation_url(base_url, token),
        expires_at=expires_at,
        replaced=replaced,
    )


# ---------------------------------------------------------------------------
# Admin -- users
# ---------------------------------------------------------------------------


class UserUpsertBody(BaseModel):
    """Request body for POST /api/v1/admin/users (bulk whitelist)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    emails: Union[str, list[str]]
    role: RosterRoleEnum = RosterRoleEnum.whitelisted


class UserRoleBody(BaseModel):
    """Request body for PATCH /api/v1/admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: RosterRoleEnum


class UserDeleteBody(BaseModel):
    """Request body for POST /api/v1/admin/users/delete."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class UserRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    role: str
    auth_method: str
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_user(cls, user: User) -> "UserRow":
        return cls(
            email=user.email,
            role=user.role.value,
            auth_method=user.auth_method.value,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class DeletedUserRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    role: str
    was_active: bool
    created_at: Optional[datetime]
    deleted_at: datetime
    deleted_by_email: Optional[str]

    @classmethod
    def from_deleted(cls, user: DeletedUser) -> "DeletedUserRow":
        return cls(
            email=user.email,
            role=user.role.value,
            was_active=user.was_active,
            created_at=user.created_at,
            deleted_at=user.deleted_at,
            deleted_by_email=user.deleted_by_email,
        )


class UsersResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: list[UserRow]
    deleted: list[DeletedUserRow]


class UserUpsertResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    upserted: list[str]
    invalid: list[str]


# ---------------------------------------------------------------------------
# Admin -- security telemetry
# ---------------------------------------------------------------------------


class SecurityAlertRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    severity: str
    message: str
    current_value: int
    threshold: int


class AuditEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str
    outcome: str
    actor_email: Optional[str]
    target_email: Optional[str]
    created_at: Optional[datetime]


class ScopeHitsRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: str
    hits: int


class SecurityTelemetryResponse(BaseModel):
    """Response for GET /api/v1/admin/security."""

    model_config = ConfigDict(frozen=True)

    generated_at: datetime
    otp_request_15m: dict[str, int]
    otp_verify_15m: dict[str, int]
    otp_verify_1h: dict[str, int]
    otp_delivery_1h: dict[str, int]
    admin_user_actions_1h: dict[str, int]
    rate_limit_scope_hits_24h: list[ScopeHitsRow]
    recent_events: list[AuditEventRow]
    alerts: list[SecurityAlertRow]
