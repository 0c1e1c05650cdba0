"""
api/routes/v1/users.py -- Admin roster endpoints.

Routes:
  GET   /api/v1/admin/users          -- active roster and deleted ledger
  POST  /api/v1/admin/users          -- bulk add / reactivate emails with a role
  PATCH /api/v1/admin/users          -- change one user's role
  POST  /api/v1/admin/users/delete   -- move one user to the deleted ledger

Guards enforced here, not in the directory service:
  - An admin cannot change the role of, or delete, their own account.
  - The last active admin cannot be demoted or deleted.
Every mutation writes a security audit event.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError

from api.errors import error_for_reason
from api.models import (
    DeletedUserRow,
    ErrorDetail,
    UserDeleteBody,
    UserRoleBody,
    UserRow,
    UsersResponse,
    UserUpsertBody,
    UserUpsertResponse,
)
from auth import audit as audit_events
from auth.audit import SecurityAuditLog
from auth.dependencies import get_network_fingerprint, require_admin
from auth.directory import LIST_LIMIT_DEFAULT, LIST_LIMIT_MAX, UserDirectoryService
from auth.emails import normalize_email, parse_email_list
from auth.models import Role, SessionClaims
from core.network import NetworkFingerprint

logger = logging.getLogger("accessgate.api.users")

router = APIRouter()


@router.get("/admin/users", response_model=UsersResponse)
async def list_users(
    request: Request,
    limit: int = Query(default=LIST_LIMIT_DEFAULT, ge=1, le=LIST_LIMIT_MAX),
    session: SessionClaims = Depends(require_admin),
) -> UsersResponse:
    """List active users and the deleted ledger. Admin only."""
    directory: UserDirectoryService = request.app.state.directory
    try:
        active = await directory.list(limit)
        deleted = await directory.list_deleted(limit)
    except SQLAlchemyError as exc:
        logger.exception("User listing failed")
        raise error_for_reason("db_unavailable") from exc
    return UsersResponse(
        active=[UserRow.from_user(u) for u in active],
        deleted=[DeletedUserRow.from_deleted(u) for u in deleted],
    )


@router.post("/admin/users", response_model=UserUpsertResponse)
async def upsert_users(
    request: Request,
    body: UserUpsertBody,
    session: SessionClaims = Depends(require_admin),
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> UserUpsertResponse:
    """Add or reactivate users in bulk. Admin only.

    Existing users get the requested role. Listing your own email with a
    non-admin role is refused so bulk input cannot demote the caller.
    """
    directory: UserDirectoryService = request.app.state.directory
    audit: SecurityAuditLog = request.app.state.audit

    if body.role.value != Role.ADMIN.value and normalize_email(session.email) in parse_email_list(body.emails):
        raise _mutation_error("self_modification")
    result = await directory.upsert(body.emails, body.role.value)
    await audit.record(
        audit_events.USER_UPSERT,
        "ok" if result.ok else result.reason,
        actor_email=session.email,
        network=network,
        metadata={"role": body.role.value, "count": len(result.upserted), "invalid": len(result.invalid)},
    )
    if not result.ok:
        raise error_for_reason(result.reason)
    return UserUpsertResponse(upserted=result.upserted, invalid=result.invalid)


@router.patch("/admin/users", response_model=UserRow)
async def update_user_role(
    request: Request,
    body: UserRoleBody,
    session: SessionClaims = Depends(require_admin),
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> UserRow:
    """Change a user's role. Admin only."""
    directory: UserDirectoryService = request.app.state.directory
    audit: SecurityAuditLog = request.app.state.audit
    target = normalize_email(body.email)

    result = None
    outcome = await _guard_mutation(directory, session, target, demoting=body.role.value != Role.ADMIN.value)
    if outcome is None:
        result = await directory.update_role(target, body.role.value)
        outcome = "ok" if result.ok else result.reason
    await audit.record(
        audit_events.USER_UPDATE_ROLE,
        outcome,
        actor_email=session.email,
        target_email=target,
        network=network,
        metadata={"role": body.role.value},
    )
    if outcome != "ok":
        raise _mutation_error(outcome)
    return UserRow.from_user(result.user)


@router.post("/admin/users/delete", response_model=UserRow)
async def delete_user(
    request: Request,
    body: UserDeleteBody,
    session: SessionClaims = Depends(require_admin),
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> UserRow:
    """Remove a user from the roster into the deleted ledger. Admin only."""
    directory: UserDirectoryService = request.app.state.directory
    audit: SecurityAuditLog = request.app.state.audit
    target = normalize_email(body.email)

    result = None
    outcome = await _guard_mutation(directory, session, target, demoting=True)
    if outcome is None:
        result = await directory.delete(target, session.email)
        outcome = "ok" if result.ok else result.reason
    await audit.record(
        audit_events.USER_DELETE,
        outcome,
        actor_email=session.email,
        target_email=target,
        network=network,
    )
    if outcome != "ok":
        raise _mutation_error(outcome)
    return UserRow.from_user(result.user)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_GUARD_MESSAGES = {
    "self_modification": "You cannot modify your own account.",
    "last_admin": "Cannot remove or demote the last active admin account.",
    "not_found": "User not found.",
}


async def _guard_mutation(
    directory: UserDirectoryService, session: SessionClaims, target: str, demoting: bool
) -> str | None:
    """Return a refusal reason, or None when the mutation may proceed."""
    if target and target == normalize_email(session.email):
        return "self_modification"
    try:
        user = await directory.get(target)
        if user is None:
            return None  # the service reports not_found / invalid_email itself
        if demoting and user.role is Role.ADMIN and user.is_active:
            if await directory.count_active_admins() <= 1:
                return "last_admin"
    except SQLAlchemyError:
        logger.exception("Admin guard lookup failed")
        return "db_unavailable"
    return None


def _mutation_error(reason: str) -> HTTPException:
    if reason == "not_found":
        return HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=_GUARD_MESSAGES["not_found"]).model_dump(),
        )
    if reason in _GUARD_MESSAGES:
        return HTTPException(
            status_code=400,
            detail=ErrorDetail(code=reason, message=_GUARD_MESSAGES[reason]).model_dump(),
        )
    return error_for_reason(reason)
