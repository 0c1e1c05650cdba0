"""
api/routes/v1/invites.py -- Admin invite endpoints.

Routes:
  GET  /api/v1/admin/invites  -- invite history partitioned by status
  POST /api/v1/admin/invites  -- create one or many invites

Tokens appear only in the create response, next to the activation URL the
admin hands to the invitee. History rows never include them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError

from api.errors import error_for_reason
from api.models import (
    ErrorDetail,
    InviteCreateBody,
    InviteCreateResponse,
    InviteHistoryResponse,
    InviteRow,
    build_invite_created,
)
from auth.dependencies import require_admin
from auth.directory import UPSERT_BATCH_MAX
from auth.emails import parse_email_list
from auth.invites import HISTORY_LIMIT_DEFAULT, HISTORY_LIMIT_MAX, InviteService
from auth.models import SessionClaims
from core.config import get_settings

logger = logging.getLogger("accessgate.api.invites")

router = APIRouter()


@router.get("/admin/invites", response_model=InviteHistoryResponse)
async def invite_history(
    request: Request,
    limit: int = Query(default=HISTORY_LIMIT_DEFAULT, ge=1, le=HISTORY_LIMIT_MAX),
    session: SessionClaims = Depends(require_admin),
) -> InviteHistoryResponse:
    """Open, activated, replaced and expired invites, newest first. Admin only."""
    invites: InviteService = request.app.state.invite_service
    try:
        history = await invites.history(limit)
    except SQLAlchemyError as exc:
        logger.exception("Invite history query failed")
        raise error_for_reason("db_unavailable") from exc
    return InviteHistoryResponse(
        open=[InviteRow.from_invite(i) for i in history.open],
        activated=[InviteRow.from_invite(i) for i in history.activated],
        replaced=[InviteRow.from_invite(i) for i in history.replaced],
        expired=[InviteRow.from_invite(i) for i in history.expired],
    )


@router.post("/admin/invites", response_model=InviteCreateResponse, status_code=201)
async def create_invites(
    request: Request,
    body: InviteCreateBody,
    session: SessionClaims = Depends(require_admin),
) -> InviteCreateResponse:
    """Create invites for one or more emails. Admin only.

    Each email gets its own token; an existing open invite for the same
    email is replaced. Invalid addresses are reported in `invalid` and the
    rest are still created. If nothing could be created the request fails.
    """
    emails = parse_email_list(body.email)
    if not emails:
        raise error_for_reason("invalid_email")
    if len(emails) > UPSERT_BATCH_MAX:
        raise error_for_reason("batch_too_large")

    invites: InviteService = request.app.state.invite_service
    base_url = get_settings().public_base_url or str(request.base_url)

    created = []
    invalid: list[str] = []
    failed: list[str] = []
    for email in emails:
        result = await invites.create(email, body.role.value, body.expires_hours, session.email)
        if result.ok:
            created.append(
                build_invite_created(
                    base_url, result.email, result.role.value, result.token, result.expires_at, result.replaced
                )
            )
        elif result.reason == "invalid_email":
            invalid.append(email)
        else:
            failed.append(email)

    if not created:
        if failed:
            raise error_for_reason("db_unavailable")
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(
                code="invalid_email",
                message="No valid email addresses were supplied.",
                detail=", ".join(invalid[:20]),
            ).model_dump(),
        )
    return InviteCreateResponse(created=created, invalid=invalid, failed=failed)
