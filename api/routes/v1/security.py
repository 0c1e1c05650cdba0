"""
api/routes/v1/security.py -- Security telemetry for the admin console.

Route:
  GET /api/v1/admin/security -- windowed audit outcome counts, top rate-limit
                                scopes, recent events and threshold alerts
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from api.errors import error_for_reason
from api.models import AuditEventRow, ScopeHitsRow, SecurityAlertRow, SecurityTelemetryResponse
from auth.dependencies import require_admin
from auth.models import SessionClaims
from auth.telemetry import SecurityTelemetry

logger = logging.getLogger("accessgate.api.security")

router = APIRouter()


@router.get("/admin/security", response_model=SecurityTelemetryResponse)
async def security_telemetry(
    request: Request,
    session: SessionClaims = Depends(require_admin),
) -> SecurityTelemetryResponse:
    """Security telemetry snapshot. Admin only. Emails in recent events are redacted."""
    telemetry: SecurityTelemetry = request.app.state.telemetry
    try:
        snapshot = await telemetry.snapshot()
    except SQLAlchemyError as exc:
        logger.exception("Security telemetry query failed")
        raise error_for_reason("db_unavailable") from exc

    return SecurityTelemetryResponse(
        generated_at=snapshot.generated_at,
        otp_request_15m=snapshot.otp_request_15m,
        otp_verify_15m=snapshot.otp_verify_15m,
        otp_verify_1h=snapshot.otp_verify_1h,
        otp_delivery_1h=snapshot.otp_delivery_1h,
        admin_user_actions_1h=snapshot.admin_user_actions_1h,
        rate_limit_scope_hits_24h=[ScopeHitsRow(scope=s, hits=h) for s, h in snapshot.rate_limit_scope_hits_24h],
        recent_events=[AuditEventRow(**e) for e in snapshot.recent_events],
        alerts=[
            SecurityAlertRow(
                code=a.code,
                severity=a.severity,
                message=a.message,
                current_value=a.current_value,
                threshold=a.threshold,
            )
            for a in snapshot.alerts
        ],
    )
