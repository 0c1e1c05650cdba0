"""
api/errors.py -- Map service result reasons to HTTP errors.

Services return typed results with a `reason` string; this is the only place
those reasons become status codes. Every error leaves through the same
ErrorDetail envelope (see the exception handlers in api/main.py).

Authentication failures (wrong code, no challenge, locked challenge, expired
or unknown invite, user not on the roster) collapse into one generic 401 per
route, so a caller cannot tell which of them happened.
"""

from __future__ import annotations

from fastapi import HTTPException

from api.models import ErrorDetail

AUTH_FAILURE_REASONS = frozenset(
    {"not_found", "invalid_code", "too_many_attempts", "expired", "not_allowed", "invalid_link"}
)

_VALIDATION_MESSAGES = {
    "invalid_email": "Invalid email address.",
    "invalid_role": "Role must be 'whitelisted' or 'admin'.",
    "batch_too_large": "Too many email addresses in one request (max 500).",
    "invalid_request": "Invalid request.",
}

_UNAVAILABLE_MESSAGES = {
    "db_unavailable": "The database is temporarily unavailable.",
    "delivery_unavailable": "Email delivery is not configured.",
}


def error_for_reason(
    reason: str | None,
    retry_after: int | None = None,
    auth_code: str = "unauthorized",
    auth_message: str = "Authentication failed.",
) -> HTTPException:
    """Build the HTTPException for a failed service result."""
    reason = reason or "invalid_request"
    if reason in AUTH_FAILURE_REASONS:
        return HTTPException(
            status_code=401,
            detail=ErrorDetail(code=auth_code, message=auth_message).model_dump(),
        )
    if reason == "rate_limited":
        seconds = max(1, int(retry_after or 1))
        return HTTPException(
            status_code=429,
            detail=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=f"Retry after {seconds} seconds.",
            ).model_dump(),
            headers={"Retry-After": str(seconds)},
        )
    if reason in _UNAVAILABLE_MESSAGES:
        return HTTPException(
            status_code=503,
            detail=ErrorDetail(code=reason, message=_UNAVAILABLE_MESSAGES[reason]).model_dump(),
        )
    return HTTPException(
        status_code=400,
        detail=ErrorDetail(
            code=reason,
            message=_VALIDATION_MESSAGES.get(reason, "Invalid request."),
        ).model_dump(),
    )
