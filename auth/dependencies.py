"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions and request context.

Session lookup order:
  1. Session cookie ("access_token") -- set by the OTP / invite login flows.
  2. Authorization: Bearer <token> header -- API clients and scripts.

read_session() is the soft variant: it never raises and falls back to a
visitor session. require_capability() wraps it and raises HTTP 401 for
visitors and HTTP 403 for sessions whose role lacks the capability.

require_same_origin() guards state-changing session routes: the Origin header
(or, failing that, the Referer) must match the origin the request was sent
to. Cookies are samesite=lax, which still lets top-level cross-site GETs
through; this check covers the POST / DELETE side explicitly.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from urllib.parse import urlsplit

from fastapi import HTTPException, Request

from auth.access import Capability, can_access
from auth.models import VISITOR_SESSION, SessionClaims
from auth.tokens import SESSION_COOKIE, SessionTokenCodec
from core.network import NetworkFingerprint, NetworkFingerprintResolver


def read_session(request: Request) -> SessionClaims:
    """Return the verified session of the request, or a visitor session."""
    codec: SessionTokenCodec = request.app.state.codec

    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()

    if token:
        claims = codec.verify(token)
        if claims is not None:
            return claims
    return VISITOR_SESSION


def require_capability(capability: Capability):
    """Build a dependency that demands a session whose role grants `capability`.

    Use as a FastAPI dependency:
        @router.get("/admin/users")
        async def route(session: SessionClaims = Depends(require_capability(Capability.ACCESS_ADMIN))): ...
    """

    def dependency(request: Request) -> SessionClaims:
        session = read_session(request)
        if not session.is_authenticated:
            raise HTTPException(
                status_code=401,
                detail={"code": "unauthorized", "message": "Authentication required."},
            )
        if not can_access(session.role, capability):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient access level."},
            )
        return session

    return dependency


require_admin = require_capability(Capability.ACCESS_ADMIN)


def get_network_fingerprint(request: Request) -> NetworkFingerprint:
    resolver: NetworkFingerprintResolver = request.app.state.network_resolver
    peer = request.client.host if request.client else None
    return resolver.resolve(request.headers, peer)


def _origin_of(value: str | None) -> str:
    if not value:
        return ""
    try:
        parts = urlsplit(value)
    except ValueError:
        return ""
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def require_same_origin(request: Request) -> None:
    """Reject cross-origin state-changing requests with HTTP 403."""
    expected = _origin_of(str(request.base_url))
    origin = _origin_of(request.headers.get("origin"))
    if origin:
        if origin == expected:
            return
        raise HTTPException(
            status_code=403,
            detail={"code": "invalid_origin", "message": "Invalid request origin."},
        )
    if _origin_of(request.headers.get("referer")) == expected and expected:
        return
    raise HTTPException(
        status_code=403,
        detail={"code": "missing_origin", "message": "Missing request origin."},
    )
