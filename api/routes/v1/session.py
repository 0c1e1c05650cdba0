"""
api/routes/v1/session.py -- Passwordless session endpoints.

Routes:
  GET    /api/v1/session              -- current role, email and capabilities (public)
  POST   /api/v1/session/otp          -- request an email passcode
  POST   /api/v1/session/verify       -- verify a passcode; sets the session cookie
  GET    /api/v1/session/magic        -- redeem a magic link; sets the cookie, 303 to /
  POST   /api/v1/session/invite       -- activate an invite; sets the session cookie
  DELETE /api/v1/session              -- clear the session cookie

Security:
  State-changing routes require a same-origin Origin / Referer.
  OTP requests answer identically for roster and non-roster emails.
  Verify and activation failures share one generic 401 message each.
  Every response carries Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.errors import error_for_reason
from api.models import (
    InviteActivateBody,
    OtpRequestAccepted,
    OtpRequestBody,
    OtpVerifyBody,
    SessionResponse,
)
from auth.dependencies import get_network_fingerprint, read_session, require_same_origin
from auth.invites import InviteService
from auth.models import VISITOR_SESSION, LoginMethod, Role, SessionClaims
from auth.otp import OtpService
from auth.tokens import clear_session_cookie, set_session_cookie
from core.network import NetworkFingerprint

# Auth policy:
# - GET    /session:          public -- visitors get role "visitor"
# - POST   /session/otp:      public + same-origin
# - POST   /session/verify:   public + same-origin
# - GET    /session/magic:    public -- link opened from an email client, no Origin header
# - POST   /session/invite:   public + same-origin
# - DELETE /session:          same-origin
router = APIRouter()

_OTP_FAILURE = ("invalid_otp", "Invalid or expired OTP code.")
_INVITE_FAILURE = ("invite_unavailable", "This invite cannot be activated. Ask an admin for a new one.")


def _session_response(
    role: Role, email: str | None, method: LoginMethod, token: str, trust_device: bool = True
) -> JSONResponse:
    claims = SessionClaims(role=role, email=email, login_method=method, trust_device=trust_device)
    resp = JSONResponse(content=SessionResponse.from_claims(claims).model_dump())
    set_session_cookie(resp, token, persistent=trust_device)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/session", response_model=SessionResponse)
async def get_session(request: Request) -> JSONResponse:
    """Return the role and capabilities of the current session."""
    resp = JSONResponse(content=SessionResponse.from_claims(read_session(request)).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/session/otp", response_model=OtpRequestAccepted, dependencies=[Depends(require_same_origin)])
async def request_otp(
    request: Request,
    body: OtpRequestBody,
    background_tasks: BackgroundTasks,
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> JSONResponse:
    """Send a one-time passcode to the email if it is on the roster.

    The response is the same whether or not the address is known, so this
    endpoint cannot be used to enumerate accounts. The email is sent after
    the response is written; provider failures show up in the audit log.
    """
    otp: OtpService = request.app.state.otp_service
    result = await otp.request(body.email, network)
    if not result.ok:
        raise error_for_reason(result.reason, result.retry_after_seconds)
    if result.send is not None:
        background_tasks.add_task(result.send)
    resp = JSONResponse(
        content=OtpRequestAccepted(email=result.email, expires_minutes=result.expires_minutes or 0).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/session/verify", response_model=SessionResponse, dependencies=[Depends(require_same_origin)])
async def verify_otp(
    request: Request,
    body: OtpVerifyBody,
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> JSONResponse:
    """Verify a passcode and start a session.

    With trust_device the cookie outlives the browser session; without it
    the cookie is dropped when the browser closes.
    """
    otp: OtpService = request.app.state.otp_service
    result = await otp.verify(body.email, body.code.replace(" ", ""), network, trust_device=body.trust_device)
    if not result.ok:
        raise error_for_reason(result.reason, result.retry_after_seconds, *_OTP_FAILURE)
    return _session_response(result.role, result.email, LoginMethod.OTP, result.token, result.trust_device)


@router.get("/session/magic", include_in_schema=False)
async def redeem_magic_link(
    request: Request,
    token: str = Query(default="", max_length=4096),
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> RedirectResponse:
    """Redeem a single-use magic link and redirect home.

    Failures redirect too (without a cookie); the page then shows the visitor
    state. Nothing about the failure reason reaches the browser.
    """
    otp: OtpService = request.app.state.otp_service
    resp = RedirectResponse("/", status_code=303)
    resp.headers["Cache-Control"] = "no-store"
    result = await otp.verify_magic_link(token, network)
    if result.ok:
        set_session_cookie(resp, result.token, persistent=False)
    return resp


@router.post("/session/invite", response_model=SessionResponse, dependencies=[Depends(require_same_origin)])
async def activate_invite(
    request: Request,
    body: InviteActivateBody,
    network: NetworkFingerprint = Depends(get_network_fingerprint),
) -> JSONResponse:
    """Activate an invite token: grant its role and start a session."""
    invites: InviteService = request.app.state.invite_service
    result = await invites.activate(body.token, network)
    if not result.ok:
        raise error_for_reason(result.reason, result.retry_after_seconds, *_INVITE_FAILURE)
    return _session_response(result.role, result.email, LoginMethod.INVITE, result.token)


@router.delete("/session", response_model=SessionResponse, dependencies=[Depends(require_same_origin)])
async def logout() -> JSONResponse:
    """Clear the session cookie. Tokens are stateless, so nothing is revoked server-side."""
    resp = JSONResponse(content=SessionResponse.from_claims(VISITOR_SESSION).model_dump())
    clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp
