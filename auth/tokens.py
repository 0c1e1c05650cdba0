"""
auth/tokens.py -- Signed session tokens, keyed hashing and cookie helpers.

Security design decisions:
  Session tokens: compact HS256 JWTs (python-jose) signed with AUTH_SECRET.
       Claims are role, email, method, kind, v, iat and exp. Expiry is
       checked against the injected clock rather than jose's wall clock so
       tests can step time. Segments must be canonical base64url, so any
       single-character change anywhere in the token fails verification.

       Tokens are self-contained and self-expiring. There is no revocation
       list; logout only clears the cookie.

  Magic links: the same signing scheme with kind="otp_link". The payload
       carries the email and the OTP code; redeeming it runs the normal OTP
       verification, so attempts and single-use consumption still apply.

  Keyed hashing: keyed_hash() is HMAC-SHA256(AUTH_SECRET, value) as hex. It
       is used for OTP codes, rate-limit identities and audit network keys.
       Without the secret a leaked table cannot be brute-forced back to
       codes, emails or addresses.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from jose import JWTError, jwt
from jose.utils import base64url_decode, base64url_encode

from auth.models import LoginMethod, Role, SessionClaims
from core.clock import Clock, utcnow
from core.config import get_settings

logger = logging.getLogger("accessgate.auth")

SESSION_COOKIE = "access_token"
TOKEN_VERSION = 1

_KIND_SESSION = "session"
_KIND_OTP_LINK = "otp_link"
_ALGORITHM = "HS256"
# Upper bound on accepted token text; real tokens are a few hundred bytes.
_MAX_TOKEN_LENGTH = 4096

# ---------------------------------------------------------------------------
# Keyed hashing
# ---------------------------------------------------------------------------


def keyed_hash(secret: str, value: str) -> str:
    """Return HMAC-SHA256(secret, value) as a hex string."""
    return hmac.new(secret.encode(), value.encode(), hashlib.sha256).hexdigest()


def _canonical(token: str) -> bool:
    """True when every segment re-encodes to exactly the same text."""
    for segment in token.split("."):
        try:
            raw = base64url_decode(segment.encode("ascii"))
        except (UnicodeEncodeError, ValueError):
            return False
        if base64url_encode(raw).decode("ascii") != segment:
            return False
    return True


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class SessionTokenCodec:
    """Mint and verify signed, self-expiring role tokens.

    Pure: no I/O, no shared state beyond the secret. Safe to share across
    concurrent requests.
    """

    def __init__(self, secret: str, ttl_seconds: int, clock: Clock = utcnow) -> None:
        if len(secret) < 32:
            raise ValueError("session signing secret must be at least 32 characters")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock().timestamp())

    def _sign(self, payload: dict) -> str:
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def _unsign(self, token: str | None, kind: str) -> dict | None:
        """Return the payload if the signature, version, kind and expiry all check out."""
        if not token or len(token) > _MAX_TOKEN_LENGTH or not _canonical(token):
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        if payload.get("v") != TOKEN_VERSION or payload.get("kind") != kind:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, int) or self._now() >= exp:
            return None
        return payload

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create(
        self,
        role: Role,
        login_method: LoginMethod,
        email: str | None,
        ttl_seconds: int | None = None,
        trust_device: bool = False,
    ) -> str:
        """Encode a signed session token for the given role and identity."""
        issued = self._now()
        payload = {
            "v": TOKEN_VERSION,
            "kind": _KIND_SESSION,
            "role": Role(role).value,
            "email": email,
            "method": LoginMethod(login_method).value,
            "trusted": bool(trust_device),
            "iat": issued,
            "exp": issued + (ttl_seconds or self.ttl_seconds),
        }
        return self._sign(payload)

    def verify(self, token: str | None) -> SessionClaims | None:
        """Return the claims of a valid token, or None on any failure.

        Returning None (rather than raising) keeps callers simple: any invalid
        token is treated as a visitor.
        """
        payload = self._unsign(token, _KIND_SESSION)
        if payload is None:
            return None
        try:
            role = Role(payload.get("role"))
            method = LoginMethod(payload.get("method"))
        except ValueError:
            return None
        if role is Role.VISITOR:
            return None
        email = payload.get("email")
        return SessionClaims(
            role=role,
            email=email if isinstance(email, str) else None,
            login_method=method,
            issued_at=payload.get("iat"),
            expires_at=payload["exp"],
            trust_device=payload.get("trusted") is True,
        )

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    def create_magic_link_token(self, email: str, code: str, ttl_seconds: int) -> str:
        payload = {
            "v": TOKEN_VERSION,
            "kind": _KIND_OTP_LINK,
            "email": email,
            "code": code,
            "exp": self._now() + ttl_seconds,
        }
        return self._sign(payload)

    def read_magic_link_token(self, token: str | None) -> tuple[str, str] | None:
        """Return (email, code) from a valid magic-link token, else None."""
        payload = self._unsign(token, _KIND_OTP_LINK)
        if payload is None:
            return None
        email, code = payload.get("email"), payload.get("code")
        if not isinstance(email, str) or not isinstance(code, str):
            return None
        return email, code


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age: int = 0, persistent: bool = True) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": not sent on cross-site POST.
    secure: always in production, or when SECURE_COOKIES=true.
    persistent: max_age matches the token TTL so both expire together.
        Otherwise no max_age is sent and the browser drops the cookie when
        it closes; the token still expires on its own schedule.
    """
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        max_age=(max_age if max_age > 0 else settings.session_ttl_seconds) if persistent else None,
        path="/",
    )


def clear_session_cookie(response) -> None:
    settings = get_settings()
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
