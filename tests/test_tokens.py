"""Unit tests for auth/tokens.py -- signed session and magic-link tokens.

Covers:
- Round trip of role, email and login method
- Tampering with any character invalidates the token
- Expiry, wrong secret, wrong kind and visitor role are rejected
- Magic-link tokens cannot be used as sessions and vice versa
- Tokens are HS256 JWTs; unsigned or foreign-shaped JWTs are rejected
"""

import pytest
from jose import jwt
from jose.utils import base64url_encode

from auth.models import LoginMethod, Role
from auth.tokens import SessionTokenCodec, keyed_hash
from core.config import get_settings

SECRET = get_settings().auth_secret


@pytest.fixture
def codec(clock) -> SessionTokenCodec:
    return SessionTokenCodec(SECRET, ttl_seconds=3600, clock=clock)


def test_round_trip(codec) -> None:
    token = codec.create(Role.ADMIN, LoginMethod.OTP, "admin@example.com")
    claims = codec.verify(token)
    assert claims is not None
    assert claims.role is Role.ADMIN
    assert claims.email == "admin@example.com"
    assert claims.login_method is LoginMethod.OTP
    assert claims.expires_at - claims.issued_at == 3600
    assert claims.is_authenticated


def test_token_is_hs256_jwt(codec) -> None:
    token = codec.create(Role.ADMIN, LoginMethod.OTP, "admin@example.com")
    assert jwt.get_unverified_header(token)["alg"] == "HS256"
    claims = jwt.decode(token, SECRET, algorithms=["HS256"], options={"verify_exp": False})
    assert claims["role"] == "admin"
    assert claims["kind"] == "session"


def test_trusted_device_round_trip(codec) -> None:
    trusted = codec.create(Role.WHITELISTED, LoginMethod.OTP, "bob@example.com", trust_device=True)
    plain = codec.create(Role.WHITELISTED, LoginMethod.OTP, "bob@example.com")
    assert codec.verify(trusted).trust_device is True
    assert codec.verify(plain).trust_device is False


def test_unsigned_token_rejected(codec) -> None:
    token = codec.create(Role.ADMIN, LoginMethod.OTP, "admin@example.com")
    header = base64url_encode(b'{"alg":"none","typ":"JWT"}').decode()
    payload = token.split(".")[1]
    assert codec.verify(f"{header}.{payload}.") is None


def test_jwt_without_session_claims_rejected(codec, clock) -> None:
    exp = int(clock().timestamp()) + 600
    foreign = jwt.encode({"sub": "admin@example.com", "role": "admin", "exp": exp}, SECRET, algorithm="HS256")
    assert codec.verify(foreign) is None


def test_every_single_character_tamper_fails(codec) -> None:
    token = codec.create(Role.WHITELISTED, LoginMethod.INVITE, "bob@example.com")
    for i, ch in enumerate(token):
        replacement = "A" if ch != "A" else "B"
        tampered = token[:i] + replacement + token[i + 1 :]
        assert codec.verify(tampered) is None, f"tamper at position {i} accepted"


def test_expired_token_rejected(codec, clock) -> None:
    token = codec.create(Role.WHITELISTED, LoginMethod.OTP, "bob@example.com")
    clock.advance(seconds=3599)
    assert codec.verify(token) is not None
    clock.advance(seconds=1)
    assert codec.verify(token) is None


def test_per_token_ttl(codec, clock) -> None:
    token = codec.create(Role.WHITELISTED, LoginMethod.OTP, "bob@example.com", ttl_seconds=60)
    clock.advance(seconds=61)
    assert codec.verify(token) is None


def test_other_secret_rejected(codec, clock) -> None:
    token = codec.create(Role.ADMIN, LoginMethod.OTP, "admin@example.com")
    other = SessionTokenCodec("z" * 40, ttl_seconds=3600, clock=clock)
    assert other.verify(token) is None


def test_visitor_tokens_never_verify(codec) -> None:
    token = codec.create(Role.VISITOR, LoginMethod.OTP, None)
    assert codec.verify(token) is None


@pytest.mark.parametrize("garbage", [None, "", "abc", "abc.def", ".", "x" * 5000])
def test_garbage_rejected(codec, garbage) -> None:
    assert codec.verify(garbage) is None


def test_short_secret_refused() -> None:
    with pytest.raises(ValueError):
        SessionTokenCodec("too-short", ttl_seconds=60)


class TestMagicLinkTokens:
    def test_round_trip(self, codec) -> None:
        token = codec.create_magic_link_token("alice@example.com", "012345", 600)
        assert codec.read_magic_link_token(token) == ("alice@example.com", "012345")

    def test_expires(self, codec, clock) -> None:
        token = codec.create_magic_link_token("alice@example.com", "012345", 600)
        clock.advance(seconds=600)
        assert codec.read_magic_link_token(token) is None

    def test_kinds_do_not_cross(self, codec) -> None:
        link = codec.create_magic_link_token("alice@example.com", "012345", 600)
        session = codec.create(Role.ADMIN, LoginMethod.OTP, "alice@example.com")
        assert codec.verify(link) is None
        assert codec.read_magic_link_token(session) is None


def test_keyed_hash_is_stable_hex() -> None:
    digest = keyed_hash(SECRET, "otp_request:email:alice@example.com")
    assert digest == keyed_hash(SECRET, "otp_request:email:alice@example.com")
    assert len(digest) == 64
    assert digest != keyed_hash("y" * 40, "otp_request:email:alice@example.com")
