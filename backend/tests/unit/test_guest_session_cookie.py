"""Tests for the guest session JWT and cookie helpers."""

from datetime import UTC, datetime, timedelta

import jwt
from fastapi import Response

from guest_checkout.core.config import Settings
from guest_checkout.core.guest_session import (
    GuestSession,
    clear_guest_session_cookie,
    create_guest_session_jwt,
    decode_guest_session_jwt,
    set_guest_session_cookie,
)
from tests.conftest import TEST_ORDER_ID, TEST_SESSION_SECRET

_SESSION = GuestSession(authorized_order_id=TEST_ORDER_ID, token_fingerprint="f" * 64)


def _encode(session: GuestSession = _SESSION, **kwargs) -> str:
    return create_guest_session_jwt(
        session,
        secret=kwargs.get("secret", TEST_SESSION_SECRET),
        expires_delta=kwargs.get("expires_delta", timedelta(hours=1)),
    )


class TestGuestSessionJwt:
    """Signing and verification."""

    def test_decode_returns_session(self):
        """A signed session decodes to the same order and fingerprint."""
        assert decode_guest_session_jwt(_encode(), secret=TEST_SESSION_SECRET) == _SESSION

    def test_missing_cookie(self):
        """No cookie means no session."""
        assert decode_guest_session_jwt(None, secret=TEST_SESSION_SECRET) is None
        assert decode_guest_session_jwt("", secret=TEST_SESSION_SECRET) is None

    def test_wrong_secret(self):
        """Forged cookies are ignored."""
        token = _encode(secret="another-secret-that-is-long-enough-to-use")
        assert decode_guest_session_jwt(token, secret=TEST_SESSION_SECRET) is None

    def test_expired_cookie(self):
        """Sessions end when the cookie expires."""
        token = _encode(expires_delta=timedelta(seconds=-1))
        assert decode_guest_session_jwt(token, secret=TEST_SESSION_SECRET) is None

    def test_wrong_audience(self):
        """Other JWTs signed with the same secret are not sessions."""
        now = datetime.now(UTC)
        token = jwt.encode(
            {
                "sub": f"order:{TEST_ORDER_ID}",
                "fp": "f" * 64,
                "aud": "someone-else",
                "iss": "wicket-guest-checkout",
                "exp": now + timedelta(hours=1),
            },
            TEST_SESSION_SECRET,
            algorithm="HS256",
        )
        assert decode_guest_session_jwt(token, secret=TEST_SESSION_SECRET) is None

    def test_bad_subject(self):
        """The subject must name an order."""
        now = datetime.now(UTC)
        token = jwt.encode(
            {
                "sub": "user:5",
                "fp": "f" * 64,
                "aud": "wicket-guest-payment",
                "iss": "wicket-guest-checkout",
                "exp": now + timedelta(hours=1),
            },
            TEST_SESSION_SECRET,
            algorithm="HS256",
        )
        assert decode_guest_session_jwt(token, secret=TEST_SESSION_SECRET) is None

    def test_garbage(self):
        """Random strings are not sessions."""
        assert decode_guest_session_jwt("abc.def.ghi", secret=TEST_SESSION_SECRET) is None


class TestGuestSessionCookie:
    """Cookie flags."""

    def test_set_cookie_flags(self):
        """The cookie is httpOnly, Secure and SameSite=Lax by default."""
        settings = Settings(session_secret=TEST_SESSION_SECRET)
        response = Response()
        set_guest_session_cookie(response, _SESSION, settings)

        header = response.headers["set-cookie"]
        assert header.startswith("wgp_guest_session=")
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=lax" in header
        assert "Max-Age=3600" in header
        assert "Path=/" in header

    def test_cookie_value_decodes(self):
        """The stored value is the signed session."""
        settings = Settings(session_secret=TEST_SESSION_SECRET)
        response = Response()
        set_guest_session_cookie(response, _SESSION, settings)

        value = response.headers["set-cookie"].split(";")[0].split("=", 1)[1]
        assert decode_guest_session_jwt(value, secret=TEST_SESSION_SECRET) == _SESSION

    def test_clear_cookie(self):
        """Clearing expires the cookie immediately."""
        settings = Settings()
        response = Response()
        clear_guest_session_cookie(response, settings)

        header = response.headers["set-cookie"]
        assert header.startswith('wgp_guest_session=""')
        assert "Max-Age=0" in header
