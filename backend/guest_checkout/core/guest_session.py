"""Guest session cookie: a signed JWT scoping a browser to one order.

The cookie carries the authorized order id and the fingerprint of the token
that opened the session. It grants nothing by itself; the gate re-checks the
fingerprint against the order's ACTIVE token on every request, so the
session dies as soon as the link is invalidated, superseded or consumed.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from fastapi import Response

from guest_checkout.core.config import Settings

_AUDIENCE = "wicket-guest-payment"
_ISSUER = "wicket-guest-checkout"
_SUBJECT_PREFIX = "order:"


@dataclass(frozen=True)
class GuestSession:
    """Ephemeral authorization held in the visitor's cookie.

    Attributes:
        authorized_order_id: The only order the visitor may pay.
        token_fingerprint: Fingerprint of the token that opened the session.
    """

    authorized_order_id: int
    token_fingerprint: str


def create_guest_session_jwt(
    session: GuestSession,
    *,
    secret: str,
    expires_delta: timedelta,
) -> str:
    """Sign a guest session.

    Args:
        session: Session to encode.
        secret: HMAC signing secret.
        expires_delta: Cookie lifetime.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": f"{_SUBJECT_PREFIX}{session.authorized_order_id}",
        "fp": session.token_fingerprint,
        "aud": _AUDIENCE,
        "iss": _ISSUER,
        "exp": now + expires_delta,
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_guest_session_jwt(token: str | None, *, secret: str) -> GuestSession | None:
    """Verify a guest session cookie.

    Args:
        token: Cookie value, if any.
        secret: HMAC signing secret.

    Returns:
        The session, or None for a missing, expired or forged cookie.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=_AUDIENCE,
            issuer=_ISSUER,
        )
        subject = payload["sub"]
        fingerprint = payload["fp"]
        if not subject.startswith(_SUBJECT_PREFIX) or not fingerprint:
            return None
        order_id = int(subject.removeprefix(_SUBJECT_PREFIX))
    except (jwt.InvalidTokenError, KeyError, ValueError, AttributeError):
        return None
    return GuestSession(authorized_order_id=order_id, token_fingerprint=fingerprint)


def set_guest_session_cookie(
    response: Response, session: GuestSession, settings: Settings
) -> None:
    """Set the httpOnly guest session cookie on a response.

    Args:
        response: Outgoing response.
        session: Session to store.
        settings: Cookie name, lifetime, flags and signing secret.
    """
    lifetime = timedelta(minutes=settings.guest_session_ttl_minutes)
    response.set_cookie(
        key=settings.guest_session_cookie_name,
        value=create_guest_session_jwt(
            session, secret=settings.session_signing_key, expires_delta=lifetime
        ),
        httponly=True,
        secure=settings.guest_session_cookie_secure,
        samesite=settings.guest_session_cookie_samesite,
        path="/",
        max_age=int(lifetime.total_seconds()),
    )


def clear_guest_session_cookie(response: Response, settings: Settings) -> None:
    """Remove the guest session cookie."""
    response.delete_cookie(
        key=settings.guest_session_cookie_name,
        path="/",
        secure=settings.guest_session_cookie_secure,
        httponly=True,
        samesite=settings.guest_session_cookie_samesite,
    )
