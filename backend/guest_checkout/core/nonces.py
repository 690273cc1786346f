"""Per-action CSRF nonces for the admin AJAX endpoint.

A nonce is a short-lived HS256 JWT whose ``act`` claim names the action and
the order it is scoped to. Expiry is enforced through the ``exp`` claim.
"""

import hmac
from datetime import UTC, datetime, timedelta

import jwt

_ALGORITHM = "HS256"
_AUDIENCE = "wicket-admin-nonce"


def create_nonce(
    action: str,
    *,
    secret: str,
    lifetime_hours: int = 24,
    now: datetime | None = None,
) -> str:
    """Issue a nonce for an action.

    Args:
        action: Action name, including the order id it is scoped to.
        secret: HMAC signing secret.
        lifetime_hours: Nonce lifetime.
        now: Issue time; defaults to the current time.

    Returns:
        Signed JWT string.
    """
    issued_at = now or datetime.now(UTC)
    payload = {
        "act": action,
        "aud": _AUDIENCE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(hours=lifetime_hours)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def verify_nonce(nonce: str | None, action: str, *, secret: str) -> bool:
    """Check a nonce's signature, expiry and action.

    Returns:
        True if the nonce was issued for this action and has not expired.
    """
    if not nonce:
        return False
    try:
        payload = jwt.decode(
            nonce,
            secret,
            algorithms=[_ALGORITHM],
            audience=_AUDIENCE,
            options={"require": ["act", "exp"]},
        )
    except jwt.InvalidTokenError:
        return False

    claimed = payload.get("act")
    if not isinstance(claimed, str):
        return False
    return hmac.compare_digest(claimed.encode(), action.encode())
