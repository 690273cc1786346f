"""Shared dependencies for API endpoints.

Every collaborator of the token lifecycle is built here per request and
handed over explicitly. Tests swap any of them through
``app.dependency_overrides``; nothing is read from a module-level singleton
below this layer.
"""

import hmac
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from guest_checkout.core.config import Settings, settings
from guest_checkout.core.database import get_db
from guest_checkout.core.email import ResendMailer
from guest_checkout.core.errors import UnauthorizedError
from guest_checkout.core.guest_session import GuestSession, decode_guest_session_jwt
from guest_checkout.repositories.order_repository import DatabaseOrderSource
from guest_checkout.services.failed_attempts import FailedAttemptTracker
from guest_checkout.services.guest_session_gate import GuestSessionGate
from guest_checkout.services.payment_lifecycle import (
    Mailer,
    OrderSource,
    TokenLifecycle,
    TokenPolicy,
)
from guest_checkout.services.receipts import ReceiptPolicy, ReceiptService
from guest_checkout.services.token_codec import TokenCodec
from guest_checkout.services.token_store import OrderMetaTokenStore, TokenStore

_BEARER_PREFIX = "Bearer "


def get_settings() -> Settings:
    """Application settings."""
    return settings


SettingsDep = Annotated[Settings, Depends(get_settings)]
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_token_codec(app_settings: SettingsDep) -> TokenCodec:
    """Codec keyed with the configured encryption key and method."""
    return TokenCodec(app_settings.encryption_key, app_settings.encryption_method)


def get_token_store(db: DbSession) -> TokenStore:
    """Token store over the order metadata table."""
    return OrderMetaTokenStore(db)


def get_order_source(db: DbSession) -> OrderSource:
    """Orders from the database."""
    return DatabaseOrderSource(db)


def get_mailer(app_settings: SettingsDep) -> Mailer:
    """Resend-backed mailer."""
    return ResendMailer(
        api_key=app_settings.resend_api_key.get_secret_value(),
        sender=app_settings.email_from,
        site_name=app_settings.site_name,
    )


def get_token_lifecycle(
    app_settings: SettingsDep,
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
    store: Annotated[TokenStore, Depends(get_token_store)],
    orders: Annotated[OrderSource, Depends(get_order_source)],
    mailer: Annotated[Mailer, Depends(get_mailer)],
) -> TokenLifecycle:
    """Token lifecycle wired to this request's collaborators."""
    return TokenLifecycle(
        codec=codec,
        store=store,
        orders=orders,
        mailer=mailer,
        policy=TokenPolicy(
            link_base_url=app_settings.cart_url,
            ttl=timedelta(days=app_settings.token_expiry_days),
            payable_statuses=frozenset(app_settings.payable_order_statuses),
        ),
    )


Lifecycle = Annotated[TokenLifecycle, Depends(get_token_lifecycle)]


def get_receipt_service(
    app_settings: SettingsDep,
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
    store: Annotated[TokenStore, Depends(get_token_store)],
    orders: Annotated[OrderSource, Depends(get_order_source)],
    mailer: Annotated[Mailer, Depends(get_mailer)],
) -> ReceiptService:
    """Receipt service sharing this request's collaborators."""
    return ReceiptService(
        codec=codec,
        store=store,
        orders=orders,
        mailer=mailer,
        policy=ReceiptPolicy(
            link_base_url=app_settings.receipt_url,
            ttl=timedelta(days=app_settings.receipt_expiry_days),
        ),
    )


Receipts = Annotated[ReceiptService, Depends(get_receipt_service)]


def get_failed_attempts(request: Request) -> FailedAttemptTracker:
    """Failed token attempt tracker held on the application state."""
    return request.app.state.failed_attempts


def get_guest_gate(
    app_settings: SettingsDep,
    lifecycle: Lifecycle,
    orders: Annotated[OrderSource, Depends(get_order_source)],
    attempts: Annotated[FailedAttemptTracker, Depends(get_failed_attempts)],
) -> GuestSessionGate:
    """Guest session gate for storefront requests."""
    return GuestSessionGate(
        lifecycle=lifecycle,
        orders=orders,
        attempts=attempts,
        cart_path=app_settings.cart_path,
    )


Gate = Annotated[GuestSessionGate, Depends(get_guest_gate)]


def get_guest_session(request: Request, app_settings: SettingsDep) -> GuestSession | None:
    """Guest session from the cookie, signature-checked but not yet resumed.

    Use ``GuestSessionGate.resume`` to confirm it is still backed by the
    order's active token.
    """
    return decode_guest_session_jwt(
        request.cookies.get(app_settings.guest_session_cookie_name),
        secret=app_settings.session_signing_key,
    )


CookieGuestSession = Annotated[GuestSession | None, Depends(get_guest_session)]


def require_admin(request: Request, app_settings: SettingsDep) -> None:
    """Require the admin API key as a bearer token.

    Raises:
        UnauthorizedError: Missing or wrong key, or no key configured.
    """
    expected = app_settings.admin_api_key.get_secret_value()
    header = request.headers.get("Authorization", "")
    if not expected or not header.startswith(_BEARER_PREFIX):
        raise UnauthorizedError
    presented = header.removeprefix(_BEARER_PREFIX)
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        raise UnauthorizedError
