"""Pydantic request/response schemas for API endpoints."""

from guest_checkout.schemas.guest_payment import (
    CartItemView,
    CartView,
    GuestPaymentStatus,
    InvoicePaymentMessage,
    Notice,
    PaymentCompletion,
    StorefrontPage,
    TokenRecordView,
)

__all__ = [
    "CartItemView",
    "CartView",
    "GuestPaymentStatus",
    "InvoicePaymentMessage",
    "Notice",
    "PaymentCompletion",
    "StorefrontPage",
    "TokenRecordView",
]
