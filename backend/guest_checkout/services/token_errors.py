"""Error taxonomy for guest payment tokens.

Three families:

- DecodeError: the codec could not turn a string back into a PaymentToken.
- TokenValidationError: a token was presented by a guest and is not usable.
  The reason is for logs only; guests always see the same generic message.
- LifecycleError: an admin action could not be carried out. These are
  APIError subclasses so their message can be shown to the admin as is.
"""

from enum import Enum

from guest_checkout.core.errors import APIError


class DecodeErrorKind(str, Enum):
    """Why a token string could not be decoded."""

    MALFORMED = "malformed"
    INVALID_CIPHERTEXT = "invalid_ciphertext"


class DecodeError(Exception):
    """Token string is not a valid encoding or fails the integrity check."""

    def __init__(self, kind: DecodeErrorKind) -> None:
        self.kind = kind
        super().__init__(kind.value)


class ValidationFailure(str, Enum):
    """Why a presented token was rejected."""

    MALFORMED = "malformed"
    TAMPERED = "tampered"
    EXPIRED = "expired"
    NOT_ACTIVE = "not_active"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"


class TokenValidationError(Exception):
    """A guest presented a token that does not grant access.

    Attributes:
        reason: Internal failure reason, never shown to the guest.
        order_id: Order the token claimed, when it could be decoded.
    """

    def __init__(self, reason: ValidationFailure, order_id: int | None = None) -> None:
        self.reason = reason
        self.order_id = order_id
        super().__init__(reason.value)


class LifecycleError(APIError):
    """Base class for admin-facing token lifecycle failures."""


class OrderNotFoundError(LifecycleError):
    """Order does not exist (404)."""

    def __init__(self, order_id: int) -> None:
        super().__init__(
            code="ORDER_NOT_FOUND",
            message="Order not found.",
            status_code=404,
            details=[{"order_id": order_id}],
        )


class OrderNotPayableError(LifecycleError):
    """Order cannot be paid through a guest link (422)."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="ORDER_NOT_PAYABLE",
            message=message,
            status_code=422,
        )


class InvalidEmailError(LifecycleError):
    """Guest e-mail is missing or not a valid address (400)."""

    def __init__(self) -> None:
        super().__init__(
            code="INVALID_EMAIL",
            message="Invalid email address provided.",
            status_code=400,
        )


class NoActiveTokenError(LifecycleError):
    """No active, unexpired token with an e-mail on file (409)."""

    def __init__(self) -> None:
        super().__init__(
            code="NO_ACTIVE_TOKEN",
            message="No valid token found for this order.",
            status_code=409,
        )


class NoReceiptError(LifecycleError):
    """Order has no unexpired receipt to send (409)."""

    def __init__(self) -> None:
        super().__init__(
            code="NO_RECEIPT",
            message="No receipt is available for this order.",
            status_code=409,
        )


class MailDeliveryFailedError(LifecycleError):
    """Link was generated and stored but the e-mail was not delivered (502).

    Attributes:
        link: The persisted payment link, still usable if copied manually.
    """

    def __init__(
        self, link: str, message: str = "Failed to send guest payment link email."
    ) -> None:
        self.link = link
        super().__init__(
            code="MAIL_DELIVERY_FAILED",
            message=message,
            status_code=502,
        )
