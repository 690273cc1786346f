"""Response envelope models.

REST endpoints answer ``{"data": ...}`` or ``{"error": {...}}``. The admin
AJAX endpoint keeps the ``{"success": ..., "data": {...}}`` shape its
JavaScript client expects.
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class DataResponse(BaseModel, Generic[T]):
    """Standard response envelope for single resources.

    Usage:
        @router.get("/orders/{order_id}/guest-payment")
        async def get_status(order_id: int) -> DataResponse[LinkStatus]:
            return DataResponse(data=status)
    """

    data: T


class ErrorDetail(BaseModel):
    """Error detail for response body.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        details: Optional list of field-level errors (for validation).
    """

    code: str
    message: str
    details: list[dict] | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class AjaxResponse(BaseModel):
    """Admin AJAX envelope.

    Always returned with HTTP 200; ``success`` tells the client whether to
    show the message as feedback or as an error.

    Attributes:
        success: Whether the action succeeded.
        data: ``message`` plus action-specific fields such as ``link``.
    """

    success: bool
    data: dict[str, Any]

    @classmethod
    def ok(cls, message: str, **extra: Any) -> "AjaxResponse":
        """Build a success envelope."""
        return cls(success=True, data={"message": message, **extra})

    @classmethod
    def fail(cls, message: str) -> "AjaxResponse":
        """Build a failure envelope."""
        return cls(success=False, data={"message": message})
