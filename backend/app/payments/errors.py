"""Exceptions raised by the payment flow and surfaced to API callers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from fastapi import status


@dataclass(eq=False)
class PaymentError(Exception):
    """Base class for payment failures carrying an HTTP status."""

    message: str
    code: str = "payment_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Dict[str, Any]:
        """Client-safe data attached to the error envelope."""

        base: Dict[str, Any] = {"error": self.code}
        if self.detail:
            base.update(self.detail)
        return base


@dataclass(eq=False)
class ValidationError(PaymentError):
    """Malformed client input."""

    code: str = "validation_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    errors: List[str] = field(default_factory=list)

    @property
    def payload(self) -> Dict[str, Any]:
        base = super().payload
        if self.errors:
            base["errors"] = list(self.errors)
        return base


@dataclass(eq=False)
class UnauthorizedError(PaymentError):
    """Caller is not allowed to perform the operation."""

    code: str = "unauthorized"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass(eq=False)
class NotFoundError(PaymentError):
    """Referenced payment or user does not exist."""

    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class GatewayError(PaymentError):
    """The payment gateway call failed or returned an unexpected shape."""

    code: str = "gateway_error"
    status_code: int = status.HTTP_502_BAD_GATEWAY


@dataclass(eq=False)
class InternalError(PaymentError):
    """Unexpected failure; the message shown to clients stays generic."""

    code: str = "internal_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "GatewayError",
    "InternalError",
    "NotFoundError",
    "PaymentError",
    "UnauthorizedError",
    "ValidationError",
]
