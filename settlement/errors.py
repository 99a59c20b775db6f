"""Error taxonomy and the Result type returned at service boundaries.

Inside the service layer failures are raised as ``SettlementError``
subclasses. The boundary functions (webhook ingestion, withdrawal, status
sync) catch them and hand back a ``Result`` so callers can branch on
``result.error.transient`` instead of parsing messages.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    MALFORMED_WEBHOOK = "malformed_webhook"
    UNKNOWN_PROVIDER = "unknown_provider"
    INVALID_SIGNATURE = "invalid_signature"
    PAYMENT_NOT_FOUND = "payment_not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    ORDER_NOT_FOUND = "order_not_found"
    CREATOR_NOT_FOUND = "creator_not_found"
    INVALID_REQUEST = "invalid_request"
    LOCK_TIMEOUT = "lock_timeout"
    STORE_UNAVAILABLE = "store_unavailable"
    PROVIDER_UNAVAILABLE = "provider_unavailable"


class SettlementError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_REQUEST
    transient = False

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.context = context


class MalformedWebhook(SettlementError):
    kind = ErrorKind.MALFORMED_WEBHOOK


class UnknownProvider(SettlementError):
    kind = ErrorKind.UNKNOWN_PROVIDER


class InvalidSignature(SettlementError):
    kind = ErrorKind.INVALID_SIGNATURE


class PaymentNotFound(SettlementError):
    kind = ErrorKind.PAYMENT_NOT_FOUND


class AmountMismatch(SettlementError):
    kind = ErrorKind.AMOUNT_MISMATCH


class InvalidStateTransition(SettlementError):
    kind = ErrorKind.INVALID_STATE_TRANSITION


class OrderNotFound(SettlementError):
    kind = ErrorKind.ORDER_NOT_FOUND


class CreatorNotFound(SettlementError):
    kind = ErrorKind.CREATOR_NOT_FOUND


class InvalidRequest(SettlementError):
    kind = ErrorKind.INVALID_REQUEST


class InsufficientBalance(SettlementError):
    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Requested {requested} exceeds available balance {available}",
            requested=requested,
            available=available,
        )
        self.requested = requested
        self.available = available


class LockTimeout(SettlementError):
    kind = ErrorKind.LOCK_TIMEOUT
    transient = True


class StoreUnavailable(SettlementError):
    kind = ErrorKind.STORE_UNAVAILABLE
    transient = True


class ProviderUnavailable(SettlementError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE
    transient = True


@dataclass
class Result(Generic[T]):
    """Outcome of a boundary call: either ``value`` or ``error`` is set."""

    value: Optional[T] = None
    error: Optional[SettlementError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def transient(self) -> bool:
        return self.error is not None and self.error.transient

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SettlementError) -> "Result[T]":
        return cls(error=error)
