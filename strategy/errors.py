from enum import Enum
from typing import Optional


class RejectReason(str, Enum):
    SYMBOL_UNKNOWN = "SYMBOL_UNKNOWN"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    QUANTITY_OUT_OF_RANGE = "QUANTITY_OUT_OF_RANGE"
    PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
    LEVERAGE_EXCEEDED = "LEVERAGE_EXCEEDED"
    DUPLICATE_SYMBOL = "DUPLICATE_SYMBOL"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    INVALID_SIGNAL = "INVALID_SIGNAL"
    ORDER_REJECTED = "ORDER_REJECTED"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"


class LifecycleError(Exception):
    """Base for every failure the coordinator reports as a rejection."""

    reason = RejectReason.GATEWAY_UNAVAILABLE

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SymbolUnknown(LifecycleError):
    reason = RejectReason.SYMBOL_UNKNOWN


class InsufficientBalance(LifecycleError):
    reason = RejectReason.INSUFFICIENT_BALANCE


class QuantityOutOfRange(LifecycleError):
    reason = RejectReason.QUANTITY_OUT_OF_RANGE


class PriceOutOfRange(LifecycleError):
    reason = RejectReason.PRICE_OUT_OF_RANGE


class LeverageExceeded(LifecycleError):
    reason = RejectReason.LEVERAGE_EXCEEDED


class DuplicateSymbol(LifecycleError):
    reason = RejectReason.DUPLICATE_SYMBOL


class OrderNotFound(LifecycleError):
    reason = RejectReason.ORDER_NOT_FOUND


class InvalidSignal(LifecycleError):
    reason = RejectReason.INVALID_SIGNAL


class PersistenceFailed(LifecycleError):
    reason = RejectReason.PERSISTENCE_FAILED


class GatewayUnavailable(LifecycleError):
    """Transport or authentication failure talking to the exchange."""

    reason = RejectReason.GATEWAY_UNAVAILABLE

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class OrderRejected(LifecycleError):
    """The exchange answered, but refused the request."""

    reason = RejectReason.ORDER_REJECTED

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)
