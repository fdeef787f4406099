"""Shared exception types for exchange access and trading logic."""

from typing import Optional


class TradingError(Exception):
    """Base class for every error raised by the trading core."""

    retryable: bool = False


class NetworkError(TradingError):
    """Raised when no structured exchange response is available."""

    def __init__(self, message: str, original: Optional[Exception] = None,
                 status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.original = original
        self.status = status


class ExchangeError(TradingError):
    """Exchange-reported error carrying the exchange code and message verbatim."""

    def __init__(self, code: Optional[int], message: str, status: Optional[int] = None):
        super().__init__(f"API Error: {message} (Code: {code})")
        self.code = code
        self.message = message
        self.status = status


class ResyncRequired(ExchangeError):
    """Request timestamp/nonce fell outside the exchange's accepted window."""

    retryable = True


class RateLimited(ExchangeError):
    """Exchange request budget exhausted."""

    retryable = True


class InsufficientMargin(ExchangeError):
    """Account margin cannot cover the order."""


class OrderRejected(ExchangeError):
    """Order refused by the matching engine."""


class ValidationError(TradingError, ValueError):
    """Bad local input (non-positive balance, unknown direction, bad config)."""


class InsufficientBalance(ValidationError):
    """Sized position still needs more margin than the account holds."""

    def __init__(self, required: float, available: float):
        super().__init__(
            f"Insufficient balance. Required: {required:.8f} USDT, Available: {available} USDT"
        )
        self.required = required
        self.available = available


class ReconciliationError(TradingError):
    """Polling or trade lookup failed for a single tracked symbol."""

    def __init__(self, symbol: str, original: Optional[Exception] = None):
        detail = f": {original}" if original is not None else ""
        super().__init__(f"Reconciliation failed for {symbol}{detail}")
        self.symbol = symbol
        self.original = original
