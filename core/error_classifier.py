"""
Exchange error classification.

Turns transport failures and exchange {code, msg} payloads into the typed
errors of core.exceptions. Two classes carry side effects before they are
surfaced:

- ResyncRequired (-1021): one forced ClockSync.sync()
- RateLimited (429/418, -1003/-429): one fixed cooldown sleep

Nothing is retried here; retry-or-abort is the caller's decision.
"""

import logging
import time
from typing import Callable, Optional, Tuple

import requests

from core.exceptions import (
    ExchangeError,
    InsufficientMargin,
    NetworkError,
    OrderRejected,
    RateLimited,
    ResyncRequired,
    TradingError,
)

logger = logging.getLogger(__name__)

DESYNC_CODES = frozenset({-1021})
RATE_LIMIT_CODES = frozenset({-1003, -429})
RATE_LIMIT_STATUSES = frozenset({418, 429})
INSUFFICIENT_MARGIN_CODES = frozenset({-2019})
ORDER_REJECTED_CODES = frozenset({-4131, -2010, -2021})


class ErrorClassifier:
    """Maps exchange/transport errors to typed outcomes."""

    def __init__(
        self,
        clock_sync=None,
        rate_limit_cooldown: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        metrics=None,
    ):
        self._clock_sync = clock_sync
        self.rate_limit_cooldown = rate_limit_cooldown
        self._sleep = sleep
        self._metrics = metrics

    @staticmethod
    def _parse_payload(response) -> Tuple[Optional[int], Optional[str]]:
        """Extract (code, msg) from an error response body, (None, None) if unstructured."""
        try:
            data = response.json()
        except ValueError:
            return None, None
        if not isinstance(data, dict) or "code" not in data:
            return None, None
        try:
            code = int(data.get("code"))
        except (TypeError, ValueError):
            code = None
        return code, str(data.get("msg") or "")

    def classify(self, exc: Exception, endpoint: str = "") -> TradingError:
        """
        Classify an exception raised while calling the exchange.

        Returns the typed error for the caller to raise; side effects
        (resync, cooldown) have already happened when this returns.
        """
        if isinstance(exc, TradingError):
            return exc

        response = getattr(exc, "response", None)
        if response is None:
            logger.error(f"Network error on {endpoint}: {exc}")
            return NetworkError(str(exc) or exc.__class__.__name__, original=exc)

        return self.classify_response(response, endpoint=endpoint, original=exc)

    def classify_response(self, response, endpoint: str = "",
                          original: Optional[Exception] = None) -> TradingError:
        status = getattr(response, "status_code", None)
        code, msg = self._parse_payload(response)

        if code is None:
            if status in RATE_LIMIT_STATUSES:
                return self._rate_limited(None, "Rate limit exceeded", status, endpoint)
            text = getattr(response, "text", "") or ""
            logger.error(f"Unstructured error response on {endpoint}: HTTP {status} {text[:200]}")
            return NetworkError(f"HTTP {status}: {text[:200]}", original=original, status=status)

        logger.error(f"API Error {status} on {endpoint}: Code {code}, Message: {msg}")

        if code in DESYNC_CODES:
            return self._resync(code, msg, status)

        if code in RATE_LIMIT_CODES or status in RATE_LIMIT_STATUSES:
            return self._rate_limited(code, msg, status, endpoint)

        if code in INSUFFICIENT_MARGIN_CODES:
            return InsufficientMargin(code, msg, status)

        if code in ORDER_REJECTED_CODES:
            return OrderRejected(code, msg, status)

        return ExchangeError(code, msg, status)

    def _resync(self, code: int, msg: str, status: Optional[int]) -> ResyncRequired:
        logger.warning("Timestamp sync issue detected, forcing clock resync")
        error = ResyncRequired(code, msg, status)
        if self._clock_sync is None:
            return error
        try:
            self._clock_sync.sync()
        except (TradingError, requests.RequestException) as sync_exc:
            logger.error(f"Forced clock resync failed: {sync_exc}")
            error.__context__ = sync_exc
        return error

    def _rate_limited(self, code: Optional[int], msg: str, status: Optional[int],
                      endpoint: str) -> RateLimited:
        logger.warning(
            f"Rate limit hit on {endpoint}, cooling down {self.rate_limit_cooldown:.1f}s"
        )
        if self._metrics is not None:
            self._metrics.record_rate_limited()
        if self.rate_limit_cooldown > 0:
            self._sleep(self.rate_limit_cooldown)
        return RateLimited(code, msg or "Rate limit exceeded, please retry", status)
