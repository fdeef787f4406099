"""
Request pacing and rate budget tracking.

Two independent pieces:
- RequestGate: enforces a minimum spacing between dispatched requests
  (blocking wait, 100ms by default)
- RateBudget: remembers the exchange-reported weight/order counters from
  response headers and warns near exhaustion (advisory only, never blocks)

AsterDex (Binance-compatible) limits:
- Request weight: 2400 per minute (X-MBX-USED-WEIGHT-1M)
- Orders: 1200 per minute (X-MBX-ORDER-COUNT-1M)
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)

USED_WEIGHT_HEADER = "x-mbx-used-weight-1m"
ORDER_COUNT_HEADER = "x-mbx-order-count-1m"


class RequestGate:
    """
    Minimum-interval gate between consecutive dispatches.

    Usage:
        gate.wait()     # Sleep until min_interval has passed since last mark
        ...sign...
        gate.mark()     # Stamp the dispatch moment
        ...send...

    Callers that issue requests from several threads must hold a shared
    lock across wait() -> mark() (AsterExchange does).
    """

    def __init__(
        self,
        min_interval: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_dispatch: Optional[float] = None
        self.total_wait_seconds = 0.0

    def wait_time(self) -> float:
        if self._last_dispatch is None:
            return 0.0
        elapsed = self._monotonic() - self._last_dispatch
        return max(0.0, self.min_interval - elapsed)

    def wait(self) -> float:
        """Block until the spacing has elapsed. Returns seconds slept."""
        delay = self.wait_time()
        if delay > 0:
            logger.debug(f"Request gate: waiting {delay * 1000:.1f}ms")
            self._sleep(delay)
            self.total_wait_seconds += delay
        return delay

    def mark(self) -> None:
        self._last_dispatch = self._monotonic()


@dataclass
class RateBudgetSnapshot:
    used_weight: Optional[int]
    order_count: Optional[int]
    weight_budget: int
    order_budget: int

    @property
    def weight_utilization(self) -> Optional[float]:
        if self.used_weight is None or self.weight_budget <= 0:
            return None
        return self.used_weight / self.weight_budget


class RateBudget:
    """Most recent exchange-reported usage counters (advisory)."""

    def __init__(
        self,
        weight_budget: int = 2400,
        warn_ratio: float = 0.83,
        order_budget: int = 1200,
        order_warn_count: int = 1000,
    ):
        self.weight_budget = weight_budget
        self.warn_ratio = warn_ratio
        self.order_budget = order_budget
        self.order_warn_count = order_warn_count
        self._lock = Lock()
        self._used_weight: Optional[int] = None
        self._order_count: Optional[int] = None
        self.warnings = 0

    @property
    def weight_warn_threshold(self) -> float:
        return self.weight_budget * self.warn_ratio

    @staticmethod
    def _parse(headers: Mapping[str, str], name: str) -> Optional[int]:
        raw = None
        for key, value in headers.items():
            if key.lower() == name:
                raw = value
                break
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric {name} header: {raw!r}")
            return None

    def observe(self, headers: Optional[Mapping[str, str]]) -> RateBudgetSnapshot:
        """Record counters from response headers and warn above thresholds."""
        headers = headers or {}
        used_weight = self._parse(headers, USED_WEIGHT_HEADER)
        order_count = self._parse(headers, ORDER_COUNT_HEADER)

        with self._lock:
            if used_weight is not None:
                self._used_weight = used_weight
            if order_count is not None:
                self._order_count = order_count

        if used_weight is not None and used_weight > self.weight_warn_threshold:
            self.warnings += 1
            logger.warning(f"High API weight usage: {used_weight}/{self.weight_budget}")

        if order_count is not None and order_count > self.order_warn_count:
            self.warnings += 1
            logger.warning(f"High order count: {order_count}/{self.order_budget}")

        return self.snapshot()

    def snapshot(self) -> RateBudgetSnapshot:
        with self._lock:
            return RateBudgetSnapshot(
                used_weight=self._used_weight,
                order_count=self._order_count,
                weight_budget=self.weight_budget,
                order_budget=self.order_budget,
            )
