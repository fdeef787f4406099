"""
Exchange Clock Sync

Maintains the offset between the local clock and the exchange server clock.
Signed requests carry timestamps/nonces that the exchange rejects when they
drift outside its receive window, so every signed call reads time through
ClockSync.now().

Usage:
    clock = ClockSync(fetch_server_time=exchange.get_server_time)

    clock.sync()            # One round-trip time request
    clock.ensure_fresh()    # Re-sync only when the offset is stale
    ts = clock.now()        # Local ms + offset
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ClockSync:
    """
    Estimates exchange time from a single unauthenticated time request.

    Offset calculation:
    - T0 = local ms before the request, T1 = local ms after the request
    - Ts = server time reported by the exchange
    - offset = Ts - floor((T0 + T1) / 2)

    The offset is recomputed when older than resync_interval_seconds and
    immediately when the exchange reports a desync (see ErrorClassifier).
    Sync failures propagate; no fallback offset is ever substituted.
    """

    RESYNC_INTERVAL_SECONDS = 60.0
    DRIFT_WARN_MS = 1000

    def __init__(
        self,
        fetch_server_time: Callable[[], int],
        resync_interval_seconds: float = RESYNC_INTERVAL_SECONDS,
        drift_warn_ms: int = DRIFT_WARN_MS,
        time_source: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        metrics=None,
    ):
        self._fetch_server_time = fetch_server_time
        self.resync_interval_seconds = resync_interval_seconds
        self.drift_warn_ms = drift_warn_ms
        self._time_source = time_source
        self._monotonic = monotonic
        self._metrics = metrics

        self._lock = threading.Lock()
        self._offset_ms = 0
        self._round_trip_ms: Optional[int] = None
        self._last_sync: Optional[float] = None

    def local_ms(self) -> int:
        return int(self._time_source() * 1000)

    def sync(self) -> int:
        """
        Query exchange time once and recompute the offset.

        Returns:
            New offset in milliseconds

        Raises:
            NetworkError / ExchangeError from the time request, unmodified
        """
        t0 = self.local_ms()
        server_ms = int(self._fetch_server_time())
        t1 = self.local_ms()

        offset = server_ms - (t0 + t1) // 2

        with self._lock:
            self._offset_ms = offset
            self._round_trip_ms = t1 - t0
            self._last_sync = self._monotonic()

        if abs(offset) > self.drift_warn_ms:
            logger.warning(
                f"Clock drift vs exchange exceeds {self.drift_warn_ms}ms: "
                f"offset={offset}ms, round_trip={t1 - t0}ms"
            )
        else:
            logger.debug(f"Clock synced: offset={offset}ms, round_trip={t1 - t0}ms")

        if self._metrics is not None:
            self._metrics.record_clock_offset(offset)

        return offset

    def ensure_fresh(self) -> bool:
        """Re-sync if never synced or the offset is older than the resync interval."""
        age = self.last_sync_age
        if age is None or age >= self.resync_interval_seconds:
            self.sync()
            return True
        return False

    def now(self) -> int:
        """Exchange-corrected time in epoch milliseconds."""
        with self._lock:
            offset = self._offset_ms
        return self.local_ms() + offset

    @property
    def offset_ms(self) -> int:
        with self._lock:
            return self._offset_ms

    @property
    def round_trip_ms(self) -> Optional[int]:
        with self._lock:
            return self._round_trip_ms

    @property
    def last_sync_age(self) -> Optional[float]:
        """Seconds since the last successful sync, None if never synced."""
        with self._lock:
            last = self._last_sync
        if last is None:
            return None
        return self._monotonic() - last
