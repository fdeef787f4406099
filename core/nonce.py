"""
Nonce generation for signed requests.

Nonce layout: timestamp_ms * 10**6 + sequence

The sequence resets to 0 when the millisecond advances and increments for
requests that land in the same millisecond. Values are strictly increasing
for the lifetime of the generator, even if the time source steps backwards.

With distinct_ms=True every nonce gets its own millisecond (sequence is
always 0): a request landing in an already used millisecond is stamped one
millisecond later. HMAC requests carry only the millisecond timestamp, so
the dispatcher uses this mode for them.
"""

import logging
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)

NONCE_SCALE = 10 ** 6


class NonceGenerator:
    """Strictly increasing nonces derived from (optionally exchange-corrected) time."""

    def __init__(self, clock_sync=None, use_server_time: bool = True, distinct_ms: bool = False):
        """
        Args:
            clock_sync: ClockSync instance providing corrected time
            use_server_time: Use clock_sync.now() when True, local time otherwise
            distinct_ms: Never issue two nonces in the same millisecond
        """
        self.distinct_ms = bool(distinct_ms)
        self._clock_sync = clock_sync
        self.use_server_time = bool(use_server_time and clock_sync is not None)
        self._lock = threading.Lock()
        self._last_ms: Optional[int] = None
        self._sequence = 0

    def _current_ms(self) -> int:
        if self.use_server_time:
            return self._clock_sync.now()
        return int(time.time() * 1000)

    def next(self) -> int:
        with self._lock:
            now_ms = self._current_ms()

            if self._last_ms is None or now_ms > self._last_ms:
                self._last_ms = now_ms
                self._sequence = 0
            else:
                if now_ms < self._last_ms:
                    logger.debug(
                        f"Time source moved back {self._last_ms - now_ms}ms; "
                        f"holding nonce millisecond at {self._last_ms}"
                    )
                self._sequence += 1
                if self.distinct_ms or self._sequence >= NONCE_SCALE:
                    self._last_ms += 1
                    self._sequence = 0

            return self._last_ms * NONCE_SCALE + self._sequence

    @staticmethod
    def timestamp_of(nonce: int) -> int:
        """Millisecond component of a nonce."""
        return nonce // NONCE_SCALE

    @staticmethod
    def sequence_of(nonce: int) -> int:
        """Same-millisecond sequence component of a nonce."""
        return nonce % NONCE_SCALE
