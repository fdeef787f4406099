"""
Core: Position Reconciler

Tracks positions opened by this process and reconciles them against the
exchange on a polling interval.

Per symbol: Untracked -> Tracked -> Closed (removed from the table).

A poll cycle checks every tracked symbol independently:
- exchange reports no position on our side -> closure: exit price from the
  most recent closing-side trade, realized P&L, ClosedPosition appended to
  history, symbol removed, notifier called
- otherwise mark price / unrealized P&L refreshed in place
One symbol's failure is logged and skipped; it stays tracked and is
retried on the next cycle.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from core.exceptions import ReconciliationError, TradingError
from core.order_state import Direction

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
TRADE_LOOKBACK = 10


@dataclass
class TrackedPosition:
    """A position opened by this process and followed until it closes"""
    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    take_profit: float
    stop_loss: float
    order_id: str
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    opened_at: Optional[int] = None  # epoch ms

    # Refreshed by the reconciler
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0
    last_checked_at: Optional[int] = None

    def __post_init__(self):
        self.direction = Direction.parse(self.direction)
        if self.opened_at is None:
            self.opened_at = int(time.time() * 1000)


@dataclass(frozen=True)
class ClosedPosition:
    """Immutable record of a completed position"""
    symbol: str
    direction: Direction
    entry_price: float
    exit_price: float
    quantity: float
    take_profit: float
    stop_loss: float
    order_id: str
    tp_order_id: Optional[str]
    sl_order_id: Optional[str]
    opened_at: int
    closed_at: int
    pnl: float
    pnl_percent: float
    duration_seconds: int
    duration: str = field(default="")

    @property
    def is_win(self) -> bool:
        return self.pnl >= 0


def calculate_pnl(entry_price: float, exit_price: float, quantity: float, direction) -> float:
    return (exit_price - entry_price) * quantity * Direction.parse(direction).sign


def calculate_pnl_percent(entry_price: float, exit_price: float, direction) -> float:
    if entry_price <= 0:
        return 0.0
    return (exit_price - entry_price) / entry_price * 100 * Direction.parse(direction).sign


def format_duration(seconds: int) -> str:
    """1h 5m 3s / 5m 3s / 3s"""
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _is_closing_trade(trade: dict, direction: Direction) -> bool:
    closing = direction.closing_side.value
    side = str(trade.get("side") or "").upper()
    if side:
        return side == closing
    if "buyer" in trade:
        return bool(trade["buyer"]) == (closing == "BUY")
    return False


def select_exit_price(trades: List[dict], direction: Direction) -> Optional[float]:
    """Price of the most recent trade on the closing side, None if there is none."""
    closing = [t for t in trades if _is_closing_trade(t, direction)]
    if not closing:
        return None
    # Stable on equal/missing timestamps: later list entries win
    latest = max(enumerate(closing), key=lambda it: (int(it[1].get("time") or 0), it[0]))[1]
    return float(latest["price"])


class PositionReconciler:
    """
    Owns the tracked-position table and the closed-position history.

    Readers get copies; only this class mutates either collection. At most
    one poll cycle runs at a time, whether triggered by the monitor thread
    or a direct check_positions() call.
    """

    def __init__(self, exchange, notifier=None, metrics=None,
                 time_source: Callable[[], float] = time.time):
        self.exchange = exchange
        self.notifier = notifier
        self.metrics = metrics
        self._time_source = time_source

        self._positions: Dict[str, TrackedPosition] = {}
        self._closed: List[ClosedPosition] = []
        self._stats_start = 0

        self._table_lock = threading.RLock()
        self._poll_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.poll_interval = DEFAULT_POLL_INTERVAL_SECONDS

    def _now_ms(self) -> int:
        return int(self._time_source() * 1000)

    def _publish_count(self) -> None:
        if self.metrics is not None:
            self.metrics.record_tracked_positions(self.tracked_count)

    # ------------------------------------------------------------------
    # Table
    # ------------------------------------------------------------------

    def track(self, position: TrackedPosition) -> None:
        with self._table_lock:
            if position.symbol in self._positions:
                logger.warning(f"Replacing tracked position for {position.symbol}")
            self._positions[position.symbol] = position
        logger.info(f"Added position to monitoring: {position.symbol} {position.direction.value}")
        self._publish_count()

    def untrack(self, symbol: str) -> Optional[TrackedPosition]:
        """Drop a symbol without recording a closure."""
        with self._table_lock:
            position = self._positions.pop(symbol, None)
        if position is not None:
            logger.info(f"Removed position from monitoring: {symbol}")
            self._publish_count()
        return position

    def is_tracked(self, symbol: str) -> bool:
        with self._table_lock:
            return symbol in self._positions

    def get(self, symbol: str) -> Optional[TrackedPosition]:
        with self._table_lock:
            position = self._positions.get(symbol)
            return copy.copy(position) if position is not None else None

    def tracked_positions(self) -> List[TrackedPosition]:
        with self._table_lock:
            return [copy.copy(p) for p in self._positions.values()]

    @property
    def tracked_count(self) -> int:
        with self._table_lock:
            return len(self._positions)

    def closed_positions(self) -> Tuple[ClosedPosition, ...]:
        with self._table_lock:
            return tuple(self._closed)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def check_positions(self) -> bool:
        """
        Run one reconciliation cycle.

        Returns:
            False if another cycle was already in flight (nothing done)
        """
        if not self._poll_lock.acquire(blocking=False):
            logger.debug("Reconcile cycle already in progress, skipping")
            return False
        try:
            with self._table_lock:
                symbols = list(self._positions)
            for symbol in symbols:
                try:
                    self._check_symbol(symbol)
                except Exception as e:
                    error = e if isinstance(e, ReconciliationError) else ReconciliationError(symbol, e)
                    logger.error(f"Error checking position {symbol}: {error}")
                    if self.metrics is not None:
                        self.metrics.record_reconcile_error()
            return True
        finally:
            self._poll_lock.release()

    def _check_symbol(self, symbol: str) -> None:
        tracked = self.get(symbol)
        if tracked is None:
            return

        positions = self.exchange.get_open_positions(symbol)
        live = next(
            (p for p in positions if p.symbol == symbol and p.size > 0 and p.side == tracked.direction.value),
            None,
        )

        if live is None:
            self._handle_closed(tracked)
        else:
            self._refresh(symbol, live)

    def _refresh(self, symbol: str, live) -> None:
        with self._table_lock:
            position = self._positions.get(symbol)
            if position is None:
                return
            position.mark_price = live.mark_price
            position.unrealized_pnl = live.unrealized_profit
            position.last_checked_at = self._now_ms()
        logger.debug(f"{symbol}: Unrealised P&L: {live.unrealized_profit:.2f} USDT")

    def _handle_closed(self, tracked: TrackedPosition) -> None:
        symbol = tracked.symbol
        try:
            trades = self.exchange.get_trade_history(symbol, TRADE_LOOKBACK)
        except TradingError as e:
            raise ReconciliationError(symbol, e) from e

        exit_price = select_exit_price(trades, tracked.direction)
        if exit_price is None:
            logger.warning(f"No closing trade found for {symbol}, using entry price as exit")
            exit_price = tracked.entry_price

        closed_at = self._now_ms()
        duration = max(0, (closed_at - tracked.opened_at) // 1000)
        pnl = calculate_pnl(tracked.entry_price, exit_price, tracked.quantity, tracked.direction)
        pnl_percent = calculate_pnl_percent(tracked.entry_price, exit_price, tracked.direction)

        closed = ClosedPosition(
            symbol=symbol,
            direction=tracked.direction,
            entry_price=tracked.entry_price,
            exit_price=exit_price,
            quantity=tracked.quantity,
            take_profit=tracked.take_profit,
            stop_loss=tracked.stop_loss,
            order_id=tracked.order_id,
            tp_order_id=tracked.tp_order_id,
            sl_order_id=tracked.sl_order_id,
            opened_at=tracked.opened_at,
            closed_at=closed_at,
            pnl=pnl,
            pnl_percent=pnl_percent,
            duration_seconds=duration,
            duration=format_duration(duration),
        )

        with self._table_lock:
            self._closed.append(closed)
            self._positions.pop(symbol, None)

        logger.info(f"Position closed: {symbol}, P&L: {pnl:.2f} USDT ({pnl_percent:.2f}%)")
        self._publish_count()
        if self.metrics is not None:
            self.metrics.record_position_closed(pnl)

        if self.notifier is not None:
            try:
                self.notifier.position_closed(closed)
            except Exception as e:
                logger.error(f"Failed to send close notification for {symbol}: {e}")

    # ------------------------------------------------------------------
    # Background monitoring
    # ------------------------------------------------------------------

    def start_monitoring(self, interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS) -> None:
        if self.is_monitoring:
            logger.warning("Monitoring already running")
            return

        self.poll_interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._monitor_loop,
            args=(self._stop_event,),
            name="position-reconciler",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Starting position monitoring (every {interval_seconds}s)...")

    def _monitor_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.poll_interval):
            try:
                self.check_positions()
            except Exception as e:
                # Keep the monitor alive; per-symbol errors are handled inside
                logger.exception(f"Unexpected error in reconcile cycle: {e}")

    def stop_monitoring(self) -> None:
        """Stop future ticks; an in-flight cycle finishes on its own."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread = None
        logger.info("Position monitoring stopped")

    @property
    def is_monitoring(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, float]:
        with self._table_lock:
            window = self._closed[self._stats_start:]
            open_count = len(self._positions)

        total = len(window)
        wins = sum(1 for p in window if p.is_win)
        return {
            "total_trades": total,
            "win_trades": wins,
            "lose_trades": total - wins,
            "total_pnl": sum(p.pnl for p in window),
            "open_positions": open_count,
            "closed_positions": total,
        }

    def reset_daily_statistics(self) -> None:
        with self._table_lock:
            self._stats_start = len(self._closed)
        logger.info("Daily statistics reset")
