"""
aster-futures-trader Runner: Trading Bot

Composes the exchange connector, order lifecycle, position reconciler,
alerting and metrics into one long-running process.

Flow for a signal (symbol + direction):
1. Guards: allow-list, already tracked, max open positions, max daily
   trades, trading hours
2. Balance, price and symbol constraints from the exchange
3. Risk sizing
4. Leverage, market entry, take profit, stop loss
5. Track the position and notify

The reconciler runs on its own daemon thread and reports closures.
"""

import logging
import signal
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from core.exceptions import OrderRejected, TradingError, ValidationError
from core.exchange_aster import AsterExchange
from core.order_lifecycle import OrderLifecycleManager
from core.order_state import Direction
from core.position_reconciler import PositionReconciler, TrackedPosition
from core.risk import RiskSettings, calculate_position_parameters
from core.signing import Credentials, build_signer
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from tools.config_validator import AppConfig, load_config, load_credentials

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """File + console logging, configured once per process."""
    handlers = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class TradingBot:
    """
    Signal-driven futures bot.

    Responsibilities:
    - Connect and keep the exchange clock in sync
    - Open bracketed positions for incoming signals
    - Follow open positions until the exchange closes them
    - Reset daily counters at UTC midnight
    """

    def __init__(
        self,
        config: AppConfig,
        credentials: Optional[Credentials] = None,
        exchange: Optional[AsterExchange] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        utcnow: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self._utcnow = utcnow

        self.metrics = metrics or MetricsRecorder(
            enabled=config.metrics.enabled,
            port=config.metrics.port,
        )
        self.alerts = alerts or AlertService.from_config(
            config.alerts.enabled,
            config.alerts.model_dump(),
        )

        if exchange is None:
            signer = build_signer(credentials, config.exchange.recv_window_ms) if credentials else None
            exchange = AsterExchange.from_config(config.exchange, signer=signer, metrics=self.metrics)
        self.exchange = exchange

        self.orders = OrderLifecycleManager(self.exchange, config.exchange.position_mode)
        self.reconciler = PositionReconciler(self.exchange, notifier=self.alerts, metrics=self.metrics)
        self.risk = RiskSettings(
            percentage=config.risk.percentage,
            leverage=config.risk.leverage,
            take_profit_percent=config.risk.take_profit_percent,
            stop_loss_percent=config.risk.stop_loss_percent,
        )

        self.dry_run = config.trading.dry_run
        self.daily_trades = 0
        self._trading_day: date = self._utcnow().date()
        self._open_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._running = False

        logger.info(
            f"Initialized TradingBot (dry_run={self.dry_run}, "
            f"position_mode={config.exchange.position_mode}, "
            f"symbols={','.join(config.trading.allowed_symbols)})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.exchange.connect()
        self.metrics.start()
        self.reconciler.start_monitoring(self.config.monitoring.poll_interval_seconds)
        self._running = True
        logger.info("Trading bot started")

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        self.reconciler.stop_monitoring()
        stats = self.reconciler.get_statistics()
        logger.info(
            f"Trading bot stopped. Trades: {stats['total_trades']} "
            f"(W {stats['win_trades']} / L {stats['lose_trades']}), P&L: {stats['total_pnl']:.2f} USDT"
        )

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received")
        self._stop_event.set()

    def run_forever(self, tick_seconds: float = 1.0) -> None:
        """Block until a stop signal, rolling daily counters at UTC midnight."""
        logger.info("Waiting for signals (Ctrl+C to stop)...")
        while not self._stop_event.wait(tick_seconds):
            self.roll_trading_day()
        logger.info("Run loop exited")

    def roll_trading_day(self) -> bool:
        """Reset daily counters if the UTC date changed. Returns True on reset."""
        today = self._utcnow().date()
        if today == self._trading_day:
            return False
        logger.info(f"New trading day {today.isoformat()}, resetting daily statistics")
        self._trading_day = today
        self.daily_trades = 0
        self.reconciler.reset_daily_statistics()
        return True

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def is_within_trading_hours(self, now: Optional[datetime] = None) -> bool:
        hours = self.config.trading_hours
        if not hours.enabled:
            return True
        hour = (now or self._utcnow()).hour
        if hours.start_hour < hours.end_hour:
            return hours.start_hour <= hour < hours.end_hour
        # Window wraps past midnight
        return hour >= hours.start_hour or hour < hours.end_hour

    def check_signal(self, symbol: str, direction) -> Direction:
        """
        Validate a signal against the trading guards.

        Raises:
            ValidationError: naming the guard that rejected the signal
        """
        try:
            direction = Direction.parse(direction)
        except ValueError as e:
            raise ValidationError(str(e)) from None

        trading = self.config.trading
        if symbol not in trading.allowed_symbols:
            raise ValidationError(f"Symbol {symbol} is not in the allowed list")
        if self.reconciler.is_tracked(symbol):
            raise ValidationError(f"Position for {symbol} is already open")
        if self.reconciler.tracked_count >= trading.max_open_positions:
            raise ValidationError(f"Max open positions reached ({trading.max_open_positions})")
        if self.daily_trades >= trading.max_daily_trades:
            raise ValidationError(f"Max daily trades reached ({trading.max_daily_trades})")
        if not self.is_within_trading_hours():
            raise ValidationError("Outside trading hours")
        return direction

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def open_position(self, symbol: str, direction) -> Optional[TrackedPosition]:
        """
        Open a bracketed position for a signal.

        Returns:
            TrackedPosition, or None in dry-run mode

        Raises:
            ValidationError: guard rejection or sizing failure
            OrderRejected: entry not filled and no position on the exchange
            TradingError: exchange failure before the entry filled
        """
        symbol = symbol.strip().upper()
        with self._open_lock:
            self.roll_trading_day()
            direction = self.check_signal(symbol, direction)
            logger.info(f"Processing signal: {symbol} {direction.value}")

            balance = self.exchange.get_usdt_balance()
            price = self.exchange.get_current_price(symbol)
            symbol_info = self.exchange.get_symbol_info(symbol)
            params = calculate_position_parameters(balance, price, direction, symbol_info, self.risk)

            if self.dry_run:
                logger.info(
                    f"[DRY RUN] Would open {direction.value} {params.quantity} {symbol} @ {params.entry_price} "
                    f"(TP {params.take_profit}, SL {params.stop_loss}, {params.leverage}x)"
                )
                return None

            position_side = self.orders.position_side(direction)
            entry_side = self.orders.order_side(direction)

            self.orders.set_leverage(symbol, params.leverage)
            entry = self.orders.open_market_entry(symbol, entry_side, params.quantity, position_side)
            if not entry.is_filled and not self.exchange.has_open_position(symbol, direction.value):
                logger.error(f"Entry {entry.order_id} for {symbol} not filled (status {entry.status}), no brackets placed")
                raise OrderRejected(None, f"Entry order {entry.order_id} for {symbol} ended {entry.status} without a position")
            self.daily_trades += 1

            take_profit = stop_loss = None
            try:
                take_profit = self.orders.attach_take_profit(
                    symbol, entry_side, params.take_profit, params.quantity, position_side,
                )
                stop_loss = self.orders.attach_stop_loss(
                    symbol, entry_side, params.stop_loss, params.quantity, position_side,
                )
            except TradingError as e:
                logger.error(f"Entry {entry.order_id} for {symbol} filled but bracket placement failed: {e}")
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    f"Unprotected position: {symbol}",
                    f"Entry filled but bracket order failed: {e}",
                    {"order_id": entry.order_id, "take_profit_placed": take_profit is not None},
                )

            position = TrackedPosition(
                symbol=symbol,
                direction=direction,
                entry_price=entry.avg_price or params.entry_price,
                quantity=params.quantity,
                take_profit=params.take_profit,
                stop_loss=params.stop_loss,
                order_id=entry.order_id,
                tp_order_id=take_profit.order_id if take_profit else None,
                sl_order_id=stop_loss.order_id if stop_loss else None,
            )
            self.reconciler.track(position)
            self.alerts.position_opened(params, entry, take_profit, stop_loss)
            return position


def parse_signal(raw: str):
    """SYMBOL:DIRECTION -> (symbol, Direction)"""
    symbol, sep, direction = raw.partition(":")
    if not sep or not symbol.strip():
        raise ValidationError(f"Signal must look like SYMBOL:LONG or SYMBOL:SHORT, got {raw!r}")
    try:
        return symbol.strip().upper(), Direction.parse(direction)
    except ValueError as e:
        raise ValidationError(str(e)) from None


def main(argv=None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="AsterDex futures trading bot")
    parser.add_argument("--config", default="config/app.yaml", help="Path to app.yaml")
    parser.add_argument("--signal", help="Open one position on start, e.g. ADAUSDT:LONG")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        setup_logging(config.logging.level, config.logging.file)
        credentials = load_credentials(config.exchange.auth_mode)
        signal_args = parse_signal(args.signal) if args.signal else None
    except ValidationError as e:
        print(f"❌ {e}")
        return 1

    bot = TradingBot(config, credentials)
    bot.install_signal_handlers()

    try:
        bot.start()
        if signal_args:
            try:
                bot.open_position(*signal_args)
            except TradingError as e:
                logger.error(f"Signal {args.signal} not executed: {e}")
        bot.run_forever()
    except TradingError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    finally:
        bot.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
