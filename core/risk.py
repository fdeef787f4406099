"""
Core: Risk Sizing

Fixed-fractional position sizing for leveraged futures entries.

    risk_amount   = balance * risk% / 100
    stop_loss     = entry * (1 -/+ sl% / 100)
    position_size = risk_amount / |entry - stop_loss| * entry   (notional, USDT)
    margin        = position_size / leverage

Quantities are floored to the symbol step size, prices rounded to the tick
size. Margin comparisons allow a 0.001 USDT tolerance for rounding.
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Optional, Union

from core.exceptions import InsufficientBalance, ValidationError
from core.order_state import Direction

logger = logging.getLogger(__name__)

MARGIN_TOLERANCE = 0.001
BALANCE_HEADROOM = 0.995


@dataclass(frozen=True)
class RiskSettings:
    """Risk knobs from config (risk section)"""
    percentage: float = 2.5
    leverage: int = 20
    take_profit_percent: float = 0.5
    stop_loss_percent: float = 0.3


@dataclass(frozen=True)
class PositionParameters:
    entry_price: float
    quantity: float
    position_size: float
    leverage: int
    required_margin: float
    stop_loss: float
    take_profit: float
    risk_amount: float
    direction: Direction


def _is_valid_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def floor_to_step(value: float, step: float) -> float:
    """Largest multiple of step <= value (Decimal arithmetic, no float drift)."""
    if not step or step <= 0:
        return value
    d_step = Decimal(repr(step))
    units = (Decimal(repr(value)) / d_step).to_integral_value(rounding=ROUND_FLOOR)
    return float(units * d_step)


def round_to_tick(price: float, tick: float) -> float:
    if not tick or tick <= 0:
        return price
    d_tick = Decimal(repr(tick))
    units = (Decimal(repr(price)) / d_tick).to_integral_value(rounding=ROUND_HALF_UP)
    return float(units * d_tick)


def calculate_position_parameters(
    balance: float,
    entry_price: float,
    direction: Union[str, Direction],
    symbol_info=None,
    risk: Optional[RiskSettings] = None,
) -> PositionParameters:
    """
    Size a position for the given balance and entry.

    Args:
        balance: Available USDT
        entry_price: Expected fill price
        direction: LONG or SHORT
        symbol_info: SymbolInfo (tick_size, step_size, min_qty, max_qty); defaults if None
        risk: RiskSettings; defaults if None

    Raises:
        ValidationError: bad inputs, or quantity rounds to zero
        InsufficientBalance: final margin still exceeds balance
    """
    risk = risk or RiskSettings()

    if not _is_valid_number(balance) or balance <= 0:
        raise ValidationError(f"Invalid balance: {balance}")
    if not _is_valid_number(entry_price) or entry_price <= 0:
        raise ValidationError(f"Invalid entry price: {entry_price}")
    try:
        direction = Direction.parse(direction)
    except ValueError as e:
        raise ValidationError(str(e)) from None

    tick_size = getattr(symbol_info, "tick_size", None) or 0.0001
    step_size = getattr(symbol_info, "step_size", None) or 0.001
    min_qty = getattr(symbol_info, "min_qty", None) or 0.0
    max_qty = getattr(symbol_info, "max_qty", None) or float("inf")
    leverage = risk.leverage

    risk_amount = balance * risk.percentage / 100
    logger.info(f"Balance: {balance} USDT, Risk: {risk.percentage}% = {risk_amount} USDT")

    stop_loss = entry_price * (1 - direction.sign * risk.stop_loss_percent / 100)
    stop_distance = abs(entry_price - stop_loss)
    if stop_distance <= 0:
        raise ValidationError("Stop loss distance is zero or negative")

    position_size = risk_amount / stop_distance * entry_price
    required_margin = position_size / leverage

    if required_margin > balance + MARGIN_TOLERANCE:
        logger.warning(
            f"Required margin ({required_margin:.8f} USDT) exceeds balance ({balance} USDT), "
            f"sizing from {BALANCE_HEADROOM:.1%} of balance"
        )
        position_size = balance * BALANCE_HEADROOM * leverage

    quantity = floor_to_step(position_size / entry_price, step_size)
    take_profit = entry_price * (1 + direction.sign * risk.take_profit_percent / 100)

    if quantity < min_qty:
        logger.warning(f"Calculated quantity ({quantity}) is less than minimum ({min_qty}). Using minimum.")
        quantity = min_qty
        position_size = quantity * entry_price
    if quantity > max_qty:
        logger.warning(f"Calculated quantity ({quantity}) exceeds maximum ({max_qty}). Using maximum.")
        quantity = max_qty
        position_size = quantity * entry_price

    if quantity <= 0:
        raise ValidationError(
            f"Position quantity rounds to zero (step {step_size}) for balance {balance} USDT"
        )

    final_margin = quantity * entry_price / leverage
    if final_margin > balance + MARGIN_TOLERANCE:
        logger.error(
            f"Final margin check failed: Required {final_margin:.8f} USDT > Available {balance} USDT"
        )
        raise InsufficientBalance(final_margin, balance)

    params = PositionParameters(
        entry_price=round_to_tick(entry_price, tick_size),
        quantity=quantity,
        position_size=position_size,
        leverage=leverage,
        required_margin=final_margin,
        stop_loss=round_to_tick(stop_loss, tick_size),
        take_profit=round_to_tick(take_profit, tick_size),
        risk_amount=risk_amount,
        direction=direction,
    )

    logger.info(
        f"Calculated position: {params.quantity} @ {params.entry_price}, "
        f"Margin: {final_margin:.8f} USDT, TP: {params.take_profit}, SL: {params.stop_loss}"
    )
    return params


def has_sufficient_balance(balance: float, required_margin: float) -> bool:
    return (
        _is_valid_number(balance)
        and _is_valid_number(required_margin)
        and balance >= required_margin - MARGIN_TOLERANCE
    )
