"""
Core: Order Lifecycle

Entry + bracket placement on AsterDex futures:
- set_leverage (idempotent)
- open_market_entry (MARKET, taker)
- attach_take_profit / attach_stop_loss (limit-type conditional orders,
  opposite side of the entry, price == stopPrice, GTC, CONTRACT_PRICE trigger)

Each call is a single signed request. There is no atomicity across calls:
if the entry fills and a bracket is rejected, the error propagates and the
caller owns the partially protected position.
"""

import logging
from typing import Any, Dict, Union

from core.exceptions import ExchangeError
from core.order_state import (
    BracketOrder,
    Direction,
    EntryOrder,
    NEUTRAL_POSITION_SIDE,
    OrderSide,
    OrderType,
    PositionMode,
)

logger = logging.getLogger(__name__)

LEVERAGE_UNCHANGED_MARKERS = ("leverage not modified", "No need to change leverage")


def _side(value: Union[str, OrderSide]) -> OrderSide:
    if isinstance(value, OrderSide):
        return value
    try:
        return OrderSide(str(value).upper())
    except ValueError:
        raise ValueError(f"Invalid order side: {value}. Must be BUY or SELL") from None


class OrderLifecycleManager:
    """Places entry and bracket orders through a shared AsterExchange."""

    def __init__(self, exchange, position_mode: Union[str, PositionMode] = PositionMode.ONE_WAY):
        self.exchange = exchange
        self.position_mode = PositionMode(str(getattr(position_mode, "value", position_mode)).upper())

    def position_side(self, direction: Union[str, Direction]) -> str:
        """BOTH in one-way mode, LONG/SHORT in hedge mode."""
        direction = Direction.parse(direction)
        if self.position_mode is PositionMode.HEDGE:
            return direction.value
        return NEUTRAL_POSITION_SIDE

    @staticmethod
    def order_side(direction: Union[str, Direction]) -> OrderSide:
        return Direction.parse(direction).entry_side

    def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        logger.info(f"Setting leverage {leverage}x for {symbol}...")
        try:
            response = self.exchange.signed_call(
                "POST",
                self.exchange.path("leverage"),
                {"symbol": symbol, "leverage": int(leverage)},
            )
        except ExchangeError as e:
            if any(marker in (e.message or "") for marker in LEVERAGE_UNCHANGED_MARKERS):
                logger.info(f"Leverage already {leverage}x for {symbol}")
                return {"symbol": symbol, "leverage": int(leverage)}
            raise

        logger.info(f"✅ Leverage {leverage}x set for {symbol}")
        return response

    def open_market_entry(self, symbol: str, side: Union[str, OrderSide], quantity: float,
                          position_side: str = NEUTRAL_POSITION_SIDE) -> EntryOrder:
        side = _side(side)
        logger.info(f"Opening {side.value} market order: {quantity} {symbol} (positionSide={position_side})")

        response = self.exchange.signed_call("POST", self.exchange.path("order"), {
            "symbol": symbol,
            "side": side.value,
            "type": OrderType.MARKET.value,
            "quantity": quantity,
            "positionSide": position_side,
        })

        order = EntryOrder(
            order_id=str(response.get("orderId")),
            symbol=symbol,
            side=side,
            quantity=quantity,
            avg_price=float(response.get("avgPrice") or 0),
            status=str(response.get("status") or ""),
        )
        logger.info(f"✅ Market order opened: Order ID {order.order_id}, Avg Price: {order.avg_price}")
        return order

    def _attach_bracket(self, order_type: OrderType, symbol: str, entry_side: Union[str, OrderSide],
                        price: float, quantity: float, position_side: str) -> BracketOrder:
        closing_side = _side(entry_side).opposite

        response = self.exchange.signed_call("POST", self.exchange.path("order"), {
            "symbol": symbol,
            "side": closing_side.value,
            "positionSide": position_side,
            "type": order_type.value,
            "quantity": quantity,
            "price": price,
            "stopPrice": price,
            "timeInForce": "GTC",
            "workingType": "CONTRACT_PRICE",
        })

        return BracketOrder(
            order_id=str(response.get("orderId")),
            symbol=symbol,
            side=closing_side,
            order_type=order_type,
            price=price,
            quantity=quantity,
            status=response.get("status"),
        )

    def attach_take_profit(self, symbol: str, entry_side: Union[str, OrderSide], price: float,
                           quantity: float, position_side: str = NEUTRAL_POSITION_SIDE) -> BracketOrder:
        logger.info(f"Setting take profit @ {price} for {symbol}...")
        order = self._attach_bracket(OrderType.TAKE_PROFIT, symbol, entry_side, price, quantity, position_side)
        logger.info(f"✅ Take profit set: Order ID {order.order_id}")
        return order

    def attach_stop_loss(self, symbol: str, entry_side: Union[str, OrderSide], price: float,
                         quantity: float, position_side: str = NEUTRAL_POSITION_SIDE) -> BracketOrder:
        logger.info(f"Setting stop loss @ {price} for {symbol}...")
        order = self._attach_bracket(OrderType.STOP, symbol, entry_side, price, quantity, position_side)
        logger.info(f"✅ Stop loss set: Order ID {order.order_id}")
        return order
