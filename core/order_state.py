"""
Order and position vocabulary shared by sizing, order placement and
reconciliation.

Direction:    LONG / SHORT (what we hold)
OrderSide:    BUY / SELL (what we send)
PositionMode: ONE_WAY (positionSide=BOTH) / HEDGE (positionSide=LONG|SHORT)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def entry_side(self) -> "OrderSide":
        return OrderSide.BUY if self is Direction.LONG else OrderSide.SELL

    @property
    def closing_side(self) -> "OrderSide":
        return self.entry_side.opposite

    @classmethod
    def parse(cls, value: Union[str, "Direction"]) -> "Direction":
        """Parse LONG/SHORT (case-insensitive); raises ValueError otherwise."""
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Invalid direction: {value}. Must be LONG or SHORT") from None


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class PositionMode(str, Enum):
    ONE_WAY = "ONE_WAY"
    HEDGE = "HEDGE"


class OrderType(str, Enum):
    MARKET = "MARKET"
    TAKE_PROFIT = "TAKE_PROFIT"   # Limit take-profit (price + stopPrice)
    STOP = "STOP"                 # Limit stop-loss (price + stopPrice)


NEUTRAL_POSITION_SIDE = "BOTH"


@dataclass(frozen=True)
class EntryOrder:
    """Result of a market entry order"""
    order_id: str
    symbol: str
    side: OrderSide
    quantity: float
    avg_price: float
    status: str

    @property
    def is_filled(self) -> bool:
        return self.status.upper() == "FILLED"


@dataclass(frozen=True)
class BracketOrder:
    """Take-profit or stop-loss conditional order attached to an entry"""
    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    price: float
    quantity: float
    status: Optional[str] = None
