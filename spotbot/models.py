"""
Shared value types for the trading engine.

Direction, status and operational-state fields are closed enumerations so
callers match on members instead of comparing raw strings. Money values use
Decimal; candle values are plain floats because the indicator engine is
pure floating-point math.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Direction(str, Enum):
    """Position direction. SHORT is sell-then-buy-back on a spot account."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_side(self) -> "OrderSide":
        return OrderSide.BUY if self is Direction.LONG else OrderSide.SELL

    @property
    def exit_side(self) -> "OrderSide":
        return OrderSide.SELL if self is Direction.LONG else OrderSide.BUY


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


class OperationalState(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class Signal(str, Enum):
    """Outcome of one entry decision."""

    NONE = "NONE"
    OPEN_LONG = "OPEN_LONG"
    OPEN_SHORT = "OPEN_SHORT"

    @property
    def direction(self) -> Optional[Direction]:
        if self is Signal.OPEN_LONG:
            return Direction.LONG
        if self is Signal.OPEN_SHORT:
            return Direction.SHORT
        return None


@dataclass(frozen=True)
class Bar:
    """One OHLCV candle."""

    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


@dataclass(frozen=True)
class MarketFill:
    """Venue confirmation of a market order.

    Attributes:
        order_id: Exchange order ID
        filled_qty: Base-asset quantity actually executed
        filled_quote: Quote-asset amount actually exchanged
        price: Venue-reported average fill price, when the venue reports one
    """

    order_id: str
    filled_qty: Decimal
    filled_quote: Decimal
    price: Optional[Decimal] = None

    @property
    def avg_price(self) -> Decimal:
        if self.price is not None:
            return self.price
        if self.filled_qty <= 0:
            return Decimal("0")
        return self.filled_quote / self.filled_qty


@dataclass
class BalanceSnapshot:
    balance: Decimal
    timestamp: datetime
    id: Optional[int] = None

    @staticmethod
    def now(balance: Decimal) -> "BalanceSnapshot":
        return BalanceSnapshot(balance=balance, timestamp=datetime.now(timezone.utc))


class BotSettings(BaseModel):
    """Runtime settings singleton, read at the start of every tick.

    Mutated by the configuration surface and by the gateway's circuit
    breaker (forced OFFLINE on ban detection).
    """

    model_config = ConfigDict(validate_assignment=True)

    operational_state: OperationalState = OperationalState.ONLINE
    watched_assets: List[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT", "SOLUSDT"])
    risk_percent: Decimal = Decimal("10")
    max_open_positions: int = Field(default=1, ge=1)
    baseline_equity: Decimal = Decimal("0")

    @field_validator("watched_assets", mode="before")
    @classmethod
    def _normalize_assets(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            value = value.split(",")
        seen: List[str] = []
        for item in value:
            symbol = str(item).strip().upper()
            if symbol and symbol not in seen:
                seen.append(symbol)
        return seen

    @field_validator("risk_percent")
    @classmethod
    def _check_risk(cls, value: Decimal) -> Decimal:
        if value <= 0 or value > 100:
            raise ValueError("risk_percent must be in (0, 100]")
        return value

    @property
    def is_online(self) -> bool:
        return self.operational_state is OperationalState.ONLINE

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BotSettings":
        return cls.model_validate(d)
