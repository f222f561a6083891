"""
Trade record and trailing ratchet logic.

This module provides the ``Trade`` dataclass which maintains:
- Entry price, filled quantity and committed quote volume
- Best price seen since entry (for breakeven-plus and active trail)
- Current local stop-loss price and the exchange order protecting it
- Exit fields, unset until the trade leaves OPEN

The ratchet invariant: ``stop_loss_price`` only moves in the trade's favor.
For a LONG it never decreases, for a SHORT it never increases.

Examples:
    >>> from decimal import Decimal
    >>> trade = Trade(
    ...     asset="BTCUSDT",
    ...     direction=Direction.LONG,
    ...     entry_price=Decimal("100"),
    ...     quantity=Decimal("1"),
    ...     notional_usdt=Decimal("100"),
    ... )
    >>> trade.stop_loss_price
    Decimal('98.00')
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, getcontext
from typing import Any, Dict, Optional

from .models import Direction, TradeStatus

getcontext().prec = 28


def initial_stop_price(entry_price: Decimal, direction: Direction, stop_pct: Decimal) -> Decimal:
    """Stop ``stop_pct`` adverse from entry (below for LONG, above for SHORT)."""
    if direction is Direction.LONG:
        return entry_price * (Decimal(1) - stop_pct)
    return entry_price * (Decimal(1) + stop_pct)


def stop_limit_price(stop_price: Decimal, direction: Direction, buffer_pct: Decimal) -> Decimal:
    """Limit price for the stop-limit order, ``buffer_pct`` beyond the trigger."""
    if direction is Direction.LONG:
        return stop_price * (Decimal(1) - buffer_pct)
    return stop_price * (Decimal(1) + buffer_pct)


def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Trade:
    """One attempted or realized position.

    Attributes:
        asset: Venue symbol, e.g. "BTCUSDT"
        direction: LONG or SHORT
        entry_price: Average fill price of the entry order
        quantity: Base-asset units actually filled
        notional_usdt: Quote-asset volume actually committed
        best_price: Most favorable price since entry (defaults to entry)
        stop_loss_price: Local stop level (defaults to 2% adverse)
        stop_order_id: Exchange order protecting the position
        id: Assigned by persistence on first save

    Invariants:
        - quantity > 0 and stop_loss_price set before status is OPEN
        - exit_price, exit_timestamp, realized_profit_usdt stay None while OPEN
    """

    asset: str
    direction: Direction
    entry_price: Decimal
    quantity: Decimal
    notional_usdt: Decimal
    best_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    entry_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exit_price: Optional[Decimal] = None
    exit_timestamp: Optional[datetime] = None
    realized_profit_usdt: Optional[Decimal] = None
    status: TradeStatus = TradeStatus.OPEN
    stop_order_id: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.direction = Direction(self.direction)
        self.status = TradeStatus(self.status)
        if self.best_price is None:
            self.best_price = self.entry_price
        if self.stop_loss_price is None:
            self.stop_loss_price = initial_stop_price(self.entry_price, self.direction, Decimal("0.02"))

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    def is_better(self, candidate: Decimal, reference: Decimal) -> bool:
        """True when ``candidate`` is more favorable than ``reference`` for this direction."""
        if self.direction is Direction.LONG:
            return candidate > reference
        return candidate < reference

    def update_best_price(self, price: Decimal) -> bool:
        """Record ``price`` if it improves on the best seen. Returns True on change."""
        if self.is_better(price, self.best_price):
            self.best_price = price
            return True
        return False

    def propose_stop(
        self,
        net_profit_pct: Decimal,
        breakeven_trigger_pct: Decimal,
        breakeven_offset_pct: Decimal,
        trail_trigger_pct: Decimal,
        trail_offset_pct: Decimal,
        min_delta_pct: Decimal,
    ) -> Optional[Decimal]:
        """Compute a tighter stop, or None if the stop should stay where it is.

        Below the breakeven trigger nothing moves. Past it the stop goes to a
        small offset beyond entry ("breakeven-plus"); past the trail trigger it
        follows ``best_price`` at ``trail_offset_pct``. The candidate must beat
        the current stop by more than ``min_delta_pct`` of it to be worth a
        cancel-and-replace on the venue.

        Does not mutate the trade: the caller advances ``stop_loss_price`` only
        after the venue confirms the replacement order.
        """
        long = self.direction is Direction.LONG
        candidates = []
        if net_profit_pct >= breakeven_trigger_pct:
            offset = breakeven_offset_pct if long else -breakeven_offset_pct
            candidates.append(self.entry_price * (Decimal(1) + offset))
        if net_profit_pct >= trail_trigger_pct:
            offset = -trail_offset_pct if long else trail_offset_pct
            candidates.append(self.best_price * (Decimal(1) + offset))
        if not candidates:
            return None

        candidate = max(candidates) if long else min(candidates)
        # Never loosen.
        if not self.is_better(candidate, self.stop_loss_price):
            return None
        if abs(candidate - self.stop_loss_price) <= self.stop_loss_price * min_delta_pct:
            return None
        return candidate

    def stop_crossed(self, price: Decimal) -> bool:
        """True once ``price`` has reached the local stop level."""
        if self.direction is Direction.LONG:
            return price <= self.stop_loss_price
        return price >= self.stop_loss_price

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence; Decimals and datetimes become strings."""
        def s(value):
            return str(value) if value is not None else None

        return {
            "id": self.id,
            "asset": self.asset,
            "direction": self.direction.value,
            "entry_price": s(self.entry_price),
            "quantity": s(self.quantity),
            "notional_usdt": s(self.notional_usdt),
            "best_price": s(self.best_price),
            "stop_loss_price": s(self.stop_loss_price),
            "entry_timestamp": self.entry_timestamp.isoformat(),
            "exit_price": s(self.exit_price),
            "exit_timestamp": self.exit_timestamp.isoformat() if self.exit_timestamp else None,
            "realized_profit_usdt": s(self.realized_profit_usdt),
            "status": self.status.value,
            "stop_order_id": self.stop_order_id,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Trade":
        """Inverse of ``to_dict``.

        Raises:
            KeyError: If required keys are missing
            decimal.InvalidOperation: If values cannot be converted to Decimal
        """
        return Trade(
            id=d.get("id"),
            asset=d["asset"],
            direction=Direction(d["direction"]),
            entry_price=Decimal(d["entry_price"]),
            quantity=Decimal(d["quantity"]),
            notional_usdt=Decimal(d["notional_usdt"]),
            best_price=_dec(d.get("best_price")),
            stop_loss_price=_dec(d.get("stop_loss_price")),
            entry_timestamp=_ts(d.get("entry_timestamp")) or datetime.now(timezone.utc),
            exit_price=_dec(d.get("exit_price")),
            exit_timestamp=_ts(d.get("exit_timestamp")),
            realized_profit_usdt=_dec(d.get("realized_profit_usdt")),
            status=TradeStatus(d.get("status", TradeStatus.OPEN.value)),
            stop_order_id=d.get("stop_order_id"),
        )
