"""P&L calculator for trade analysis and account reporting."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .models import Direction, TradeStatus
from .position import Trade

HUNDRED = Decimal("100")


def price_move_percent(entry_price: Decimal, exit_price: Decimal, direction: Direction) -> Decimal:
    """Gross price move in percent, sign flipped for SHORT. 0 for non-positive prices."""
    if entry_price <= 0 or exit_price <= 0:
        return Decimal("0")
    move = (exit_price - entry_price) / entry_price * HUNDRED
    return move if direction is Direction.LONG else -move


def total_fee_percent(taker_fee: Decimal) -> Decimal:
    """Round-trip fee estimate in percent (two taker fills)."""
    return taker_fee * 2 * HUNDRED


def net_result_percent(
    entry_price: Decimal,
    exit_price: Decimal,
    direction: Direction,
    taker_fee: Decimal,
) -> Decimal:
    """Price move percent minus the round-trip fee estimate.

    Args:
        entry_price: Entry fill price
        exit_price: Exit (or current) price
        direction: LONG or SHORT
        taker_fee: Taker fee as a fraction (0.001 = 0.1%)

    Returns:
        Net result in percent; 0 when either price is non-positive
    """
    if entry_price <= 0 or exit_price <= 0:
        return Decimal("0")
    return price_move_percent(entry_price, exit_price, direction) - total_fee_percent(taker_fee)


def realized_profit(notional_usdt: Decimal, net_percent: Decimal) -> Decimal:
    """Quote-asset profit for a committed volume and a net result percent."""
    return notional_usdt * net_percent / HUNDRED


class ProfitCalculator:
    """Account-level reporting over persisted trades and live venue prices.

    Args:
        exchange: ExchangeAdapter used for prices, fees and free balance
        persistence: Store exposing ``find_all_trades()`` and ``get_settings()``
    """

    def __init__(self, exchange, persistence):
        self.exchange = exchange
        self.persistence = persistence

    def _trades(self, status: TradeStatus) -> List[Trade]:
        return [t for t in self.persistence.find_all_trades() if t.status is status]

    def _price(self, symbol: str) -> Optional[Decimal]:
        price = self.exchange.get_price(symbol)
        if price is None or price <= 0:
            return None
        return price

    def realized_profit(self) -> Decimal:
        return sum((t.realized_profit_usdt or Decimal("0") for t in self._trades(TradeStatus.CLOSED)), Decimal("0"))

    def today_realized_profit(self, today: Optional[datetime] = None) -> Decimal:
        day = (today or datetime.now(timezone.utc)).date()
        return sum(
            (
                t.realized_profit_usdt or Decimal("0")
                for t in self._trades(TradeStatus.CLOSED)
                if t.exit_timestamp is not None and t.exit_timestamp.date() == day
            ),
            Decimal("0"),
        )

    def unrealized_pnl(self, include_exit_fee: bool = False) -> Decimal:
        """Mark-to-market result of OPEN trades on their committed volume.

        With ``include_exit_fee`` the taker fee of the pending exit is
        deducted from each position.
        """
        total = Decimal("0")
        for trade in self._trades(TradeStatus.OPEN):
            price = self._price(trade.asset)
            if price is None:
                continue
            gross = trade.notional_usdt * price_move_percent(trade.entry_price, price, trade.direction) / HUNDRED
            if include_exit_fee:
                gross -= trade.notional_usdt * self.exchange.get_taker_fee(trade.asset)
            total += gross
        return total

    def total_equity(self) -> Decimal:
        """Free quote balance plus the market value of OPEN positions."""
        equity = self.exchange.get_free_balance()
        for trade in self._trades(TradeStatus.OPEN):
            price = self._price(trade.asset)
            if price is not None:
                equity += trade.quantity * price
        return equity

    def occupied_balance(self) -> Decimal:
        """Market value of OPEN positions, falling back to entry volume without a price."""
        occupied = Decimal("0")
        for trade in self._trades(TradeStatus.OPEN):
            price = self._price(trade.asset)
            occupied += trade.quantity * price if price is not None else trade.notional_usdt
        return occupied

    def all_time_percent(self) -> Decimal:
        baseline = self.persistence.get_settings().baseline_equity
        if baseline <= 0:
            return Decimal("0")
        return (self.total_equity() - baseline) / baseline * HUNDRED

    def today_profit(self) -> Decimal:
        return self.today_realized_profit() + self.unrealized_pnl(include_exit_fee=True)

    def today_percent(self) -> Decimal:
        baseline = self.persistence.get_settings().baseline_equity
        if baseline <= 0:
            return Decimal("0")
        return self.today_profit() / baseline * HUNDRED


def aggregate_trades(trades: List[Trade]) -> Dict[str, object]:
    """Aggregate realized results across closed trades.

    Args:
        trades: Any trades; only CLOSED ones are counted

    Returns:
        Dict with totals and statistics
    """
    closed = [t for t in trades if t.status is TradeStatus.CLOSED]
    if not closed:
        return {
            "total_trades": 0,
            "total_realized_pnl": Decimal("0"),
            "win_count": 0,
            "loss_count": 0,
            "win_rate_percent": Decimal("0"),
            "avg_profit": Decimal("0"),
        }

    profits = [t.realized_profit_usdt or Decimal("0") for t in closed]
    total = sum(profits, Decimal("0"))
    wins = len([p for p in profits if p > 0])
    losses = len([p for p in profits if p < 0])

    return {
        "total_trades": len(closed),
        "total_realized_pnl": total,
        "win_count": wins,
        "loss_count": losses,
        "win_rate_percent": Decimal(wins) / Decimal(len(closed)) * HUNDRED,
        "avg_profit": total / len(closed),
    }
