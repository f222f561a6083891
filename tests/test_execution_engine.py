from decimal import Decimal
from unittest.mock import MagicMock, call, patch

from spotbot.config import RiskConfig
from spotbot.exchange import BinanceAPIError, InMemoryExchange
from spotbot.execution import PositionManager
from spotbot.models import Bar, BotSettings, Direction, OperationalState, OrderSide, TradeStatus
from spotbot.order_state import PositionPhase


class FeeInBaseExchange(InMemoryExchange):
    """Venue that charges the BUY fee in the base asset and rejects oversized sells."""

    def _require_holdings(self, symbol, quantity):
        if quantity > self.balances.get(self.base_asset(symbol), Decimal("0")):
            raise BinanceAPIError("Account has insufficient balance for requested action.", status=400, code=-2010)

    def _market(self, symbol, side, qty, quote_amount):
        if side is OrderSide.SELL:
            self._require_holdings(symbol, qty)
        fill = super()._market(symbol, side, qty, quote_amount)
        if side is OrderSide.BUY:
            base = self.base_asset(symbol)
            self.balances[base] -= fill.filled_qty * self.taker_fee
        return fill

    def place_protective_stop(self, symbol, quantity, trigger_price, limit_price, side):
        if OrderSide(side) is OrderSide.SELL:
            self._require_holdings(symbol, quantity)
        return super().place_protective_stop(symbol, quantity, trigger_price, limit_price, side)


def _fee_in_base_exchange():
    ex = FeeInBaseExchange()
    ex.balances["USDT"] = Decimal("1000")
    ex.set_price("BTCUSDT", Decimal("100"))
    return ex


def _open_long(manager, exchange, settings, price="100"):
    exchange.set_price("BTCUSDT", Decimal(price))
    return manager.open_position("BTCUSDT", Decimal(price), Direction.LONG, settings)


def test_long_entry_persists_actual_fill_and_protects(manager, exchange, persistence, notifier, settings):
    exchange.set_price("BTCUSDT", Decimal("47619.05"))
    exchange.queue_fill(Decimal("0.0021"), Decimal("100.00"), price=Decimal("47619.05"))

    trade = manager.open_position("BTCUSDT", Decimal("47619.05"), Direction.LONG, settings)

    assert trade.status is TradeStatus.OPEN
    assert trade.quantity == Decimal("0.0021")
    assert trade.notional_usdt == Decimal("100.00")
    assert trade.entry_price == Decimal("47619.05")
    assert trade.stop_loss_price == Decimal("0.98") * Decimal("47619.05")
    assert persistence.get_trade(trade.id) == trade

    stops = exchange.open_stops("BTCUSDT")
    assert len(stops) == 1
    assert stops[0]["side"] == "SELL"
    assert stops[0]["stopPrice"] == trade.stop_loss_price
    assert stops[0]["price"] == trade.stop_loss_price * Decimal("0.995")
    assert trade.stop_order_id == stops[0]["orderId"]

    assert exchange.market_orders[0]["quote"] == Decimal("100.00")
    assert exchange.cancel_calls == ["BTCUSDT"]
    assert manager.phases.phase("BTCUSDT") is PositionPhase.OPEN
    assert notifier.texts[-1].startswith("Opened LONG BTCUSDT")


@patch("spotbot.execution.time.sleep")
def test_stop_failures_trigger_rollback(mock_sleep, exchange, persistence, notifier, cooldowns, settings):
    manager = PositionManager(exchange, persistence, notifier, cooldowns=cooldowns)
    exchange.fail_stop_placements = 3

    trade = _open_long(manager, exchange, settings)

    assert mock_sleep.call_args_list == [call(1.0), call(2.0)]
    assert trade.status is TradeStatus.CLOSED
    assert trade.exit_price == Decimal("100")
    assert [o["side"] for o in exchange.market_orders] == ["BUY", "SELL"]
    assert persistence.get_trade(trade.id).status is TradeStatus.CLOSED
    assert any(t.startswith("CRITICAL: ROLLBACK") for t in notifier.texts)
    assert cooldowns.is_cooling_down("BTCUSDT")
    assert manager.phases.phase("BTCUSDT") is PositionPhase.CLOSED


def test_failed_rollback_marks_error(manager, exchange, persistence, notifier, settings):
    exchange.fail_stop_placements = 3
    exchange.place_market_sell = MagicMock(side_effect=BinanceAPIError("rejected", status=400))

    trade = _open_long(manager, exchange, settings)

    assert trade.status is TradeStatus.ERROR
    assert persistence.get_trade(trade.id).status is TradeStatus.ERROR
    assert manager.phases.phase("BTCUSDT") is PositionPhase.ERROR
    assert any("MANUAL INTERVENTION REQUIRED" in t for t in notifier.texts)
    # no automated re-entry while the asset needs an operator
    assert _open_long(manager, exchange, settings) is None


def test_resolving_error_trade_reenables_asset(manager, exchange, persistence, notifier, settings):
    exchange.fail_stop_placements = 3
    exchange.place_market_sell = MagicMock(side_effect=BinanceAPIError("rejected", status=400))
    trade = _open_long(manager, exchange, settings)

    assert manager.resolve_error("BTCUSDT", exit_price=Decimal("99")) == 1

    resolved = persistence.get_trade(trade.id)
    assert resolved.status is TradeStatus.CLOSED
    assert resolved.exit_price == Decimal("99")
    assert manager.phases.phase("BTCUSDT") is PositionPhase.NONE
    assert notifier.texts[-1].startswith("Resolved LONG BTCUSDT")
    assert _open_long(manager, exchange, settings).status is TradeStatus.OPEN


def test_rejected_entry_leaves_nothing_behind(manager, exchange, persistence, settings):
    exchange.fail_market_orders = 1

    assert _open_long(manager, exchange, settings) is None
    assert persistence.find_all_trades() == []
    assert manager.phases.phase("BTCUSDT") is PositionPhase.NONE


def test_zero_fill_entry_is_aborted(manager, exchange, persistence, settings):
    exchange.queue_fill(Decimal("0"), Decimal("0"))

    assert _open_long(manager, exchange, settings) is None
    assert persistence.find_all_trades() == []
    assert exchange.open_stops("BTCUSDT") == []


def test_entry_skipped_below_min_notional_or_offline(manager, exchange, settings):
    exchange.balances["USDT"] = Decimal("50")
    assert _open_long(manager, exchange, settings) is None

    exchange.balances["USDT"] = Decimal("1000")
    offline = BotSettings(operational_state=OperationalState.OFFLINE)
    assert manager.open_position("BTCUSDT", Decimal("100"), Direction.LONG, offline) is None
    assert exchange.market_orders == []


def test_short_requires_held_base_asset(manager, exchange, settings):
    assert manager.open_position("BTCUSDT", Decimal("100"), Direction.SHORT, settings) is None

    exchange.balances["BTC"] = Decimal("2")
    trade = manager.open_position("BTCUSDT", Decimal("100"), Direction.SHORT, settings)

    assert trade.direction is Direction.SHORT
    assert trade.quantity == Decimal("1")
    assert trade.stop_loss_price == Decimal("102")
    assert exchange.open_stops("BTCUSDT")[0]["side"] == "BUY"
    assert exchange.balances["BTC"] == Decimal("1")


def test_one_position_per_asset(manager, exchange, settings):
    assert _open_long(manager, exchange, settings) is not None
    assert _open_long(manager, exchange, settings) is None
    assert len(exchange.market_orders) == 1


def test_breakeven_move_and_no_duplicate_close(manager, exchange, persistence, settings):
    trade = _open_long(manager, exchange, settings)

    exchange.set_price("BTCUSDT", Decimal("100.9"))
    assert not manager.evaluate_exit(trade, Decimal("100.9"))
    assert persistence.get_trade(trade.id).stop_loss_price == Decimal("98")

    exchange.set_price("BTCUSDT", Decimal("101.1"))
    assert not manager.evaluate_exit(trade, Decimal("101.1"))
    moved = persistence.get_trade(trade.id)
    assert moved.stop_loss_price == Decimal("100.5")
    assert [o["stopPrice"] for o in exchange.open_stops("BTCUSDT")] == [Decimal("100.5")]

    # the venue stop fires on the way down, then the tick sees the crossed level
    exchange.set_price("BTCUSDT", Decimal("97.9"))
    assert manager.evaluate_exit(moved, Decimal("97.9"))
    assert not manager.close_position(moved, Decimal("97.9"), "again")

    closed = persistence.get_trade(trade.id)
    assert closed.status is TradeStatus.CLOSED
    assert [o["side"] for o in exchange.market_orders] == ["BUY"]


def test_failed_stop_replacement_keeps_old_stop(manager, exchange, persistence, settings):
    trade = _open_long(manager, exchange, settings)
    exchange.fail_stop_placements = 1

    exchange.set_price("BTCUSDT", Decimal("101.1"))
    manager.evaluate_exit(trade, Decimal("101.1"))

    current = persistence.get_trade(trade.id)
    assert current.stop_loss_price == Decimal("98")
    stops = exchange.open_stops("BTCUSDT")
    assert [o["stopPrice"] for o in stops] == [Decimal("98")]
    assert current.stop_order_id == stops[0]["orderId"]


def test_stop_never_loosens_when_price_retreats(manager, exchange, persistence, settings):
    trade = _open_long(manager, exchange, settings)
    for price in ("101.1", "100.8", "101.2", "100.7"):
        exchange.set_price("BTCUSDT", Decimal(price))
        manager.evaluate_exit(trade, Decimal(price))
        assert persistence.get_trade(trade.id).stop_loss_price == Decimal("100.5")


def test_take_profit_closes_with_offsetting_order(manager, exchange, persistence, notifier, cooldowns, settings):
    trade = _open_long(manager, exchange, settings)

    exchange.set_price("BTCUSDT", Decimal("103"))
    assert manager.evaluate_exit(trade, Decimal("103"))

    closed = persistence.get_trade(trade.id)
    assert closed.status is TradeStatus.CLOSED
    assert closed.exit_price == Decimal("103")
    assert closed.realized_profit_usdt == Decimal("2.8")
    assert exchange.market_orders[-1]["side"] == "SELL"
    assert exchange.open_stops("BTCUSDT") == []
    assert cooldowns.is_cooling_down("BTCUSDT")
    assert len(persistence.list_snapshots()) == 1
    assert "Take profit" in notifier.texts[-1]
    assert manager.phases.phase("BTCUSDT") is PositionPhase.CLOSED


def test_rsi_exit_requires_minimum_profit(manager, exchange, persistence, settings):
    trade = _open_long(manager, exchange, settings)
    overbought = [Bar(90 + i, 91 + i, 89 + i, 90 + i, 1) for i in range(15)]
    exchange.set_klines("BTCUSDT", "1m", overbought)

    exchange.set_price("BTCUSDT", Decimal("100.4"))
    assert not manager.evaluate_exit(trade, Decimal("100.4"))

    exchange.set_price("BTCUSDT", Decimal("100.6"))
    assert manager.evaluate_exit(trade, Decimal("100.6"))
    assert persistence.get_trade(trade.id).status is TradeStatus.CLOSED


def test_short_take_profit_buys_back(manager, exchange, persistence, settings):
    exchange.balances["BTC"] = Decimal("1")
    trade = manager.open_position("BTCUSDT", Decimal("100"), Direction.SHORT, settings)

    exchange.set_price("BTCUSDT", Decimal("97"))
    assert manager.evaluate_exit(trade, Decimal("97"))

    closed = persistence.get_trade(trade.id)
    assert closed.realized_profit_usdt == Decimal("2.8")
    assert [o["side"] for o in exchange.market_orders] == ["SELL", "BUY"]


def test_failed_exit_order_returns_to_open_with_stop(manager, exchange, persistence, settings):
    trade = _open_long(manager, exchange, settings)
    exchange.place_market_sell = MagicMock(side_effect=BinanceAPIError("rejected", status=400))

    exchange.set_price("BTCUSDT", Decimal("103"))
    assert not manager.evaluate_exit(trade, Decimal("103"))

    assert persistence.get_trade(trade.id).status is TradeStatus.OPEN
    assert len(exchange.open_stops("BTCUSDT")) == 1
    assert manager.phases.phase("BTCUSDT") is PositionPhase.OPEN


def test_zero_fill_exit_marks_error(manager, exchange, persistence, notifier, settings):
    trade = _open_long(manager, exchange, settings)
    exchange.queue_fill(Decimal("0"), Decimal("0"))

    assert not manager.close_position(trade, Decimal("100"), "Manual close")

    assert persistence.get_trade(trade.id).status is TradeStatus.ERROR
    assert notifier.texts[-1].startswith("CRITICAL:")


def test_exit_quantity_capped_by_holdings(manager, exchange, settings):
    trade = _open_long(manager, exchange, settings)
    exchange.balances["BTC"] = Decimal("0.999")

    manager.close_position(trade, Decimal("100"), "Manual close")

    assert exchange.market_orders[-1]["qty"] == Decimal("0.999")


def test_manual_close_symbol_and_close_all(manager, exchange, persistence, settings):
    _open_long(manager, exchange, settings)
    exchange.set_price("ETHUSDT", Decimal("50"))
    manager.open_position("ETHUSDT", Decimal("50"), Direction.LONG, settings)

    assert manager.close_symbol("BTCUSDT")
    assert not manager.close_symbol("BTCUSDT")
    assert manager.close_all_positions() == 1
    assert manager.open_trades() == []


def test_cancel_all_is_idempotent(exchange):
    exchange.cancel_all_open_orders("BTCUSDT")
    exchange.cancel_all_open_orders("BTCUSDT")
    assert exchange.open_stops("BTCUSDT") == []


def test_fee_lookup_failure_uses_fallback(manager, exchange, settings):
    trade = _open_long(manager, exchange, settings)
    exchange.get_taker_fee = MagicMock(side_effect=BinanceAPIError("fee endpoint down"))
    assert manager.net_percent(trade, Decimal("101")) == Decimal("0.8")


def test_default_risk_config_is_used(exchange, persistence, notifier):
    manager = PositionManager(exchange, persistence, notifier)
    assert manager.risk == RiskConfig()


def test_stop_sized_to_holdings_after_base_fee(persistence, notifier, cooldowns, settings):
    exchange = _fee_in_base_exchange()
    manager = PositionManager(exchange, persistence, notifier, risk=RiskConfig(protect_backoff_seconds=0), cooldowns=cooldowns)

    trade = _open_long(manager, exchange, settings)

    assert trade.status is TradeStatus.OPEN
    assert trade.quantity == Decimal("1")
    assert exchange.balances["BTC"] == Decimal("0.999")
    stops = exchange.open_stops("BTCUSDT")
    assert [o["quantity"] for o in stops] == [Decimal("0.999")]
    assert trade.stop_order_id == stops[0]["orderId"]


def test_rollback_sells_what_the_account_holds(persistence, notifier, cooldowns, settings):
    exchange = _fee_in_base_exchange()
    manager = PositionManager(exchange, persistence, notifier, risk=RiskConfig(protect_backoff_seconds=0), cooldowns=cooldowns)
    exchange.fail_stop_placements = 3

    trade = _open_long(manager, exchange, settings)

    assert trade.status is TradeStatus.CLOSED
    assert [(o["side"], o["qty"]) for o in exchange.market_orders] == [("BUY", Decimal("1")), ("SELL", Decimal("0.999"))]
    assert exchange.balances["BTC"] == Decimal("0")


def test_stops_follow_tick_size(persistence, notifier, cooldowns, settings):
    exchange = InMemoryExchange(tick_size=Decimal("0.01"))
    exchange.balances["USDT"] = Decimal("1000")
    manager = PositionManager(exchange, persistence, notifier, risk=RiskConfig(protect_backoff_seconds=0), cooldowns=cooldowns)
    exchange.set_price("BTCUSDT", Decimal("100.003"))
    exchange.queue_fill(Decimal("1"), Decimal("100.003"), price=Decimal("100.003"))

    trade = manager.open_position("BTCUSDT", Decimal("100.003"), Direction.LONG, settings)

    assert trade.stop_loss_price == Decimal("98")
    assert [o["stopPrice"] for o in exchange.open_stops("BTCUSDT")] == [trade.stop_loss_price]

    exchange.set_price("BTCUSDT", Decimal("101.2"))
    manager.evaluate_exit(trade, Decimal("101.2"))

    moved = persistence.get_trade(trade.id)
    assert moved.stop_loss_price == Decimal("100.5")
    assert [o["stopPrice"] for o in exchange.open_stops("BTCUSDT")] == [moved.stop_loss_price]
