from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from spotbot.exchange import InMemoryExchange
from spotbot.models import BotSettings, Direction, TradeStatus
from spotbot.persistence_sqlite import SQLitePersistence
from spotbot.pnl import (
    ProfitCalculator,
    aggregate_trades,
    net_result_percent,
    price_move_percent,
    realized_profit,
    total_fee_percent,
)
from spotbot.position import Trade

FEE = Decimal("0.001")


def test_round_trip_fee_percent():
    assert total_fee_percent(FEE) == Decimal("0.2")


def test_net_result_long_and_short():
    assert net_result_percent(Decimal("100"), Decimal("101"), Direction.LONG, FEE) == Decimal("0.8")
    assert net_result_percent(Decimal("100"), Decimal("99"), Direction.SHORT, FEE) == Decimal("0.8")
    assert net_result_percent(Decimal("100"), Decimal("99"), Direction.LONG, FEE) == Decimal("-1.2")


def test_net_result_non_positive_prices_is_zero():
    assert net_result_percent(Decimal("0"), Decimal("101"), Direction.LONG, FEE) == 0
    assert net_result_percent(Decimal("100"), Decimal("-1"), Direction.SHORT, FEE) == 0


def test_long_and_short_are_symmetric_without_fees():
    for entry, exit_ in [("100", "103"), ("47619.05", "46000"), ("1", "1")]:
        a, b = Decimal(entry), Decimal(exit_)
        long_result = net_result_percent(a, b, Direction.LONG, Decimal("0"))
        short_result = net_result_percent(a, b, Direction.SHORT, Decimal("0"))
        assert long_result == -short_result
        assert price_move_percent(a, b, Direction.LONG) == long_result


def test_realized_profit_on_committed_volume():
    assert realized_profit(Decimal("100"), Decimal("0.8")) == Decimal("0.8")


@pytest.fixture
def account(tmp_path: Path):
    exchange = InMemoryExchange()
    exchange.balances["USDT"] = Decimal("900")
    exchange.prices["BTCUSDT"] = Decimal("110")
    persistence = SQLitePersistence(tmp_path / "pnl.db")
    persistence.save_settings(BotSettings(baseline_equity=Decimal("1000")))
    persistence.save_trade(Trade("BTCUSDT", Direction.LONG, Decimal("100"), Decimal("1"), Decimal("100")))
    closed = Trade(
        "ETHUSDT",
        Direction.SHORT,
        Decimal("50"),
        Decimal("2"),
        Decimal("100"),
        exit_price=Decimal("47.5"),
        exit_timestamp=datetime.now(timezone.utc),
        realized_profit_usdt=Decimal("5"),
        status=TradeStatus.CLOSED,
    )
    persistence.save_trade(closed)
    yield ProfitCalculator(exchange, persistence)
    persistence.close()


def test_realized_and_today(account):
    assert account.realized_profit() == Decimal("5")
    assert account.today_realized_profit() == Decimal("5")
    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    assert account.today_realized_profit(tomorrow) == 0


def test_unrealized_with_and_without_exit_fee(account):
    assert account.unrealized_pnl() == Decimal("10")
    assert account.unrealized_pnl(include_exit_fee=True) == Decimal("9.9")


def test_equity_occupied_and_percentages(account):
    assert account.total_equity() == Decimal("1010")
    assert account.occupied_balance() == Decimal("110")
    assert account.all_time_percent() == Decimal("1")
    assert account.today_profit() == Decimal("14.9")
    assert account.today_percent() == Decimal("1.49")


def test_percentages_zero_without_baseline(account):
    account.persistence.save_settings(BotSettings())
    assert account.all_time_percent() == 0
    assert account.today_percent() == 0


def test_aggregate_trades():
    def closed(profit):
        return Trade(
            "BTCUSDT", Direction.LONG, Decimal("100"), Decimal("1"), Decimal("100"),
            realized_profit_usdt=Decimal(profit), status=TradeStatus.CLOSED,
        )

    stats = aggregate_trades([closed("3"), closed("-1"), closed("2"), Trade("X", Direction.LONG, Decimal("1"), Decimal("1"), Decimal("1"))])

    assert stats["total_trades"] == 3
    assert stats["total_realized_pnl"] == Decimal("4")
    assert stats["win_count"] == 2
    assert stats["loss_count"] == 1
    assert stats["avg_profit"] == Decimal("4") / 3
    assert aggregate_trades([])["total_trades"] == 0
