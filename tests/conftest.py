from decimal import Decimal
from pathlib import Path

import pytest

from spotbot.config import RiskConfig
from spotbot.cooldown import CooldownTable
from spotbot.exchange import InMemoryExchange
from spotbot.execution import PositionManager
from spotbot.models import BotSettings
from spotbot.notifications import InMemoryNotifier
from spotbot.persistence_sqlite import SQLitePersistence


@pytest.fixture
def exchange():
    ex = InMemoryExchange()
    ex.balances["USDT"] = Decimal("1000")
    ex.set_price("BTCUSDT", Decimal("100"))
    return ex


@pytest.fixture
def persistence(tmp_path: Path):
    p = SQLitePersistence(tmp_path / "state.db")
    yield p
    p.close()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def cooldowns():
    return CooldownTable()


@pytest.fixture
def manager(exchange, persistence, notifier, cooldowns):
    return PositionManager(
        exchange,
        persistence,
        notifier,
        risk=RiskConfig(protect_backoff_seconds=0),
        cooldowns=cooldowns,
    )


@pytest.fixture
def settings():
    return BotSettings(risk_percent=Decimal("10"), max_open_positions=3)
