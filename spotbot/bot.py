"""
Tick entry points invoked by the scheduler.

``TradingBot`` wires the gateway, strategy evaluator and position manager
together and exposes one method per scheduled task:

- ``run_decision_tick``: entry evaluation for each watched asset, then exit
  evaluation for each OPEN trade, strictly one asset at a time
- ``run_reconcile_tick``: compare OPEN trades with venue holdings
- ``run_snapshot_tick``: record the free quote balance

Settings are re-read at the start of every tick, so configuration changes
take effect on the next tick. Venue failures are isolated per asset.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from .binance_adapter import BinanceAdapter
from .config import BotConfig
from .cooldown import CooldownTable
from .exchange import BinanceAPIError, ExchangeAdapter
from .execution import PositionManager
from .logging_setup import logger
from .models import BalanceSnapshot
from .notifications import Notifier, build_notifier
from .order_state import PositionStateMachine, SymbolLocks
from .persistence_sqlite import SQLitePersistence
from .pnl import ProfitCalculator, aggregate_trades
from .secrets import BinanceCredentials, load_credentials
from .strategy import StrategyEvaluator


class TradingBot:
    def __init__(
        self,
        exchange: ExchangeAdapter,
        persistence,
        notifier: Notifier,
        config: Optional[BotConfig] = None,
        *,
        cooldowns: Optional[CooldownTable] = None,
    ):
        self.config = config or BotConfig()
        self.exchange = exchange
        self.persistence = persistence
        self.notifier = notifier
        self.cooldowns = cooldowns or CooldownTable()
        self.positions = PositionManager(
            exchange,
            persistence,
            notifier,
            risk=self.config.risk,
            strategy=self.config.strategy,
            cooldowns=self.cooldowns,
            phases=PositionStateMachine(),
            locks=SymbolLocks(),
        )
        self.strategy = StrategyEvaluator(exchange, persistence, self.cooldowns, self.config.strategy)
        self.profit = ProfitCalculator(exchange, persistence)

    @classmethod
    def from_config(cls, config: BotConfig, credentials: Optional[BinanceCredentials] = None) -> "TradingBot":
        """Build a live bot: SQLite persistence, configured notifier, Binance gateway."""
        persistence = SQLitePersistence(Path(config.persistence.db_path))
        notifier = build_notifier(config.notifications)
        exchange = BinanceAdapter.from_config(config, credentials or load_credentials(testnet=config.exchange.testnet), persistence, notifier)
        return cls(exchange, persistence, notifier, config)

    def initialize(self) -> None:
        """Startup: clock sync, baseline equity, lifecycle phases from persisted trades."""
        self.exchange.sync_time()
        settings = self.persistence.get_settings()
        if settings.baseline_equity == 0 and settings.is_online:
            try:
                settings.baseline_equity = self.exchange.get_free_balance()
                self.persistence.save_settings(settings)
                logger.info(f"Baseline equity set to {settings.baseline_equity}")
            except BinanceAPIError as e:
                logger.warning(f"Baseline equity not initialized: {e}")
        self.positions.restore_phases()

    def run_decision_tick(self) -> None:
        settings = self.persistence.get_settings()
        if not settings.is_online:
            logger.debug("Decision tick skipped: OFFLINE")
            return
        try:
            prices = self.exchange.get_all_prices()
        except BinanceAPIError as e:
            logger.warning(f"Decision tick skipped, prices unavailable: {e}")
            return

        for symbol in settings.watched_assets:
            price = prices.get(symbol)
            if price is None or price <= 0:
                continue
            try:
                signal = self.strategy.evaluate(symbol, price, settings)
                if signal.direction is not None:
                    self.positions.open_position(symbol, price, signal.direction, settings)
            except BinanceAPIError as e:
                logger.warning(f"Entry evaluation for {symbol} failed: {e}")

        for trade in self.positions.open_trades():
            price = prices.get(trade.asset)
            if price is None or price <= 0:
                continue
            try:
                self.positions.evaluate_exit(trade, price)
            except BinanceAPIError as e:
                logger.warning(f"Exit evaluation for {trade.asset} failed: {e}")

    def run_reconcile_tick(self) -> int:
        if not self.persistence.get_settings().is_online:
            return 0
        return self.positions.reconcile()

    def run_snapshot_tick(self) -> Optional[BalanceSnapshot]:
        if not self.persistence.get_settings().is_online:
            return None
        try:
            balance = self.exchange.get_free_balance()
        except BinanceAPIError as e:
            logger.warning(f"Balance snapshot skipped: {e}")
            return None
        snapshot = self.persistence.save_snapshot(BalanceSnapshot.now(balance))
        logger.info(f"Balance snapshot: {balance}")
        return snapshot

    def report(self) -> Dict[str, Any]:
        """Account summary for operators."""
        return {
            "realized_profit": self.profit.realized_profit(),
            "today_realized_profit": self.profit.today_realized_profit(),
            "unrealized_pnl": self.profit.unrealized_pnl(),
            "unrealized_pnl_after_fee": self.profit.unrealized_pnl(include_exit_fee=True),
            "total_equity": self.profit.total_equity(),
            "occupied_balance": self.profit.occupied_balance(),
            "all_time_percent": self.profit.all_time_percent(),
            "today_percent": self.profit.today_percent(),
            "cooldowns": self.cooldowns.snapshot(),
            "trades": aggregate_trades(self.persistence.find_all_trades()),
        }
