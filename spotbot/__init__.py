"""
Binance Spot Trading Bot.

An autonomous spot trading bot for Binance featuring:
- Multi-indicator entry gate (RSI, SMA, Bollinger, MACD, ATR, ADX, VWAP)
- Long entries via market buy, short entries by selling held base asset
- Exchange-resident protective stop-limit on every open position
- Breakeven and trailing stop updates (ratchet-only), RSI and take-profit exits
- Per-asset cooldown after every close
- Request-weight budget, clock-skew resync and ban circuit breaker
- SQLite persistence with startup phase restore and periodic reconciliation
- Telegram notifications
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    models: Domain types (settings, signals, fills, snapshots)
    indicators: Pure technical indicators over candle series
    strategy: Entry decision function
    position: Trade record and stop ratchet
    order_state: Per-symbol lifecycle phases and locks
    execution: Position open/close/exit/reconcile
    binance_adapter: Binance Spot REST gateway
    rate_limit_policy: Request-weight budget and server time offset
    persistence_sqlite: Trades, settings and balance history
    pnl: Profit metrics
    scheduler: Periodic tick loops
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> import asyncio
    >>> from spotbot.bot import TradingBot
    >>> from spotbot.config import BotConfig
    >>> from spotbot.scheduler import BotScheduler
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> bot = TradingBot.from_config(config)
    >>> asyncio.run(BotScheduler(bot, config.scheduler).start())
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "indicators",
    "strategy",
    "position",
    "order_state",
    "cooldown",
    "execution",
    "exchange",
    "binance_adapter",
    "rate_limit_policy",
    "cache",
    "persistence_sqlite",
    "db_migrations",
    "notifications",
    "pnl",
    "bot",
    "scheduler",
    "config",
    "secrets",
]
