"""Configuration loader for the trading engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class ExchangeConfig:
    """Venue connection and rate-contract settings."""
    base_url: str = "https://api.binance.com"
    testnet: bool = False
    quote_asset: str = "USDT"
    timeout: int = 10
    recv_window: int = 60000
    weight_limit: int = 6000
    weight_safety_threshold: int = 5000
    market_cache_ttl: float = 10.0
    account_cache_ttl: float = 30.0
    default_retry_after: float = 60.0
    max_retries: int = 3

    @property
    def resolved_base_url(self) -> str:
        return "https://testnet.binance.vision" if self.testnet else self.base_url


@dataclass
class RiskConfig:
    """Position lifecycle policy. Percent fields ending in ``_pct`` that hold
    fractions (stops, offsets) are ratios; profit thresholds are percents."""
    min_notional: Decimal = Decimal("10")
    initial_stop_pct: Decimal = Decimal("0.02")  # 2% adverse
    stop_limit_buffer_pct: Decimal = Decimal("0.005")
    protect_attempts: int = 3
    protect_backoff_seconds: float = 1.0
    rsi_exit_long: float = 75.0
    rsi_exit_short: float = 25.0
    rsi_exit_min_profit_pct: Decimal = Decimal("0.3")
    take_profit_pct: Decimal = Decimal("2.5")
    breakeven_trigger_pct: Decimal = Decimal("0.8")
    breakeven_offset_pct: Decimal = Decimal("0.005")
    trail_trigger_pct: Decimal = Decimal("2.0")
    trail_offset_pct: Decimal = Decimal("0.015")
    min_stop_delta_pct: Decimal = Decimal("0.001")
    cooldown_minutes: float = 5.0
    dust_ratio: Decimal = Decimal("0.05")
    unexplained_ratio: Decimal = Decimal("0.9")


@dataclass
class StrategyConfig:
    """Entry gate parameters."""
    interval: str = "5m"
    candle_limit: int = 250
    rsi_period: int = 14
    sma_period: int = 200
    bb_period: int = 20
    bb_k: float = 2.0
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    atr_period: int = 14
    adx_period: int = 14
    vwap_period: int = 20
    long_rsi_max: float = 50.0
    short_rsi_min: float = 50.0
    adx_min: float = 20.0
    max_atr_pct: float = 5.0
    min_quote_volume: Decimal = Decimal("5000000")
    allow_short: bool = True
    exit_interval: str = "1m"
    exit_candle_limit: int = 15


@dataclass
class SchedulerConfig:
    decision_interval: float = 2.0
    reconcile_interval: float = 10.0
    snapshot_interval: float = 86400.0
    tick_timeout: float = 60.0


@dataclass
class PersistenceConfig:
    """Database and log settings."""
    db_path: str = "spotbot.db"
    log_file: str = "spotbot.log"
    log_level: str = "INFO"
    order_log_file: Optional[str] = "spotbot_orders.log"


@dataclass
class NotificationConfig:
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)


def _build(section_cls, data: Optional[Dict[str, Any]]):
    """Instantiate a config dataclass, coercing Decimal-typed fields."""
    data = data or {}
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"Unknown {section_cls.__name__} keys: {sorted(unknown)}")
    kwargs = {}
    for key, value in data.items():
        if known[key].type in (Decimal, "Decimal") and value is not None:
            value = Decimal(str(value))
        kwargs[key] = value
    return section_cls(**kwargs)


def _plain(section) -> Dict[str, Any]:
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(section).items()}


@dataclass
class BotConfig:
    """Complete static configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "BotConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            BotConfig instance

        Example YAML:
            exchange:
              testnet: true
            risk:
              initial_stop_pct: 0.02
              cooldown_minutes: 5
            notifications:
              telegram_token: "${TELEGRAM_BOT_TOKEN}"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        return cls(
            exchange=_build(ExchangeConfig, data.get("exchange")),
            risk=_build(RiskConfig, data.get("risk")),
            strategy=_build(StrategyConfig, data.get("strategy")),
            scheduler=_build(SchedulerConfig, data.get("scheduler")),
            persistence=_build(PersistenceConfig, data.get("persistence")),
            notifications=_build(NotificationConfig, data.get("notifications")),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": _plain(self.exchange),
            "risk": _plain(self.risk),
            "strategy": _plain(self.strategy),
            "scheduler": _plain(self.scheduler),
            "persistence": _plain(self.persistence),
            "notifications": _plain(self.notifications),
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
