"""
Entry decision function.

``StrategyEvaluator.evaluate`` checks the cheap preconditions first (asset not
cooling down, open-position limit not reached, asset not already held) and
the liquidity floor (24h quote volume at least ``min_quote_volume``), then
computes every indicator from one candle snapshot and applies a boolean gate
per direction:

    LONG:  trend up (price > SMA), RSI below band, price under Bollinger
           middle and at or under VWAP, MACD above signal
    SHORT: the mirror image (only when ``allow_short``)

Both directions also require ADX >= ``adx_min`` and ATR within
``max_atr_pct`` of price. Indicator sentinels (insufficient history) always
yield ``Signal.NONE``.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .config import StrategyConfig
from .cooldown import CooldownTable
from .exchange import BinanceAPIError, ExchangeAdapter
from .indicators import adx, atr, bollinger_bands, macd, rsi, sma, vwap
from .logging_setup import logger
from .models import BotSettings, Signal, TradeStatus


@dataclass(frozen=True)
class IndicatorSnapshot:
    """All gate inputs, computed from the same candle series."""

    rsi: float
    sma: float
    bb_upper: float
    bb_middle: float
    bb_lower: float
    macd_line: float
    macd_signal: float
    atr: float
    adx: float
    vwap: float

    @property
    def complete(self) -> bool:
        has_macd = not (self.macd_line == 0 and self.macd_signal == 0)
        return self.sma > 0 and self.bb_middle > 0 and self.atr > 0 and self.vwap > 0 and has_macd


class StrategyEvaluator:
    def __init__(self, exchange: ExchangeAdapter, persistence, cooldowns: CooldownTable, config: Optional[StrategyConfig] = None):
        self.exchange = exchange
        self.persistence = persistence
        self.cooldowns = cooldowns
        self.config = config or StrategyConfig()

    def snapshot(self, symbol: str) -> Optional[IndicatorSnapshot]:
        """Fetch one candle series and compute every indicator from it."""
        cfg = self.config
        bars = self.exchange.get_klines(symbol, cfg.interval, cfg.candle_limit)
        if not bars:
            return None
        bands = bollinger_bands(bars, cfg.bb_period, cfg.bb_k)
        macd_values = macd(bars, cfg.macd_fast, cfg.macd_slow, cfg.macd_signal)
        return IndicatorSnapshot(
            rsi=rsi(bars, cfg.rsi_period),
            sma=sma(bars, cfg.sma_period),
            bb_upper=bands.upper,
            bb_middle=bands.middle,
            bb_lower=bands.lower,
            macd_line=macd_values.macd_line,
            macd_signal=macd_values.signal_line,
            atr=atr(bars[-(cfg.atr_period + 1):], cfg.atr_period),
            adx=adx(bars, cfg.adx_period),
            vwap=vwap(bars, cfg.vwap_period),
        )

    def decide(self, price: float, ind: IndicatorSnapshot) -> Signal:
        """Apply the direction gates to a complete snapshot."""
        cfg = self.config
        if not ind.complete:
            return Signal.NONE
        if ind.adx < cfg.adx_min or ind.atr / price * 100.0 > cfg.max_atr_pct:
            return Signal.NONE

        if (
            price > ind.sma
            and ind.rsi < cfg.long_rsi_max
            and price < ind.bb_middle
            and price <= ind.vwap
            and ind.macd_line > ind.macd_signal
        ):
            return Signal.OPEN_LONG
        if (
            cfg.allow_short
            and price < ind.sma
            and ind.rsi > cfg.short_rsi_min
            and price > ind.bb_middle
            and price >= ind.vwap
            and ind.macd_line < ind.macd_signal
        ):
            return Signal.OPEN_SHORT
        return Signal.NONE

    def evaluate(self, symbol: str, price: Decimal, settings: BotSettings) -> Signal:
        if self.cooldowns.is_cooling_down(symbol):
            return Signal.NONE

        open_trades = self.persistence.find_trades(lambda t: t.status is TradeStatus.OPEN)
        if len(open_trades) >= settings.max_open_positions:
            return Signal.NONE
        if any(t.asset == symbol for t in open_trades):
            return Signal.NONE

        try:
            volume = self.exchange.get_24h_volume(symbol)
        except BinanceAPIError as e:
            logger.warning(f"24h volume unavailable for {symbol}: {e}")
            return Signal.NONE
        if volume < self.config.min_quote_volume:
            logger.debug(f"{symbol} skipped: 24h volume {volume} below {self.config.min_quote_volume}")
            return Signal.NONE

        try:
            ind = self.snapshot(symbol)
        except BinanceAPIError as e:
            logger.warning(f"Candles unavailable for {symbol}: {e}")
            return Signal.NONE
        if ind is None:
            return Signal.NONE

        signal = self.decide(float(price), ind)
        if signal is not Signal.NONE:
            logger.info(
                f"{signal.value} {symbol} @ {price}: rsi={ind.rsi:.1f} sma={ind.sma:.2f} "
                f"bb_mid={ind.bb_middle:.2f} macd={ind.macd_line:.4f}/{ind.macd_signal:.4f} "
                f"adx={ind.adx:.1f} atr={ind.atr:.4f} vwap={ind.vwap:.2f}"
            )
        return signal
