"""
Indicator engine: pure numerical transforms over OHLCV bars.

Every function takes an oldest-first sequence of ``Bar`` and returns a float
(or a small named tuple of floats). Nothing here performs I/O or raises for
short input: each indicator documents its minimum history and returns a
neutral value when the window is too short. Callers decide how to treat
those neutral values.

Examples:
    >>> bars = [Bar(1, 1, 1, c, 1) for c in (1.0, 2.0, 3.0)]
    >>> sma(bars, 2)
    2.5
    >>> rsi(bars, 14)
    50.0
"""

import math
from typing import List, NamedTuple, Sequence

from .models import Bar

RSI_NEUTRAL = 50.0


class BollingerBands(NamedTuple):
    upper: float
    middle: float
    lower: float


class MACD(NamedTuple):
    macd_line: float
    signal_line: float
    histogram: float


def _closes(bars: Sequence[Bar]) -> List[float]:
    return [b.close for b in bars]


def sma(bars: Sequence[Bar], period: int) -> float:
    """Mean close over the last ``period`` bars; 0.0 with fewer bars."""
    if period <= 0 or len(bars) < period:
        return 0.0
    window = bars[-period:]
    return sum(b.close for b in window) / period


def ema(bars: Sequence[Bar], period: int) -> float:
    """Exponential moving average seeded with the first close of ``bars``.

    The whole supplied window is folded left to right, so the result depends
    on how much history the caller passes in. Empty input returns 0.0.
    """
    if not bars:
        return 0.0
    return _ema_series([b.close for b in bars], period)


def _ema_series(values: Sequence[float], period: int) -> float:
    multiplier = 2.0 / (period + 1)
    value = values[0]
    for item in values[1:]:
        value = (item - value) * multiplier + value
    return value


def rsi(bars: Sequence[Bar], period: int = 14) -> float:
    """Relative strength index over the last ``period`` close-to-close moves.

    Returns:
        Value in [0, 100]; 100.0 when there were no losing moves and
        exactly 50.0 when fewer than ``period + 1`` bars are supplied
    """
    if period <= 0 or len(bars) < period + 1:
        return RSI_NEUTRAL
    closes = _closes(bars)
    gain = 0.0
    loss = 0.0
    for i in range(len(closes) - period, len(closes)):
        diff = closes[i] - closes[i - 1]
        if diff > 0:
            gain += diff
        else:
            loss += -diff
    avg_gain = gain / period
    avg_loss = loss / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def bollinger_bands(bars: Sequence[Bar], period: int = 20, k: float = 2.0) -> BollingerBands:
    """SMA plus/minus ``k`` population standard deviations of close.

    All three bands are 0.0 when fewer than ``period`` bars are supplied.
    """
    if period <= 0 or len(bars) < period:
        return BollingerBands(0.0, 0.0, 0.0)
    window = _closes(bars[-period:])
    middle = sum(window) / period
    variance = sum((c - middle) ** 2 for c in window) / period
    sd = math.sqrt(variance)
    return BollingerBands(middle + k * sd, middle, middle - k * sd)


def true_range(bar: Bar, prev_close: float) -> float:
    return max(bar.high - bar.low, abs(bar.high - prev_close), abs(bar.low - prev_close))


def atr(bars: Sequence[Bar], period: int = 14) -> float:
    """Fixed-window mean true range.

    Accumulation starts at the second bar, whose plain high-low range is
    used; every later bar contributes its full true range against the
    previous close. The sum is divided by ``len(bars) - 1``, so passing
    exactly ``period + 1`` bars yields a ``period``-bar mean. Returns 0.0
    with fewer than ``period + 1`` bars.
    """
    if len(bars) < period + 1 or len(bars) < 2:
        return 0.0
    total = bars[1].high - bars[1].low
    for i in range(2, len(bars)):
        total += true_range(bars[i], bars[i - 1].close)
    return total / (len(bars) - 1)


def macd(bars: Sequence[Bar], fast: int = 12, slow: int = 26, signal: int = 9) -> MACD:
    """MACD line, signal line and histogram.

    The MACD line uses EMAs seeded over the full window. The signal line is
    an EMA over a reconstructed MACD series in which each point recomputes
    the fast and slow EMAs over their own trailing windows ending at that
    bar. All zeros when fewer than ``max(fast, slow) + signal`` bars.
    """
    if len(bars) < max(fast, slow) + signal:
        return MACD(0.0, 0.0, 0.0)
    closes = _closes(bars)
    macd_line = _ema_series(closes, fast) - _ema_series(closes, slow)

    series = []
    for i in range(slow, len(closes)):
        fast_window = closes[i - fast + 1:i + 1]
        slow_window = closes[i - slow + 1:i + 1]
        series.append(_ema_series(fast_window, fast) - _ema_series(slow_window, slow))
    signal_line = _ema_series(series, signal) if series else 0.0

    return MACD(macd_line, signal_line, macd_line - signal_line)


def adx(bars: Sequence[Bar], period: int = 14) -> float:
    """Directional movement index over the last ``period`` transitions.

    +DM, -DM and true range are summed over the window, the directional
    indicators are derived from those sums and the instantaneous DX is
    returned without the usual second smoothing pass. 0.0 with fewer than
    ``period + 1`` bars or a flat window.
    """
    if period <= 0 or len(bars) < period + 1:
        return 0.0
    plus_dm = 0.0
    minus_dm = 0.0
    tr_sum = 0.0
    for i in range(len(bars) - period, len(bars)):
        cur, prev = bars[i], bars[i - 1]
        up_move = cur.high - prev.high
        down_move = prev.low - cur.low
        if up_move > down_move and up_move > 0:
            plus_dm += up_move
        if down_move > up_move and down_move > 0:
            minus_dm += down_move
        tr_sum += true_range(cur, prev.close)
    if tr_sum == 0:
        return 0.0
    plus_di = plus_dm / tr_sum * 100.0
    minus_di = minus_dm / tr_sum * 100.0
    if plus_di + minus_di == 0:
        return 0.0
    return abs(plus_di - minus_di) / (plus_di + minus_di) * 100.0


def vwap(bars: Sequence[Bar], period: int = 20) -> float:
    """Volume-weighted mean typical price over the last ``period`` bars.

    0.0 with fewer than ``period`` bars or zero traded volume.
    """
    if period <= 0 or len(bars) < period:
        return 0.0
    window = bars[-period:]
    volume = sum(b.volume for b in window)
    if volume <= 0:
        return 0.0
    return sum(b.typical_price * b.volume for b in window) / volume
