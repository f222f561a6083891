"""Per-asset re-entry suppression after a position closes."""
import threading
import time
from typing import Callable, Dict, Optional


class CooldownTable:
    """Concurrent map of asset → expiry (epoch seconds).

    An entry whose expiry has passed is logically absent and is evicted by
    the read that notices it. Process lifetime only; nothing is persisted.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._expiry: Dict[str, float] = {}

    def set(self, symbol: str, seconds: float) -> float:
        """Suppress entries for ``symbol`` for ``seconds``. Returns the expiry."""
        expiry = self._clock() + seconds
        with self._lock:
            self._expiry[symbol] = expiry
        return expiry

    def is_cooling_down(self, symbol: str) -> bool:
        return self.remaining(symbol) > 0

    def remaining(self, symbol: str) -> float:
        """Seconds left on the cooldown, 0.0 if none."""
        now = self._clock()
        with self._lock:
            expiry: Optional[float] = self._expiry.get(symbol)
            if expiry is None:
                return 0.0
            if expiry <= now:
                del self._expiry[symbol]
                return 0.0
            return expiry - now

    def snapshot(self) -> Dict[str, float]:
        """Active cooldowns only."""
        now = self._clock()
        with self._lock:
            for symbol in [s for s, exp in self._expiry.items() if exp <= now]:
                del self._expiry[symbol]
            return dict(self._expiry)

    def clear(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._expiry.clear()
            else:
                self._expiry.pop(symbol, None)
