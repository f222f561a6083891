"""Rate-limit policy: venue used-weight budget and signed-request clock.

The venue reports the weight consumed in the current rolling minute on every
response. ``RateBudget`` keeps that number, blocks callers voluntarily once it
crosses a safety threshold below the hard limit, and owns the local-to-server
clock offset used to stamp signed requests. All mutation happens under one
lock so overlapping ticks cannot corrupt it.
"""
import threading
import time
from dataclasses import dataclass
from typing import Mapping, Optional

WEIGHT_HEADER = "x-mbx-used-weight-1m"


@dataclass(frozen=True)
class WeightQuota:
    """Venue weight contract."""
    limit: int = 6000              # venue hard limit per window
    safety_threshold: int = 5000   # voluntary throttle point
    window_seconds: int = 60


class RateBudget:
    """Process-wide used-weight counter plus server clock offset."""

    def __init__(self, quota: Optional[WeightQuota] = None):
        self.quota = quota or WeightQuota()
        self._lock = threading.Lock()
        self._used_weight = 0
        self._time_offset_ms = 0

    @property
    def used_weight(self) -> int:
        with self._lock:
            return self._used_weight

    @property
    def time_offset_ms(self) -> int:
        with self._lock:
            return self._time_offset_ms

    def is_allowed(self) -> bool:
        """True while used weight is at or under the safety threshold."""
        with self._lock:
            return self._used_weight <= self.quota.safety_threshold

    def time_until_window(self) -> float:
        """Seconds until the next rolling window starts, plus one second of slack."""
        window = self.quota.window_seconds
        return window - (time.time() % window) + 1.0

    def wait_if_needed(self) -> float:
        """Block the caller until the next window if the budget is exhausted.

        Returns:
            Seconds slept (0.0 when the budget allows the call immediately)
        """
        if self.is_allowed():
            return 0.0
        delay = self.time_until_window()
        time.sleep(delay)
        with self._lock:
            # another thread may already have reset it; both end at zero
            self._used_weight = 0
        return delay

    def set_used_weight(self, weight: int) -> None:
        with self._lock:
            self._used_weight = max(0, int(weight))

    def update_from_headers(self, headers: Mapping[str, str]) -> Optional[int]:
        """Overwrite the local counter with the venue-reported weight.

        Returns:
            The reported weight, or None if the header is absent or malformed
        """
        raw = None
        for key, value in headers.items():
            if key.lower() == WEIGHT_HEADER:
                raw = value
                break
        if raw is None:
            return None
        try:
            weight = int(raw)
        except (TypeError, ValueError):
            return None
        self.set_used_weight(weight)
        return weight

    def set_server_time(self, server_time_ms: int, local_time_ms: Optional[int] = None) -> int:
        """Record the offset between venue clock and local clock."""
        if local_time_ms is None:
            local_time_ms = int(time.time() * 1000)
        with self._lock:
            self._time_offset_ms = int(server_time_ms) - int(local_time_ms)
            return self._time_offset_ms

    def timestamp_ms(self) -> int:
        """Local clock corrected by the server offset, for signed requests."""
        with self._lock:
            offset = self._time_offset_ms
        return int(time.time() * 1000) + offset
