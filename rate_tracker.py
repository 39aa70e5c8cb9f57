"""Rolling-window accounting of requests made against the radar API."""
from __future__ import annotations

import math
import time
from typing import Any, Callable, Dict, List

# Upstream allowance (requests per minute) observed for the public VBB API
DEFAULT_RATE_LIMIT = 100
DEFAULT_WINDOW_S = 60.0

WARNING_PERCENT = 50
CRITICAL_PERCENT = 80


class RateTracker:
    """Counts upstream requests over a trailing time window.

    Timestamps are pruned lazily on every read or write, so the list never
    holds more than one window's worth of entries.
    """

    def __init__(
        self,
        limit: int = DEFAULT_RATE_LIMIT,
        window_s: float = DEFAULT_WINDOW_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._timestamps: List[float] = []

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_s
        # Timestamps are appended in order, so only the head can be stale.
        idx = 0
        for ts in self._timestamps:
            if ts > cutoff:
                break
            idx += 1
        if idx:
            del self._timestamps[:idx]

    def record_request(self) -> Dict[str, Any]:
        self._timestamps.append(self._clock())
        self._prune()
        return self.get_stats()

    def get_stats(self) -> Dict[str, Any]:
        self._prune()
        count = len(self._timestamps)
        # Half-up, so 0.5% already shows as 1%
        percentage = math.floor(count / self.limit * 100 + 0.5)
        return {
            "count": count,
            "limit": self.limit,
            "remaining": self.limit - count,
            "percentage": percentage,
            "isWarning": percentage >= WARNING_PERCENT,
            "isCritical": percentage >= CRITICAL_PERCENT,
        }

    def reset(self) -> None:
        self._timestamps.clear()
