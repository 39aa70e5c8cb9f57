"""Background loop that refreshes the position cache from the radar API."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

from aggregator import aggregate_movements
from position_cache import PositionCache
from radar_client import BoundingBox, RadarClient


DEFAULT_POLL_INTERVAL_S = 20.0


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class PollStats:
    """Cumulative poll counters. Observability only."""
    total_polls: int = 0
    successful_polls: int = 0
    empty_polls: int = 0
    failed_polls: int = 0
    skipped_polls: int = 0
    consecutive_empty_polls: int = 0
    last_poll_time: Optional[str] = None
    last_non_empty_poll_time: Optional[str] = None
    last_duration_ms: Optional[int] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalPolls": self.total_polls,
            "successfulPolls": self.successful_polls,
            "emptyPolls": self.empty_polls,
            "failedPolls": self.failed_polls,
            "skippedPolls": self.skipped_polls,
            "consecutiveEmptyPolls": self.consecutive_empty_polls,
            "lastPollTime": self.last_poll_time,
            "lastNonEmptyPollTime": self.last_non_empty_poll_time,
            "lastDurationMs": self.last_duration_ms,
            "lastError": self.last_error,
        }


class RadarPoller:
    """Runs fetch -> aggregate -> cache update on a fixed period.

    At most one cycle runs at a time. A tick that fires while a cycle is
    still in flight is dropped, not queued, so a slow upstream delays data
    but never piles up requests.
    """

    def __init__(
        self,
        client: RadarClient,
        cache: PositionCache,
        boxes: Sequence[BoundingBox],
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.client = client
        self.cache = cache
        self.boxes: List[BoundingBox] = list(boxes)
        self.interval_s = interval_s
        self.stats = PollStats()
        self._is_polling = False
        self._loop_task: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()

    @property
    def is_polling(self) -> bool:
        return self._is_polling

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def poll(self) -> bool:
        """Run one cycle. Returns ``True`` if the cache received new data."""
        if self._is_polling:
            self.stats.skipped_polls += 1
            print(f"[poller] [{_timestamp()}] previous poll still running, skipping")
            return False

        self._is_polling = True
        self.stats.total_polls += 1
        self.stats.last_poll_time = _timestamp()
        poll_id = self.stats.total_polls
        start = time.perf_counter()
        print(f"[poller] [{_timestamp()}] poll #{poll_id} start")

        try:
            tile_results = await self.client.fetch_all_boxes(self.boxes)
            movements = aggregate_movements(tile_results)

            if not movements:
                self.stats.empty_polls += 1
                self.stats.consecutive_empty_polls += 1
                print(f"[poller] [{_timestamp()}] EMPTY POLL - radar returned 0 movements")
            else:
                if self.stats.consecutive_empty_polls > 0:
                    print(
                        f"[poller] [{_timestamp()}] data recovered after "
                        f"{self.stats.consecutive_empty_polls} empty polls"
                    )
                self.stats.successful_polls += 1
                self.stats.consecutive_empty_polls = 0
                self.stats.last_non_empty_poll_time = _timestamp()

            applied = self.cache.update(movements)
            duration_ms = int((time.perf_counter() - start) * 1000)
            self.stats.last_duration_ms = duration_ms
            print(
                f"[poller] [{_timestamp()}] poll #{poll_id} end - "
                f"dur: {duration_ms}ms - mov: {len(movements)}"
            )
            return applied
        except Exception as exc:
            self.stats.failed_polls += 1
            self.stats.last_error = str(exc) or exc.__class__.__name__
            self.stats.last_duration_ms = int((time.perf_counter() - start) * 1000)
            print(f"[poller] [{_timestamp()}] poll #{poll_id} FAILED: {exc!r}")
            return False
        finally:
            self._is_polling = False

    def _spawn_cycle(self) -> None:
        task = asyncio.create_task(self.poll())
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _run(self) -> None:
        while True:
            self._spawn_cycle()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        """Poll now, then every ``interval_s``. Must be called from a running loop."""
        if self.is_running:
            return
        print(
            f"[poller] starting ({self.interval_s:g}s interval, {len(self.boxes)} boxes)"
        )
        self._loop_task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Cancel the schedule. A cycle already in flight is left to finish."""
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        self._loop_task = None
        print("[poller] stopped")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight cycles. Returns ``False`` if ``timeout`` expired first."""
        pending = [task for task in self._cycles if not task.done()]
        if not pending:
            return True
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        return not not_done

    def to_dict(self) -> Dict[str, Any]:
        payload = self.stats.to_dict()
        payload["isPolling"] = self._is_polling
        payload["isRunning"] = self.is_running
        payload["intervalS"] = self.interval_s
        payload["boxCount"] = len(self.boxes)
        return payload
