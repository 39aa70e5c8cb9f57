"""In-memory cache of the latest radar position per trip.

The cache keeps one previous sample per vehicle so that map clients can
animate between successive polls. Empty upstream batches never clear it:
they are counted and otherwise ignored, and the growing cache age is what
tells consumers the feed has gone quiet.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from radar_client import Movement


DEFAULT_HEALTHY_THRESHOLD_S = 60.0


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    captured_at: float  # epoch seconds


@dataclass(frozen=True)
class TrackedVehicle:
    """Current and previous observation of one trip."""
    trip_id: str
    current: Movement
    captured_at: float
    first_seen_at: float
    previous: Optional[Position] = None

    @property
    def position(self) -> Position:
        return Position(
            latitude=self.current.latitude,
            longitude=self.current.longitude,
            captured_at=self.captured_at,
        )

    def advance(self, movement: Movement, now: float) -> "TrackedVehicle":
        """Return the next state: ``movement`` becomes current, current becomes previous."""
        return TrackedVehicle(
            trip_id=self.trip_id,
            current=movement,
            captured_at=now,
            first_seen_at=self.first_seen_at,
            previous=self.position,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = self.current.to_dict()
        payload["previousPosition"] = (
            {
                "latitude": self.previous.latitude,
                "longitude": self.previous.longitude,
            }
            if self.previous is not None
            else None
        )
        return payload


def _iso_utc(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    stamp = datetime.fromtimestamp(ts, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PositionCache:
    """Holds the vehicle set produced by the most recent non-empty poll.

    Only the poller writes. Each non-empty update builds a complete new map
    and installs it with a single assignment, so a reader sees either the old
    or the new vehicle set, never a mix of both.
    """

    def __init__(
        self,
        healthy_threshold_s: float = DEFAULT_HEALTHY_THRESHOLD_S,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.healthy_threshold_s = healthy_threshold_s
        self._clock = clock
        # Age is measured on the monotonic clock; wall time only labels updates
        self._monotonic = monotonic
        self._vehicles: Dict[str, TrackedVehicle] = {}
        self._last_updated_at: Optional[float] = None
        self._last_updated_mono: Optional[float] = None
        self._update_count = 0
        self._consecutive_empty_count = 0

    @property
    def last_updated_at(self) -> Optional[float]:
        return self._last_updated_at

    @property
    def update_count(self) -> int:
        return self._update_count

    @property
    def consecutive_empty_count(self) -> int:
        return self._consecutive_empty_count

    def __len__(self) -> int:
        return len(self._vehicles)

    def get(self, trip_id: str) -> Optional[TrackedVehicle]:
        return self._vehicles.get(trip_id)

    def update(self, batch: Sequence[Movement]) -> bool:
        """Apply one poll's worth of movements.

        Returns ``False`` when the batch was empty and therefore skipped.
        """
        if not batch:
            self._consecutive_empty_count += 1
            print(
                f"[cache] empty batch ignored, keeping {len(self._vehicles)} vehicles "
                f"({self._consecutive_empty_count} in a row)"
            )
            return False

        now = self._clock()
        previous = self._vehicles
        updated: Dict[str, TrackedVehicle] = {}
        new_count = 0
        for movement in batch:
            if movement.trip_id in updated:
                continue
            existing = previous.get(movement.trip_id)
            if existing is not None:
                updated[movement.trip_id] = existing.advance(movement, now)
            else:
                new_count += 1
                updated[movement.trip_id] = TrackedVehicle(
                    trip_id=movement.trip_id,
                    current=movement,
                    captured_at=now,
                    first_seen_at=now,
                )

        dropped = sum(1 for trip_id in previous if trip_id not in updated)
        self._vehicles = updated
        self._last_updated_at = now
        self._last_updated_mono = self._monotonic()
        self._update_count += 1
        self._consecutive_empty_count = 0
        print(
            f"[cache] updated: {len(updated)} vehicles "
            f"({new_count} new, {dropped} dropped)"
        )
        return True

    def get_all(self) -> List[Dict[str, Any]]:
        vehicles = self._vehicles
        return [vehicle.to_dict() for vehicle in vehicles.values()]

    def age_ms(self) -> Optional[int]:
        if self._last_updated_mono is None:
            return None
        return int((self._monotonic() - self._last_updated_mono) * 1000)

    def get_stats(self) -> Dict[str, Any]:
        age_ms = self.age_ms()
        return {
            "count": len(self._vehicles),
            "lastUpdatedAt": _iso_utc(self._last_updated_at),
            "ageMs": age_ms,
            "updateCount": self._update_count,
            "isHealthy": age_ms is not None and age_ms < self.healthy_threshold_s * 1000,
        }

    def reset(self) -> None:
        self._vehicles = {}
        self._last_updated_at = None
        self._last_updated_mono = None
        self._update_count = 0
        self._consecutive_empty_count = 0
