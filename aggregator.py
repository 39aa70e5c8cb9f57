"""Merges per-tile radar results into one deduplicated vehicle list."""
from __future__ import annotations

from typing import Dict, Iterable, List

from radar_client import Movement


def aggregate_movements(tile_results: Iterable[Iterable[Movement]]) -> List[Movement]:
    """Flatten per-tile results and drop duplicate trips.

    A vehicle near a shared tile edge is reported by both tiles. The first
    record seen (in tile configuration order) wins; later copies are dropped
    without merging any fields.
    """
    unique: Dict[str, Movement] = {}
    total = 0
    for movements in tile_results:
        for movement in movements:
            total += 1
            if movement.trip_id not in unique:
                unique[movement.trip_id] = movement
    print(f"[aggregate] fetched {total} movements, {len(unique)} unique")
    return list(unique.values())
