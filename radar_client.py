"""Async client for the VBB radar endpoint, one request per bounding box."""
from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from rate_tracker import RateTracker


DEFAULT_RADAR_BASE_URL = "https://v6.vbb.transport.rest"
DEFAULT_BOUNDING_BOXES_PATH = Path("config/bounding_boxes.json")
DEFAULT_RADAR_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


class RadarPayloadError(ValueError):
    """Raised when a radar response does not have the expected shape."""


@dataclass(frozen=True)
class BoundingBox:
    id: str
    north: float
    south: float
    east: float
    west: float

    def to_params(self) -> Dict[str, float]:
        return {
            "north": self.north,
            "west": self.west,
            "south": self.south,
            "east": self.east,
        }


@dataclass(frozen=True)
class Movement:
    """A single vehicle as reported by one radar tile."""
    trip_id: str
    name: str
    direction: Optional[str]
    latitude: float
    longitude: float
    category: Optional[str]  # VBB "product", e.g. subway, suburban, bus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "name": self.name,
            "direction": self.direction,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "category": self.category,
        }


# Berlin grid, 0.1682 deg wide columns. Tile 4 is dropped (no service) and
# the dense central tiles 6 and 10 are split into quarters so that no single
# request runs into the upstream result cap.
DEFAULT_BOUNDING_BOXES: List[BoundingBox] = [
    BoundingBox("1", north=52.6755, south=52.5913, west=13.0884, east=13.2566),
    BoundingBox("2", north=52.6755, south=52.5913, west=13.2566, east=13.4248),
    BoundingBox("3", north=52.6755, south=52.5913, west=13.4248, east=13.5929),
    BoundingBox("5", north=52.5913, south=52.5069, west=13.0884, east=13.2566),
    BoundingBox("6-1", north=52.5913, south=52.5491, west=13.2566, east=13.3407),
    BoundingBox("6-2", north=52.5913, south=52.5491, west=13.3407, east=13.4248),
    BoundingBox("6-3", north=52.5491, south=52.5069, west=13.2566, east=13.3407),
    BoundingBox("6-4", north=52.5491, south=52.5069, west=13.3407, east=13.4248),
    BoundingBox("7", north=52.5913, south=52.5069, west=13.4248, east=13.5929),
    BoundingBox("8", north=52.5913, south=52.5069, west=13.5929, east=13.7611),
    BoundingBox("9", north=52.5069, south=52.4226, west=13.0884, east=13.2566),
    BoundingBox("10-1", north=52.5069, south=52.4648, west=13.2566, east=13.3407),
    BoundingBox("10-2", north=52.5069, south=52.4648, west=13.3407, east=13.4248),
    BoundingBox("10-3", north=52.4648, south=52.4226, west=13.2566, east=13.3407),
    BoundingBox("10-4", north=52.4648, south=52.4226, west=13.3407, east=13.4248),
    BoundingBox("11", north=52.5069, south=52.4226, west=13.4248, east=13.5929),
    BoundingBox("12", north=52.5069, south=52.4226, west=13.5929, east=13.7611),
    BoundingBox("13", north=52.4226, south=52.3383, west=13.0884, east=13.2566),
    BoundingBox("14", north=52.4226, south=52.3383, west=13.2566, east=13.4248),
    BoundingBox("15", north=52.4226, south=52.3383, west=13.4248, east=13.5929),
    BoundingBox("16", north=52.4226, south=52.3383, west=13.5929, east=13.7611),
]


def _coerce_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_bounding_box(raw: Any) -> BoundingBox:
    if not isinstance(raw, dict):
        raise ValueError(f"bounding box must be an object, got {type(raw).__name__}")
    box_id = _optional_text(raw.get("id"))
    if box_id is None:
        raise ValueError("bounding box is missing an id")
    bounds: Dict[str, float] = {}
    for key in ("north", "south", "east", "west"):
        value = _coerce_float(raw.get(key))
        if value is None:
            raise ValueError(f"bounding box {box_id} has invalid {key!r}")
        bounds[key] = value
    if bounds["north"] <= bounds["south"]:
        raise ValueError(f"bounding box {box_id}: north must be greater than south")
    if bounds["east"] <= bounds["west"]:
        raise ValueError(f"bounding box {box_id}: east must be greater than west")
    return BoundingBox(id=box_id, **bounds)


def load_bounding_boxes(path: Path = DEFAULT_BOUNDING_BOXES_PATH) -> List[BoundingBox]:
    """Load the tile list from JSON, falling back to the built-in Berlin grid.

    The file holds either a list of boxes or ``{"boxes": [...]}``. Invalid
    entries are skipped; duplicate ids keep the first entry.
    """
    if not path.exists():
        print(f"[radar] bounding box config {path} not found, using built-in tiles")
        return list(DEFAULT_BOUNDING_BOXES)
    try:
        raw = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        print(f"[radar] failed to load bounding box config {path}: {exc}")
        return list(DEFAULT_BOUNDING_BOXES)

    entries = raw.get("boxes") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        print(f"[radar] bounding box config {path} has no box list, using built-in tiles")
        return list(DEFAULT_BOUNDING_BOXES)

    boxes: List[BoundingBox] = []
    seen: set[str] = set()
    for entry in entries:
        try:
            box = parse_bounding_box(entry)
        except ValueError as exc:
            print(f"[radar] skipping bounding box: {exc}")
            continue
        if box.id in seen:
            print(f"[radar] skipping duplicate bounding box id {box.id}")
            continue
        seen.add(box.id)
        boxes.append(box)

    if not boxes:
        print(f"[radar] bounding box config {path} has no valid boxes, using built-in tiles")
        return list(DEFAULT_BOUNDING_BOXES)
    return boxes


def parse_movement(raw: Any) -> Movement:
    if not isinstance(raw, dict):
        raise RadarPayloadError(f"movement must be an object, got {type(raw).__name__}")

    trip_id = _optional_text(raw.get("tripId"))
    if trip_id is None:
        raise RadarPayloadError("movement has no tripId")

    line = raw.get("line")
    if not isinstance(line, dict):
        raise RadarPayloadError(f"movement {trip_id} has no line")
    name = _optional_text(line.get("name"))
    if name is None:
        raise RadarPayloadError(f"movement {trip_id} has no line name")

    location = raw.get("location")
    if not isinstance(location, dict):
        raise RadarPayloadError(f"movement {trip_id} has no location")
    lat = _coerce_float(location.get("latitude"))
    lon = _coerce_float(location.get("longitude"))
    if lat is None or lon is None:
        raise RadarPayloadError(f"movement {trip_id} has invalid coordinates")

    return Movement(
        trip_id=trip_id,
        name=name,
        direction=_optional_text(raw.get("direction")),
        latitude=lat,
        longitude=lon,
        category=_optional_text(line.get("product")),
    )


def parse_radar_payload(payload: Any) -> List[Movement]:
    """Normalize a radar response body.

    A missing or null ``movements`` key is an empty tile. Anything else that
    does not match the expected shape raises ``RadarPayloadError`` so the
    caller can discard the whole tile.
    """
    if not isinstance(payload, dict):
        raise RadarPayloadError(f"radar response must be an object, got {type(payload).__name__}")
    movements = payload.get("movements")
    if movements is None:
        return []
    if not isinstance(movements, list):
        raise RadarPayloadError("radar response 'movements' is not a list")
    return [parse_movement(item) for item in movements]


class RadarClient:
    """Fetches radar movements for a set of tiles.

    Each request is recorded with the shared ``RateTracker`` before it is
    sent. Failures are contained per tile: a tile that errors for any reason
    yields an empty list and its siblings are unaffected.
    """

    def __init__(
        self,
        rate_tracker: RateTracker,
        base_url: str = DEFAULT_RADAR_BASE_URL,
        *,
        timeout: httpx.Timeout = DEFAULT_RADAR_TIMEOUT,
        max_results: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._rate_tracker = rate_tracker
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_results = max_results
        self._client = client

    @property
    def radar_url(self) -> str:
        return f"{self._base_url}/radar"

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _params(self, box: BoundingBox) -> Dict[str, Any]:
        params: Dict[str, Any] = box.to_params()
        if self._max_results:
            params["results"] = self._max_results
        return params

    async def fetch_box(self, box: BoundingBox) -> List[Movement]:
        client = await self._ensure_client()
        self._rate_tracker.record_request()
        try:
            response = await client.get(
                self.radar_url, params=self._params(box), timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            print(f"[radar] fetch error for box {box.id}: {exc!r}")
            return []

        if not response.is_success:
            print(f"[radar] API error for box {box.id}: {response.status_code}")
            return []

        try:
            return parse_radar_payload(response.json())
        except ValueError as exc:
            # json.JSONDecodeError and RadarPayloadError are both ValueErrors
            print(f"[radar] bad payload for box {box.id}: {exc}")
            return []

    async def fetch_all_boxes(self, boxes: Sequence[BoundingBox]) -> List[List[Movement]]:
        """Fetch every tile concurrently; results keep the order of ``boxes``."""
        print(f"[radar] fetching {len(boxes)} bounding boxes")
        results = await asyncio.gather(
            *(self.fetch_box(box) for box in boxes),
            return_exceptions=True,
        )
        tiles: List[List[Movement]] = []
        for box, result in zip(boxes, results):
            if isinstance(result, Exception):
                print(f"[radar] box {box.id} failed: {result!r}")
                tiles.append([])
            else:
                tiles.append(result)
        return tiles
