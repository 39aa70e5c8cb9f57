import asyncio
import sys
from pathlib import Path

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from position_cache import PositionCache  # noqa: E402
from radar_client import BoundingBox, Movement, RadarClient  # noqa: E402
from radar_poller import RadarPoller  # noqa: E402
from rate_tracker import RateTracker  # noqa: E402


BOXES = [
    BoundingBox("a", north=52.6, south=52.5, west=13.3, east=13.4),
    BoundingBox("b", north=52.6, south=52.5, west=13.4, east=13.5),
]


def _movement(trip_id, lat=52.50, lon=13.40):
    return Movement(
        trip_id=trip_id,
        name="U2",
        direction="Pankow",
        latitude=lat,
        longitude=lon,
        category="subway",
    )


class StubRadarClient:
    """Returns queued per-tile results; an Exception in the queue is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0
        self.gate = None

    async def fetch_all_boxes(self, boxes):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if self.responses else [[] for _ in boxes]
        if isinstance(response, Exception):
            raise response
        return response


def test_poll_applies_deduplicated_movements():
    client = StubRadarClient([[_movement("t1")], [_movement("t1"), _movement("t2")]])
    cache = PositionCache()
    poller = RadarPoller(client, cache, BOXES)

    applied = asyncio.run(poller.poll())

    assert applied is True
    assert sorted(m["tripId"] for m in cache.get_all()) == ["t1", "t2"]
    assert poller.stats.total_polls == 1
    assert poller.stats.successful_polls == 1
    assert poller.stats.last_non_empty_poll_time is not None
    assert poller.is_polling is False


def test_empty_poll_keeps_cached_vehicles():
    client = StubRadarClient([[_movement("t1")], []], [[], []])
    cache = PositionCache()
    poller = RadarPoller(client, cache, BOXES)

    asyncio.run(poller.poll())
    applied = asyncio.run(poller.poll())

    assert applied is False
    assert [m["tripId"] for m in cache.get_all()] == ["t1"]
    assert cache.consecutive_empty_count == 1
    assert poller.stats.empty_polls == 1
    assert poller.stats.consecutive_empty_polls == 1


def test_recovery_resets_consecutive_empty_polls():
    client = StubRadarClient([[], []], [[], []], [[_movement("t1")], []])
    poller = RadarPoller(client, PositionCache(), BOXES)

    for _ in range(3):
        asyncio.run(poller.poll())

    assert poller.stats.empty_polls == 2
    assert poller.stats.successful_polls == 1
    assert poller.stats.consecutive_empty_polls == 0


def test_failed_cycle_leaves_cache_untouched():
    client = StubRadarClient([[_movement("t1")], []], RuntimeError("upstream exploded"))
    cache = PositionCache()
    poller = RadarPoller(client, cache, BOXES)

    asyncio.run(poller.poll())
    update_count = cache.update_count
    applied = asyncio.run(poller.poll())

    assert applied is False
    assert poller.stats.failed_polls == 1
    assert poller.stats.last_error == "upstream exploded"
    assert poller.is_polling is False
    assert cache.update_count == update_count
    assert cache.consecutive_empty_count == 0
    assert [m["tripId"] for m in cache.get_all()] == ["t1"]


def test_overlapping_trigger_is_skipped():
    client = StubRadarClient([[_movement("t1")], []])
    poller = RadarPoller(client, PositionCache(), BOXES)

    async def scenario():
        client.gate = asyncio.Event()
        first = asyncio.create_task(poller.poll())
        await asyncio.sleep(0)
        assert poller.is_polling is True
        skipped = await poller.poll()
        client.gate.set()
        return skipped, await first

    skipped, applied = asyncio.run(scenario())

    assert skipped is False
    assert applied is True
    assert client.calls == 1
    assert poller.stats.total_polls == 1
    assert poller.stats.skipped_polls == 1
    assert poller.is_polling is False


def test_start_polls_immediately_and_repeats_until_stopped():
    client = StubRadarClient(*[[[_movement("t1")], []] for _ in range(50)])
    cache = PositionCache()
    poller = RadarPoller(client, cache, BOXES, interval_s=0.05)

    async def scenario():
        poller.start()
        poller.start()
        await asyncio.sleep(0.01)
        first_calls = client.calls
        await asyncio.sleep(0.17)
        poller.stop()
        await poller.wait_idle(timeout=1.0)
        calls_at_stop = client.calls
        await asyncio.sleep(0.15)
        return first_calls, calls_at_stop, client.calls

    first_calls, calls_at_stop, final_calls = asyncio.run(scenario())

    assert first_calls == 1
    assert calls_at_stop >= 3
    assert final_calls == calls_at_stop
    assert poller.is_running is False
    assert cache.update_count == calls_at_stop


def test_stop_lets_in_flight_cycle_finish():
    client = StubRadarClient([[_movement("t1")], []])
    cache = PositionCache()
    poller = RadarPoller(client, cache, BOXES, interval_s=10)

    async def scenario():
        client.gate = asyncio.Event()
        poller.start()
        await asyncio.sleep(0.01)
        poller.stop()
        assert poller.is_polling is True
        client.gate.set()
        return await poller.wait_idle(timeout=1.0)

    assert asyncio.run(scenario()) is True
    assert [m["tripId"] for m in cache.get_all()] == ["t1"]


def test_poll_with_real_client_survives_all_tiles_failing():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    tracker = RateTracker()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = RadarClient(tracker, "https://radar.example.com", client=http_client)
    cache = PositionCache()
    cache.update([_movement("t1")])
    poller = RadarPoller(client, cache, BOXES)

    applied = asyncio.run(poller.poll())

    assert applied is False
    assert poller.stats.empty_polls == 1
    assert tracker.get_stats()["count"] == len(BOXES)
    assert [m["tripId"] for m in cache.get_all()] == ["t1"]


def test_poll_keeps_good_tiles_when_one_body_cannot_be_decoded():
    def handler(request: httpx.Request) -> httpx.Response:
        if float(request.url.params["west"]) == BOXES[0].west:
            return httpx.Response(200, content=b"[" * 200_000 + b"]" * 200_000)
        return httpx.Response(
            200,
            json={
                "movements": [
                    {
                        "tripId": "t9",
                        "line": {"name": "S1", "product": "suburban"},
                        "location": {"latitude": 52.55, "longitude": 13.45},
                    }
                ]
            },
        )

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = RadarClient(RateTracker(), "https://radar.example.com", client=http_client)
    cache = PositionCache()
    poller = RadarPoller(client, cache, BOXES)

    applied = asyncio.run(poller.poll())

    assert applied is True
    assert poller.stats.failed_polls == 0
    assert [m["tripId"] for m in cache.get_all()] == ["t9"]


def test_to_dict_reports_counters():
    poller = RadarPoller(StubRadarClient(), PositionCache(), BOXES, interval_s=20)
    asyncio.run(poller.poll())

    payload = poller.to_dict()

    assert payload["totalPolls"] == 1
    assert payload["emptyPolls"] == 1
    assert payload["isPolling"] is False
    assert payload["isRunning"] is False
    assert payload["intervalS"] == 20
    assert payload["boxCount"] == 2
