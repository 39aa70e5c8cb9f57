"""
VBB Radar Cache Service: live vehicle positions API (FastAPI)

Purpose
=======
Poll the VBB radar endpoint across a grid of bounding boxes, deduplicate the
vehicles seen in overlapping tiles, and serve the latest position of every
trip (plus its previous position, for animation) to map clients.

Key features
------------
- Background poller: one request per tile, all tiles in parallel, at most one
  cycle in flight.
- Staleness guard: an empty upstream response never clears the cache; the
  growing cache age flips the health flag instead.
- Rolling per-minute accounting of upstream requests against the rate limit.
- REST endpoints for movements, cache stats, rate-limit usage, poller
  counters, and a health probe that returns 503 when the data goes stale.

Run
---
$ uvicorn app:app --port 3000
$ python app.py

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""

from __future__ import annotations
from typing import Any, Dict, List
import os, time
from datetime import datetime, timezone
from pathlib import Path

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from position_cache import PositionCache
from radar_client import RadarClient, load_bounding_boxes
from radar_poller import RadarPoller
from rate_tracker import RateTracker

# ---------------------------
# Config
# ---------------------------
BASE_DIR = Path(__file__).resolve().parent

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5500",
    "http://localhost:5000",
    "http://127.0.0.1:5000",
    "http://127.0.0.1:5500",
]
ALLOWED_ORIGINS: List[str] = [
    origin.strip()
    for origin in (os.getenv("ALLOWED_ORIGINS") or ",".join(DEFAULT_ALLOWED_ORIGINS)).split(",")
    if origin.strip()
]

RADAR_BASE_URL = os.getenv("RADAR_BASE_URL", "https://v6.vbb.transport.rest")
RADAR_HTTP_TIMEOUT_S = float(os.getenv("RADAR_HTTP_TIMEOUT_S", "10"))
RADAR_HTTP_TIMEOUT = httpx.Timeout(RADAR_HTTP_TIMEOUT_S, connect=min(5.0, RADAR_HTTP_TIMEOUT_S))
# Upstream caps each radar response (256 by default); 0 leaves it unset
RADAR_MAX_RESULTS = int(os.getenv("RADAR_MAX_RESULTS", "0")) or None
BOUNDING_BOXES_PATH = Path(
    os.getenv("BOUNDING_BOXES_PATH", str(BASE_DIR / "config" / "bounding_boxes.json"))
)

POLL_INTERVAL_S = float(os.getenv("POLL_INTERVAL_S", "20"))
RADAR_POLLER_ENABLED = os.getenv("RADAR_POLLER_ENABLED", "1").strip().lower() not in {"0", "false", "no", "off"}

RATE_LIMIT_PER_MIN = int(os.getenv("RATE_LIMIT_PER_MIN", "100"))
RATE_WINDOW_S = float(os.getenv("RATE_WINDOW_S", "60"))

# Cache older than this is reported as unhealthy (and /health returns 503)
CACHE_HEALTHY_THRESHOLD_S = float(os.getenv("CACHE_HEALTHY_THRESHOLD_S", "60"))

SHUTDOWN_GRACE_S = 10.0

# Polled every few seconds by dashboards; not logged
SILENT_PATHS = {"/api/rate-limit", "/health"}

PROCESS_STARTED_AT = time.monotonic()

# ---------------------------
# App & state
# ---------------------------
rate_tracker = RateTracker(limit=RATE_LIMIT_PER_MIN, window_s=RATE_WINDOW_S)
position_cache = PositionCache(healthy_threshold_s=CACHE_HEALTHY_THRESHOLD_S)
bounding_boxes = load_bounding_boxes(BOUNDING_BOXES_PATH)
radar_client = RadarClient(
    rate_tracker,
    RADAR_BASE_URL,
    timeout=RADAR_HTTP_TIMEOUT,
    max_results=RADAR_MAX_RESULTS,
)
radar_poller = RadarPoller(
    radar_client,
    position_cache,
    bounding_boxes,
    interval_s=POLL_INTERVAL_S,
)

app = FastAPI(title="VBB Radar Cache")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    origin = request.headers.get("origin")
    if origin and origin not in ALLOWED_ORIGINS:
        print(f"[cors] blocked request from origin: {origin}")
    start = time.perf_counter()
    response = await call_next(request)
    if request.url.path not in SILENT_PATHS:
        duration_ms = int((time.perf_counter() - start) * 1000)
        print(
            f"[{_now_iso()}] {request.method} {request.url.path} "
            f"{response.status_code} - {duration_ms}ms"
        )
    return response


@app.on_event("startup")
async def start_radar_poller() -> None:
    if RADAR_POLLER_ENABLED:
        radar_poller.start()
    else:
        print("[startup] radar poller disabled (RADAR_POLLER_ENABLED=0)")
    print(f"[startup] server running on port {PORT}")
    print("[startup] CORS allowed origins:")
    for origin in ALLOWED_ORIGINS:
        print(f"[startup]   - {origin}")
    print("[startup] API endpoints:")
    for path in ("/api/movements", "/api/stats", "/api/rate-limit", "/api/poller", "/health"):
        print(f"[startup]   GET http://localhost:{PORT}{path}")


@app.on_event("shutdown")
async def stop_radar_poller() -> None:
    print("[shutdown] stopping radar poller")
    radar_poller.stop()
    if not await radar_poller.wait_idle(timeout=SHUTDOWN_GRACE_S):
        print(f"[shutdown] poll still running after {SHUTDOWN_GRACE_S:g}s, closing anyway")
    await radar_client.aclose()
    print("[shutdown] radar client closed")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _internal_error(route: str, exc: Exception) -> JSONResponse:
    print(f"[api] {route} error: {exc!r}")
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------
# Movements & stats
# ---------------------------
@app.get("/api/movements")
async def api_movements():
    """All cached vehicles plus the cache metadata clients use to spot stale data."""
    try:
        movements = position_cache.get_all()
        stats = position_cache.get_stats()
        return {
            "movements": movements,
            "meta": {
                "count": stats["count"],
                "lastUpdatedAt": stats["lastUpdatedAt"],
                "ageMs": stats["ageMs"],
                "isHealthy": stats["isHealthy"],
            },
        }
    except Exception as exc:
        return _internal_error("/api/movements", exc)


@app.get("/api/stats")
async def api_stats():
    try:
        stats = position_cache.get_stats()
    except Exception as exc:
        return _internal_error("/api/stats", exc)
    print(f"[api] /api/stats - cache has {stats['count']} movements, age: {stats['ageMs']}")
    return stats


@app.get("/api/rate-limit")
async def api_rate_limit():
    try:
        return rate_tracker.get_stats()
    except Exception as exc:
        return _internal_error("/api/rate-limit", exc)


@app.get("/api/poller")
async def api_poller():
    try:
        return radar_poller.to_dict()
    except Exception as exc:
        return _internal_error("/api/poller", exc)


# ---------------------------
# Health
# ---------------------------
@app.get("/health")
async def health():
    """Liveness probe. 503 once the cache has gone stale so a supervisor can restart us."""
    try:
        stats = position_cache.get_stats()
    except Exception as exc:
        return _internal_error("/health", exc)
    healthy = bool(stats["isHealthy"])
    payload: Dict[str, Any] = {
        "status": "healthy" if healthy else "degraded",
        "timestamp": _now_iso(),
        "uptime": round(time.monotonic() - PROCESS_STARTED_AT, 3),
        "cache": {
            "count": stats["count"],
            "ageMs": stats["ageMs"],
            "isHealthy": healthy,
        },
    }
    if not healthy:
        print("[health] cache unhealthy, returning 503")
    return JSONResponse(payload, status_code=200 if healthy else 503)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)
