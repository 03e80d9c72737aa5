"""
Health of the services a comparison depends on.

    google_places      POI search       passive: outcomes of real calls
    google_directions  route lines      passive: outcomes of real calls
    osm_tiles          static map       active: one tile fetched every
                                        HEALTH_CHECK_INTERVAL seconds

Google calls cost money, so they are never made just to check health;
GoogleMapsClient reports each call through record_call(). Tiles are free.
"""

import logging
import os
import threading
import time
from collections import deque
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

_TILE_URL = os.environ.get("TILE_CHECK_URL", "https://a.tile.openstreetmap.org/0/0/0.png")
_TILE_TIMEOUT = 10
_WINDOW = 50
_HEALTHY, _DEGRADED = 0.95, 0.70

# Which part of the comparison page goes dark when the service does.
FEATURES = {
    "google_places": "nearby search",
    "google_directions": "routes",
    "osm_tiles": "static map",
}


class HealthMonitor:
    """Rolling success windows for Google plus the last tile check."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls = {name: deque(maxlen=_WINDOW) for name in ("google_places", "google_directions")}
        self._tiles: Optional[Dict[str, Any]] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record_call(self, service: str, success: bool, latency_ms: int,
                    error: Optional[str] = None) -> None:
        with self._lock:
            self._calls.setdefault(service, deque(maxlen=_WINDOW)).append(
                (success, latency_ms, error))

    def _passive_status(self, service: str) -> Dict[str, Any]:
        with self._lock:
            window = list(self._calls.get(service, ()))
        if not window:
            return {"status": "unknown", "sample_size": 0}

        rate = sum(1 for ok, _, _ in window if ok) / len(window)
        status = "healthy" if rate >= _HEALTHY else "degraded" if rate >= _DEGRADED else "down"
        out = {
            "status": status,
            "success_rate": round(rate, 3),
            "latency_ms": int(sum(ms for _, ms, _ in window) / len(window)),
            "sample_size": len(window),
        }
        last_error = next((err for ok, _, err in reversed(window) if not ok and err), None)
        if last_error:
            out["error"] = last_error
        return out

    def check_tiles(self) -> Dict[str, Any]:
        """Fetch one tile from the static-map tile server and store the result."""
        t0 = time.time()
        try:
            resp = requests.get(_TILE_URL, headers={"User-Agent": "RentCompare/1.0 (health check)"},
                                timeout=_TILE_TIMEOUT)
            if resp.status_code == 200:
                result = {"status": "healthy"}
            else:
                result = {"status": "degraded", "error": f"HTTP {resp.status_code}"}
        except requests.Timeout:
            result = {"status": "down", "error": "timeout"}
        except requests.RequestException as e:
            result = {"status": "down", "error": str(e)}
        result["latency_ms"] = int((time.time() - t0) * 1000)

        with self._lock:
            prev, self._tiles = self._tiles, result
        if prev and prev["status"] != result["status"]:
            logger.warning("[health] osm_tiles status changed: %s -> %s (error=%s)",
                           prev["status"], result["status"], result.get("error"))
        else:
            logger.info("[health] osm_tiles: %s (%dms)", result["status"], result["latency_ms"])
        return result

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        out = {svc: self._passive_status(svc) for svc in ("google_places", "google_directions")}
        with self._lock:
            out["osm_tiles"] = dict(self._tiles or {"status": "unknown"})
        for svc, status in out.items():
            status["feature"] = FEATURES[svc]
        return out

    def _loop(self) -> None:
        logger.info("[health] Health monitor thread started (interval=%ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop_event.is_set():
            try:
                self.check_tiles()
            except Exception:
                logger.exception("[health] Unexpected error in tile check")
            self._stop_event.wait(timeout=HEALTH_CHECK_INTERVAL)

    def start(self) -> None:
        """Start the background thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()


_monitor = HealthMonitor()


def record_call(service: str, success: bool, latency_ms: int, error: Optional[str] = None) -> None:
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.get_all_status()


def start_monitor() -> None:
    _monitor.start()
