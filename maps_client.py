"""
Google Maps web-service client for RentCompare.

Covers the three calls the comparison map needs: Places nearby search
(category), Places text search (free-text query) and Directions. Every
call goes through _traced_get, which enforces a timeout, honours a
CancelToken, records the call on the request trace and feeds the passive
health monitor.

The HTTP exchange itself runs on a small worker pool while the caller
waits on "response ready or token cancelled". Cancelling therefore
releases the caller at once: a request still queued is never sent,
pooled connections are closed, and a response that lands afterwards is
closed unread.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple, Union

import requests
from dotenv import load_dotenv

import health_monitor
from map_config import SEARCH_RADII, TIMEOUTS
from rc_trace import get_trace

logger = logging.getLogger(__name__)

load_dotenv()

LatLng = Tuple[float, float]


# =============================================================================
# Errors
# =============================================================================

class MapsError(Exception):
    """Base class for every failure talking to Google Maps."""


class MapsProviderError(MapsError):
    """Google answered, but with a non-OK status (REQUEST_DENIED, NOT_FOUND...)."""

    def __init__(self, endpoint: str, status: str, message: str = ""):
        self.endpoint = endpoint
        self.status = status
        detail = f": {message}" if message else ""
        super().__init__(f"{endpoint} failed: {status}{detail}")


class MapsTimeoutError(MapsError):
    """The request did not complete within its timeout."""

    def __init__(self, endpoint: str, timeout: float):
        self.endpoint = endpoint
        self.timeout = timeout
        super().__init__(f"{endpoint} timed out after {timeout:g}s")


class MapsRequestCancelled(MapsError):
    """The owning view was torn down while the request was pending."""


# =============================================================================
# Cancellation
# =============================================================================

class CancelToken:
    """Cancellation signal tied to the lifetime of one comparison view.

    ``cancel()`` fires registered callbacks (the client registers one
    that wakes the waiting caller and closes its HTTP session) and makes
    every later ``raise_if_cancelled()`` raise.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.warning("Cancel callback failed", exc_info=True)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)
                return _unregister
        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise MapsRequestCancelled("request cancelled")


# =============================================================================
# Client
# =============================================================================

# Which passive-health bucket each endpoint reports into.
_HEALTH_SERVICE = {
    "places_nearby": "google_places",
    "text_search": "google_places",
    "directions": "google_directions",
}


_HTTP_POOL = ThreadPoolExecutor(
    max_workers=int(os.environ.get("MAPS_HTTP_WORKERS", "8")),
    thread_name_prefix="maps-http",
)


def _format_location(point: LatLng) -> str:
    return f"{point[0]},{point[1]}"


def _close_late_response(future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class GoogleMapsClient:
    """Client for the Google Maps Places and Directions web services."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.environ.get("GOOGLE_MAPS_API_KEY", "")
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(
        self,
        endpoint_name: str,
        url: str,
        params: dict,
        timeout: float,
        token: Optional[CancelToken] = None,
    ) -> dict:
        """GET with timeout, cancellation, trace and health recording."""
        if token is not None:
            token.raise_if_cancelled()

        health_service = _HEALTH_SERVICE.get(endpoint_name, "google_places")
        t0 = time.time()
        settled = threading.Event()
        future = _HTTP_POOL.submit(self.session.get, url, params=params, timeout=timeout)
        future.add_done_callback(lambda _f: settled.set())

        def _abort():
            settled.set()
            self.session.close()

        unregister = token.on_cancel(_abort) if token is not None else (lambda: None)
        try:
            settled.wait()
        finally:
            unregister()

        if token is not None and token.cancelled:
            if not future.cancel():
                future.add_done_callback(_close_late_response)
            raise MapsRequestCancelled(f"{endpoint_name} cancelled")

        try:
            response = future.result()
        except requests.Timeout:
            elapsed_ms = int((time.time() - t0) * 1000)
            self._record_health(health_service, False, elapsed_ms, "timeout")
            raise MapsTimeoutError(endpoint_name, timeout)
        except requests.RequestException as e:
            elapsed_ms = int((time.time() - t0) * 1000)
            self._record_health(health_service, False, elapsed_ms, str(e))
            raise MapsError(f"{endpoint_name} request failed: {e}") from e

        elapsed_ms = int((time.time() - t0) * 1000)

        try:
            data = response.json()
        except ValueError as e:
            self._record_health(health_service, False, elapsed_ms, "invalid json")
            raise MapsError(
                f"{endpoint_name} returned non-JSON (HTTP {response.status_code})"
            ) from e

        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_call(endpoint_name, elapsed_ms, response.status_code, provider_status)
        ok = provider_status in ("OK", "ZERO_RESULTS")
        self._record_health(health_service, ok, elapsed_ms,
                            None if ok else provider_status or f"HTTP {response.status_code}")
        return data

    @staticmethod
    def _record_health(service: str, success: bool, latency_ms: int, error: Optional[str]):
        try:
            health_monitor.record_call(service, success, latency_ms, error)
        except Exception:
            logger.debug("health_monitor.record_call failed", exc_info=True)

    # ------------------------------------------------------------------
    # Places
    # ------------------------------------------------------------------

    def places_nearby(
        self,
        lat: float,
        lng: float,
        place_type: str,
        radius_meters: int = SEARCH_RADII.category_m,
        keyword: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> List[Dict]:
        """Search for places of ``place_type`` near a location."""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "key": self.api_key,
        }
        if place_type:
            params["type"] = place_type
        if keyword:
            params["keyword"] = keyword

        data = self._traced_get("places_nearby", url, params, TIMEOUTS.places, token)

        if data.get("status") not in ("OK", "ZERO_RESULTS"):
            raise MapsProviderError("Places API", data.get("status", "UNKNOWN"),
                                    data.get("error_message", ""))

        return data.get("results", [])

    def text_search(
        self,
        query: str,
        lat: float,
        lng: float,
        radius_meters: int = SEARCH_RADII.text_query_m,
        token: Optional[CancelToken] = None,
    ) -> List[Dict]:
        """Search for places using a free-text query near a location"""
        url = f"{self.base_url}/place/textsearch/json"
        params = {
            "query": query,
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "key": self.api_key,
        }
        data = self._traced_get("text_search", url, params, TIMEOUTS.places, token)

        if data.get("status") not in ("OK", "ZERO_RESULTS"):
            raise MapsProviderError("Text Search API", data.get("status", "UNKNOWN"),
                                    data.get("error_message", ""))

        return data.get("results", [])

    # ------------------------------------------------------------------
    # Directions
    # ------------------------------------------------------------------

    def directions(
        self,
        origin: LatLng,
        destination: Union[LatLng, str],
        mode: str = "walking",
        token: Optional[CancelToken] = None,
    ) -> Dict:
        """Return the first route from origin to destination.

        ``destination`` is either a (lat, lng) pair or an opaque Google
        place id.
        """
        url = f"{self.base_url}/directions/json"
        if isinstance(destination, str):
            dest_param = f"place_id:{destination}"
        else:
            dest_param = _format_location(destination)
        params = {
            "origin": _format_location(origin),
            "destination": dest_param,
            "mode": mode,
            "key": self.api_key,
        }
        data = self._traced_get("directions", url, params, TIMEOUTS.directions, token)

        status = data.get("status", "UNKNOWN")
        if status != "OK" or not data.get("routes"):
            raise MapsProviderError("Directions API", status, data.get("error_message", ""))

        return data["routes"][0]
