"""
Route calculation between a property and a point of interest.

RouteCalculator asks Google Directions for a route, caches it for the
life of the comparison session and draws it on the MapSession as a
"route" overlay keyed by destination. Each (property, destination) pair
runs a small state machine:

    idle -> requesting -> rendered | failed
    rendered/failed -> requesting   (explicit re-request only)

Re-requesting first removes the pair's existing overlay, so repeated
clicks never stack polylines.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from map_config import ROUTE_CACHE_PRECISION
from map_session import MapSession, OVERLAY_ROUTE
from maps_client import (
    CancelToken,
    GoogleMapsClient,
    MapsError,
    MapsRequestCancelled,
    MapsTimeoutError,
)
from rc_trace import get_trace

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]

ROUTE_FAILED_MESSAGE = "Unable to calculate route"
ROUTE_TIMEOUT_MESSAGE = "Route request timed out. Try again."


class TravelMode(str, Enum):
    WALKING = "walking"
    DRIVING = "driving"
    TRANSIT = "transit"
    BICYCLING = "bicycling"


class RouteState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    RENDERED = "rendered"
    FAILED = "failed"


# =============================================================================
# Route value objects
# =============================================================================

@dataclass(frozen=True)
class RouteStep:
    distance_m: int
    start: LatLng
    end: LatLng


@dataclass(frozen=True)
class Route:
    distance: str           # human-readable, e.g. "1.2 mi"
    duration: str           # human-readable, e.g. "8 mins"
    distance_m: int
    duration_s: int
    mode: str
    steps: Tuple[RouteStep, ...] = ()
    path: Tuple[LatLng, ...] = ()

    @classmethod
    def from_directions(cls, route: Dict, mode: str) -> "Route":
        """Build from the first route of a Directions API response."""
        leg = route["legs"][0]
        steps = []
        for step in leg.get("steps", []):
            start = step["start_location"]
            end = step["end_location"]
            steps.append(RouteStep(
                distance_m=int((step.get("distance") or {}).get("value", 0)),
                start=(start["lat"], start["lng"]),
                end=(end["lat"], end["lng"]),
            ))
        start = leg["start_location"]
        path = [(start["lat"], start["lng"])] + [s.end for s in steps]
        return cls(
            distance=(leg.get("distance") or {}).get("text", "Unknown"),
            duration=(leg.get("duration") or {}).get("text", "Unknown"),
            distance_m=int((leg.get("distance") or {}).get("value", 0)),
            duration_s=int((leg.get("duration") or {}).get("value", 0)),
            mode=mode,
            steps=tuple(steps),
            path=tuple(path),
        )

    def midpoint(self) -> Optional[LatLng]:
        point = route_midpoint(self.steps)
        if point is None and self.path:
            point = self.path[len(self.path) // 2]
        return point

    def to_dict(self) -> Dict[str, Any]:
        mid = self.midpoint()
        return {
            "distance": self.distance,
            "duration": self.duration,
            "distance_m": self.distance_m,
            "duration_s": self.duration_s,
            "mode": self.mode,
            "route": [{"lat": lat, "lng": lng} for lat, lng in self.path],
            "midpoint": {"lat": mid[0], "lng": mid[1]} if mid else None,
        }


def route_midpoint(steps: Tuple[RouteStep, ...]) -> Optional[LatLng]:
    """Step end point whose cumulative distance is nearest half the route.

    Uses distance along the route rather than the middle array index, so
    the label lands near the visual middle even when one step is much
    longer than the others. Ties go to the later step. With no distance
    information the middle step is used.
    """
    if not steps:
        return None
    total = sum(s.distance_m for s in steps)
    if total <= 0:
        return steps[len(steps) // 2].end

    half = total / 2.0
    covered = 0
    best, best_gap = steps[0].end, None
    for step in steps:
        covered += step.distance_m
        gap = abs(covered - half)
        if best_gap is None or gap <= best_gap:
            best, best_gap = step.end, gap
        if covered >= half:
            break
    return best


def route_cache_key(origin: LatLng, destination: Union[LatLng, str], mode) -> str:
    """Cache key from rounded coordinates (or place id) plus travel mode."""
    p = ROUTE_CACHE_PRECISION
    mode_value = TravelMode(mode).value
    o = f"{origin[0]:.{p}f},{origin[1]:.{p}f}"
    if isinstance(destination, str):
        d = f"place_id:{destination}"
    else:
        d = f"{destination[0]:.{p}f},{destination[1]:.{p}f}"
    return f"{o}->{d}|{mode_value}"


class RouteCache:
    """In-memory route cache for one comparison session.

    Entries are write-once: routes between fixed points do not change
    during a session, and live traffic is out of scope.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Route] = {}

    def get(self, key: str) -> Optional[Route]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, route: Route) -> Route:
        """Store ``route`` unless ``key`` is already cached; return the cached value."""
        with self._lock:
            return self._entries.setdefault(key, route)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class RouteRecord:
    """Route state for one (origin property, destination) pair."""
    origin_id: Any
    destination_id: str
    state: RouteState = RouteState.IDLE
    route: Optional[Route] = None
    error: Optional[str] = None
    timed_out: bool = False
    overlay_id: Optional[str] = None
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "origin": self.origin_id,
            "destination": self.destination_id,
            "state": self.state.value,
            "error": self.error,
            "timed_out": self.timed_out,
            "from_cache": self.from_cache,
        }
        if self.route is not None:
            d.update(self.route.to_dict())
        return d


def _destination_for(poi) -> Union[LatLng, str]:
    if poi.lat is not None and poi.lng is not None:
        return (poi.lat, poi.lng)
    if poi.place_id:
        return poi.place_id
    raise ValueError(f"POI {poi.name!r} has neither coordinates nor place id")


def destination_id(poi) -> str:
    if poi.place_id:
        return poi.place_id
    return f"{poi.lat:.{ROUTE_CACHE_PRECISION}f},{poi.lng:.{ROUTE_CACHE_PRECISION}f}"


def _record_cache_hit():
    trace = get_trace()
    if trace:
        trace.record_cache_hit("directions")


def _trace_route(rec: "RouteRecord"):
    trace = get_trace()
    if trace:
        trace.record_route(rec.origin_id, rec.state.value, cached=rec.from_cache,
                           message=rec.error or "")


# =============================================================================
# Calculator
# =============================================================================

class RouteCalculator:
    """Computes, caches and renders property -> POI routes for one session.

    ``lock`` guards the records and the session's route overlays. It is
    never held across a Directions call, so readers of the view do not
    wait on the network.
    """

    def __init__(
        self,
        maps: GoogleMapsClient,
        session: MapSession,
        cache: Optional[RouteCache] = None,
        mode: TravelMode = TravelMode.WALKING,
        lock=None,
    ):
        self.maps = maps
        self.session = session
        self.cache = cache if cache is not None else RouteCache()
        self.mode = TravelMode(mode)
        self._lock = lock if lock is not None else threading.RLock()
        self._records: Dict[Tuple[Any, str], RouteRecord] = {}

    def record(self, origin_id: Any, destination_id: str) -> Optional[RouteRecord]:
        with self._lock:
            return self._records.get((origin_id, destination_id))

    def state(self, origin_id: Any, destination_id: str) -> RouteState:
        rec = self.record(origin_id, destination_id)
        return rec.state if rec else RouteState.IDLE

    def records(self, origin_id: Any = None) -> List[RouteRecord]:
        with self._lock:
            return [r for r in self._records.values()
                    if origin_id is None or r.origin_id == origin_id]

    def _fetch(self, origin: LatLng, destination, mode: TravelMode,
               token: Optional[CancelToken]) -> Tuple[Route, bool]:
        key = route_cache_key(origin, destination, mode)
        cached = self.cache.get(key)
        if cached is not None:
            _record_cache_hit()
            return cached, True
        data = self.maps.directions(origin, destination, mode.value, token=token)
        route = Route.from_directions(data, mode.value)
        return self.cache.put(key, route), False

    def request(
        self,
        origin_id: Any,
        origin: LatLng,
        poi,
        mode: Optional[TravelMode] = None,
        color: str = "#4285F4",
        token: Optional[CancelToken] = None,
    ) -> RouteRecord:
        """Compute (or reuse) the route to ``poi`` and draw it.

        Failures are recorded on the returned RouteRecord; only
        cancellation propagates, so a batch can stop cleanly.
        """
        mode = TravelMode(mode or self.mode)
        dest_id = destination_id(poi)
        rec = RouteRecord(origin_id=origin_id, destination_id=dest_id, state=RouteState.REQUESTING)
        with self._lock:
            self.session.remove_overlay(OVERLAY_ROUTE, dest_id, owner=origin_id)
            self._records[(origin_id, dest_id)] = rec

        try:
            route, from_cache = self._fetch(origin, _destination_for(poi), mode, token)
        except MapsRequestCancelled:
            with self._lock:
                if self._records.get((origin_id, dest_id)) is rec:
                    del self._records[(origin_id, dest_id)]
            raise
        except MapsTimeoutError as e:
            logger.warning("Route %s -> %s timed out: %s", origin_id, dest_id, e)
            with self._lock:
                rec.state, rec.error, rec.timed_out = RouteState.FAILED, ROUTE_TIMEOUT_MESSAGE, True
            _trace_route(rec)
            return rec
        except (MapsError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("Route %s -> %s failed: %s", origin_id, dest_id, e)
            with self._lock:
                rec.state, rec.error = RouteState.FAILED, ROUTE_FAILED_MESSAGE
            _trace_route(rec)
            return rec

        mid = route.midpoint()
        with self._lock:
            rec.route, rec.from_cache = route, from_cache
            overlay = self.session.add_overlay(
                OVERLAY_ROUTE,
                {
                    "path": [{"lat": lat, "lng": lng} for lat, lng in route.path],
                    "color": color,
                    "distance": route.distance,
                    "duration": route.duration,
                    "mode": route.mode,
                    "label": {
                        "text": route.duration,
                        "position": {"lat": mid[0], "lng": mid[1]} if mid else None,
                    },
                },
                owner=origin_id,
                key=dest_id,
            )
            rec.overlay_id = overlay.handle_id if overlay else None
            rec.state = RouteState.RENDERED
        _trace_route(rec)
        return rec

    def summary(
        self,
        origin: LatLng,
        poi,
        mode: Optional[TravelMode] = None,
        token: Optional[CancelToken] = None,
    ) -> Optional[Route]:
        """Distance and duration only; nothing is drawn. None on failure."""
        mode = TravelMode(mode or self.mode)
        try:
            route, _ = self._fetch(origin, _destination_for(poi), mode, token)
            return route
        except MapsRequestCancelled:
            raise
        except (MapsError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.info("Route summary to %s failed: %s", getattr(poi, "name", "?"), e)
            return None

    def retire(self, origin_id: Any = None, destination_ids: Optional[List[str]] = None) -> int:
        """Drop records and overlays for an origin (optionally some destinations)."""
        removed = 0
        with self._lock:
            for key in list(self._records):
                o, d = key
                if origin_id is not None and o != origin_id:
                    continue
                if destination_ids is not None and d not in destination_ids:
                    continue
                self.session.remove_overlay(OVERLAY_ROUTE, d, owner=o)
                del self._records[key]
                removed += 1
        return removed
