"""
Comparison view: side-by-side proximity comparison for 2..N properties.

A ComparisonView owns one MapSession plus the POI and route state drawn
on it. Two locks keep it consistent:

    lock        serialises user actions, so a "find nearest" batch runs in
                property order and never interleaves with another action
                on the same view. Held across network calls.
    state_lock  guards the session, POI sets and route records. Held only
                while they change or while they are read, never across a
                network call, so ``to_dict()`` and ``rows()`` answer while
                a batch is in flight and show its per-row progress.

Closing the view cancels its token first, which releases whatever request
is in flight and makes late results a no-op. Changing the property list
cancels the same way, but the interrupted action reports
ActionSuperseded instead of ViewClosed, since the view lives on.

SessionRegistry maps opaque ids to live views for the HTTP layer and
tears down views that have been idle too long.
"""

import functools
import logging
import os
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

import info_windows
from map_config import (
    MAX_COMPARE_PROPERTIES,
    MIN_COMPARE_PROPERTIES,
    property_color,
)
from map_session import LAYER_POI, LAYER_PROPERTY, LAYER_ROUTE, MapSession
from maps_client import CancelToken, GoogleMapsClient, MapsRequestCancelled
from poi_locator import (
    Category,
    LocateOutcome,
    LocateStatus,
    PoiLocator,
    PoiStore,
    SearchTerm,
    parse_query,
)
from rc_trace import get_trace
from recent_searches import RecentSearchStore
from routing import (
    RouteCache,
    RouteCalculator,
    RouteRecord,
    RouteState,
    TravelMode,
    destination_id,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_MESSAGE = "Please select at least 2 properties to enable comparison"

MODE_INTERACTIVE = "interactive"
MODE_STATIC = "static"
VIEW_MODES = (MODE_INTERACTIVE, MODE_STATIC)

STATUS_LABELS = {
    LocateStatus.IDLE: "No data yet",
    LocateStatus.SEARCHING: "Searching…",
    LocateStatus.NO_LOCATION: "No location data",
}


class ViewClosed(Exception):
    """The comparison view was closed before or during the action."""


class ActionSuperseded(Exception):
    """The property list changed while the action ran; the view is still open."""


def _query_label(query) -> str:
    return query.label if isinstance(query, (Category, SearchTerm)) else str(query)


class ComparisonView:
    def __init__(
        self,
        properties: Sequence[Any],
        source,
        maps: GoogleMapsClient,
        travel_mode: TravelMode = TravelMode.WALKING,
        recent: Optional[RecentSearchStore] = None,
        view_id: Optional[str] = None,
        provider_loader: Optional[Callable[[], str]] = None,
        container: Optional[Dict[str, Any]] = None,
    ):
        if len(properties) > MAX_COMPARE_PROPERTIES:
            raise ValueError(f"at most {MAX_COMPARE_PROPERTIES} properties can be compared")
        self.view_id = view_id or uuid.uuid4().hex[:12]
        self.lock = threading.RLock()
        self.state_lock = threading.RLock()
        self.maps = maps
        self.locator = PoiLocator(source)
        self.travel_mode = TravelMode(travel_mode)
        self.recent = recent if recent is not None else RecentSearchStore()
        self.route_cache = RouteCache()
        self.properties: List[Any] = list(properties)
        self.query = None
        self.mode = MODE_INTERACTIVE
        self.highlighted_id = None
        self.closed = False
        self._closing = False
        self.last_touched = time.time()

        self.session: Optional[MapSession] = None
        self.routes: Optional[RouteCalculator] = None
        self.pois: Optional[PoiStore] = None
        self._provider_loader = provider_loader
        self._container = container
        self._build()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return len(self.properties) >= MIN_COMPARE_PROPERTIES

    @property
    def placeholder(self) -> Optional[str]:
        return None if self.ready else PLACEHOLDER_MESSAGE

    @property
    def token(self) -> Optional[CancelToken]:
        return self.session.token if self.session else None

    def _build(self):
        if not self.ready:
            logger.info("[view %s] %d properties, showing placeholder",
                        self.view_id, len(self.properties))
            with self.state_lock:
                self.session = self.routes = self.pois = None
            return

        session = MapSession(self.view_id, token=CancelToken())
        routes = RouteCalculator(self.maps, session, cache=self.route_cache,
                                 mode=self.travel_mode, lock=self.state_lock)
        pois = PoiStore(session, routes=routes, lock=self.state_lock)
        usable = session.initialize(self.properties, self._container, self._provider_loader)
        with self.state_lock:
            self.session, self.routes, self.pois = session, routes, pois
            session.set_property_markers(self.properties, self.highlighted_id)
            if not usable:
                self.mode = MODE_STATIC

    def _touch(self):
        if self.closed:
            raise ViewClosed(self.view_id)
        self.last_touched = time.time()

    def _interrupted(self) -> Exception:
        """What a cancelled action reports: closed view or replaced property list."""
        if self._closing or self.closed:
            return ViewClosed(self.view_id)
        return ActionSuperseded(self.view_id)

    def close(self):
        """Cancel in-flight requests and tear the map down. Safe to repeat."""
        self._closing = True
        token = self.token
        if token is not None:
            # Outside the lock: a running action holds it while it waits on the network.
            token.cancel()
        with self.lock, self.state_lock:
            if self.session is not None:
                self.session.teardown()
            self.closed = True

    def set_properties(self, properties: Sequence[Any]):
        """Swap the property list; the map session is rebuilt from scratch.

        Results for properties still in the list are redrawn from memory
        and the route cache, so this makes no network calls.
        """
        if len(properties) > MAX_COMPARE_PROPERTIES:
            raise ValueError(f"at most {MAX_COMPARE_PROPERTIES} properties can be compared")
        old_token = self.token
        if old_token is not None:
            old_token.cancel()
        with self.lock:
            self._touch()
            keep_ids = {p.id for p in properties}
            kept_sets, kept_routes = [], []
            with self.state_lock:
                if self.pois is not None:
                    kept_sets = [o for o in self.pois.outcomes() if o.property_id in keep_ids]
                    kept_routes = [(r.origin_id, r.destination_id) for r in self.routes.records()
                                   if r.origin_id in keep_ids and r.state == RouteState.RENDERED]
                    self.session.teardown()

                self.properties = list(properties)
                if self.highlighted_id not in keep_ids:
                    self.highlighted_id = None
            self._build()
            if self.session is None:
                return

            # Every kept route is in the route cache, so these redraws make no calls.
            for outcome in kept_sets:
                self.pois.apply(outcome)
            for origin_id, dest_id in kept_routes:
                prop = self._property(origin_id)
                poi = self.pois.find(origin_id, dest_id)
                if poi is not None:
                    self._route(prop, poi)

    def set_mode(self, mode: str):
        """Interactive map or static table. Purely presentational."""
        if mode not in VIEW_MODES:
            raise ValueError(f"unknown view mode: {mode}")
        with self.lock, self.state_lock:
            self._touch()
            if mode == MODE_INTERACTIVE and self.session is not None and self.session.degraded:
                raise ValueError(self.session.error or "Interactive map unavailable")
            self.mode = mode

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _property(self, property_id):
        for prop in self.properties:
            if prop.id == property_id or str(prop.id) == str(property_id):
                return prop
        raise KeyError(property_id)

    def _color_for(self, prop) -> str:
        return property_color(self.properties.index(prop))

    def _route(self, prop, poi, token: Optional[CancelToken] = None) -> RouteRecord:
        record = self.routes.request(
            prop.id, prop.coordinate, poi,
            mode=self.travel_mode,
            color=self._color_for(prop),
            token=token or self.token,
        )
        if record.state == RouteState.FAILED:
            logger.info("[view %s] route %s -> %s failed: %s",
                        self.view_id, prop.id, record.destination_id, record.error)
        return record

    def find_nearest(self, query) -> List[Dict[str, Any]]:
        """Search every property for ``query`` and route each to its nearest hit.

        Properties are processed strictly in order: search, then at most
        one route request, then the next property.
        """
        with self.lock:
            self._touch()
            if not self.ready:
                return self.rows()
            query = parse_query(query)
            if isinstance(query, SearchTerm):
                self.recent.record(query.text)

            token = self.token
            with self.state_lock:
                self.query = query
                for prop in self.properties:
                    self.pois.mark_searching(prop.id, query.key)

            def _after(prop, outcome: LocateOutcome):
                self.pois.apply(outcome)
                if outcome.nearest is not None:
                    self._route(prop, outcome.nearest, token)

            self.locator.locate_batch(self.properties, query, token=token, on_result=_after)
            if token.cancelled:
                raise self._interrupted()
            return self.rows()

    def locate_for_property(self, property_id, query) -> Dict[str, Any]:
        """Category button in a property's info window.

        Draws the results, routes to the nearest and fills distance-only
        summaries for the others in a results window.
        """
        with self.lock:
            self._touch()
            if not self.ready:
                raise ValueError(PLACEHOLDER_MESSAGE)
            prop = self._property(property_id)
            query = parse_query(query)
            if isinstance(query, SearchTerm):
                self.recent.record(query.text)
            token = self.token

            try:
                self.pois.mark_searching(prop.id, query.key)
                outcome = self.locator.locate(prop, query, token)
                self.pois.apply(outcome)

                record = None
                summaries = {}
                if outcome.nearest is not None:
                    record = self._route(prop, outcome.nearest, token)
                    summaries[outcome.nearest.place_id] = record.route
                    for poi in outcome.pois[1:]:
                        summaries[poi.place_id] = self.routes.summary(
                            prop.coordinate, poi, mode=self.travel_mode, token=token,
                        )
            except MapsRequestCancelled as e:
                raise self._interrupted() from e

            html, actions = info_windows.render_results_window(
                prop, _query_label(query), outcome, summaries,
            )
            if outcome.nearest is not None:
                position = {"lat": outcome.nearest.lat, "lng": outcome.nearest.lng}
            elif prop.has_location:
                position = {"lat": prop.latitude, "lng": prop.longitude}
            else:
                position = None
            bound = {}
            for action in actions:
                _, _, place_id = info_windows.parse_action_id(action)
                bound[action] = functools.partial(self._route_action, prop.id, place_id)
            with self.state_lock:
                self.session.show_info_window(
                    LAYER_POI, f"property-{prop.id}", html, actions=bound, position=position,
                )
            return {
                "outcome": outcome.to_dict(),
                "route": record.to_dict() if record else None,
                "summaries": {
                    pid: (r.to_dict() if r else None) for pid, r in summaries.items()
                },
            }

    def _route_action(self, property_id, place_id: str) -> Dict[str, Any]:
        return self.route_to(property_id, place_id).to_dict()

    def route_to(self, property_id, place_id: str) -> RouteRecord:
        """Explicit (re-)request of one property -> place route."""
        with self.lock:
            self._touch()
            if not self.ready:
                raise ValueError(PLACEHOLDER_MESSAGE)
            prop = self._property(property_id)
            poi = self.pois.find(prop.id, place_id)
            if poi is None:
                raise KeyError(place_id)
            try:
                record = self._route(prop, poi)
            except MapsRequestCancelled as e:
                raise self._interrupted() from e
            mid = record.route.midpoint() if record.route else None
            html = info_windows.render_route_window(prop, poi, record)
            with self.state_lock:
                self.session.show_info_window(
                    LAYER_ROUTE,
                    record.overlay_id,
                    html,
                    position={"lat": mid[0], "lng": mid[1]} if mid else {"lat": poi.lat, "lng": poi.lng},
                )
            return record

    def open_property_window(self, property_id) -> Dict[str, Any]:
        """Highlight a property and open its info window."""
        with self.lock, self.state_lock:
            self._touch()
            if not self.ready:
                raise ValueError(PLACEHOLDER_MESSAGE)
            prop = self._property(property_id)
            self.highlighted_id = prop.id
            self.session.set_property_markers(self.properties, highlighted_id=prop.id)

            categories = [(c.key, c.label) for c in Category]
            html, actions = info_windows.render_property_window(
                prop, self._color_for(prop), categories, self.recent.terms(),
            )
            bound = {}
            for action in actions:
                _, _, key = info_windows.parse_action_id(action)
                bound[action] = functools.partial(self.locate_for_property, prop.id, key)
            window = self.session.show_info_window(
                LAYER_PROPERTY,
                f"property-{prop.id}",
                html,
                actions=bound,
                position={"lat": prop.latitude, "lng": prop.longitude} if prop.has_location else None,
            )
            return window.to_dict() if window else {}

    def dispatch(self, action: str) -> Any:
        """Run the callback bound to a button in an open info window."""
        with self.lock:
            self._touch()
            if self.session is None:
                raise KeyError(action)
            return self.session.dispatch_action(action)

    def click_map(self):
        with self.lock, self.state_lock:
            self._touch()
            if self.session is not None:
                self.session.emit("click")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _row(self, index: int, prop) -> Dict[str, Any]:
        row = {
            "property_id": prop.id,
            "title": prop.title,
            "address": prop.address,
            "rent": prop.rent,
            "bedrooms": prop.bedrooms,
            "bathrooms": prop.bathrooms,
            "color": property_color(index),
            "label": str(index + 1),
            "has_location": prop.has_location,
            "status": LocateStatus.IDLE.value,
            "status_label": STATUS_LABELS[LocateStatus.IDLE],
            "poi": None,
            "distance": None,
            "duration": None,
            "route_state": RouteState.IDLE.value,
            "message": None,
        }
        if not prop.has_location:
            row["status"] = LocateStatus.NO_LOCATION.value
            row["status_label"] = STATUS_LABELS[LocateStatus.NO_LOCATION]
            return row
        if self.query is None or self.pois is None:
            return row

        latest = self.pois.latest(prop.id, self.query.key)
        status = latest.status if latest else LocateStatus.IDLE
        row["status"] = status.value
        if status in STATUS_LABELS:
            row["status_label"] = STATUS_LABELS[status]
            return row

        row["message"] = latest.message
        if status != LocateStatus.OK:
            row["status_label"] = latest.message
            return row

        nearest = latest.nearest
        row["poi"] = nearest.to_dict()
        row["status_label"] = nearest.name
        row["distance"] = nearest.distance
        record = self.routes.record(prop.id, destination_id(nearest))
        if record is not None:
            row["route_state"] = record.state.value
            if record.route is not None:
                row["distance"] = record.route.distance
                row["duration"] = record.route.duration
            elif record.error:
                row["message"] = record.error
        return row

    def rows(self) -> List[Dict[str, Any]]:
        with self.state_lock:
            return [self._row(i, p) for i, p in enumerate(self.properties)]

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the view. Never waits on an in-flight action."""
        with self.state_lock:
            data = {
                "id": self.view_id,
                "ready": self.ready,
                "placeholder": self.placeholder,
                "mode": self.mode,
                "travel_mode": self.travel_mode.value,
                "query": self.query.key if self.query else None,
                "query_label": _query_label(self.query) if self.query else None,
                "categories": [{"key": c.key, "label": c.label} for c in Category],
                "recent_searches": self.recent.terms(),
                "rows": self.rows(),
                "map": self.session.to_dict() if self.session else None,
                "closed": self.closed,
            }
        trace = get_trace()
        if trace:
            data["_trace"] = trace.summary_dict()
        return data

    def static_map(self, width: int = 640, height: int = 400) -> Optional[str]:
        with self.state_lock:
            self._touch()
            if self.session is None:
                return None
            scene = self.session.snapshot()
        # Tile downloads happen outside the lock.
        return scene.render_static_map(width, height)


# =============================================================================
# Registry
# =============================================================================

DEFAULT_IDLE_SECONDS = int(os.environ.get("SESSION_IDLE_SECONDS", "1800"))


class SessionRegistry:
    """Thread-safe map of view id -> ComparisonView with idle expiry."""

    def __init__(self, idle_seconds: int = DEFAULT_IDLE_SECONDS, clock=time.time):
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._views: Dict[str, ComparisonView] = {}

    def add(self, view: ComparisonView) -> str:
        self.expire()
        view.last_touched = self._clock()
        with self._lock:
            self._views[view.view_id] = view
        return view.view_id

    def get(self, view_id: str) -> Optional[ComparisonView]:
        self.expire()
        with self._lock:
            view = self._views.get(view_id)
        if view is not None:
            view.last_touched = self._clock()
        return view

    def remove(self, view_id: str) -> bool:
        with self._lock:
            view = self._views.pop(view_id, None)
        if view is None:
            return False
        view.close()
        return True

    def expire(self) -> int:
        """Close views idle longer than ``idle_seconds``."""
        cutoff = self._clock() - self.idle_seconds
        with self._lock:
            stale = [vid for vid, v in self._views.items() if v.last_touched < cutoff]
            views = [self._views.pop(vid) for vid in stale]
        for view in views:
            logger.info("[view %s] expired after %ss idle", view.view_id, self.idle_seconds)
            view.close()
        return len(views)

    def close_all(self):
        with self._lock:
            views, self._views = list(self._views.values()), {}
        for view in views:
            view.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._views)
