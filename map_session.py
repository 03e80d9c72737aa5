"""
Server-side state for one interactive comparison map.

A MapSession owns everything drawn on a single map: property markers,
overlays (POI markers and route polylines), open info windows and event
listeners. Nothing outside the session holds references to those
objects; views pass data in and receive events out. The browser map is a
projection of ``to_dict()``, and ``render_static_map()`` draws the same
scene server-side when the JavaScript map cannot be used.

Overlays live in a registry keyed by kind ("poi", "route") where each
handle also records its owner (property id) and key (category or
destination place id), so "clear gym markers for property 3" is a lookup,
not a scan over ad-hoc marker flags.
"""

import itertools
import logging
import math
import os
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from map_config import (
    HIGHLIGHT_MARKER_SCALE,
    HIGHLIGHT_STROKE_COLOR,
    MAP_DEFAULTS,
    MARKER_SCALE,
    TIMEOUTS,
    property_color,
)
from maps_client import CancelToken

logger = logging.getLogger(__name__)

# Info-window layers; at most one window is open per layer.
LAYER_PROPERTY = "property"
LAYER_POI = "poi"
LAYER_ROUTE = "route"

# Overlay kinds.
OVERLAY_POI = "poi"
OVERLAY_ROUTE = "route"

# Zoom is clamped when fitting bounds so two nearby listings do not
# produce a street-level view.
_FIT_ZOOM_MIN = 3
_FIT_ZOOM_MAX = 17


class MapProviderUnavailable(Exception):
    """The mapping provider could not be loaded (missing key, load failure)."""


class MapProviderTimeout(MapProviderUnavailable):
    """Loading the mapping provider exceeded its timeout."""


def load_map_provider() -> str:
    """Return the browser Maps key, or raise MapProviderUnavailable."""
    key = (
        os.environ.get("GOOGLE_MAPS_FRONTEND_API_KEY")
        or os.environ.get("GOOGLE_MAPS_API_KEY")
    )
    if not key:
        raise MapProviderUnavailable("Google Maps API key not configured")
    return key


_PROVIDER_POOL = ThreadPoolExecutor(max_workers=2, thread_name_prefix="map-provider")


def load_with_timeout(loader: Callable[[], str], timeout: float) -> str:
    """Run ``loader`` but give up after ``timeout`` seconds.

    Raises MapProviderTimeout when the loader has not returned in time;
    whatever the loader raises itself propagates unchanged.
    """
    future = _PROVIDER_POOL.submit(loader)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise MapProviderTimeout(f"map provider did not load within {timeout:g}s") from None


# =============================================================================
# Scene objects
# =============================================================================

@dataclass
class Bounds:
    south: float
    west: float
    north: float
    east: float

    @classmethod
    def around(cls, points: Sequence[Sequence[float]]) -> "Bounds":
        lats = [p[0] for p in points]
        lngs = [p[1] for p in points]
        return cls(min(lats), min(lngs), max(lats), max(lngs))

    @property
    def center(self):
        return ((self.south + self.north) / 2, (self.west + self.east) / 2)

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    def to_dict(self) -> Dict[str, float]:
        return {"south": self.south, "west": self.west,
                "north": self.north, "east": self.east}


@dataclass
class Marker:
    marker_id: str
    property_id: Any
    lat: float
    lng: float
    title: str
    color: str
    label: str
    scale: int = MARKER_SCALE
    stroke_color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.marker_id,
            "property_id": self.property_id,
            "position": {"lat": self.lat, "lng": self.lng},
            "title": self.title,
            "color": self.color,
            "label": self.label,
            "scale": self.scale,
            "stroke_color": self.stroke_color,
        }


@dataclass
class Overlay:
    """A rendered map element other than a property marker."""
    handle_id: str
    kind: str
    owner: Any = None
    key: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.handle_id, "kind": self.kind, "owner": self.owner,
                "key": self.key, **self.data}


@dataclass
class InfoWindow:
    window_id: str
    layer: str
    anchor_id: Optional[str]
    html: str
    actions: Dict[str, Callable[[], Any]] = field(default_factory=dict)
    position: Optional[Dict[str, float]] = None
    is_open: bool = True

    def close(self):
        self.is_open = False
        self.actions = {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.window_id,
            "layer": self.layer,
            "anchor": self.anchor_id,
            "html": self.html,
            "actions": sorted(self.actions),
            "position": self.position,
        }


def _zoom_for_bounds(bounds: Bounds, width: int = 640, height: int = 400) -> int:
    """Largest web-mercator zoom at which ``bounds`` fits the viewport."""
    def lat_rad(lat):
        s = math.sin(math.radians(lat))
        return math.log((1 + s) / (1 - s)) / 2

    lng_span = max(bounds.east - bounds.west, 1e-9) / 360.0
    lat_span = max(lat_rad(bounds.north) - lat_rad(bounds.south), 1e-9) / (2 * math.pi)
    zoom_x = math.log2(width / 256.0 / lng_span)
    zoom_y = math.log2(height / 256.0 / lat_span)
    return int(max(_FIT_ZOOM_MIN, min(_FIT_ZOOM_MAX, math.floor(min(zoom_x, zoom_y)))))


# =============================================================================
# Session
# =============================================================================

class MapSession:
    """One map instance and everything drawn on it."""

    def __init__(self, session_id: str = "", token: Optional[CancelToken] = None):
        self.session_id = session_id
        self.token = token or CancelToken()
        self.bounds: Optional[Bounds] = None
        self.center = (MAP_DEFAULTS.center_lat, MAP_DEFAULTS.center_lng)
        self.zoom = MAP_DEFAULTS.zoom
        self.container: Optional[Dict[str, Any]] = None
        self.provider_key: Optional[str] = None
        self.initialized = False
        self.degraded = False
        self.error: Optional[str] = None
        self.used_default_region = False

        self._markers: Dict[str, Marker] = {}
        self._overlays: Dict[str, List[Overlay]] = defaultdict(list)
        self._info_windows: Dict[str, InfoWindow] = {}
        self._listeners: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._torn_down = False

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def initialize(
        self,
        properties: Sequence[Any],
        container: Optional[Dict[str, Any]] = None,
        provider_loader: Optional[Callable[[], str]] = None,
        provider_timeout: Optional[float] = None,
    ) -> bool:
        """Fit the map to ``properties`` and load the provider.

        Returns True when the interactive map is usable. A provider failure,
        including a load slower than ``provider_timeout`` (default
        TIMEOUTS.provider_load), is logged and leaves the session degraded;
        it never raises.
        """
        if self._torn_down:
            raise RuntimeError("cannot initialize a torn-down map session")

        self.container = container or {"width": 640, "height": 400}
        points = [(p.latitude, p.longitude) for p in properties if p.has_location]
        if points:
            self.bounds = Bounds.around(points)
            self.center = self.bounds.center
            if len(points) == 1:
                self.zoom = MAP_DEFAULTS.single_property_zoom
            else:
                self.zoom = _zoom_for_bounds(
                    self.bounds,
                    self.container.get("width", 640),
                    self.container.get("height", 400),
                )
            self.used_default_region = False
        else:
            span = MAP_DEFAULTS.fallback_span_deg
            self.center = (MAP_DEFAULTS.center_lat, MAP_DEFAULTS.center_lng)
            self.bounds = Bounds(
                self.center[0] - span, self.center[1] - span,
                self.center[0] + span, self.center[1] + span,
            )
            self.zoom = MAP_DEFAULTS.zoom
            self.used_default_region = True

        loader = provider_loader or load_map_provider
        if provider_timeout is None:
            provider_timeout = TIMEOUTS.provider_load
        try:
            self.provider_key = load_with_timeout(loader, provider_timeout)
        except MapProviderTimeout as e:
            logger.warning("[map %s] provider load timed out: %s", self.session_id, e)
            self.degraded = True
            self.error = "The map took too long to load. Showing the list view instead."
        except MapProviderUnavailable as e:
            logger.warning("[map %s] provider unavailable: %s", self.session_id, e)
            self.degraded = True
            self.error = "Unable to load the map. Showing the list view instead."
        except Exception:
            logger.exception("[map %s] provider load failed", self.session_id)
            self.degraded = True
            self.error = "Unable to load the map. Showing the list view instead."

        if not self.degraded:
            self.on("click", lambda _payload: self.close_info_windows())

        self.initialized = True
        logger.info(
            "[map %s] initialized center=%.5f,%.5f zoom=%d degraded=%s default_region=%s",
            self.session_id, self.center[0], self.center[1], self.zoom,
            self.degraded, self.used_default_region,
        )
        return not self.degraded

    # ------------------------------------------------------------------
    # Property markers
    # ------------------------------------------------------------------

    def set_property_markers(self, properties: Sequence[Any], highlighted_id: Any = None):
        """Replace property markers.

        Colour follows list position (not position among located
        properties) so it matches the comparison table row.
        """
        if self._torn_down:
            return []
        self._markers.clear()
        for index, prop in enumerate(properties):
            if not prop.has_location:
                continue
            highlighted = highlighted_id is not None and prop.id == highlighted_id
            marker = Marker(
                marker_id=f"property-{prop.id}",
                property_id=prop.id,
                lat=prop.latitude,
                lng=prop.longitude,
                title=prop.title or "Property",
                color=property_color(index),
                label=str(index + 1),
                scale=HIGHLIGHT_MARKER_SCALE if highlighted else MARKER_SCALE,
                stroke_color=HIGHLIGHT_STROKE_COLOR if highlighted else None,
            )
            self._markers[marker.marker_id] = marker
        return list(self._markers.values())

    def markers(self) -> List[Marker]:
        return list(self._markers.values())

    def marker(self, marker_id: str) -> Optional[Marker]:
        return self._markers.get(marker_id)

    # ------------------------------------------------------------------
    # Info windows
    # ------------------------------------------------------------------

    def show_info_window(
        self,
        layer: str,
        anchor_id: Optional[str],
        html: str,
        actions: Optional[Dict[str, Callable[[], Any]]] = None,
        position: Optional[Dict[str, float]] = None,
    ) -> Optional[InfoWindow]:
        """Open a window on ``layer``, closing whatever was open there."""
        if self._torn_down:
            return None
        previous = self._info_windows.pop(layer, None)
        if previous is not None:
            previous.close()
        window = InfoWindow(
            window_id=self._next_id("iw"),
            layer=layer,
            anchor_id=anchor_id,
            html=html,
            actions=dict(actions or {}),
            position=position,
        )
        self._info_windows[layer] = window
        return window

    def info_window(self, layer: str) -> Optional[InfoWindow]:
        return self._info_windows.get(layer)

    def open_info_windows(self) -> List[InfoWindow]:
        return list(self._info_windows.values())

    def close_info_windows(self, layer: Optional[str] = None):
        layers = [layer] if layer else list(self._info_windows)
        for name in layers:
            window = self._info_windows.pop(name, None)
            if window is not None:
                window.close()

    def dispatch_action(self, action_id: str) -> Any:
        """Invoke a callback bound to a button in an open info window."""
        for window in self._info_windows.values():
            callback = window.actions.get(action_id)
            if callback is not None:
                return callback()
        raise KeyError(action_id)

    # ------------------------------------------------------------------
    # Overlays
    # ------------------------------------------------------------------

    def add_overlay(
        self,
        kind: str,
        data: Dict[str, Any],
        owner: Any = None,
        key: Optional[str] = None,
    ) -> Optional[Overlay]:
        if self._torn_down:
            logger.debug("[map %s] add_overlay after teardown ignored", self.session_id)
            return None
        overlay = Overlay(self._next_id(kind), kind, owner, key, dict(data))
        self._overlays[kind].append(overlay)
        return overlay

    def remove_overlay(self, kind: str, key: str, owner: Any = None) -> int:
        """Remove overlays of ``kind`` with ``key`` (optionally one owner's)."""
        kept, removed = [], 0
        for overlay in self._overlays.get(kind, []):
            if overlay.key == key and (owner is None or overlay.owner == owner):
                removed += 1
            else:
                kept.append(overlay)
        self._overlays[kind] = kept
        return removed

    def clear_overlays(self, kind: str, owner: Any = None, key: Optional[str] = None) -> int:
        """Clear every overlay of ``kind``, narrowed by owner and/or key."""
        if owner is None and key is None:
            removed = len(self._overlays.get(kind, []))
            self._overlays[kind] = []
            return removed
        kept, removed = [], 0
        for overlay in self._overlays.get(kind, []):
            if (owner is None or overlay.owner == owner) and (key is None or overlay.key == key):
                removed += 1
            else:
                kept.append(overlay)
        self._overlays[kind] = kept
        return removed

    def overlays(self, kind: Optional[str] = None, owner: Any = None) -> List[Overlay]:
        kinds = [kind] if kind else list(self._overlays)
        return [
            o for k in kinds for o in self._overlays.get(k, [])
            if owner is None or o.owner == owner
        ]

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        self._listeners[event].append(callback)

        def _off():
            if callback in self._listeners.get(event, []):
                self._listeners[event].remove(callback)
        return _off

    def emit(self, event: str, payload: Any = None) -> int:
        if self._torn_down:
            return 0
        callbacks = list(self._listeners.get(event, []))
        for cb in callbacks:
            cb(payload)
        return len(callbacks)

    def listener_count(self) -> int:
        return sum(len(v) for v in self._listeners.values())

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self):
        """Remove everything and cancel pending requests. Safe to repeat."""
        if self._torn_down:
            return
        self._torn_down = True
        self.token.cancel()
        self.close_info_windows()
        self._markers.clear()
        self._overlays.clear()
        self._listeners.clear()
        logger.info("[map %s] torn down", self.session_id)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "initialized": self.initialized,
            "degraded": self.degraded,
            "error": self.error,
            "center": {"lat": self.center[0], "lng": self.center[1]},
            "zoom": self.zoom,
            "bounds": self.bounds.to_dict() if self.bounds else None,
            "markers": [m.to_dict() for m in self._markers.values()],
            "overlays": [o.to_dict() for o in self.overlays()],
            "info_windows": [w.to_dict() for w in self._info_windows.values()],
        }

    def snapshot(self) -> "MapSession":
        """Detached copy of the drawn scene; later changes do not reach it."""
        scene = MapSession(self.session_id, token=self.token)
        scene.bounds, scene.center, scene.zoom = self.bounds, self.center, self.zoom
        scene.container, scene.provider_key = self.container, self.provider_key
        scene.initialized, scene.degraded, scene.error = self.initialized, self.degraded, self.error
        scene.used_default_region = self.used_default_region
        scene._markers = dict(self._markers)
        scene._overlays = defaultdict(list, {k: list(v) for k, v in self._overlays.items()})
        return scene

    def render_static_map(self, width: int = 640, height: int = 400) -> Optional[str]:
        """Base64 PNG of the current scene, or None if rendering failed."""
        from map_generator import render_session_map
        return render_session_map(self, width=width, height=height)
