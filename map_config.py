"""
Map and comparison configuration for RentCompare.

Owns every constant that shapes what the comparison map shows: default
region, property palette, POI category styling, search radii and
external-call timeouts. Request-level settings (API keys, DB path, rate
limits) stay in the environment and are read by app.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import os
from dataclasses import dataclass
from typing import Dict, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class MapDefaults:
    """Fallback viewport used when no property has a coordinate."""
    center_lat: float = 40.7128   # New York
    center_lng: float = -74.0060
    zoom: int = 12
    single_property_zoom: int = 15
    # Half-span of the fallback bounding box in degrees (~1 km).
    fallback_span_deg: float = 0.01


@dataclass(frozen=True)
class SearchRadii:
    """Places search radius in metres."""
    category_m: int = 2000
    text_query_m: int = 5000


@dataclass(frozen=True)
class Timeouts:
    """Upper bound (seconds) for each external call."""
    provider_load: float = 10.0
    places: float = 10.0
    directions: float = 10.0
    static_tiles: float = 10.0


@dataclass(frozen=True)
class CategoryStyle:
    """How one POI category is searched and drawn."""
    label: str
    place_type: str        # Google Places "type" parameter
    marker_color: str
    route_color: str


# =============================================================================
# Values
# =============================================================================

MAP_DEFAULTS = MapDefaults()
SEARCH_RADII = SearchRadii()

_timeout_override = os.environ.get("MAPS_TIMEOUT_SECONDS")
TIMEOUTS = (
    Timeouts(
        provider_load=float(_timeout_override),
        places=float(_timeout_override),
        directions=float(_timeout_override),
        static_tiles=float(_timeout_override),
    )
    if _timeout_override
    else Timeouts()
)

# Compared properties cycle through these; map markers and table rows
# must use the same index so colours line up.
PROPERTY_PALETTE: Tuple[str, ...] = ("#4CAF50", "#2196F3", "#F44336")

HIGHLIGHT_STROKE_COLOR = "#111827"
MARKER_SCALE = 10
HIGHLIGHT_MARKER_SCALE = 14

CATEGORY_STYLES: Dict[str, CategoryStyle] = {
    "gym": CategoryStyle("Gyms", "gym", "#fb8c00", "#fb8c00"),
    "grocery": CategoryStyle("Grocery Stores", "grocery_or_supermarket", "#43a047", "#43a047"),
    "restaurant": CategoryStyle("Restaurants", "restaurant", "#e53935", "#e53935"),
    "school": CategoryStyle("Schools", "school", "#8e24aa", "#8e24aa"),
    "cafe": CategoryStyle("Cafes", "cafe", "#92400e", "#92400e"),
    "park": CategoryStyle("Parks", "park", "#fdd835", "#fdd835"),
}

# Free-text searches share one style.
SEARCH_TERM_STYLE = CategoryStyle("Search", "", "#4285F4", "#4285F4")

# Only the closest few results are drawn and listed per search.
MAX_POIS_PER_SEARCH = 3

# Route cache keys round coordinates to this many decimals (~1 m).
ROUTE_CACHE_PRECISION = 5

# Recent free-text searches offered as extra info-window buttons.
RECENT_SEARCH_CAP = 5

# Comparison needs at least this many properties before a map is built.
MIN_COMPARE_PROPERTIES = 2
MAX_COMPARE_PROPERTIES = int(os.environ.get("MAX_COMPARE_PROPERTIES", "6"))


def property_color(index: int) -> str:
    """Palette colour for the property at list position ``index``."""
    return PROPERTY_PALETTE[index % len(PROPERTY_PALETTE)]


def category_style(key: str) -> CategoryStyle:
    """Style for a category key; free-text keys (``search:...``) share one."""
    return CATEGORY_STYLES.get(key, SEARCH_TERM_STYLE)
