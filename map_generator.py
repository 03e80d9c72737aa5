"""Server-side comparison map rendering using staticmap + OSM tiles."""

import io
import base64
import logging
from typing import Optional

import requests
from staticmap import StaticMap, CircleMarker, Line

from map_config import TIMEOUTS

logger = logging.getLogger(__name__)


class CompareStaticMap(StaticMap):
    """StaticMap with zoom clamped to [11, 16] for sane neighborhood views."""

    ZOOM_MIN = 11
    ZOOM_MAX = 16

    def _calculate_zoom(self):
        z = super()._calculate_zoom()
        return max(self.ZOOM_MIN, min(self.ZOOM_MAX, z))


USER_AGENT = "RentCompare/1.0 (rental comparison map)"

ROUTE_LINE_WIDTH = 4
POI_MARKER_SIZE = 8
PROPERTY_MARKER_SIZE = 14


def render_session_map(session, width: int = 640, height: int = 400) -> Optional[str]:
    """Render a MapSession scene as a base64-encoded PNG string.

    Draws route polylines first so markers sit on top. Returns a base64
    string (no data URI prefix) or None if rendering fails for any reason.
    """
    try:
        m = CompareStaticMap(
            width,
            height,
            padding_x=24,
            padding_y=24,
            url_template="http://a.tile.openstreetmap.org/{z}/{x}/{y}.png",
            tile_request_timeout=TIMEOUTS.static_tiles,
            headers={"User-Agent": USER_AGENT},
        )

        # note: staticmap uses lng, lat order
        for route in session.overlays("route"):
            path = route.data.get("path") or []
            if len(path) < 2:
                continue
            coords = [(pt["lng"], pt["lat"]) for pt in path]
            m.add_line(Line(coords, route.data.get("color", "#4285F4"), ROUTE_LINE_WIDTH))

        for poi in session.overlays("poi"):
            lat, lng = poi.data.get("lat"), poi.data.get("lng")
            if lat is None or lng is None:
                continue
            m.add_marker(CircleMarker((lng, lat), poi.data.get("color", "#6b7280"), POI_MARKER_SIZE))

        for marker in session.markers():
            size = PROPERTY_MARKER_SIZE + (4 if marker.stroke_color else 0)
            if marker.stroke_color:
                m.add_marker(CircleMarker((marker.lng, marker.lat), marker.stroke_color, size))
            m.add_marker(CircleMarker((marker.lng, marker.lat), marker.color, PROPERTY_MARKER_SIZE))

        if m.markers or m.lines:
            image = m.render()
        else:
            lat, lng = session.center
            image = m.render(zoom=session.zoom, center=[lng, lat])

        buffer = io.BytesIO()
        image.save(buffer, format="PNG", optimize=True)
        buffer.seek(0)
        return base64.b64encode(buffer.read()).decode("utf-8")

    except requests.Timeout:
        logger.warning("Static map tiles timed out after %ss", TIMEOUTS.static_tiles)
        return None
    except Exception:
        logger.exception("Failed to render comparison map")
        return None
