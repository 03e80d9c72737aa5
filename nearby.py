"""
Nearby-places lookup behind ``/api/nearby-places``.

NearbyPlacesService turns a Google Places response into the flat place
dicts the comparison map consumes and orders them nearest-first, so
callers never re-sort. NearbyPlacesAPIClient calls the same endpoint over
HTTP for processes that do not hold a Google key.

Place dict shape:
    {"name", "lat", "lng", "place_id", "address", "distance",
     "distance_miles", "rating"}
"""

import logging
import math
import os
import time
from typing import Dict, List, Optional, Tuple

import requests

from map_config import SEARCH_RADII, TIMEOUTS
from maps_client import (
    CancelToken,
    GoogleMapsClient,
    MapsError,
    MapsProviderError,
    MapsRequestCancelled,
    MapsTimeoutError,
)
from rc_trace import get_trace

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8


def haversine_miles(origin: Tuple[float, float], dest: Tuple[float, float]) -> float:
    """Straight-line distance in miles between two (lat, lng) points."""
    lat1, lon1 = math.radians(origin[0]), math.radians(origin[1])
    lat2, lon2 = math.radians(dest[0]), math.radians(dest[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_MILES * c


def format_miles(miles: float) -> str:
    return f"{miles:.2f} mi"


def _normalize_place(raw: Dict, origin: Tuple[float, float]) -> Optional[Dict]:
    """Flatten one Google Places result; None if it has no location."""
    location = (raw.get("geometry") or {}).get("location") or {}
    lat, lng = location.get("lat"), location.get("lng")
    if lat is None or lng is None:
        return None
    miles = haversine_miles(origin, (lat, lng))
    return {
        "name": raw.get("name") or "Unnamed place",
        "lat": lat,
        "lng": lng,
        "place_id": raw.get("place_id", ""),
        "address": raw.get("vicinity") or raw.get("formatted_address") or "",
        "distance": format_miles(miles),
        "distance_miles": round(miles, 3),
        "rating": raw.get("rating"),
    }


class NearbyPlacesService:
    """In-process places source backed by GoogleMapsClient."""

    def __init__(self, maps: GoogleMapsClient):
        self.maps = maps

    def nearby(
        self,
        lat: float,
        lng: float,
        place_type: str = "",
        radius_meters: Optional[int] = None,
        keyword: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> List[Dict]:
        """Places near (lat, lng), nearest first.

        With a ``place_type`` this is a category search (2 km default).
        With only a ``keyword`` it is a free-text search (5 km default).
        """
        origin = (lat, lng)
        if place_type:
            raw = self.maps.places_nearby(
                lat, lng, place_type,
                radius_meters=radius_meters or SEARCH_RADII.category_m,
                keyword=keyword,
                token=token,
            )
        elif keyword:
            raw = self.maps.text_search(
                keyword, lat, lng,
                radius_meters=radius_meters or SEARCH_RADII.text_query_m,
                token=token,
            )
        else:
            raise ValueError("either place_type or keyword is required")

        places = [p for p in (_normalize_place(r, origin) for r in raw) if p]
        places.sort(key=lambda p: p["distance_miles"])
        return places


class NearbyPlacesAPIClient:
    """Places source that calls a running ``/api/nearby-places`` endpoint."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or os.environ.get("RENTCOMPARE_API_URL", "http://127.0.0.1:5001")).rstrip("/")
        self.timeout = timeout or TIMEOUTS.places
        self.session = requests.Session()

    def nearby(
        self,
        lat: float,
        lng: float,
        place_type: str = "",
        radius_meters: Optional[int] = None,
        keyword: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> List[Dict]:
        if token is not None:
            token.raise_if_cancelled()
        payload = {"lat": lat, "lng": lng}
        if place_type:
            payload["type"] = place_type
        if keyword:
            payload["keyword"] = keyword
        if radius_meters:
            payload["radius"] = radius_meters

        t0 = time.time()
        try:
            resp = self.session.post(
                f"{self.base_url}/api/nearby-places", json=payload, timeout=self.timeout,
            )
        except requests.Timeout:
            raise MapsTimeoutError("nearby-places", self.timeout)
        except requests.RequestException as e:
            raise MapsError(f"nearby-places request failed: {e}") from e

        trace = get_trace()
        if trace:
            trace.record_call("nearby_places", int((time.time() - t0) * 1000), resp.status_code)
        if token is not None and token.cancelled:
            raise MapsRequestCancelled("nearby-places cancelled")
        if resp.status_code != 200:
            try:
                message = resp.json().get("error", "")
            except ValueError:
                message = resp.text[:200]
            raise MapsProviderError("nearby-places", f"HTTP {resp.status_code}", message)
        return resp.json().get("places", [])
