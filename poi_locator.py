"""
POI Locator: nearby places for each compared property.

PoiLocator turns (property, category-or-query) into a LocateOutcome whose
status is one of ``ok``, ``empty``, ``error``, ``timeout`` or
``no_location``. Failures never raise past ``locate``; the only exception
that escapes is MapsRequestCancelled, so a torn-down view stops its batch.

PoiStore keeps the visible result sets for one comparison view:

    - searching "gym" again for a property replaces that property's gyms
    - a "grocery" set for the same property stays on the map

Each set is drawn as "poi" overlays owned by the property and keyed by
the category key, so retiring a set is a registry lookup.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from map_config import (
    CATEGORY_STYLES,
    MAX_POIS_PER_SEARCH,
    SEARCH_RADII,
    category_style,
)
from map_session import MapSession, OVERLAY_POI
from maps_client import CancelToken, MapsError, MapsRequestCancelled, MapsTimeoutError
from rc_trace import get_trace
from routing import destination_id

logger = logging.getLogger(__name__)

SEARCH_PREFIX = "search:"


class Category(str, Enum):
    GYM = "gym"
    GROCERY = "grocery"
    RESTAURANT = "restaurant"
    SCHOOL = "school"
    CAFE = "cafe"
    PARK = "park"

    @property
    def key(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return CATEGORY_STYLES[self.value].label

    @property
    def place_type(self) -> str:
        return CATEGORY_STYLES[self.value].place_type


@dataclass(frozen=True)
class SearchTerm:
    """A free-text query such as "Coffee shops"."""
    text: str

    @property
    def key(self) -> str:
        return SEARCH_PREFIX + self.text.strip().lower()

    @property
    def label(self) -> str:
        return self.text


Query = Union[Category, SearchTerm]


def parse_query(value: Any) -> Query:
    """Category name, ``search:<term>`` key, or plain free text."""
    if isinstance(value, (Category, SearchTerm)):
        return value
    text = str(value or "").strip()
    if text.lower().startswith(SEARCH_PREFIX):
        text = text[len(SEARCH_PREFIX):].strip()
        if not text:
            raise ValueError("search term is empty")
        return SearchTerm(text)
    if not text:
        raise ValueError("category or search term is required")
    try:
        return Category(text.lower())
    except ValueError:
        return SearchTerm(text)


class LocateStatus(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    OK = "ok"
    EMPTY = "empty"
    ERROR = "error"
    TIMEOUT = "timeout"
    NO_LOCATION = "no_location"


NO_LOCATION_MESSAGE = "No location data available"
EMPTY_MESSAGE = "No results found"
ERROR_MESSAGE = "Unable to search nearby places"
TIMEOUT_MESSAGE = "Search timed out. Try again."


@dataclass(frozen=True)
class POI:
    name: str
    lat: float
    lng: float
    category: str           # Category value or "search:<term>"
    place_id: str = ""
    rating: Optional[float] = None
    address: Optional[str] = None
    distance: Optional[str] = None

    @classmethod
    def from_place(cls, place: Dict, category: str) -> "POI":
        return cls(
            name=place.get("name") or "Unnamed place",
            lat=float(place["lat"]),
            lng=float(place["lng"]),
            category=category,
            place_id=place.get("place_id") or "",
            rating=place.get("rating"),
            address=place.get("address") or None,
            distance=place.get("distance"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "lat": self.lat,
            "lng": self.lng,
            "category": self.category,
            "place_id": self.place_id,
            "rating": self.rating,
            "address": self.address,
            "distance": self.distance,
        }


@dataclass
class LocateOutcome:
    property_id: Any
    query_key: str
    status: LocateStatus
    pois: List[POI] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (LocateStatus.OK, LocateStatus.EMPTY)

    @property
    def nearest(self) -> Optional[POI]:
        return self.pois[0] if self.pois else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property_id": self.property_id,
            "query": self.query_key,
            "status": self.status.value,
            "message": self.message,
            "pois": [p.to_dict() for p in self.pois],
        }


class PoiLocator:
    """Looks up nearby places through a places source.

    ``source`` is anything with ``nearby(lat, lng, place_type=..., radius_meters=...,
    keyword=..., token=...)`` returning nearest-first place dicts:
    nearby.NearbyPlacesService in-process, or nearby.NearbyPlacesAPIClient.
    """

    def __init__(self, source, max_results: int = MAX_POIS_PER_SEARCH):
        self.source = source
        self.max_results = max_results

    def locate(self, prop, query: Any, token: Optional[CancelToken] = None) -> LocateOutcome:
        outcome = self._locate(prop, parse_query(query), token)
        trace = get_trace()
        if trace:
            failed = outcome.status in (LocateStatus.ERROR, LocateStatus.TIMEOUT)
            trace.record_locate(prop.id, outcome.query_key, outcome.status.value,
                                pois=len(outcome.pois),
                                message=(outcome.message or "") if failed else "")
        return outcome

    def _locate(self, prop, query, token: Optional[CancelToken]) -> LocateOutcome:
        key = query.key

        if not prop.has_location:
            return LocateOutcome(prop.id, key, LocateStatus.NO_LOCATION, message=NO_LOCATION_MESSAGE)
        if token is not None:
            token.raise_if_cancelled()

        try:
            if isinstance(query, Category):
                places = self.source.nearby(
                    prop.latitude, prop.longitude,
                    place_type=query.place_type,
                    radius_meters=SEARCH_RADII.category_m,
                    token=token,
                )
            else:
                places = self.source.nearby(
                    prop.latitude, prop.longitude,
                    keyword=query.text,
                    radius_meters=SEARCH_RADII.text_query_m,
                    token=token,
                )
        except MapsRequestCancelled:
            raise
        except MapsTimeoutError as e:
            logger.warning("POI search %s for property %s timed out: %s", key, prop.id, e)
            return LocateOutcome(prop.id, key, LocateStatus.TIMEOUT, message=TIMEOUT_MESSAGE)
        except MapsError as e:
            logger.warning("POI search %s for property %s failed: %s", key, prop.id, e)
            return LocateOutcome(prop.id, key, LocateStatus.ERROR, message=ERROR_MESSAGE)

        pois = []
        for place in places[: self.max_results]:
            try:
                pois.append(POI.from_place(place, key))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping place without coordinates: %r", place.get("name"))

        if not pois:
            return LocateOutcome(prop.id, key, LocateStatus.EMPTY, message=EMPTY_MESSAGE)
        return LocateOutcome(prop.id, key, LocateStatus.OK, pois=pois)

    def locate_batch(
        self,
        properties: Sequence[Any],
        query: Any,
        token: Optional[CancelToken] = None,
        on_result: Optional[Callable[[Any, LocateOutcome], None]] = None,
    ) -> List[LocateOutcome]:
        """Locate for each property in list order, one at a time.

        ``on_result(prop, outcome)`` runs before the next property is
        searched. A failure for one property never stops the rest; a
        cancelled token does.
        """
        query = parse_query(query)
        trace = get_trace()
        outcomes = []
        for prop in properties:
            if token is not None and token.cancelled:
                logger.info("POI batch %s cancelled after %d properties", query.key, len(outcomes))
                if trace:
                    trace.mark_cancelled()
                break
            if trace:
                trace.begin_property(prop.id, query.key)
            try:
                outcome = self.locate(prop, query, token)
                if on_result is not None:
                    on_result(prop, outcome)
            except MapsRequestCancelled:
                logger.info("POI batch %s cancelled at property %s", query.key, prop.id)
                if trace:
                    trace.mark_cancelled()
                break
            finally:
                if trace:
                    trace.end_property()
            outcomes.append(outcome)
        return outcomes


class PoiStore:
    """Visible POI sets for one comparison view, mirrored onto its map.

    ``lock`` is shared with the view's RouteCalculator so a reader sees
    a set and its routes change together.
    """

    def __init__(self, session: MapSession, routes=None, lock=None):
        self.session = session
        self.routes = routes
        self._lock = lock if lock is not None else threading.RLock()
        self._sets: Dict[Tuple[Any, str], LocateOutcome] = {}
        self._latest: Dict[Tuple[Any, str], LocateOutcome] = {}

    def mark_searching(self, property_id: Any, query_key: str):
        with self._lock:
            self._latest[(property_id, query_key)] = LocateOutcome(
                property_id, query_key, LocateStatus.SEARCHING,
            )

    def apply(self, outcome: LocateOutcome) -> None:
        """Record an outcome; successful ones replace the property's set."""
        slot = (outcome.property_id, outcome.query_key)
        with self._lock:
            self._latest[slot] = outcome
            if not outcome.succeeded:
                return

            keep = {destination_id(p) for p in outcome.pois}
            self._retire(slot, keep_destinations=keep)
            self._sets[slot] = outcome

            style = category_style(outcome.query_key)
            for poi in outcome.pois:
                self.session.add_overlay(
                    OVERLAY_POI,
                    {
                        "lat": poi.lat,
                        "lng": poi.lng,
                        "name": poi.name,
                        "place_id": poi.place_id,
                        "address": poi.address,
                        "rating": poi.rating,
                        "distance": poi.distance,
                        "color": style.marker_color,
                    },
                    owner=outcome.property_id,
                    key=outcome.query_key,
                )

    def _retire(self, slot, keep_destinations=frozenset()) -> None:
        property_id, query_key = slot
        previous = self._sets.pop(slot, None)
        self.session.clear_overlays(OVERLAY_POI, owner=property_id, key=query_key)
        if previous is not None and self.routes is not None:
            stale = [destination_id(p) for p in previous.pois
                     if destination_id(p) not in keep_destinations]
            if stale:
                self.routes.retire(property_id, stale)

    def retire(self, property_id: Any, query_key: str) -> None:
        with self._lock:
            self._retire((property_id, query_key))
            self._latest.pop((property_id, query_key), None)

    def drop_property(self, property_id: Any) -> None:
        with self._lock:
            for slot in [s for s in set(self._sets) | set(self._latest) if s[0] == property_id]:
                self.retire(*slot)

    def result(self, property_id: Any, query_key: str) -> Optional[LocateOutcome]:
        """Last successful set for the slot."""
        with self._lock:
            return self._sets.get((property_id, query_key))

    def status(self, property_id: Any, query_key: str) -> LocateStatus:
        latest = self.latest(property_id, query_key)
        return latest.status if latest else LocateStatus.IDLE

    def latest(self, property_id: Any, query_key: str) -> Optional[LocateOutcome]:
        with self._lock:
            return self._latest.get((property_id, query_key))

    def find(self, property_id: Any, dest_id: str) -> Optional[POI]:
        """POI by place id, or by rounded coordinates when it has none."""
        with self._lock:
            for (pid, _), outcome in self._sets.items():
                if pid != property_id:
                    continue
                for poi in outcome.pois:
                    if destination_id(poi) == dest_id:
                        return poi
        return None

    def outcomes(self) -> List[LocateOutcome]:
        """Every visible set, in the order it was shown."""
        with self._lock:
            return list(self._sets.values())

    def categories(self, property_id: Any) -> List[str]:
        with self._lock:
            return [key for (pid, key) in self._sets if pid == property_id]

    def clear(self) -> None:
        with self._lock:
            self._sets.clear()
            self._latest.clear()
