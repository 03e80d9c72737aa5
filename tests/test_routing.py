"""Tests for routing.py: route parsing, midpoint, cache and RouteCalculator."""

from unittest.mock import MagicMock

import pytest

from map_session import MapSession, OVERLAY_ROUTE
from maps_client import CancelToken, MapsProviderError, MapsRequestCancelled, MapsTimeoutError
from poi_locator import POI
from rc_trace import ActionTrace, clear_trace, set_trace
from routing import (
    ROUTE_FAILED_MESSAGE,
    ROUTE_TIMEOUT_MESSAGE,
    Route,
    RouteCache,
    RouteCalculator,
    RouteState,
    RouteStep,
    TravelMode,
    route_cache_key,
    route_midpoint,
)

ORIGIN = (40.7379, -73.9910)


def _directions_route(step_lengths=(100, 100), start=ORIGIN, duration="5 mins"):
    """Directions API route with steps heading north 0.001 deg at a time."""
    steps = []
    lat, lng = start
    for meters in step_lengths:
        steps.append({
            "distance": {"value": meters},
            "start_location": {"lat": lat, "lng": lng},
            "end_location": {"lat": lat + 0.001, "lng": lng},
        })
        lat += 0.001
    total = sum(step_lengths)
    return {
        "legs": [{
            "distance": {"text": f"{total / 1609.34:.1f} mi", "value": total},
            "duration": {"text": duration, "value": 300},
            "start_location": {"lat": start[0], "lng": start[1]},
            "steps": steps,
        }],
    }


def _poi(name="Gym", lat=40.7400, lng=-73.9900, place_id=None):
    return POI(name, lat, lng, "gym", place_id=place_id if place_id is not None else f"pid-{name}")


def _steps(lengths):
    return tuple(
        RouteStep(distance_m=m, start=(float(i), 0.0), end=(float(i + 1), 0.0))
        for i, m in enumerate(lengths)
    )


class TestRouteMidpoint:

    def test_uses_distance_not_array_middle(self):
        steps = _steps([700, 100, 100, 100])
        mid = route_midpoint(steps)
        assert mid == steps[0].end
        assert mid != steps[len(steps) // 2].end

    def test_even_steps_exact_half(self):
        steps = _steps([100, 100, 100, 100])
        assert route_midpoint(steps) == steps[1].end

    def test_tie_goes_to_later_step(self):
        # cumulative 100, 300 against half = 200: both 100 away
        steps = _steps([100, 200, 100])
        assert route_midpoint(steps) == steps[1].end

    def test_no_distance_falls_back_to_middle_step(self):
        steps = _steps([0, 0, 0])
        assert route_midpoint(steps) == steps[1].end

    def test_empty(self):
        assert route_midpoint(()) is None


class TestRoute:

    def test_from_directions(self):
        route = Route.from_directions(_directions_route((200, 300)), "walking")
        assert route.distance_m == 500
        assert route.duration == "5 mins"
        assert route.mode == "walking"
        assert len(route.steps) == 2
        assert route.path[0] == ORIGIN
        assert len(route.path) == 3

    def test_to_dict(self):
        d = Route.from_directions(_directions_route((100, 100)), "walking").to_dict()
        assert d["route"][0] == {"lat": ORIGIN[0], "lng": ORIGIN[1]}
        assert d["midpoint"] is not None
        assert set(d) >= {"distance", "duration", "distance_m", "duration_s", "mode"}

    def test_missing_legs_raises(self):
        with pytest.raises((KeyError, IndexError)):
            Route.from_directions({"legs": []}, "walking")


class TestCacheKey:

    def test_rounds_coordinates(self):
        a = route_cache_key((40.1234561, -74.0), (40.5, -73.5), "walking")
        b = route_cache_key((40.1234559, -74.0), (40.5, -73.5), TravelMode.WALKING)
        assert a == b
        assert a.startswith("40.12346,")

    def test_mode_is_part_of_key(self):
        a = route_cache_key(ORIGIN, (40.5, -73.5), "walking")
        b = route_cache_key(ORIGIN, (40.5, -73.5), "driving")
        assert a != b

    def test_place_id_destination(self):
        assert "place_id:abc" in route_cache_key(ORIGIN, "abc", "walking")

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            route_cache_key(ORIGIN, (40.5, -73.5), "teleport")

    def test_cache_is_write_once(self):
        cache = RouteCache()
        first = Route("1 mi", "5 mins", 1609, 300, "walking")
        second = Route("2 mi", "9 mins", 3218, 540, "walking")
        assert cache.put("k", first) is first
        assert cache.put("k", second) is first
        assert cache.get("k") is first
        assert "k" in cache
        assert len(cache) == 1


class TestRouteCalculator:

    def _calc(self, directions=None):
        maps = MagicMock()
        if directions is not None:
            maps.directions.side_effect = directions
        else:
            maps.directions.return_value = _directions_route()
        session = MapSession("s")
        return RouteCalculator(maps, session), maps, session

    def test_request_renders_route(self):
        calc, maps, session = self._calc()
        record = calc.request(1, ORIGIN, _poi(), color="#4CAF50")

        assert record.state == RouteState.RENDERED
        assert record.from_cache is False
        overlays = session.overlays(OVERLAY_ROUTE)
        assert len(overlays) == 1
        assert overlays[0].owner == 1
        assert overlays[0].key == "pid-Gym"
        assert overlays[0].data["color"] == "#4CAF50"
        assert overlays[0].data["label"]["text"] == "5 mins"
        mid = record.route.midpoint()
        assert overlays[0].data["label"]["position"] == {"lat": mid[0], "lng": mid[1]}

    def test_directions_called_with_coordinates_and_mode(self):
        calc, maps, _ = self._calc()
        calc.request(1, ORIGIN, _poi(lat=40.75, lng=-73.98), mode=TravelMode.TRANSIT)
        args, kwargs = maps.directions.call_args
        assert args == (ORIGIN, (40.75, -73.98), "transit")

    def test_place_id_used_when_no_coordinates(self):
        calc, maps, _ = self._calc()
        calc.request(1, ORIGIN, POI("Somewhere", None, None, "gym", place_id="ChIJ1"))
        assert maps.directions.call_args[0][1] == "ChIJ1"

    def test_one_directions_call_per_key(self):
        calc, maps, session = self._calc()
        calc.request(1, ORIGIN, _poi())
        second = calc.request(1, ORIGIN, _poi())

        assert maps.directions.call_count == 1
        assert second.from_cache is True
        assert len(session.overlays(OVERLAY_ROUTE)) == 1

    def test_cache_hit_recorded_on_trace(self):
        calc, _, _ = self._calc()
        trace = ActionTrace(trace_id="t-route")
        calc.request(1, ORIGIN, _poi())
        set_trace(trace)
        try:
            calc.request(1, ORIGIN, _poi())
        finally:
            clear_trace()
        assert trace.summary_dict()["cache_hits"] == 1
        assert trace.summary_dict()["provider_calls"] == 0
        assert [s.property_id for s in trace.steps] == [1]
        assert trace.steps[0].route_cached is True

    def test_failure_message_and_no_overlay(self):
        calc, _, session = self._calc(directions=MapsProviderError("Directions API", "ZERO_RESULTS"))
        record = calc.request(1, ORIGIN, _poi())

        assert record.state == RouteState.FAILED
        assert record.error == ROUTE_FAILED_MESSAGE
        assert record.timed_out is False
        assert session.overlays(OVERLAY_ROUTE) == []

    def test_timeout_message(self):
        calc, _, _ = self._calc(directions=MapsTimeoutError("directions", 10))
        record = calc.request(1, ORIGIN, _poi())
        assert record.state == RouteState.FAILED
        assert record.timed_out is True
        assert record.error == ROUTE_TIMEOUT_MESSAGE

    def test_failure_does_not_affect_other_pairs(self):
        calc, _, session = self._calc(directions=[
            MapsProviderError("Directions API", "NOT_FOUND"),
            _directions_route(),
        ])
        failed = calc.request(1, ORIGIN, _poi("A"))
        ok = calc.request(2, (40.7268, -73.9874), _poi("A"))

        assert failed.state == RouteState.FAILED
        assert ok.state == RouteState.RENDERED
        assert calc.state(1, "pid-A") == RouteState.FAILED
        assert len(session.overlays(OVERLAY_ROUTE)) == 1

    def test_retry_after_failure(self):
        calc, maps, _ = self._calc(directions=[
            MapsTimeoutError("directions", 10),
            _directions_route(),
        ])
        calc.request(1, ORIGIN, _poi())
        record = calc.request(1, ORIGIN, _poi())
        assert record.state == RouteState.RENDERED
        assert maps.directions.call_count == 2

    def test_malformed_response_is_failure(self):
        calc, _, _ = self._calc(directions=[{"legs": []}])
        assert calc.request(1, ORIGIN, _poi()).state == RouteState.FAILED

    def test_cancellation_propagates_and_clears_record(self):
        calc, _, _ = self._calc(directions=MapsRequestCancelled("gone"))
        with pytest.raises(MapsRequestCancelled):
            calc.request(1, ORIGIN, _poi(), token=CancelToken())
        assert calc.state(1, "pid-Gym") == RouteState.IDLE

    def test_state_idle_before_request(self):
        calc, _, _ = self._calc()
        assert calc.state(1, "pid-Gym") == RouteState.IDLE
        assert calc.record(1, "pid-Gym") is None

    def test_summary_draws_nothing_and_warms_cache(self):
        calc, maps, session = self._calc()
        route = calc.summary(ORIGIN, _poi())
        assert route.duration == "5 mins"
        assert session.overlays(OVERLAY_ROUTE) == []

        calc.request(1, ORIGIN, _poi())
        assert maps.directions.call_count == 1

    def test_summary_failure_returns_none(self):
        calc, _, _ = self._calc(directions=MapsProviderError("Directions API", "NOT_FOUND"))
        assert calc.summary(ORIGIN, _poi()) is None

    def test_retire(self):
        calc, _, session = self._calc()
        calc.request(1, ORIGIN, _poi("A"))
        calc.request(1, ORIGIN, _poi("B", lat=40.75))
        assert calc.retire(1, ["pid-A"]) == 1
        assert [o.key for o in session.overlays(OVERLAY_ROUTE)] == ["pid-B"]
        assert calc.state(1, "pid-A") == RouteState.IDLE
