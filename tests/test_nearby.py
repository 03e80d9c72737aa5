"""Tests for nearby.py: distance helpers, place normalisation and the HTTP client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from maps_client import CancelToken, MapsError, MapsProviderError, MapsRequestCancelled, MapsTimeoutError
from nearby import (
    NearbyPlacesAPIClient,
    NearbyPlacesService,
    format_miles,
    haversine_miles,
)


def _raw_place(name, lat, lng, place_id=None, **extra):
    place = {"name": name, "place_id": place_id or f"pid-{name}",
             "geometry": {"location": {"lat": lat, "lng": lng}}}
    place.update(extra)
    return place


class TestDistance:

    def test_one_degree_latitude(self):
        miles = haversine_miles((40.0, -74.0), (41.0, -74.0))
        assert abs(miles - 69.09) < 0.05

    def test_zero_distance(self):
        assert haversine_miles((40.7, -73.9), (40.7, -73.9)) == 0

    def test_format_miles(self):
        assert format_miles(0.4234) == "0.42 mi"
        assert format_miles(2) == "2.00 mi"


class TestNearbyPlacesService:

    def test_category_search_sorted_nearest_first(self):
        maps = MagicMock()
        maps.places_nearby.return_value = [
            _raw_place("Far Gym", 40.02, -74.0),
            _raw_place("Near Gym", 40.001, -74.0, vicinity="1 Main St", rating=4.5),
        ]
        places = NearbyPlacesService(maps).nearby(40.0, -74.0, place_type="gym")

        assert [p["name"] for p in places] == ["Near Gym", "Far Gym"]
        assert places[0]["address"] == "1 Main St"
        assert places[0]["rating"] == 4.5
        assert places[0]["distance"].endswith(" mi")
        assert places[0]["distance_miles"] < places[1]["distance_miles"]
        assert maps.places_nearby.call_args[1]["radius_meters"] == 2000

    def test_keyword_only_uses_text_search(self):
        maps = MagicMock()
        maps.text_search.return_value = [_raw_place("Thai Place", 40.003, -74.0)]
        places = NearbyPlacesService(maps).nearby(40.0, -74.0, keyword="Thai food")

        maps.places_nearby.assert_not_called()
        args, kwargs = maps.text_search.call_args
        assert args[0] == "Thai food"
        assert kwargs["radius_meters"] == 5000
        assert places[0]["name"] == "Thai Place"

    def test_places_without_location_skipped(self):
        maps = MagicMock()
        maps.places_nearby.return_value = [
            {"name": "Ghost", "place_id": "x"},
            _raw_place("Real", 40.001, -74.0),
        ]
        places = NearbyPlacesService(maps).nearby(40.0, -74.0, place_type="cafe")
        assert [p["name"] for p in places] == ["Real"]

    def test_requires_type_or_keyword(self):
        with pytest.raises(ValueError):
            NearbyPlacesService(MagicMock()).nearby(40.0, -74.0)

    def test_errors_propagate(self):
        maps = MagicMock()
        maps.places_nearby.side_effect = MapsTimeoutError("places_nearby", 10)
        with pytest.raises(MapsTimeoutError):
            NearbyPlacesService(maps).nearby(40.0, -74.0, place_type="gym")

    def test_token_passed_through(self):
        maps = MagicMock()
        maps.places_nearby.return_value = []
        token = CancelToken()
        NearbyPlacesService(maps).nearby(40.0, -74.0, place_type="gym", token=token)
        assert maps.places_nearby.call_args[1]["token"] is token


class TestNearbyPlacesAPIClient:

    def _response(self, payload, status_code=200):
        resp = MagicMock(status_code=status_code)
        resp.json.return_value = payload
        return resp

    def test_posts_payload_and_returns_places(self):
        client = NearbyPlacesAPIClient(base_url="http://svc.test/")
        places = [{"name": "A", "lat": 40.0, "lng": -74.0}]
        with patch.object(client.session, "post",
                          return_value=self._response({"places": places})) as mock_post:
            result = client.nearby(40.0, -74.0, place_type="gym", radius_meters=2000)

        assert result == places
        url = mock_post.call_args[0][0]
        assert url == "http://svc.test/api/nearby-places"
        assert mock_post.call_args[1]["json"] == {
            "lat": 40.0, "lng": -74.0, "type": "gym", "radius": 2000,
        }

    def test_non_200_raises_provider_error(self):
        client = NearbyPlacesAPIClient(base_url="http://svc.test")
        with patch.object(client.session, "post",
                          return_value=self._response({"error": "Places search failed"}, 502)):
            with pytest.raises(MapsProviderError) as exc:
                client.nearby(40.0, -74.0, keyword="Dog parks")
        assert exc.value.status == "HTTP 502"

    def test_timeout(self):
        client = NearbyPlacesAPIClient(base_url="http://svc.test", timeout=2)
        with patch.object(client.session, "post", side_effect=requests.Timeout()):
            with pytest.raises(MapsTimeoutError):
                client.nearby(40.0, -74.0, place_type="gym")

    def test_connection_error(self):
        client = NearbyPlacesAPIClient(base_url="http://svc.test")
        with patch.object(client.session, "post", side_effect=requests.ConnectionError("down")):
            with pytest.raises(MapsError):
                client.nearby(40.0, -74.0, place_type="gym")

    def test_cancelled_before_request(self):
        client = NearbyPlacesAPIClient(base_url="http://svc.test")
        token = CancelToken()
        token.cancel()
        with patch.object(client.session, "post") as mock_post:
            with pytest.raises(MapsRequestCancelled):
                client.nearby(40.0, -74.0, place_type="gym", token=token)
        mock_post.assert_not_called()
