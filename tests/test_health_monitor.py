"""
Tests for the map-dependency health monitor.

Covers:
  - Passive tracking of Google calls (record_call -> status)
  - The tile-server check with mocked HTTP
  - /healthz/apis endpoint
"""

from unittest.mock import patch, MagicMock

import pytest
import requests

from health_monitor import FEATURES, HealthMonitor


@pytest.fixture
def monitor():
    """Fresh HealthMonitor instance (no background thread)."""
    return HealthMonitor()


def _record(monitor, service, ok, failed, error="error"):
    for _ in range(ok):
        monitor.record_call(service, True, 100)
    for _ in range(failed):
        monitor.record_call(service, False, 200, error)


class TestPassiveTracking:

    def test_unknown_when_no_calls(self, monitor):
        status = monitor.get_all_status()["google_directions"]
        assert status == {"status": "unknown", "sample_size": 0, "feature": "routes"}

    def test_healthy(self, monitor):
        _record(monitor, "google_places", 20, 0)
        status = monitor.get_all_status()["google_places"]
        assert status["status"] == "healthy"
        assert status["success_rate"] == 1.0
        assert "error" not in status

    def test_degraded(self, monitor):
        """80% success rate -> 'degraded' (below 95%, above 70%)."""
        _record(monitor, "google_directions", 16, 4, "ZERO_RESULTS")
        status = monitor.get_all_status()["google_directions"]
        assert status["status"] == "degraded"
        assert status["success_rate"] == 0.8
        assert status["error"] == "ZERO_RESULTS"

    def test_down_reports_last_error(self, monitor):
        _record(monitor, "google_places", 5, 4, "OVER_QUERY_LIMIT")
        monitor.record_call("google_places", False, 100, "REQUEST_DENIED")
        status = monitor.get_all_status()["google_places"]
        assert status["status"] == "down"
        assert status["error"] == "REQUEST_DENIED"

    def test_threshold_boundary_is_healthy(self, monitor):
        _record(monitor, "google_places", 19, 1)
        assert monitor.get_all_status()["google_places"]["status"] == "healthy"

    def test_latency_average(self, monitor):
        monitor.record_call("google_places", True, 100)
        monitor.record_call("google_places", True, 300)
        assert monitor.get_all_status()["google_places"]["latency_ms"] == 200

    def test_window_is_bounded(self, monitor):
        _record(monitor, "google_places", 0, 60)
        _record(monitor, "google_places", 50, 0)
        status = monitor.get_all_status()["google_places"]
        assert status["sample_size"] == 50
        assert status["status"] == "healthy"


class TestTileCheck:

    @patch("health_monitor.requests.get")
    def test_healthy(self, mock_get, monitor):
        mock_get.return_value = MagicMock(status_code=200)
        assert monitor.check_tiles()["status"] == "healthy"
        assert "User-Agent" in mock_get.call_args[1]["headers"]
        assert monitor.get_all_status()["osm_tiles"]["feature"] == "static map"

    @patch("health_monitor.requests.get")
    def test_degraded_on_non_200(self, mock_get, monitor):
        mock_get.return_value = MagicMock(status_code=429)
        result = monitor.check_tiles()
        assert result["status"] == "degraded"
        assert result["error"] == "HTTP 429"

    @patch("health_monitor.requests.get")
    def test_timeout(self, mock_get, monitor):
        mock_get.side_effect = requests.Timeout("timed out")
        result = monitor.check_tiles()
        assert result["status"] == "down"
        assert result["error"] == "timeout"
        assert result["latency_ms"] >= 0

    @patch("health_monitor.requests.get")
    def test_connection_error(self, mock_get, monitor):
        mock_get.side_effect = requests.ConnectionError("DNS resolution failed")
        result = monitor.check_tiles()
        assert result["status"] == "down"
        assert "DNS" in result["error"]

    def test_unknown_before_first_check(self, monitor):
        assert monitor.get_all_status()["osm_tiles"]["status"] == "unknown"

    @patch("health_monitor.requests.get")
    def test_status_change_is_logged_as_warning(self, mock_get, monitor, caplog):
        mock_get.return_value = MagicMock(status_code=200)
        monitor.check_tiles()
        mock_get.return_value = MagicMock(status_code=503)
        with caplog.at_level("WARNING", logger="health_monitor"):
            monitor.check_tiles()
        assert "healthy -> degraded" in caplog.text


class TestLifecycle:

    def test_every_service_has_a_feature(self, monitor):
        assert set(monitor.get_all_status()) == set(FEATURES)

    def test_start_is_idempotent(self, monitor):
        with patch.object(monitor, "check_tiles"):
            monitor.start()
            thread = monitor._thread
            monitor.start()
            assert monitor._thread is thread
            monitor.stop()
            thread.join(timeout=2)


class TestHealthEndpoint:

    def test_healthz_apis(self, client):
        with patch("app.health_monitor.get_status",
                   return_value={"google_places": {"status": "healthy"}}):
            resp = client.get("/healthz/apis")
        assert resp.status_code == 200
        assert resp.get_json()["google_places"]["status"] == "healthy"
