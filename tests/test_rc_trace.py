"""Unit tests for rc_trace.py: request-scoped tracing."""

import threading

from rc_trace import ActionTrace, get_trace, set_trace, clear_trace


class TestPropertySteps:
    def test_locate_and_route_land_on_the_same_step(self):
        trace = ActionTrace(trace_id="t-1", action="find_nearest")
        trace.begin_property(1, "gym")
        trace.record_locate(1, "gym", "ok", pois=3)
        trace.record_route(1, "rendered", cached=True)
        trace.end_property()

        assert len(trace.steps) == 1
        step = trace.steps[0]
        assert (step.property_id, step.query_key) == (1, "gym")
        assert (step.locate, step.pois) == ("ok", 3)
        assert step.route == "rendered"
        assert step.route_cached is True
        assert step.elapsed_ms >= 0

    def test_calls_attributed_to_current_property(self):
        trace = ActionTrace(trace_id="t-1")
        trace.begin_property(2, "gym")
        trace.record_call("places_nearby", 80, 200, "OK")
        trace.record_call("directions", 90, 200, "OK")
        trace.end_property()
        trace.record_call("directions", 70, 200, "OK")

        assert [c.property_id for c in trace.calls] == [2, 2, None]
        assert trace.summary_dict()["properties"][0]["provider_calls"] == 2

    def test_single_property_action_gets_its_own_step(self):
        trace = ActionTrace(trace_id="t-1", action="route_to")
        trace.record_route(4, "failed", message="No route found")

        assert [s.property_id for s in trace.steps] == [4]
        assert trace.steps[0].failed is True
        assert trace.steps[0].message == "No route found"


class TestSummary:
    def _batch(self, *statuses):
        trace = ActionTrace(trace_id="t-2", action="find_nearest")
        for pid, status in enumerate(statuses, start=1):
            trace.begin_property(pid, "gym")
            trace.record_locate(pid, "gym", status)
            trace.end_property()
        return trace

    def test_success(self):
        s = self._batch("ok", "empty").summary_dict()
        assert s["outcome"] == "success"
        assert s["action"] == "find_nearest"
        assert [p["locate"] for p in s["properties"]] == ["ok", "empty"]

    def test_partial_when_one_property_lacks_location(self):
        assert self._batch("ok", "no_location").outcome == "partial"

    def test_error_when_nothing_found(self):
        trace = self._batch("timeout", "error")
        assert trace.outcome == "error"

    def test_failed_route_makes_batch_partial(self):
        trace = self._batch("ok", "ok")
        trace.record_route(2, "failed")
        assert trace.outcome == "partial"

    def test_empty(self):
        trace = ActionTrace(trace_id="t-2")
        assert trace.empty is True
        assert trace.outcome == "empty"

    def test_cancelled_wins(self):
        trace = self._batch("ok")
        trace.mark_cancelled()
        assert trace.summary_dict()["outcome"] == "cancelled"

    def test_cache_hits_not_counted_as_provider_calls(self):
        trace = ActionTrace(trace_id="t-3")
        trace.record_call("directions", 100, 200, "OK")
        trace.record_cache_hit("directions")
        s = trace.summary_dict()
        assert s["provider_calls"] == 1
        assert s["cache_hits"] == 1
        assert trace.calls[1].cached is True

    def test_log_summary_names_failed_properties(self, caplog):
        trace = self._batch("ok", "timeout")
        with caplog.at_level("INFO", logger="rc_trace"):
            trace.log_summary()
        assert "failed=[2]" in caplog.text
        assert "outcome=partial" in caplog.text


class TestThreadLocal:
    def test_set_get_clear(self):
        ctx = ActionTrace(trace_id="t-5")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_isolated_between_threads(self):
        set_trace(ActionTrace(trace_id="main"))
        seen = []

        def worker():
            seen.append(get_trace())

        t = threading.Thread(target=worker)
        t.start()
        t.join()
        clear_trace()
        assert seen == [None]
