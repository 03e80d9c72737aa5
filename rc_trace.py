"""
Request-scoped tracing for comparison actions.

A comparison action walks the compared properties one at a time: search
for places, then route to the nearest hit. The trace mirrors that shape.
Each property gets a PropertyStep holding what the search found, what
happened to its route and how long it took. Every outbound call (Places,
Directions or a cache hit standing in for one) is a ProviderCall tied to
the property that was being processed.

The HTTP layer installs a trace per request:

    ctx = ActionTrace(trace_id=request_id, action="find_nearest")
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

and everything below it reports through ``get_trace()``, which is None
outside a request.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CACHE_HIT = "cache_hit"

# Locate and route states as reported by poi_locator / routing.
_LOCATE_FAILED = ("error", "timeout")
_LOCATE_FOUND = ("ok", "empty")
_ROUTE_FAILED = "failed"


@dataclass
class ProviderCall:
    endpoint: str           # "places_nearby", "text_search", "directions", "nearby_places"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    property_id: Any = None

    @property
    def cached(self) -> bool:
        return self.provider_status == CACHE_HIT


@dataclass
class PropertyStep:
    """What one action did for one property."""
    property_id: Any
    query_key: str = ""
    started: float = field(default_factory=time.time)
    elapsed_ms: int = 0
    locate: str = ""        # LocateStatus value, "" if no search ran
    pois: int = 0
    route: str = ""         # RouteState value of the nearest-result route
    route_cached: bool = False
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.locate in _LOCATE_FAILED or self.route == _ROUTE_FAILED

    def to_dict(self, calls: List[ProviderCall]) -> Dict[str, Any]:
        mine = [c for c in calls if c.property_id == self.property_id]
        return {
            "property_id": self.property_id,
            "query": self.query_key,
            "locate": self.locate or None,
            "pois": self.pois,
            "route": self.route or None,
            "route_cached": self.route_cached,
            "elapsed_ms": self.elapsed_ms,
            "provider_calls": sum(1 for c in mine if not c.cached),
            "message": self.message or None,
        }


@dataclass
class ActionTrace:
    trace_id: str
    action: str = ""
    request_start: float = field(default_factory=time.time)
    steps: List[PropertyStep] = field(default_factory=list)
    calls: List[ProviderCall] = field(default_factory=list)
    cancelled: bool = False
    _current: Optional[PropertyStep] = None

    # ------------------------------------------------------------------
    # Per-property steps
    # ------------------------------------------------------------------

    def begin_property(self, property_id: Any, query_key: str = "") -> PropertyStep:
        step = PropertyStep(property_id=property_id, query_key=query_key)
        self.steps.append(step)
        self._current = step
        return step

    def end_property(self) -> None:
        step, self._current = self._current, None
        if step is None:
            return
        step.elapsed_ms = int((time.time() - step.started) * 1000)
        calls = sum(1 for c in self.calls if c.property_id == step.property_id and not c.cached)
        logger.info(
            "  [property] trace=%s id=%s query=%s locate=%s pois=%d route=%s%s ms=%d calls=%d%s",
            self.trace_id, step.property_id, step.query_key or "-",
            step.locate or "-", step.pois, step.route or "-",
            " (cached)" if step.route_cached else "",
            step.elapsed_ms, calls,
            f" msg={step.message}" if step.message else "",
        )

    def _step(self, property_id: Any) -> PropertyStep:
        if self._current is not None and self._current.property_id == property_id:
            return self._current
        for step in reversed(self.steps):
            if step.property_id == property_id:
                return step
        # Single-property actions (info-window buttons) have no batch around them.
        step = PropertyStep(property_id=property_id)
        self.steps.append(step)
        return step

    def record_locate(self, property_id: Any, query_key: str, status: str,
                      pois: int = 0, message: str = "") -> None:
        step = self._step(property_id)
        step.query_key = step.query_key or query_key
        step.locate, step.pois = status, pois
        if message:
            step.message = message

    def record_route(self, property_id: Any, state: str, cached: bool = False,
                     message: str = "") -> None:
        step = self._step(property_id)
        step.route, step.route_cached = state, cached
        if message:
            step.message = message

    def mark_cancelled(self) -> None:
        self.cancelled = True

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    def record_call(self, endpoint: str, elapsed_ms: int, status_code: int,
                    provider_status: str = "") -> None:
        property_id = self._current.property_id if self._current else None
        self.calls.append(ProviderCall(endpoint, elapsed_ms, status_code,
                                       provider_status, property_id))
        logger.debug(
            "  [call] trace=%s property=%s %s ms=%d http=%d provider=%s",
            self.trace_id, property_id if property_id is not None else "-",
            endpoint, elapsed_ms, status_code, provider_status or "-",
        )

    def record_cache_hit(self, endpoint: str) -> None:
        self.record_call(endpoint, 0, 200, CACHE_HIT)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return "cancelled"
        searched = [s for s in self.steps if s.locate]
        if not searched:
            return "empty"
        found = [s for s in searched if s.locate in _LOCATE_FOUND and not s.failed]
        if not found:
            return "error"
        if len(found) < len(self.steps):
            return "partial"
        return "success"

    @property
    def empty(self) -> bool:
        return not self.steps and not self.calls

    def summary_dict(self) -> Dict[str, Any]:
        network = [c for c in self.calls if not c.cached]
        return {
            "trace_id": self.trace_id,
            "action": self.action or None,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "provider_calls": len(network),
            "cache_hits": len(self.calls) - len(network),
            "properties": [s.to_dict(self.calls) for s in self.steps],
            "outcome": self.outcome,
        }

    def log_summary(self) -> None:
        s = self.summary_dict()
        failed = [p["property_id"] for p in s["properties"]
                  if p["locate"] in _LOCATE_FAILED or p["route"] == _ROUTE_FAILED]
        logger.info(
            "[trace-summary] trace=%s action=%s total_ms=%d properties=%d "
            "provider_calls=%d cache_hits=%d failed=%s outcome=%s",
            s["trace_id"], s["action"] or "-", s["total_elapsed_ms"],
            len(s["properties"]), s["provider_calls"], s["cache_hits"],
            failed or "-", s["outcome"],
        )


_trace_local = threading.local()


def get_trace() -> Optional[ActionTrace]:
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[ActionTrace]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
