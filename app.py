import os
import sys
import base64
import logging
import uuid
from functools import wraps

from flask import Flask, request, render_template, jsonify, g, Response
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

import health_monitor
from rc_trace import ActionTrace, set_trace, clear_trace
from models import (
    init_db, get_properties, list_properties,
    log_event, get_event_counts,
)
from maps_client import GoogleMapsClient, MapsError, MapsTimeoutError
from map_session import MapProviderUnavailable, load_map_provider
from nearby import NearbyPlacesService
from routing import Route, TravelMode
from comparison import ActionSuperseded, ComparisonView, SessionRegistry, ViewClosed
from poi_locator import Category
from recent_searches import RecentSearchStore, DEFAULT_TERMS

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN. Silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Places / Directions failures are shown inline to the user
            if exc_type is not None and issubclass(exc_type, MapsError):
                sentry_sdk.add_breadcrumb(
                    category="google_maps",
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
            if hasattr(exc_value, "response") and getattr(exc_value.response, "status_code", None) == 429:
                sentry_sdk.add_breadcrumb(
                    category="rate_limit",
                    message=msg or "HTTP 429",
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'rentcompare-dev-key')
app.config['GOOGLE_MAPS_FRONTEND_API_KEY'] = os.environ.get('GOOGLE_MAPS_FRONTEND_API_KEY')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'rentcompare-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Proxy fix: the app runs behind a reverse proxy that sets
# X-Forwarded-For.  ProxyFix rewrites request.remote_addr to the real
# client IP so both Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: validates X-CSRFToken header on all state-changing
# requests. The compare page renders the token into a <meta> tag and the
# map script sends it on every fetch() call.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: Places and Directions calls are billed per request.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_SEARCH = os.environ.get("RATE_LIMIT_SEARCH", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Nearby-place searches and routes will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )

# One store for the whole process, handed to every comparison view.
recent_searches = RecentSearchStore(seed=DEFAULT_TERMS)
sessions = SessionRegistry()


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _wants_json():
    """Return True if the client prefers a JSON response."""
    if request.path.startswith("/api/"):
        return True
    accept = request.headers.get("Accept", "")
    return "application/json" in accept


def _maps_client():
    # One client per view: cancelling a view closes its HTTP session.
    return GoogleMapsClient(os.environ.get("GOOGLE_MAPS_API_KEY"))


def _parse_float(value, name):
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number")


def _parse_ids(raw):
    """Accept "1,2,3" or [1, 2, 3]; returns a list of ints."""
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    try:
        return [int(x) for x in raw or []]
    except (TypeError, ValueError):
        raise ValueError("property ids must be integers")


def _missing_key_response():
    return jsonify({
        "error": "Maps are unavailable because GOOGLE_MAPS_API_KEY is not configured.",
        "request_id": g.request_id,
    }), 503


def _traced(fn):
    """Run the handler with a request trace and log its summary."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        trace_ctx = ActionTrace(trace_id=g.request_id, action=fn.__name__)
        set_trace(trace_ctx)
        try:
            return fn(*args, **kwargs)
        finally:
            if not trace_ctx.empty:
                trace_ctx.log_summary()
            clear_trace()
    return wrapper


def _with_view(fn):
    """Resolve <session_id> to a live view and map view errors to HTTP."""
    @wraps(fn)
    def wrapper(session_id, *args, **kwargs):
        view = sessions.get(session_id)
        if view is None:
            return jsonify({"error": "Comparison session not found"}), 404
        try:
            return fn(view, *args, **kwargs)
        except ViewClosed:
            return jsonify({"error": "Comparison session closed"}), 404
        except ActionSuperseded:
            return jsonify({
                "error": "The property list changed while this action was running",
                "view": view.to_dict(),
            }), 409
        except KeyError as e:
            return jsonify({"error": f"Not found: {e.args[0] if e.args else ''}"}), 404
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
    return _traced(wrapper)


def _log_route_failures(view, rows):
    for row in rows:
        if row.get("route_state") == "failed":
            log_event("route_failed", session_id=view.view_id,
                      property_id=row["property_id"], metadata={"message": row.get("message")})


# ---------------------------------------------------------------------------
# Provider and collaborator endpoints
# ---------------------------------------------------------------------------

@app.route("/api/maps-key")
def maps_key():
    """Browser Maps key, fetched once per page."""
    try:
        key = app.config.get("GOOGLE_MAPS_FRONTEND_API_KEY") or load_map_provider()
    except MapProviderUnavailable as e:
        return jsonify({"error": str(e)}), 503
    return jsonify({"key": key})


@app.route("/api/nearby-places", methods=["GET", "POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
@_traced
def nearby_places():
    """Nearby places for a point, nearest first.

    GET  ?lat=&lng=&type=
    POST {"lat", "lng", "type", "radius", "keyword" | "name"}
    """
    if request.method == "POST":
        data = request.get_json(silent=True) or {}
    else:
        data = request.args
    try:
        lat = _parse_float(data.get("lat"), "lat")
        lng = _parse_float(data.get("lng"), "lng")
        radius = int(data["radius"]) if data.get("radius") else None
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    place_type = (data.get("type") or "").strip()
    keyword = (data.get("keyword") or data.get("name") or "").strip() or None
    if place_type in {c.value for c in Category}:
        place_type = Category(place_type).place_type
    if not place_type and not keyword:
        return jsonify({"error": "type or keyword is required"}), 400

    config_ok, _ = _check_service_config()
    if not config_ok:
        return _missing_key_response()

    try:
        places = NearbyPlacesService(_maps_client()).nearby(
            lat, lng, place_type=place_type, radius_meters=radius, keyword=keyword,
        )
    except MapsTimeoutError as e:
        logger.warning("[%s] nearby-places timed out: %s", g.request_id, e)
        return jsonify({"error": "Places search timed out", "places": []}), 504
    except MapsError as e:
        logger.warning("[%s] nearby-places failed: %s", g.request_id, e)
        return jsonify({"error": "Places search failed", "places": []}), 502
    return jsonify({"places": places})


@app.route("/api/routes", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
@_traced
def calculate_route():
    """One-off route: {"origin": {lat, lng}, "destination": {lat, lng} | place id, "mode"}."""
    data = request.get_json(silent=True) or {}
    try:
        origin = data.get("origin") or {}
        origin = (_parse_float(origin.get("lat"), "origin.lat"),
                  _parse_float(origin.get("lng"), "origin.lng"))
        destination = data.get("destination")
        if isinstance(destination, dict):
            destination = (_parse_float(destination.get("lat"), "destination.lat"),
                           _parse_float(destination.get("lng"), "destination.lng"))
        elif not isinstance(destination, str) or not destination.strip():
            raise ValueError("destination is required")
        mode = TravelMode(data.get("mode") or TravelMode.WALKING.value)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    config_ok, _ = _check_service_config()
    if not config_ok:
        return _missing_key_response()

    try:
        route = Route.from_directions(
            _maps_client().directions(origin, destination, mode.value), mode.value,
        )
    except MapsTimeoutError:
        return jsonify({"error": "Route request timed out"}), 504
    except (MapsError, KeyError, IndexError) as e:
        logger.warning("[%s] route failed: %s", g.request_id, e)
        return jsonify({"error": "Unable to calculate route"}), 502
    return jsonify(route.to_dict())


@app.route("/api/properties")
def api_properties():
    try:
        ids = _parse_ids(request.args.get("ids", ""))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    props = get_properties(ids) if ids else list_properties(city=request.args.get("city"))
    return jsonify({"properties": [p.to_dict() for p in props]})


# ---------------------------------------------------------------------------
# Comparison sessions
# ---------------------------------------------------------------------------

def _load_properties(raw_ids):
    """Returns (properties, error response or None)."""
    ids = _parse_ids(raw_ids)
    props = get_properties(ids)
    found = {p.id for p in props}
    missing = [i for i in ids if i not in found]
    if missing:
        return None, (jsonify({"error": "Unknown property ids", "missing": missing}), 404)
    return props, None


@app.route("/api/compare/sessions", methods=["POST"])
@_traced
def create_comparison():
    data = request.get_json(silent=True) or {}
    try:
        props, error = _load_properties(data.get("property_ids", []))
        if error:
            return error
        view = _new_view(props, data)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    sessions.add(view)
    log_event("comparison_created", session_id=view.view_id,
              metadata={"properties": [p.id for p in props], "degraded": bool(
                  view.session and view.session.degraded)})
    return jsonify(view.to_dict()), 201


def _new_view(props, data):
    maps = _maps_client()
    return ComparisonView(
        props,
        source=NearbyPlacesService(maps),
        maps=maps,
        travel_mode=TravelMode(data.get("travel_mode") or TravelMode.WALKING.value),
        recent=recent_searches,
        container=data.get("container"),
    )


@app.route("/api/compare/sessions/<session_id>", methods=["GET"])
@_with_view
def get_comparison(view):
    return jsonify(view.to_dict())


@app.route("/api/compare/sessions/<session_id>", methods=["DELETE"])
def delete_comparison(session_id):
    if not sessions.remove(session_id):
        return jsonify({"error": "Comparison session not found"}), 404
    return jsonify({"ok": True})


@app.route("/api/compare/sessions/<session_id>/properties", methods=["PUT"])
@_with_view
def update_comparison_properties(view):
    data = request.get_json(silent=True) or {}
    props, error = _load_properties(data.get("property_ids", []))
    if error:
        return error
    view.set_properties(props)
    return jsonify(view.to_dict())


@app.route("/api/compare/sessions/<session_id>/find-nearest", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
@_with_view
def find_nearest(view):
    data = request.get_json(silent=True) or {}
    query = data.get("query") or data.get("category")
    if not query:
        return jsonify({"error": "query is required"}), 400
    if view.ready and not _check_service_config()[0]:
        return _missing_key_response()

    rows = view.find_nearest(query)
    log_event("search_run", session_id=view.view_id,
              metadata={"query": view.query.key if view.query else query,
                        "found": sum(1 for r in rows if r["status"] == "ok")})
    _log_route_failures(view, rows)
    return jsonify(view.to_dict())


@app.route("/api/compare/sessions/<session_id>/locate", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
@_with_view
def locate_for_property(view):
    data = request.get_json(silent=True) or {}
    if data.get("property_id") is None or not data.get("query"):
        return jsonify({"error": "property_id and query are required"}), 400
    result = view.locate_for_property(data["property_id"], data["query"])
    log_event("search_run", session_id=view.view_id, property_id=data["property_id"],
              metadata={"query": result["outcome"]["query"], "status": result["outcome"]["status"]})
    return jsonify({**result, "view": view.to_dict()})


@app.route("/api/compare/sessions/<session_id>/routes", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
@_with_view
def route_for_property(view):
    data = request.get_json(silent=True) or {}
    if data.get("property_id") is None or not data.get("place_id"):
        return jsonify({"error": "property_id and place_id are required"}), 400
    record = view.route_to(data["property_id"], data["place_id"])
    if record.state.value == "failed":
        log_event("route_failed", session_id=view.view_id, property_id=data["property_id"],
                  metadata={"message": record.error})
    return jsonify({"route": record.to_dict(), "view": view.to_dict()})


@app.route("/api/compare/sessions/<session_id>/mode", methods=["POST"])
@_with_view
def set_comparison_mode(view):
    data = request.get_json(silent=True) or {}
    view.set_mode(data.get("mode", ""))
    return jsonify(view.to_dict())


@app.route("/api/compare/sessions/<session_id>/info-window", methods=["POST"])
@_with_view
def info_window(view):
    """Open a property's info window, or {"close": true} for a map click."""
    data = request.get_json(silent=True) or {}
    if data.get("close"):
        view.click_map()
        return jsonify(view.to_dict())
    if data.get("property_id") is None:
        return jsonify({"error": "property_id is required"}), 400
    window = view.open_property_window(data["property_id"])
    return jsonify({"window": window, "view": view.to_dict()})


@app.route("/api/compare/sessions/<session_id>/actions/<path:action>", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
@_with_view
def dispatch_action(view, action):
    result = view.dispatch(action)
    return jsonify({"result": result, "view": view.to_dict()})


@app.route("/api/compare/sessions/<session_id>/map.png")
@_with_view
def comparison_map_png(view):
    try:
        width = min(max(int(request.args.get("width", 640)), 100), 1280)
        height = min(max(int(request.args.get("height", 400)), 100), 1280)
    except ValueError:
        return jsonify({"error": "width and height must be integers"}), 400
    encoded = view.static_map(width, height)
    if encoded is None:
        return jsonify({"error": "Map image unavailable"}), 503
    return Response(base64.b64decode(encoded), mimetype="image/png")


# ---------------------------------------------------------------------------
# Recent searches
# ---------------------------------------------------------------------------

@app.route("/api/recent-searches", methods=["GET"])
def list_recent_searches():
    return jsonify({
        "terms": recent_searches.terms(),
        "entries": [e.to_dict() for e in recent_searches.entries()],
    })


@app.route("/api/recent-searches", methods=["POST"])
def add_recent_search():
    data = request.get_json(silent=True) or {}
    entry = recent_searches.record(data.get("term", ""))
    if entry is None:
        return jsonify({"error": "term is required"}), 400
    return jsonify({"entry": entry.to_dict(), "terms": recent_searches.terms()}), 201


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@app.route("/compare")
def compare():
    """Server-rendered comparison table and static map; buttons refresh the rows via the JSON API."""
    try:
        props, error = _load_properties(request.args.get("ids", ""))
    except ValueError:
        props, error = [], None
    if error:
        props = []

    view = _new_view(props, {})
    if view.ready:
        sessions.add(view)
    return render_template(
        "compare.html",
        view=view.to_dict(),
        static_map=view.ready,
        request_id=g.request_id,
    )


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
        "active_sessions": len(sessions),
    }), 200 if config_ok else 503


@app.route("/healthz/apis")
@limiter.exempt
def healthz_apis():
    """Passive + active health of the external map services."""
    return jsonify(health_monitor.get_status())


@app.route("/api/events/counts")
@limiter.exempt
def event_counts():
    return jsonify(get_event_counts())


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(CSRFError)
def csrf_error(e):
    return jsonify({"error": e.description or "CSRF token missing or invalid"}), 400


@app.errorhandler(429)
def rate_limit_exceeded(e):
    if _wants_json():
        return jsonify({
            "error": "Too many requests. Please wait and try again.",
        }), 429
    return render_template("error.html", status=429,
                           message="Too many requests. Please wait and try again."), 429


@app.errorhandler(404)
def not_found(e):
    if _wants_json():
        return jsonify({"error": "Not found"}), 404
    return render_template("error.html", status=404, message="Page not found."), 404


@app.errorhandler(500)
def internal_error(e):
    request_id = getattr(g, "request_id", "unknown")
    logger.error("[%s] unhandled error: %s", request_id, e)
    if _wants_json():
        return jsonify({"error": "Internal server error", "request_id": request_id}), 500
    return render_template("error.html", status=500, message="Something went wrong.",
                           request_id=request_id), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    health_monitor.start_monitor()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
