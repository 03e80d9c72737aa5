"""
Info-window content for the comparison map.

Windows are rendered from Jinja2 templates in templates/info_windows/.
Buttons carry an action id in ``data-action``; the browser posts that id
back and MapSession.dispatch_action runs the callback bound to it, so no
behaviour is encoded in the markup itself.

Action ids:
    locate:<property_id>:<query key>     search near a property
    route:<property_id>:<place id>       route a property to a place
"""

import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates", "info_windows")

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def action_id(verb: str, property_id: Any, key: str) -> str:
    return f"{verb}:{property_id}:{key}"


def parse_action_id(value: str) -> Tuple[str, str, str]:
    """Split an action id into (verb, property_id, key)."""
    verb, property_id, key = value.split(":", 2)
    return verb, property_id, key


def _fmt_rent(rent) -> Optional[str]:
    if rent is None:
        return None
    return f"${rent:,.0f}/mo"


def render_property_window(
    prop,
    color: str,
    categories: Iterable[Tuple[str, str]],
    recent_terms: Iterable[str] = (),
) -> Tuple[str, List[str]]:
    """Property summary plus one button per category and recent search.

    ``categories`` is (key, label) pairs. Returns (html, action ids).
    """
    buttons = [
        {"label": label, "action": action_id("locate", prop.id, key), "kind": "category"}
        for key, label in categories
    ]
    buttons += [
        {"label": term, "action": action_id("locate", prop.id, "search:" + term.lower()),
         "kind": "recent"}
        for term in recent_terms
    ]
    html = _env.get_template("property.html").render(
        prop=prop,
        color=color,
        rent=_fmt_rent(prop.rent),
        buttons=buttons,
    )
    return html, [b["action"] for b in buttons]


def render_results_window(
    prop,
    label: str,
    outcome,
    summaries: Dict[str, Any],
) -> Tuple[str, List[str]]:
    """Results of a category search for one property.

    ``summaries`` maps place id -> Route (or None when it failed).
    """
    rows = []
    for poi in outcome.pois:
        route = summaries.get(poi.place_id)
        rows.append({
            "poi": poi,
            "distance": route.distance if route else poi.distance,
            "duration": route.duration if route else None,
            "action": action_id("route", prop.id, poi.place_id) if poi.place_id else None,
        })
    html = _env.get_template("results.html").render(
        prop=prop,
        label=label,
        status=outcome.status.value,
        message=outcome.message,
        rows=rows,
    )
    return html, [r["action"] for r in rows if r["action"]]


def render_route_window(prop, poi, record) -> str:
    return _env.get_template("route.html").render(prop=prop, poi=poi, record=record)
