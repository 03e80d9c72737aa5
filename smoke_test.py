#!/usr/bin/env python3
"""
RentCompare post-deploy smoke test.
Hits the health check, the maps-key endpoint and the comparison page and
asserts the responses carry the markers the browser relies on.
Usage:
    python smoke_test.py                          # uses localhost
    python smoke_test.py https://your-url.app     # custom base URL
Exit codes:
    0 = all checks passed
    1 = one or more checks failed

Webhook alerting:
    Set SMOKE_ALERT_WEBHOOK to a Slack or Discord webhook URL.
    On failure, a JSON payload is POSTed with a "text" field summary.
    If unset, alerting is silently skipped.
"""
import json
import os
import sys
import urllib.request
import urllib.error
from datetime import datetime, timezone

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
DEFAULT_BASE_URL = os.environ.get("RENTCOMPARE_API_URL", "http://127.0.0.1:5001")

# The placeholder page (no ids) must explain the two-property minimum.
PLACEHOLDER_MARKERS = [
    'id="compare-placeholder"',
    "at least 2 properties",
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def fetch(url: str) -> tuple[int, str]:
    """Fetch a URL, return (status_code, body_text)."""
    req = urllib.request.Request(url, headers={"User-Agent": "RentCompare-Smoke/1.0"})
    try:
        with urllib.request.urlopen(req, timeout=15) as resp:
            return resp.status, resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        return e.code, e.read().decode("utf-8", errors="replace")
    except Exception as e:
        print(f"  FETCH ERROR: {e}")
        return 0, ""


def check_markers(body: str, markers: list[str]) -> list[str]:
    """Return the markers missing from body."""
    return [m for m in markers if m not in body]


def send_webhook_alert(failures: list[str]) -> None:
    """POST a failure summary to SMOKE_ALERT_WEBHOOK. Fire-and-forget."""
    webhook_url = os.environ.get("SMOKE_ALERT_WEBHOOK", "").strip()
    if not webhook_url:
        return

    commit = os.environ.get("RAILWAY_GIT_COMMIT_SHA", "unknown")[:7]
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    text = f"RentCompare smoke test failed on deploy {commit} at {timestamp}: " + "; ".join(failures)

    payload = json.dumps({"text": text}).encode("utf-8")
    req = urllib.request.Request(
        webhook_url,
        data=payload,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=5):
            pass
    except Exception as e:
        print(f"  ALERT WARN: webhook POST failed ({e})")


# ---------------------------------------------------------------------------
# Test runner
# ---------------------------------------------------------------------------
def run_tests(base_url: str) -> bool:
    passed = True
    failures: list[str] = []

    # --- Test 1: health check ---
    print(f"\n[1] Health check: {base_url}/healthz")
    status, body = fetch(f"{base_url}/healthz")
    if status == 200:
        print("  PASS")
    elif status == 503:
        print(f"  WARN: degraded ({body.strip()[:200]})")
    else:
        print(f"  FAIL: status {status}")
        failures.append(f"Test 1 (healthz): HTTP {status}")
        passed = False

    # --- Test 2: browser maps key ---
    print(f"\n[2] Maps key: {base_url}/api/maps-key")
    status, body = fetch(f"{base_url}/api/maps-key")
    try:
        data = json.loads(body) if body else {}
    except json.JSONDecodeError:
        data = {}
    if status == 200 and data.get("key"):
        print("  PASS (key present)")
    elif status == 503:
        print("  WARN: no maps key configured; comparison will use the static table")
    else:
        print(f"  FAIL: status {status}, body keys {sorted(data)}")
        failures.append(f"Test 2 (maps key): HTTP {status}")
        passed = False

    # --- Test 3: comparison placeholder ---
    print(f"\n[3] Comparison placeholder: {base_url}/compare")
    status, body = fetch(f"{base_url}/compare")
    missing = check_markers(body, PLACEHOLDER_MARKERS)
    if status != 200:
        print(f"  FAIL: status {status} (expected 200)")
        failures.append(f"Test 3 (compare placeholder): HTTP {status}")
        passed = False
    elif missing:
        print(f"  FAIL: missing markers: {missing}")
        failures.append(f"Test 3 (compare placeholder): missing markers {missing}")
        passed = False
    else:
        print("  PASS")

    if failures:
        send_webhook_alert(failures)

    return passed


def main():
    base_url = sys.argv[1].rstrip("/") if len(sys.argv) > 1 else DEFAULT_BASE_URL
    print("RentCompare Smoke Test")
    print(f"Target: {base_url}")
    print("=" * 60)

    ok = run_tests(base_url)

    print("\n" + "=" * 60)
    if ok:
        print("ALL CHECKS PASSED")
        sys.exit(0)
    else:
        print("ONE OR MORE CHECKS FAILED")
        sys.exit(1)


if __name__ == "__main__":
    main()
