"""Shared fixtures for the RentCompare test suite.

Provides a Flask test client wired to a temporary SQLite database and a
handful of Manhattan listings for comparison tests.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["RENTCOMPARE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Ensure Google Maps key is present (search endpoints check this)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

# Route tests fire many search requests from one client address
os.environ.setdefault("RATE_LIMIT_SEARCH", "1000/minute")
os.environ.setdefault("RATE_LIMIT_DEFAULT", "1000/minute")

from app import app, sessions  # noqa: E402
from models import Property, init_db, _get_db  # noqa: E402

# compare.html expects csrf_token() to exist. Provide a benign test fallback.
app.jinja_env.globals.setdefault("csrf_token", lambda: "")


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test and close leftover views after."""
    init_db()
    conn = _get_db()
    for table in ("events", "properties"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield
    sessions.close_all()


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


@pytest.fixture()
def listings():
    """Three located listings in list order 1, 2, 3."""
    return [
        Property(id=1, title="Flatiron 1BR", address="20 E 17th St", city="New York",
                 rent=3650, bedrooms=1, bathrooms=1, latitude=40.7379, longitude=-73.9910),
        Property(id=2, title="East Village 2BR", address="311 E 6th St", city="New York",
                 rent=4200, bedrooms=2, bathrooms=1, latitude=40.7268, longitude=-73.9874),
        Property(id=3, title="Chelsea Studio", address="245 W 25th St", city="New York",
                 rent=2950, bedrooms=0, bathrooms=1, latitude=40.7460, longitude=-73.9960),
    ]


@pytest.fixture()
def unlocated_listing():
    return Property(id=9, title="Address on request", city="New York", rent=2500)
