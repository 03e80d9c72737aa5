"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and core modules
can be imported without errors, the minimum bar for a deploy.
"""

import pytest


def test_app_module_imports():
    """The Flask app module must import without errors."""
    import app  # noqa: F401


def test_wsgi_app_object():
    """Gunicorn's 'app:app' entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert flask_app is not None
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_comparison_imports():
    """Core symbols used by app.py must be importable."""
    from comparison import ComparisonView, SessionRegistry
    from routing import RouteCalculator
    from poi_locator import PoiLocator
    assert ComparisonView is not None
    assert SessionRegistry is not None
    assert RouteCalculator is not None
    assert PoiLocator is not None


def test_gunicorn_config_imports():
    import gunicorn_config
    assert gunicorn_config.threads >= 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
