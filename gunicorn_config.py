"""
Gunicorn config. Starts the API health monitor in each worker process
(post_fork) and closes that worker's open comparison views on exit.

Comparison views live in worker memory, so run with sticky sessions or a
single worker (threads are fine) if a browser must always reach the
worker that created its view.

when_ready hook runs a post-deploy smoke test against localhost once the
server is accepting connections.
"""

import logging
import os
import threading

threads = int(os.environ.get("GUNICORN_THREADS", "4"))


def when_ready(server):
    """Run smoke test in a background thread once gunicorn is listening."""
    port = os.environ.get("PORT", "8000")
    base_url = f"http://127.0.0.1:{port}"

    def _run_smoke():
        import time
        time.sleep(2)  # brief grace period for workers to finish forking
        logger = logging.getLogger("gunicorn.error")
        try:
            from smoke_test import run_tests
            logger.info("Post-deploy smoke test starting against %s", base_url)
            ok = run_tests(base_url)
            if ok:
                logger.info("Post-deploy smoke test PASSED")
            else:
                logger.error("Post-deploy smoke test FAILED")
        except Exception:
            logger.exception("Post-deploy smoke test crashed")

    t = threading.Thread(target=_run_smoke, daemon=True)
    t.start()


def post_fork(server, worker):
    """Start the health monitor in this gunicorn worker process."""
    try:
        from health_monitor import start_monitor
        start_monitor()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to start health monitor: %s", e)


def worker_exit(server, worker):
    """Cancel in-flight map requests for views owned by this worker."""
    try:
        from app import sessions
        sessions.close_all()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to close comparison views: %s", e)
