"""Gunicorn configuration to start the realtime pump in each worker."""
import sys

# Gunicorn config variables
bind = "0.0.0.0:8080"
workers = 1  # simulation state is per process
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False  # Don't preload - threads do not survive the fork


def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    app = getattr(worker, "wsgi", None)
    if app is None or not hasattr(app, "config"):
        print(f"[Worker {worker.pid}] WARNING: App or config not found", file=sys.stderr, flush=True)
        return
    pump = app.config.get('pump')
    driver = app.config.get('driver')
    if driver is not None:
        print(
            f"[Worker {worker.pid}] Level {driver.level.number} loaded with {len(driver.registry)} nodes",
            file=sys.stderr,
            flush=True,
        )
    if pump is not None:
        pump.start()
        print(f"[Worker {worker.pid}] Realtime pump started", file=sys.stderr, flush=True)
