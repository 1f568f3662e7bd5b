"""Gunicorn configuration: one worker, which owns the scheduling loop."""
import sys

bind = "0.0.0.0:8080"
# More than one worker would run competing schedulers against the same hosts
workers = 1
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False


def post_worker_init(worker):
    """Start the scheduler loop inside the worker once the app is loaded."""
    app = worker.app.wsgi()
    loop = app.config.get('loop') if hasattr(app, 'config') else None
    if loop is None:
        print(f"[Worker {worker.pid}] WARNING: no scheduler loop in app.config", file=sys.stderr, flush=True)
        return
    loop.start()
    print(f"[Worker {worker.pid}] Scheduler loop started", file=sys.stderr, flush=True)


def worker_exit(server, worker):
    app = worker.app.wsgi()
    loop = app.config.get('loop') if hasattr(app, 'config') else None
    if loop is not None:
        loop.stop()
