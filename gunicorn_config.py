"""Gunicorn configuration. The control plane lives in-process, so one worker."""
import os
import sys

# Gunicorn config variables
bind = f"0.0.0.0:{os.getenv('KCP_API_PORT', '8080')}"
workers = 1
threads = 8
timeout = 120
worker_class = "gthread"
preload_app = False  # background workers must start inside the worker process

def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    app = worker.app.wsgi()
    state = app.config.get('kcp_state') if hasattr(app, 'config') else None
    if state is None:
        print(f"[Worker {worker.pid}] WARNING: No control plane found in app.config", file=sys.stderr, flush=True)
        return
    kubelets = app.config.get('kcp_kubelets') or []
    print(
        f"[Worker {worker.pid}] Control plane at revision {state.revision}: "
        f"{len(state.list_nodes())} node(s), {len(kubelets)} kubelet(s)",
        file=sys.stderr,
        flush=True,
    )
