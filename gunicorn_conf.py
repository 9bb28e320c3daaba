"""
Gunicorn Configuration for the Civic Cleanup API
Production worker management with uvicorn workers

Run with: gunicorn -c gunicorn_conf.py api_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes. Every worker runs the review sweep unless ENABLE_REVIEW_SWEEPER=false;
# finalization is idempotent so overlapping sweeps are harmless.
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000  # Restart workers after 10k requests to prevent memory leaks
max_requests_jitter = 1000  # Add randomness to prevent all workers restarting at once
timeout = 60
keepalive = 30

# Logging
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "civic_cleanup_api"

# Server mechanics
daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None

# Each worker owns its engine pool and scheduler event loop
preload_app = False


# Worker lifecycle hooks
def on_starting(server):
    sweeper = os.getenv("ENABLE_REVIEW_SWEEPER", "true").lower() == "true"
    server.log.info(f"🚀 Civic cleanup API starting (review sweeper {'on' if sweeper else 'off'} in each worker)")


def when_ready(server):
    server.log.info(f"✅ Ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    server.log.info(f"🔧 Worker {worker.pid} forked")


def worker_abort(worker):
    """SIGABRT usually means a request outlived the timeout; open transactions roll back with the connection"""
    worker.log.error(f"❌ Worker {worker.pid} aborted after {timeout}s timeout")


def worker_exit(server, worker):
    server.log.info(f"👋 Worker {worker.pid} exited")
