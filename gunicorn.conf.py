# =============================================================================
# Studio card engine - Gunicorn Production Configuration
# =============================================================================
# Web workers serve the API only. Run the scheduler as its own process
# (`flask --app run run-scheduler`) so jobs fire once, not once per worker.
import os
import multiprocessing

# Bind
bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"

# Workers: 2 * CPU + 1 (capped at 4 for small instances)
workers = min(multiprocessing.cpu_count() * 2 + 1, 4)
threads = 2

# Preload app to save memory (shared code across workers)
preload_app = True

# Timeouts
timeout = 60
graceful_timeout = 30
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info")
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(L)s'

# Worker lifecycle
max_requests = 1000
max_requests_jitter = 50

# Security: limit request sizes
limit_request_line = 8190
limit_request_fields = 100
limit_request_field_size = 8190

# Server mechanics
worker_class = "gthread"
forwarded_allow_ips = "*"
raw_env = ["SCHEDULER_ENABLED=false"]


def on_starting(server):
    server.log.info("Starting card engine API workers (scheduler disabled in web workers)")
