"""Gunicorn configuration for production deployment.

Usage:
    gunicorn -c gunicorn.conf.py app.main:app
"""
from __future__ import annotations

import multiprocessing
import os

# ── Server socket ────────────────────────────────────────
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
# Webhook bursts from the gateway queue here instead of being refused
backlog = int(os.getenv("GUNICORN_BACKLOG", "2048"))

# ── Worker processes ─────────────────────────────────────
workers = int(os.getenv("GUNICORN_WORKERS", str(multiprocessing.cpu_count() * 2 + 1)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# ── Timeouts ─────────────────────────────────────────────
# A checkout may wait on 1 + GATEWAY_RETRY_ATTEMPTS gateway calls of
# GATEWAY_TIMEOUT_SECONDS each plus backoff (about 134s with defaults).
timeout = int(os.getenv("GUNICORN_TIMEOUT", "180"))
# Lets in-flight webhook transactions commit before a worker exits
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "60"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "75"))

# ── Request limits ───────────────────────────────────────
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "5000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "250"))
limit_request_line = 8190

# ── Preloading ───────────────────────────────────────────
# Off by default: each worker opens its own DB pool and redis client
preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"

# ── Logging ──────────────────────────────────────────────
accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)s "%({x-request-id}o)s"'

# ── Process naming ───────────────────────────────────────
proc_name = "storefront_payments"
