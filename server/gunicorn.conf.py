"""Gunicorn configuration for production deployment.

Reads the same environment variables as config.py.

Caches, queues and their concurrency limits live in each worker process, so
N workers allow N times the configured concurrency against every collaborator.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "3010")
log_level = os.getenv("LOG_LEVEL", "INFO").lower()
debug = os.getenv("DEBUG", "false").lower() == "true"

bind = f"{host}:{port}"

workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

# Analysis calls may take up to ANALYSIS_TIMEOUT per attempt plus backoff
timeout = int(os.getenv("GUNICORN_TIMEOUT", "180"))
# Must exceed the 30 s shutdown flush of pending sheet writes and webhooks
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "75"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

# Recycling a worker drops its in-memory caches and queued webhooks
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "0"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "0"))

accesslog = "-" if not debug else None
errorlog = "-"
loglevel = log_level

proc_name = "minddump-orchestrator"

# Queues and caches are created per worker in the app lifespan
preload_app = False
