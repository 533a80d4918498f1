"""Gunicorn configuration for production deployment.

Reads settings from environment variables (same as config.py).

Sessions live in process memory, and the /stream and /upload requests of
one conversation must reach the same process, so the relay runs a single
worker unless sticky routing is in front of it.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

# Load from environment (same vars used by config.py)
host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "3000")
log_level = os.getenv("LOG_LEVEL", "INFO").lower()
debug = os.getenv("DEBUG", "false").lower() == "true"

bind = f"{host}:{port}"

workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

# Long-lived WebSocket and SSE connections: the worker timeout only covers
# heartbeats, not request duration
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

# Logging - use LOG_LEVEL from .env
accesslog = "-" if not debug else None
errorlog = "-"
loglevel = log_level

# Process naming
proc_name = "wrist-relay"
