"""
Gunicorn configuration for the MFA Gate API
"""
import multiprocessing
import os

# Server socket
bind = os.getenv("MFAGATE_BIND", "127.0.0.1:8000")
backlog = 2048

# Worker processes
workers = int(os.getenv("MFAGATE_WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 120
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("MFAGATE_LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "mfa-gate"

# Server mechanics
daemon = False
capture_output = True
enable_stdio_inheritance = True

# The memory credential store is per process; keep a single worker for it
if os.getenv("MFAGATE_CREDENTIAL_STORE", "sql").lower() == "memory":
    workers = 1

preload_app = True
graceful_timeout = 30
