"""
Gunicorn Configuration

Production settings for the Paddock competition API.
Run with: gunicorn -c deploy/gunicorn.conf.py paddock.main:app

Each worker holds its own booking allocation locks; across workers, lane
uniqueness is enforced by the database index and conflicting bookings are
re-planned.
"""
import os
import multiprocessing

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 120
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "paddock"

# Server mechanics
daemon = False
pidfile = "/tmp/paddock-gunicorn.pid"

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190
