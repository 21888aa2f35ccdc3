"""Gunicorn production configuration for the routing API."""
import multiprocessing
import os

bind = os.getenv("ROUTING_BIND", "0.0.0.0:8000")
# Round-robin counters and SLA monitor state live per worker process.
workers = int(os.getenv("ROUTING_WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 60
keepalive = 5
max_requests = 1000
max_requests_jitter = 100
preload_app = True
chdir = "backend"
wsgi_app = "app.main:app"
proc_name = "routing-api"
accesslog = "-"
errorlog = "-"
loglevel = "info"
