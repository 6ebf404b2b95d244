"""
Gunicorn configuration for the HABLIVE API.

Multi-process + multi-threaded: predictions are CPU-bound numpy loops that
finish in well under a second, so a few workers with a handful of threads
each cover typical load. Each worker keeps its own prediction cache.
"""
import os
import logging

# Network binding
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
backlog = 256

# Worker configuration
workers = int(os.getenv('HABLIVE_WORKERS', '2'))
worker_class = 'gthread'
threads = 4

# Worker lifecycle
max_requests = 1000  # Restart worker after this many requests
max_requests_jitter = 100

# Timeouts
timeout = 60
keepalive = 15

# Application loading
preload_app = True  # Module-level code (settings, logging) runs once in the master

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('HABLIVE_LOG_LEVEL', 'info').lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s %(D)s'

proc_name = 'hablive'


def post_fork(server, worker):
    """
    Initialize each worker process after forking.

    Installs the /sim/status access log filter and empties the prediction
    cache copied from the master, so every worker starts clean.
    """
    from app import StatusLogFilter
    import simulate

    logging.getLogger('gunicorn.access').addFilter(StatusLogFilter())
    simulate.clear_cache()
    server.log.info("Worker %s ready", worker.pid)
