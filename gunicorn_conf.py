import multiprocessing

# Gunicorn configuration file
# For FastAPI/Uvicorn, we use the UvicornWorker.
# Usage: gunicorn mailflow.main:app -c gunicorn_conf.py

# Bind to all interfaces on port 8000
bind = "0.0.0.0:8000"

# Each worker process also runs its own outbox dispatcher pool,
# so keep the count modest: (num_cores) + 1
workers = multiprocessing.cpu_count() + 1
worker_class = "uvicorn.workers.UvicornWorker"

# Timeout and Keepalive
timeout = 120
keepalive = 5
graceful_timeout = 30  # let in-flight sends finish on shutdown

# Logging
accesslog = "-" # Log to stdout
errorlog = "-"  # Log to stderr
loglevel = "info"

# Process management
name = "mailflow_api"
reload = False  # Set to True for development only
