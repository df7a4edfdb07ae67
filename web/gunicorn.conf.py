import os, multiprocessing

wsgi_app = "checkout_core.wsgi:application"


def cpu():
    return max(1, (os.cpu_count() or multiprocessing.cpu_count() or 1))


# Worker processes
workers = min(max(2, cpu() * 2), 8)

# Provider verification calls block, so each worker runs threads
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Must exceed PAYMENTS_HTTP_TIMEOUT_SECS times the number of retries
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Application logs go through Django LOGGING (JSON); these are gunicorn's own
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
