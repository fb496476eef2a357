import os

# Bind to the platform-injected PORT without relying on shell expansion.
port = os.getenv("PORT", "8000")
bind = f"0.0.0.0:{port}"

# Rate limiter and admin lockout state live in process memory, so counts are per worker.
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
threads = int(os.getenv("GUNICORN_THREADS", "4"))
timeout = int(os.getenv("GUNICORN_TIMEOUT", "30"))
accesslog = os.getenv("GUNICORN_ACCESS_LOG", "-")
loglevel = os.getenv("LOG_LEVEL", "info").lower()
