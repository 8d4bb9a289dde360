# backend/gunicorn_conf.py

import os

# Gunicorn config file: uvicorn workers serving covima.main:app

wsgi_app = "covima.main:app"
bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# Running behind a reverse proxy (Nginx, Chatwoot's ingress)
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
