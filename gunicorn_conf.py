"""gunicorn_conf.py

Default Gunicorn config for CRTalk + Flask-SocketIO using Eventlet.

Environment variables:
  CRTALK_BIND=0.0.0.0:5000
  CRTALK_GUNICORN_LOGLEVEL=info
  CRTALK_GUNICORN_ACCESSLOG=-
  CRTALK_GUNICORN_ERRORLOG=-
  CRTALK_GUNICORN_TIMEOUT=60
"""

from __future__ import annotations

import os

bind = os.environ.get("CRTALK_BIND", "0.0.0.0:5000")
# Group subscriptions are per process; scale by instances, not workers.
workers = 1
worker_class = "eventlet"

# WebSockets keep connections open; avoid overly low timeouts.
timeout = int(os.environ.get("CRTALK_GUNICORN_TIMEOUT", "60"))
keepalive = int(os.environ.get("CRTALK_GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("CRTALK_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("CRTALK_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("CRTALK_GUNICORN_ERRORLOG", "-")

# Important for Socket.IO upgrades through reverse proxies.
forwarded_allow_ips = os.environ.get("CRTALK_FORWARDED_ALLOW_IPS", "127.0.0.1")
