"""wsgi.py

Gunicorn entrypoint for CRTalk.

Run (example):
  gunicorn -c gunicorn_conf.py wsgi:app

Notes:
- Group subscriptions live in the worker process, so run a single eventlet
  worker per instance (it serves thousands of sockets).
- CRTALK_SOCKETIO_MESSAGE_QUEUE lets other processes emit through Redis.
"""

from __future__ import annotations

import os

# ---- eventlet monkey_patch has to happen before anything else is imported ----
_async = (os.environ.get("CRTALK_SOCKETIO_ASYNC", "eventlet") or "eventlet").strip().lower()
if _async == "eventlet":
    import eventlet

    eventlet.monkey_patch()
    os.environ["CRTALK_SOCKETIO_ASYNC"] = "eventlet"

from pathlib import Path  # noqa: E402

from config import apply_env_overrides, load_settings  # noqa: E402
from constants import CONFIG_FILE  # noqa: E402
from main import configure_logging  # noqa: E402
from server_init import create_app  # noqa: E402


def _resolve_config_path() -> Path:
    # Prefer explicit env path when running under systemd.
    p = os.environ.get("CRTALK_CONFIG") or os.environ.get("CRTALK_CONFIG_FILE") or CONFIG_FILE
    return Path(p)


_settings_path = _resolve_config_path()
_settings = load_settings(_settings_path)
apply_env_overrides(_settings)
configure_logging(_settings)

# Create the Flask app + Socket.IO integration.
app, socketio = create_app(_settings, limiter=None, settings_file=_settings_path)

app.config["CRTALK_GUNICORN"] = True
