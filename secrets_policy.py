"""secrets_policy.py

Whether secrets may be written back into the settings file.

Generated ``secret_key`` / ``jwt_secret`` values are persisted by default so
tokens survive a restart. Deployments that inject secrets from the
environment should set ``CRTALK_PERSIST_SECRETS=0``; every key in
``SECRET_SETTING_KEYS`` is then left out of anything ``save_settings`` writes.
"""

from __future__ import annotations

import os
from typing import Any, Dict

_FALSE = {"0", "false", "no", "n", "off"}

SECRET_SETTING_KEYS = frozenset(
    {
        "secret_key",
        "jwt_secret",
        "database_url",  # DSN carries the DB password
        "socketio_message_queue",  # redis://:password@...
        "rate_limit_storage_uri",
    }
)


def persist_secrets_enabled() -> bool:
    return str(os.getenv("CRTALK_PERSIST_SECRETS", "1")).strip().lower() not in _FALSE


def scrub_secrets_for_persist(settings: Dict[str, Any]) -> Dict[str, Any]:
    if persist_secrets_enabled():
        return dict(settings)
    return {k: v for k, v in settings.items() if k not in SECRET_SETTING_KEYS}
