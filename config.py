#!/usr/bin/env python3
"""config.py

Settings for the CRTalk server.

``server_config.json`` is a plaintext JSON settings file (``.yml`` / ``.yaml``
files are read and written with PyYAML). Values missing from the file come
from ``get_default_settings()``; environment variables override both, which
is the preferred way to supply secrets in production.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

import yaml

from constants import DEFAULT_DB_CONNECTION_STRING, sanitize_postgres_dsn
from secrets_policy import scrub_secrets_for_persist


def get_default_settings() -> Dict[str, Any]:
    """Return a compact set of defaults for CRTalk.

    server_init.py will generate/persist secret_key + jwt_secret if missing.
    """
    dsn = sanitize_postgres_dsn(
        os.getenv("DATABASE_URL")
        or os.getenv("DB_CONNECTION_STRING")
        or DEFAULT_DB_CONNECTION_STRING
    )

    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "CRTalk",
        "host": "0.0.0.0",
        "port": 5000,
        "debug": False,
        "https": False,
        "ssl_cert_file": "",
        "ssl_key_file": "",

        # Secrets (server_init.py will generate/persist if missing)
        "secret_key": "",
        "jwt_secret": "",

        # ── Storage ──────────────────────────────────────────────────────
        "storage_backend": "postgres",  # or "memory"
        "database_url": dsn,
        "db_pool_min": 1,
        "db_pool_max": 10,
        "upload_dir": "uploads",
        "max_upload_bytes": 25 * 1024 * 1024,

        # ── Auth ─────────────────────────────────────────────────────────
        "access_token_minutes": 30,
        "refresh_token_days": 7,
        "login_fail_limit": 10,
        "login_fail_window_sec": 300,

        # ── Messages ─────────────────────────────────────────────────────
        "max_message_chars": 4000,
        "messages_page_size_max": 100,

        # ── Realtime ─────────────────────────────────────────────────────
        "socketio_async_mode": "threading",
        "socketio_message_queue": "",
        "socketio_ping_interval": 20,
        "socketio_ping_timeout": 15,

        # ── HTTP guardrails ──────────────────────────────────────────────
        "rate_limit_enabled": True,
        "rate_limit_storage_uri": "memory://",
        "cors_allowed_origins": None,

        # ── Logging ──────────────────────────────────────────────────────
        "log_level": "INFO",
        "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "log_file_path": "logs/server.log",
    }


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in {".yml", ".yaml"}


def load_settings(path: Path) -> Dict[str, Any]:
    """Load settings from JSON/YAML merged over defaults. Returns defaults if missing."""
    settings = get_default_settings()
    if not path.exists():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            loaded = yaml.safe_load(fp) if _is_yaml(path) else json.load(fp)
    except (ValueError, yaml.YAMLError) as exc:
        logging.warning("Could not parse %s: %s", path, exc)
        # Back up the corrupt file so generated secrets can be persisted into a fresh one.
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            logging.warning("Backed up invalid settings file to: %s", bad_path)
        except OSError as e2:
            logging.warning("Could not back up invalid settings file: %s", e2)
        return settings

    if isinstance(loaded, dict):
        settings.update(loaded)
    return settings


def save_settings(path: Path, settings: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # If CRTALK_PERSIST_SECRETS=0, do not write secrets (DB DSN, JWT secret, ...).
    to_save = scrub_secrets_for_persist(settings)
    with path.open("w", encoding="utf-8") as fp:
        if _is_yaml(path):
            yaml.safe_dump(to_save, fp, sort_keys=False)
        else:
            json.dump(to_save, fp, indent=2)


def apply_env_overrides(settings: Dict[str, Any]) -> None:
    """Apply env overrides for secrets and runtime deployment."""

    def _bool_env(*names: str) -> bool | None:
        for n in names:
            v = os.getenv(n)
            if v is None:
                continue
            v = v.strip().lower()
            if v in ("1", "true", "yes", "y", "on"):
                return True
            if v in ("0", "false", "no", "n", "off"):
                return False
        return None

    def _str_env(*names: str) -> str | None:
        for n in names:
            v = os.getenv(n)
            if v is not None and v.strip() != "":
                return v.strip()
        return None

    def _int_env(*names: str) -> int | None:
        v = _str_env(*names)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    # Prefer DB env vars for safety.
    db = _str_env("DB_CONNECTION_STRING", "DATABASE_URL")
    if db:
        settings["database_url"] = str(sanitize_postgres_dsn(db))

    secret = _str_env("SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("JWT_SECRET_KEY", "CRTALK_JWT_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    backend = _str_env("CRTALK_STORAGE_BACKEND")
    if backend:
        settings["storage_backend"] = backend.lower()

    upload_dir = _str_env("CRTALK_UPLOAD_DIR")
    if upload_dir:
        settings["upload_dir"] = upload_dir

    queue = _str_env("CRTALK_SOCKETIO_MESSAGE_QUEUE", "SOCKETIO_MESSAGE_QUEUE", "REDIS_URL")
    if queue:
        settings["socketio_message_queue"] = queue

    async_mode = _str_env("CRTALK_SOCKETIO_ASYNC")
    if async_mode:
        settings["socketio_async_mode"] = async_mode.lower()

    log_level = _str_env("CRTALK_LOG_LEVEL")
    if log_level:
        settings["log_level"] = log_level.upper()

    host = _str_env("CRTALK_HOST")
    if host:
        settings["host"] = host

    port = _int_env("CRTALK_PORT")
    if port:
        settings["port"] = port

    rl = _bool_env("CRTALK_RATE_LIMIT_ENABLED")
    if rl is not None:
        settings["rate_limit_enabled"] = rl
