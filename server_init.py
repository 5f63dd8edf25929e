#!/usr/bin/env python3
"""
server_init.py
Builds the CRTalk services and the Flask + Socket.IO application around them.

create_app() never starts a server, so it is safe to import from the
Gunicorn ``wsgi.py`` module and from tests.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import redis
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO

import database
from auth_tokens import AuthTokenIssuer
from config import load_settings, save_settings
from constants import APP_VERSION, get_db_connection_string, postgres_dsn_parts, redact_dsn, sanitize_postgres_dsn
from file_storage import LocalBlobStore
from membership import MembershipAuthority
from memory_store import MemoryMembershipStore, MemoryMessageStore, MemoryUserStore
from messages import MessagePipeline
from realtime.hub import RealtimeHub
from routes_auth import register_auth_routes
from routes_groups import register_group_routes
from routes_messages import register_message_routes
from secrets_policy import persist_secrets_enabled
from security import configure_password_hasher
from socket_handlers import register_socketio_handlers


@dataclass
class Services:
    users: Any
    memberships: Any
    messages: Any
    blobs: LocalBlobStore
    issuer: AuthTokenIssuer
    authority: MembershipAuthority
    pipeline: MessagePipeline
    hub: RealtimeHub
    backend: str


def build_services(settings: Dict[str, Any]) -> Services:
    """Wire stores, core services and the hub. The hub is the pipeline's broadcaster."""
    backend = str(settings.get("storage_backend") or "postgres").lower()
    if backend == "memory":
        users, memberships, messages = MemoryUserStore(), MemoryMembershipStore(), MemoryMessageStore()
    elif backend == "postgres":
        if settings.get("database_url"):
            settings["database_url"] = str(sanitize_postgres_dsn(str(settings["database_url"])))
        database.init_db_pool(
            minconn=int(settings.get("db_pool_min", 1)),
            maxconn=int(settings.get("db_pool_max", 10)),
            dsn=str(settings.get("database_url")) if settings.get("database_url") else None,
        )
        database.init_database()
        ident = database.get_db_identity()
        logging.info("Connected DB: user=%s db=%s", ident.get("current_user"), ident.get("current_database"))
        users, memberships, messages = database.PgUserStore(), database.PgMembershipStore(), database.PgMessageStore()
    else:
        raise ValueError(f"Unknown storage_backend: {backend!r} (expected 'postgres' or 'memory')")

    blobs = LocalBlobStore(str(settings.get("upload_dir") or "uploads"))
    issuer = AuthTokenIssuer(users, refresh_ttl=timedelta(days=int(settings.get("refresh_token_days", 7))))
    authority = MembershipAuthority(memberships, users)
    pipeline = MessagePipeline(
        messages,
        users,
        authority,
        blobs=blobs,
        max_message_chars=int(settings.get("max_message_chars") or 4000),
        page_size_max=int(settings.get("messages_page_size_max") or 100),
        max_upload_bytes=int(settings.get("max_upload_bytes") or (25 * 1024 * 1024)),
    )
    hub = RealtimeHub(authority, issuer)
    pipeline.set_broadcaster(hub.broadcast)
    return Services(users, memberships, messages, blobs, issuer, authority, pipeline, hub, backend)


def _require_redis_connectivity(redis_url: str) -> None:
    """Exit at boot when the configured Socket.IO message queue does not answer PING."""
    if urlsplit(redis_url).scheme not in ("redis", "rediss"):
        return
    try:
        redis.Redis.from_url(redis_url, socket_connect_timeout=1, socket_timeout=1).ping()
    except redis.RedisError as exc:
        logging.critical("[socketio] message queue %s unreachable: %s", redact_dsn(redis_url), exc)
        raise SystemExit(2)
    logging.info("[socketio] message queue %s reachable", redact_dsn(redis_url))


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path] | None) -> None:
    backend = str(settings.get("storage_backend") or "postgres")
    lines = [
        f"CRTalk {APP_VERSION}",
        f"settings file: {settings_file or '<none>'} (exists={bool(settings_file and Path(settings_file).exists())})",
        f"storage backend: {backend}",
    ]
    if backend == "postgres":
        dsn = get_db_connection_string(settings)
        db = postgres_dsn_parts(dsn)
        lines.append(f"database: {db['user']}@{db['host']}:{db['port']}/{db['db']} ({redact_dsn(dsn)})")
    logging.info("──── boot ────")
    for line in lines:
        logging.info("  %s", line)


def _normalize_cors_origins(val) -> Optional[list]:
    """Accept "a,b", ["a", "b"] or None; blank entries are dropped."""
    if isinstance(val, str):
        val = val.split(",")
    if not isinstance(val, (list, tuple, set)):
        return None
    origins = [str(o).strip() for o in val if str(o).strip()]
    return origins or None


def create_app(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application."""

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file

    if settings.get("password_hash_time_cost") or settings.get("password_hash_memory_kib"):
        configure_password_hasher(
            time_cost=int(settings.get("password_hash_time_cost") or 3),
            memory_cost=int(settings.get("password_hash_memory_kib") or 65536),
        )

    # ───── Flask App Core ─────
    app = Flask(__name__)
    app.config["CRTALK_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    app.config["CRTALK_SETTINGS"] = settings

    app.secret_key = _ensure_secret_key(settings, settings_file)
    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_jwt_secret(settings, settings_file),
        JWT_TOKEN_LOCATION=["headers"],
        JWT_HEADER_NAME="Authorization",
        JWT_HEADER_TYPE="Bearer",
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(minutes=int(settings.get("access_token_minutes", 30))),
        MAX_CONTENT_LENGTH=int(settings.get("max_upload_bytes") or (25 * 1024 * 1024)) + 64 * 1024,
        RATELIMIT_ENABLED=bool(settings.get("rate_limit_enabled", True)),
    )

    jwt = JWTManager(app)

    def _unauthorized(message: str):
        return jsonify({"error": "unauthorized", "message": message}), 401

    @jwt.unauthorized_loader
    def _missing_token(reason):
        return _unauthorized(reason)

    @jwt.invalid_token_loader
    def _invalid_token(reason):
        return _unauthorized(reason)

    @jwt.expired_token_loader
    def _expired_token(jwt_header, jwt_payload):
        return _unauthorized("Token has expired")

    @app.after_request
    def _add_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", str(settings.get("referrer_policy") or "no-referrer"))
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    @app.errorhandler(413)
    def _too_large(e):
        return jsonify({"error": "invalid_input", "message": "Request body too large"}), 413

    @app.errorhandler(404)
    def _no_route(e):
        return jsonify({"error": "not_found", "message": "Not found"}), 404

    # ------------------------------------------------------------------
    # CORS: off unless explicit origins are configured; '*' is refused.
    # ------------------------------------------------------------------
    cors_origins = _normalize_cors_origins(settings.get("cors_allowed_origins"))
    if cors_origins and "*" in cors_origins:
        logging.warning("CORS origins includes '*'. Disabling CORS; list explicit origins instead.")
        cors_origins = None
    if cors_origins:
        CORS(app, origins=cors_origins, allow_headers=["Authorization", "Content-Type"])

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(key_func=get_remote_address, storage_uri=storage_uri)
    limiter.init_app(app)

    # Boot banner (helps catch wrong config / wrong DB early)
    _log_startup_banner(settings, settings_file)

    services = build_services(settings)
    app.extensions["crtalk"] = services

    # ───── SocketIO Setup ─────
    async_mode = str(settings.get("socketio_async_mode") or "threading")
    message_queue = (settings.get("socketio_message_queue") or "").strip() or None
    if message_queue:
        _require_redis_connectivity(message_queue)

    socketio = SocketIO(
        app,
        async_mode=async_mode,
        cors_allowed_origins=cors_origins,
        logger=False,
        engineio_logger=False,
        ping_interval=int(settings.get("socketio_ping_interval", 20)),
        ping_timeout=int(settings.get("socketio_ping_timeout", 15)),
        message_queue=message_queue,
    )
    app.config["CRTALK_SOCKETIO_ASYNC_MODE"] = async_mode

    # ───── Global Socket.IO Error Handler ─────
    # Unhandled handler exceptions, logged with the connection sid.
    @socketio.on_error_default
    def _socketio_default_error_handler(e):
        logging.exception("Socket.IO handler error (sid=%s): %s", getattr(request, "sid", None), e)

    # ───── Routes ─────
    @app.route("/healthz", methods=["GET"])
    def healthz():
        return jsonify(
            {
                "status": "ok",
                "version": APP_VERSION,
                "backend": services.backend,
                "connections": services.hub.table.connection_count(),
            }
        ), 200

    register_auth_routes(app, settings, services, limiter=limiter)
    register_group_routes(app, settings, services, limiter=limiter)
    register_message_routes(app, settings, services, limiter=limiter)
    register_socketio_handlers(socketio, settings, services.hub)

    return app, socketio


class _SocketIOAccessFilter(logging.Filter):
    """Drop werkzeug access lines for Socket.IO long-polling requests."""

    def filter(self, record: logging.LogRecord) -> bool:
        return "/socket.io/" not in record.getMessage()


def _ssl_context(settings: Dict[str, Any]):
    if not settings.get("https"):
        return None
    cert, key = settings.get("ssl_cert_file"), settings.get("ssl_key_file")
    if cert and key and os.path.isfile(str(cert)) and os.path.isfile(str(key)):
        return str(cert), str(key)
    logging.warning("https is on but ssl_cert_file / ssl_key_file are missing; serving plain HTTP.")
    return None


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> None:
    """Development server: build the app and run it with socketio.run()."""
    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 5000)
    debug = bool(settings.get("debug"))
    ssl_context = _ssl_context(settings)

    logging.info(
        "Starting CRTalk on %s://%s:%s (debug=%s)", "https" if ssl_context else "http", host, port, debug
    )
    logging.getLogger("werkzeug").addFilter(_SocketIOAccessFilter())

    socketio.run(
        app,
        host=host,
        port=port,
        debug=debug,
        ssl_context=ssl_context,
        # The reloader forks; only safe with the threading async mode.
        use_reloader=debug and app.config.get("CRTALK_SOCKETIO_ASYNC_MODE") == "threading",
        log_output=False,
        allow_unsafe_werkzeug=True,
    )


# ───── Secrets ─────
def _ensure_secret_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> str:
    key = settings.get("secret_key") or os.getenv("SECRET_KEY")
    if key:
        return str(key)
    return _generate_secret(settings, settings_file, "secret_key", secrets.token_urlsafe(64))


def _ensure_jwt_secret(settings: Dict[str, Any], settings_file: Optional[Path]) -> str:
    key = settings.get("jwt_secret") or (os.getenv("JWT_SECRET_KEY") or "").strip()
    if key:
        return str(key)
    return _generate_secret(settings, settings_file, "jwt_secret", secrets.token_hex(32))


def _generate_secret(settings: Dict[str, Any], settings_file: Optional[Path], name: str, value: str) -> str:
    settings[name] = value
    if _persist_generated_key(settings, settings_file):
        logging.info("Generated %s and saved it to %s", name, settings_file)
    else:
        # Tokens signed with a one-off key stop validating after a restart.
        logging.warning("Generated a one-off %s (not saved)", name)
    return value


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    if not settings_file or not persist_secrets_enabled():
        return False
    # load_settings backs up an unparseable file instead of overwriting it.
    merged = load_settings(settings_file)
    merged.update(settings)
    try:
        save_settings(settings_file, merged)
    except OSError as exc:
        logging.warning("Could not write %s: %s", settings_file, exc)
        return False
    return True
