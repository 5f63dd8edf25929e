#!/usr/bin/env python3
"""routes_auth.py

Account and token endpoints (JSON, bearer tokens).

Implements:
  - POST /api/auth/register   {username, password}
  - POST /api/auth/login      {username, password}
  - POST /api/auth/refresh    {accessToken, refreshToken}

Login and refresh answer with
``{accessToken, refreshToken, userId, username}``. The refresh credential is
replaced on every call, so clients must store the new one each time.
"""

from __future__ import annotations

from flask import jsonify, request

from errors import ErrorKind, Result, error_response
from security import reset_rate_limit, simple_rate_limit


def register_auth_routes(app, settings, services, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    issuer = services.issuer
    fail_limit = int(settings.get("login_fail_limit") or 10)
    fail_window = int(settings.get("login_fail_window_sec") or 300)

    def _body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @app.route("/api/auth/register", methods=["POST"])
    @_limit(settings.get("rate_limit_register") or "10 per minute")
    def api_register():
        data = _body()
        result = issuer.register(data.get("username"), data.get("password"))
        if not result:
            return error_response(result)
        user = result.value
        return jsonify({"userId": user.id, "username": user.username}), 201

    @app.route("/api/auth/login", methods=["POST"])
    @_limit(settings.get("rate_limit_login") or "20 per minute")
    def api_login():
        data = _body()
        username = str(data.get("username") or "").strip().lower()

        # Per-account guard against password spraying from many addresses.
        ok, retry_after = simple_rate_limit(f"login_fail:{username}", fail_limit, fail_window)
        if not ok:
            resp = jsonify({"error": "rate_limited", "message": "Too many failed attempts."})
            return resp, 429, {"Retry-After": str(int(max(1, retry_after)))}

        result = issuer.login(username, data.get("password"))
        if not result:
            return error_response(result)
        reset_rate_limit(f"login_fail:{username}")
        return jsonify(result.value.to_wire()), 200

    @app.route("/api/auth/refresh", methods=["POST"])
    @_limit(settings.get("rate_limit_refresh") or "30 per minute")
    def api_refresh():
        data = _body()
        access = data.get("accessToken")
        refresh = data.get("refreshToken")
        if not access or not refresh:
            return error_response(Result.failure(ErrorKind.INVALID_INPUT, "accessToken and refreshToken are required."))
        result = issuer.refresh(access, refresh)
        if not result:
            return error_response(result)
        return jsonify(result.value.to_wire()), 200
