#!/usr/bin/env python3
"""routes_groups.py

Groups and memberships.

Implements:
  - POST /api/groups                          {name, isPublic}
  - GET  /api/groups/public
  - POST /api/groups/<group_id>/invite        {userId | username}
  - POST /api/groups/<group_id>/accept
  - POST /api/groups/<group_id>/apply
  - POST /api/groups/<group_id>/approve       {userId | username}
  - POST /api/groups/<group_id>/join          (public groups only)

Every rule lives in MembershipAuthority; these handlers only translate
request bodies and results.
"""

from __future__ import annotations

from typing import Any

from flask import jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from auth_tokens import normalize_username
from errors import ErrorKind, Result, error_response


def register_group_routes(app, settings: dict[str, Any], services, limiter=None) -> None:
    def _limit(rule, **kwargs):
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    authority = services.authority
    users = services.users

    def _body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _target_user_id(data: dict) -> str | None:
        """Resolve {userId} or {username} to a user id (None if unknown)."""
        uid = data.get("userId") or data.get("user_id")
        if uid:
            return str(uid)
        name = normalize_username(data.get("username"))
        if not name:
            return None
        user = users.get_by_username(name)
        return user.id if user else None

    def _membership_response(result: Result, status: int = 200):
        if not result:
            return error_response(result)
        return jsonify(result.value.to_wire()), status

    @app.route("/api/groups", methods=["POST"])
    @_limit(settings.get("rate_limit_groups_create") or "20 per minute")
    @jwt_required()
    def create_group():
        data = _body()
        is_public = data.get("isPublic", data.get("is_public", False))
        result = authority.create_group(data.get("name"), bool(is_public), get_jwt_identity())
        if not result:
            return error_response(result)
        return jsonify(result.value.to_wire()), 201

    @app.route("/api/groups/public", methods=["GET"])
    @_limit(settings.get("rate_limit_groups_read") or "240 per minute")
    @jwt_required()
    def public_groups():
        return jsonify([g.to_wire() for g in authority.list_public_groups()]), 200

    @app.route("/api/groups/<group_id>/invite", methods=["POST"])
    @_limit(settings.get("rate_limit_groups_invite") or "30 per minute")
    @jwt_required()
    def invite(group_id: str):
        invitee = _target_user_id(_body())
        if not invitee:
            return error_response(Result.failure(ErrorKind.NOT_FOUND, "User not found."))
        return _membership_response(authority.invite(group_id, get_jwt_identity(), invitee), 201)

    @app.route("/api/groups/<group_id>/accept", methods=["POST"])
    @_limit(settings.get("rate_limit_groups_write") or "60 per minute")
    @jwt_required()
    def accept(group_id: str):
        return _membership_response(authority.accept_invitation(group_id, get_jwt_identity()))

    @app.route("/api/groups/<group_id>/apply", methods=["POST"])
    @_limit(settings.get("rate_limit_groups_write") or "60 per minute")
    @jwt_required()
    def apply(group_id: str):
        return _membership_response(authority.apply(group_id, get_jwt_identity()), 201)

    @app.route("/api/groups/<group_id>/approve", methods=["POST"])
    @_limit(settings.get("rate_limit_groups_write") or "60 per minute")
    @jwt_required()
    def approve(group_id: str):
        applicant = _target_user_id(_body())
        if not applicant:
            return error_response(Result.failure(ErrorKind.NOT_FOUND, "User not found."))
        return _membership_response(authority.approve_application(group_id, get_jwt_identity(), applicant))

    @app.route("/api/groups/<group_id>/join", methods=["POST"])
    @_limit(settings.get("rate_limit_groups_write") or "60 per minute")
    @jwt_required()
    def join(group_id: str):
        return _membership_response(authority.join_public(group_id, get_jwt_identity()), 201)
