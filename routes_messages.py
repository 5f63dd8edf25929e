#!/usr/bin/env python3
"""routes_messages.py

Group messages and attachments.

Implements:
  - POST   /api/groups/<group_id>/messages                    {content, fileUrl?, mimeType?}
  - GET    /api/groups/<group_id>/messages?page=&pageSize=&searchText=
  - PUT    /api/groups/<group_id>/messages/<message_id>       {content}
  - DELETE /api/groups/<group_id>/messages/<message_id>
  - POST   /api/groups/<group_id>/messages/upload             multipart: file, content?
  - GET    /api/groups/<group_id>/messages/download/<message_id>

Edits and deletes are authorised by message ownership alone.
"""

from __future__ import annotations

import io
from typing import Any

from flask import jsonify, request, send_file
from flask_jwt_extended import get_jwt_identity, jwt_required

from errors import ErrorKind, Result, error_response

DEFAULT_PAGE_SIZE = 10


def register_message_routes(app, settings: dict[str, Any], services, limiter=None) -> None:
    def _limit(rule, **kwargs):
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    pipeline = services.pipeline
    max_upload = int(settings.get("max_upload_bytes") or (25 * 1024 * 1024))

    def _body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @app.route("/api/groups/<group_id>/messages", methods=["POST"])
    @_limit(settings.get("rate_limit_messages_send") or "120 per minute")
    @jwt_required()
    def send_message(group_id: str):
        data = _body()
        result = pipeline.send_message(
            group_id,
            get_jwt_identity(),
            data.get("content"),
            data.get("fileUrl"),
            data.get("mimeType"),
        )
        if not result:
            return error_response(result)
        return jsonify(result.value.to_wire()), 200

    @app.route("/api/groups/<group_id>/messages", methods=["GET"])
    @_limit(settings.get("rate_limit_messages_read") or "240 per minute")
    @jwt_required()
    def get_messages(group_id: str):
        result = pipeline.get_messages(
            group_id,
            request.args.get("page", 1),
            request.args.get("pageSize", DEFAULT_PAGE_SIZE),
            request.args.get("searchText") or None,
            requester_id=get_jwt_identity(),
        )
        if not result:
            return error_response(result)
        return jsonify([v.to_wire() for v in result.value]), 200

    @app.route("/api/groups/<group_id>/messages/<message_id>", methods=["PUT"])
    @_limit(settings.get("rate_limit_messages_write") or "60 per minute")
    @jwt_required()
    def update_message(group_id: str, message_id: str):
        result = pipeline.update_message(message_id, get_jwt_identity(), _body().get("content"))
        if not result:
            return error_response(result)
        return jsonify(result.value.to_wire()), 200

    @app.route("/api/groups/<group_id>/messages/<message_id>", methods=["DELETE"])
    @_limit(settings.get("rate_limit_messages_write") or "60 per minute")
    @jwt_required()
    def delete_message(group_id: str, message_id: str):
        result = pipeline.delete_message(message_id, get_jwt_identity())
        if not result:
            return error_response(result)
        return "", 204

    @app.route("/api/groups/<group_id>/messages/upload", methods=["POST"])
    @_limit(settings.get("rate_limit_upload") or "10 per minute")
    @jwt_required()
    def upload_file(group_id: str):
        if request.content_length and int(request.content_length) > max_upload + 64 * 1024:
            return error_response(Result.failure(ErrorKind.INVALID_INPUT, f"File too large (max {max_upload} bytes)."))
        file = request.files.get("file")
        if file is None or not file.filename:
            return error_response(Result.failure(ErrorKind.INVALID_INPUT, "No file uploaded."))

        result = pipeline.upload_file(
            group_id,
            get_jwt_identity(),
            file.read(),
            file.filename,
            file.mimetype or None,
            request.form.get("content"),
        )
        if not result:
            return error_response(result)
        return jsonify(result.value.to_wire()), 200

    @app.route("/api/groups/<group_id>/messages/download/<message_id>", methods=["GET"])
    @_limit(settings.get("rate_limit_download") or "60 per minute")
    @jwt_required()
    def download_file(group_id: str, message_id: str):
        result = pipeline.download_file(message_id, get_jwt_identity())
        if not result:
            return error_response(result)
        blob = result.value
        return send_file(
            io.BytesIO(blob.data),
            mimetype=blob.content_type,
            as_attachment=True,
            download_name=blob.file_name,
        )
