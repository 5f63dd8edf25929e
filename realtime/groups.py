"""Socket.IO handlers: connection lifecycle and group subscriptions.

Connections authenticate once, at connect time, with a bearer access token;
``JoinGroup`` / ``LeaveGroup`` then manage the per-connection fan-out sets
held by the hub.
"""

from flask import request
from flask_socketio import ConnectionRefusedError

from constants import CONNECT_REFUSED_UNAUTHORIZED, METHOD_JOIN_GROUP, METHOD_LEAVE_GROUP
from realtime.hub import RealtimeHub


def bearer_token(auth=None):
    """Token from the Socket.IO auth payload, the Authorization header or ?access_token=."""
    if isinstance(auth, dict):
        tok = auth.get("token") or auth.get("accessToken")
        if tok:
            return str(tok)
    elif isinstance(auth, str) and auth.strip():
        return auth.strip()

    header = request.headers.get("Authorization") or ""
    if header[:7].lower() == "bearer " and header[7:].strip():
        return header[7:].strip()

    return request.args.get("access_token") or None


def _group_id_from(data):
    if isinstance(data, dict):
        return data.get("groupId") or data.get("group_id")
    return data


def register(socketio, settings, hub: RealtimeHub):
    """Register Socket.IO event handlers for this module."""

    @socketio.on("connect")
    def handle_connect(auth=None):
        identity = hub.connect(request.sid, bearer_token(auth))
        if identity is None:
            raise ConnectionRefusedError(CONNECT_REFUSED_UNAUTHORIZED, {"status": 401})

    @socketio.on("disconnect")
    def handle_disconnect(*args, **kwargs):
        # Socket.IO may pass a reason depending on version.
        hub.disconnect(request.sid)

    @socketio.on(METHOD_JOIN_GROUP)
    def handle_join_group(data=None):
        return hub.join_group(request.sid, _group_id_from(data))

    @socketio.on(METHOD_LEAVE_GROUP)
    def handle_leave_group(data=None):
        return hub.leave_group(request.sid, _group_id_from(data))
