"""Realtime hub: connection identity, group subscriptions and fan-out.

The hub knows nothing about Flask-SocketIO beyond an ``emit`` callable with
the signature ``emit(event, payload, to=sid)``; the Socket.IO handlers in
``realtime.groups`` feed it connection lifecycle events.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from auth_tokens import AuthTokenIssuer, Identity
from errors import ErrorKind
from membership import MembershipAuthority
from realtime.state import SubscriptionTable
from security import log_audit_event

Emitter = Callable[..., object]


def _ack_error(kind: ErrorKind) -> dict:
    return {"success": False, "error": kind.value}


class RealtimeHub:
    def __init__(
        self,
        authority: MembershipAuthority,
        issuer: AuthTokenIssuer,
        table: Optional[SubscriptionTable] = None,
        emit: Optional[Emitter] = None,
    ):
        self.authority = authority
        self.issuer = issuer
        self.table = table or SubscriptionTable()
        self._emit = emit

    def set_emitter(self, emit: Emitter) -> None:
        self._emit = emit

    # ── Connection lifecycle ─────────────────────────────────

    def connect(self, sid: str, token: Optional[str]) -> Optional[Identity]:
        """Bind an identity to ``sid``; None means the connection must be refused."""
        identity = self.issuer.validate(token)
        if identity is None:
            logging.info("[hub] refused connection %s: missing or invalid token", sid)
            return None
        self.table.add_connection(sid, identity)
        log_audit_event(identity.username or identity.user_id, "connected", sid)
        return identity

    def disconnect(self, sid: str) -> None:
        identity = self.table.identity_of(sid)
        groups = self.table.remove_connection(sid)
        if identity is not None:
            logging.debug("[hub] %s disconnected (left %d groups)", sid, len(groups))
            log_audit_event(identity.username or identity.user_id, "disconnected", sid)

    # ── Client methods ───────────────────────────────────────

    def join_group(self, sid: str, group_id) -> dict:
        identity = self.table.identity_of(sid)
        if identity is None:
            return _ack_error(ErrorKind.UNAUTHORIZED)
        group_id = str(group_id or "").strip()
        if not group_id:
            return _ack_error(ErrorKind.INVALID_INPUT)
        if not self.authority.is_active_member(group_id, identity.user_id):
            return _ack_error(ErrorKind.FORBIDDEN)
        if not self.table.subscribe(sid, group_id):
            # Disconnected while we were checking membership.
            return _ack_error(ErrorKind.UNAUTHORIZED)
        return {"success": True, "groupId": group_id}

    def leave_group(self, sid: str, group_id) -> dict:
        group_id = str(group_id or "").strip()
        if group_id:
            self.table.unsubscribe(sid, group_id)
        return {"success": True}

    # ── Fan-out ──────────────────────────────────────────────

    def broadcast(self, group_id: str, event: str, payload) -> int:
        """Emit ``event`` to every connection subscribed to ``group_id``."""
        targets = self.table.subscribers(group_id)
        if not targets or self._emit is None:
            return 0
        for sid in targets:
            try:
                self._emit(event, payload, to=sid)
            except Exception:
                logging.exception("[hub] emit %s to %s failed", event, sid)
        return len(targets)
