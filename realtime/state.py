"""Shared in-memory state for CRTalk Socket.IO handlers.

One ``SubscriptionTable`` per process holds, for every live connection, the
identity it authenticated with and the groups it subscribed to. A single
lock guards both maps; callers never do I/O while holding it.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set

from auth_tokens import Identity


class SubscriptionTable:
    def __init__(self):
        self._lock = threading.Lock()
        self._identities: Dict[str, Identity] = {}
        self._by_group: Dict[str, Set[str]] = {}
        self._by_sid: Dict[str, Set[str]] = {}

    def add_connection(self, sid: str, identity: Identity) -> None:
        with self._lock:
            self._identities[sid] = identity
            self._by_sid.setdefault(sid, set())

    def identity_of(self, sid: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(sid)

    def subscribe(self, sid: str, group_id: str) -> bool:
        """Add ``sid`` to a group's fan-out set; False if the connection is gone."""
        with self._lock:
            if sid not in self._identities:
                return False
            self._by_group.setdefault(group_id, set()).add(sid)
            self._by_sid[sid].add(group_id)
            return True

    def unsubscribe(self, sid: str, group_id: str) -> None:
        with self._lock:
            self._discard(sid, group_id)
            groups = self._by_sid.get(sid)
            if groups is not None:
                groups.discard(group_id)

    def remove_connection(self, sid: str) -> Set[str]:
        """Drop a connection from every fan-out set. Returns the groups it left."""
        with self._lock:
            self._identities.pop(sid, None)
            groups = self._by_sid.pop(sid, set())
            for group_id in groups:
                self._discard(sid, group_id)
            return groups

    def subscribers(self, group_id: str) -> List[str]:
        """Snapshot of a group's fan-out set."""
        with self._lock:
            return list(self._by_group.get(group_id, ()))

    def groups_of(self, sid: str) -> Set[str]:
        with self._lock:
            return set(self._by_sid.get(sid, ()))

    def connection_count(self) -> int:
        with self._lock:
            return len(self._identities)

    def _discard(self, sid: str, group_id: str) -> None:
        members = self._by_group.get(group_id)
        if members is None:
            return
        members.discard(sid)
        if not members:
            del self._by_group[group_id]
