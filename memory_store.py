"""memory_store.py

In-process implementations of the storage boundaries.

Used with ``storage_backend = "memory"`` (local development, tests). Each store
serialises writes with its own lock so the check-then-insert paths have the
same all-or-nothing behaviour as the PostgreSQL unique constraints.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from models import Group, Membership, MembershipStatus, Message, Role, User, new_id
from stores import search_terms


class MemoryUserStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._by_id: Dict[str, User] = {}
        self._by_name: Dict[str, str] = {}

    def create(self, username: str, password_hash: str) -> Optional[User]:
        with self._lock:
            if username in self._by_name:
                return None
            user = User(id=new_id(), username=username, password_hash=password_hash)
            self._by_id[user.id] = user
            self._by_name[username] = user.id
            return user

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._by_id.get(user_id)

    def get_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            uid = self._by_name.get(username)
            return self._by_id.get(uid) if uid else None

    def usernames_for(self, user_ids: Iterable[str]) -> Dict[str, str]:
        wanted = set(user_ids)
        with self._lock:
            return {uid: self._by_id[uid].username for uid in wanted if uid in self._by_id}

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._lock:
            user = self._by_id.get(user_id)
            if user is not None:
                self._by_id[user_id] = replace(user, password_hash=password_hash)

    def set_refresh_token(self, user_id: str, token: str, created: datetime, expires: datetime) -> None:
        with self._lock:
            user = self._by_id.get(user_id)
            if user is not None:
                self._by_id[user_id] = replace(
                    user, refresh_token=token, token_created=created, token_expires=expires
                )

    def rotate_refresh_token(
        self, user_id: str, expected: str, token: str, created: datetime, expires: datetime
    ) -> bool:
        with self._lock:
            user = self._by_id.get(user_id)
            if user is None or user.refresh_token != expected:
                return False
            self._by_id[user_id] = replace(
                user, refresh_token=token, token_created=created, token_expires=expires
            )
            return True


class MemoryMembershipStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._groups: Dict[str, Group] = {}
        self._members: Dict[Tuple[str, str], Membership] = {}

    def create_group(self, name: str, is_public: bool, creator_id: str) -> Group:
        group = Group(id=new_id(), name=name, is_public=bool(is_public))
        owner = Membership(creator_id, group.id, Role.ADMIN, MembershipStatus.ACTIVE)
        with self._lock:
            self._groups[group.id] = group
            self._members[(creator_id, group.id)] = owner
        return group

    def get_group(self, group_id: str) -> Optional[Group]:
        with self._lock:
            return self._groups.get(group_id)

    def list_public_groups(self) -> List[Group]:
        with self._lock:
            groups = [g for g in self._groups.values() if g.is_public]
        return sorted(groups, key=lambda g: g.name.lower())

    def try_insert(self, user_id: str, group_id: str, role: Role, status: MembershipStatus) -> bool:
        key = (user_id, group_id)
        with self._lock:
            if key in self._members:
                return False
            self._members[key] = Membership(user_id, group_id, role, status)
            return True

    def get(self, user_id: str, group_id: str) -> Optional[Membership]:
        with self._lock:
            return self._members.get((user_id, group_id))

    def update_status(
        self, user_id: str, group_id: str, expected: MembershipStatus, new: MembershipStatus
    ) -> bool:
        key = (user_id, group_id)
        with self._lock:
            current = self._members.get(key)
            if current is None or current.status != expected:
                return False
            self._members[key] = replace(current, status=new)
            return True


class MemoryMessageStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._messages: Dict[str, Message] = {}
        self._seq: Dict[str, int] = {}

    def insert(self, message: Message) -> None:
        with self._lock:
            self._messages[message.id] = message
            self._seq.setdefault(message.id, len(self._seq))

    def get_by_id(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    def replace(self, message_id: str, message: Message) -> None:
        with self._lock:
            if message_id in self._messages:
                self._messages[message_id] = message

    def query(
        self, group_id: str, page: int, page_size: int, search_text: Optional[str] = None
    ) -> List[Message]:
        terms = search_terms(search_text)
        with self._lock:
            rows = [m for m in self._messages.values() if m.group_id == group_id]
        if terms:
            rows = [m for m in rows if any(t in (m.content or "").lower() for t in terms)]
        # Insertion order breaks timestamp ties.
        rows.sort(key=lambda m: (m.timestamp, self._seq.get(m.id, 0)), reverse=True)
        offset = (page - 1) * page_size
        return rows[offset:offset + page_size]
