"""stores.py

Storage boundaries consumed by the core. ``database.py`` implements them on
PostgreSQL, ``memory_store.py`` in process memory.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from models import Group, Membership, MembershipStatus, Message, Role, User


class UserStore(Protocol):
    def create(self, username: str, password_hash: str) -> Optional[User]:
        """Insert a user; None if the username is taken."""

    def get(self, user_id: str) -> Optional[User]: ...

    def get_by_username(self, username: str) -> Optional[User]: ...

    def usernames_for(self, user_ids: Iterable[str]) -> Dict[str, str]:
        """One lookup for a set of ids -> {id: username}."""

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def set_refresh_token(self, user_id: str, token: str, created: datetime, expires: datetime) -> None: ...

    def rotate_refresh_token(
        self, user_id: str, expected: str, token: str, created: datetime, expires: datetime
    ) -> bool:
        """Compare-and-set of the refresh credential; False if ``expected`` is stale."""


class MembershipStore(Protocol):
    def create_group(self, name: str, is_public: bool, creator_id: str) -> Group:
        """Insert a group and the creator's Active/Admin membership in one transaction."""

    def get_group(self, group_id: str) -> Optional[Group]: ...

    def list_public_groups(self) -> List[Group]: ...

    def try_insert(self, user_id: str, group_id: str, role: Role, status: MembershipStatus) -> bool:
        """Atomic insert; False when a row for (user_id, group_id) already exists."""

    def get(self, user_id: str, group_id: str) -> Optional[Membership]: ...

    def update_status(
        self, user_id: str, group_id: str, expected: MembershipStatus, new: MembershipStatus
    ) -> bool:
        """Transition only from ``expected``; False on precondition failure."""


class MessageStore(Protocol):
    def insert(self, message: Message) -> None: ...

    def get_by_id(self, message_id: str) -> Optional[Message]: ...

    def replace(self, message_id: str, message: Message) -> None: ...

    def query(
        self, group_id: str, page: int, page_size: int, search_text: Optional[str] = None
    ) -> List[Message]:
        """Newest first, offset (page-1)*page_size."""


class BlobStore(Protocol):
    def put(self, data: bytes, file_name: str) -> str: ...

    def get(self, url: str) -> Optional[bytes]: ...

    def delete(self, url: str) -> None: ...


def search_terms(search_text: Optional[str]) -> List[str]:
    """Split a free-text filter into lowercase terms (any term matches)."""
    if not search_text:
        return []
    return [t for t in search_text.lower().split() if t]
