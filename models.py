"""models.py

Domain records shared by the stores, the membership authority, the message
pipeline and the realtime hub.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_MAX_MESSAGE_CHARS = 4000


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


class Role(str, Enum):
    MEMBER = "Member"
    ADMIN = "Admin"


class MembershipStatus(str, Enum):
    INVITED = "Invited"
    PENDING_APPROVAL = "PendingApproval"
    ACTIVE = "Active"


@dataclass(frozen=True)
class User:
    id: str
    username: str
    password_hash: str
    refresh_token: Optional[str] = None
    token_created: Optional[datetime] = None
    token_expires: Optional[datetime] = None


@dataclass(frozen=True)
class Group:
    id: str
    name: str
    is_public: bool

    def to_wire(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "isPublic": self.is_public}


@dataclass(frozen=True)
class Membership:
    user_id: str
    group_id: str
    role: Role
    status: MembershipStatus

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    @property
    def is_active_admin(self) -> bool:
        return self.is_active and self.role == Role.ADMIN

    def to_wire(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "groupId": self.group_id,
            "role": self.role.value,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class MessageBody:
    """Text and/or attachment reference of a message.

    Construction fails with ValueError unless content or file_url is present.
    """

    content: Optional[str] = None
    file_url: Optional[str] = None
    mime_type: Optional[str] = None
    max_chars: int = field(default=DEFAULT_MAX_MESSAGE_CHARS, repr=False, compare=False)

    def __post_init__(self):
        content = self.content.strip() if isinstance(self.content, str) else None
        file_url = self.file_url.strip() if isinstance(self.file_url, str) else None
        object.__setattr__(self, "content", content or None)
        object.__setattr__(self, "file_url", file_url or None)
        object.__setattr__(self, "mime_type", (self.mime_type or None) if self.file_url else None)
        if not self.content and not self.file_url:
            raise ValueError("Message needs content or an attached file.")
        if self.content and len(self.content) > self.max_chars:
            raise ValueError(f"Message too long (max {self.max_chars}).")


@dataclass(frozen=True)
class Message:
    id: str
    group_id: str
    user_id: str
    content: Optional[str]
    timestamp: datetime
    file_url: Optional[str] = None
    mime_type: Optional[str] = None
    is_deleted: bool = False
    last_edited_at: Optional[datetime] = None

    @classmethod
    def create(cls, group_id: str, user_id: str, body: MessageBody) -> "Message":
        return cls(
            id=new_id(),
            group_id=group_id,
            user_id=user_id,
            content=body.content,
            timestamp=utcnow(),
            file_url=body.file_url,
            mime_type=body.mime_type,
        )

    def edited(self, content: Optional[str]) -> "Message":
        return replace(self, content=content, last_edited_at=utcnow())

    def soft_deleted(self) -> "Message":
        return replace(self, is_deleted=True)


@dataclass(frozen=True)
class MessageView:
    """Wire DTO: what the HTTP caller and every subscriber receive."""

    id: str
    group_id: str
    user_id: str
    sender_username: str
    content: Optional[str]
    timestamp: datetime
    file_url: Optional[str] = None
    mime_type: Optional[str] = None
    is_deleted: bool = False
    last_edited_at: Optional[datetime] = None

    @classmethod
    def of(cls, message: Message, sender_username: str) -> "MessageView":
        return cls(
            id=message.id,
            group_id=message.group_id,
            user_id=message.user_id,
            sender_username=sender_username,
            content=message.content,
            timestamp=message.timestamp,
            file_url=message.file_url,
            mime_type=message.mime_type,
            is_deleted=message.is_deleted,
            last_edited_at=message.last_edited_at,
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "groupId": self.group_id,
            "userId": self.user_id,
            "senderUsername": self.sender_username,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
            "fileUrl": self.file_url,
            "mimeType": self.mime_type,
            "isDeleted": self.is_deleted,
            "lastEditedAt": _iso(self.last_edited_at),
        }


@dataclass(frozen=True)
class FileBlob:
    data: bytes
    file_name: str
    content_type: str
