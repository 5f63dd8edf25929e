"""messages.py

Message pipeline: validated send, paged listing, owner edit/soft-delete,
attachment upload and download.

Every mutation is persisted before the matching realtime event is handed
to the broadcaster. A broadcaster failure is logged; the stored change
stands and the caller still gets its result.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional

from constants import (
    DOWNLOAD_NAME_PREFIX,
    EVENT_MESSAGE_DELETED,
    EVENT_MESSAGE_UPDATED,
    EVENT_RECEIVE_MESSAGE,
)
from errors import ErrorKind, Result
from file_storage import guess_content_type
from membership import MembershipAuthority
from models import DEFAULT_MAX_MESSAGE_CHARS, FileBlob, Message, MessageBody, MessageView
from security import log_audit_event
from stores import BlobStore, MessageStore, UserStore

# broadcaster(group_id, event, payload) -> number of connections targeted
Broadcaster = Callable[[str, str, object], int]

UNKNOWN_SENDER = "Unknown"


class MessagePipeline:
    def __init__(
        self,
        messages: MessageStore,
        users: UserStore,
        authority: MembershipAuthority,
        blobs: Optional[BlobStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
        page_size_max: int = 100,
        max_upload_bytes: int = 25 * 1024 * 1024,
    ):
        self.messages = messages
        self.users = users
        self.authority = authority
        self.blobs = blobs
        self.broadcaster = broadcaster
        self.max_message_chars = int(max_message_chars)
        self.page_size_max = int(page_size_max)
        self.max_upload_bytes = int(max_upload_bytes)

    def set_broadcaster(self, broadcaster: Broadcaster) -> None:
        self.broadcaster = broadcaster

    # ── Send ─────────────────────────────────────────────────

    def send_message(
        self,
        group_id: str,
        sender_id: str,
        content: Optional[str],
        file_url: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Result[MessageView]:
        if not self.authority.is_active_member(group_id, sender_id):
            return Result.failure(ErrorKind.UNAUTHORIZED, "You are not a member of this group.")
        try:
            body = MessageBody(content, file_url, mime_type, max_chars=self.max_message_chars)
        except ValueError as e:
            return Result.failure(ErrorKind.INVALID_INPUT, str(e))

        message = Message.create(group_id, sender_id, body)
        self.messages.insert(message)
        log_audit_event(sender_id, "message_send", group_id, message.id)

        view = MessageView.of(message, self._username(sender_id))
        self._broadcast(group_id, EVENT_RECEIVE_MESSAGE, view.to_wire())
        return Result.success(view)

    def upload_file(
        self,
        group_id: str,
        sender_id: str,
        data: bytes,
        file_name: str,
        content_type: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Result[MessageView]:
        """Store an attachment and send it as a message."""
        if not self.authority.is_active_member(group_id, sender_id):
            return Result.failure(ErrorKind.UNAUTHORIZED, "You are not a member of this group.")
        if self.blobs is None:
            return Result.failure(ErrorKind.INVALID_INPUT, "File uploads are disabled.")
        if not data:
            return Result.failure(ErrorKind.INVALID_INPUT, "Empty file.")
        if len(data) > self.max_upload_bytes:
            return Result.failure(ErrorKind.INVALID_INPUT, f"File too large (max {self.max_upload_bytes} bytes).")

        file_name = os.path.basename(str(file_name or "")) or "upload.bin"
        mime = content_type or guess_content_type(file_name)
        text = content if (content and str(content).strip()) else f"[File]: {file_name}"
        try:
            MessageBody(text, file_name, mime, max_chars=self.max_message_chars)
        except ValueError as e:
            return Result.failure(ErrorKind.INVALID_INPUT, str(e))

        url = self.blobs.put(data, file_name)
        result = self.send_message(group_id, sender_id, text, url, mime)
        if not result:
            # Nothing references the blob when the send is refused.
            self.blobs.delete(url)
            return result
        log_audit_event(sender_id, "message_upload", group_id, f"{file_name} ({len(data)})")
        return result

    # ── Read ─────────────────────────────────────────────────

    def get_messages(
        self,
        group_id: str,
        page: int,
        page_size: int,
        search_text: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> Result[List[MessageView]]:
        """Newest first. Deleted messages stay in the list, flagged ``isDeleted``."""
        try:
            page = int(page)
            page_size = int(page_size)
        except (TypeError, ValueError):
            return Result.failure(ErrorKind.INVALID_INPUT, "page and pageSize must be integers.")
        if page < 1 or page_size < 1 or page_size > self.page_size_max:
            return Result.failure(
                ErrorKind.INVALID_INPUT, f"page >= 1 and 1 <= pageSize <= {self.page_size_max} required."
            )
        if requester_id is not None and not self.authority.is_active_member(group_id, requester_id):
            return Result.failure(ErrorKind.FORBIDDEN, "You are not a member of this group.")

        rows = self.messages.query(group_id, page, page_size, search_text or None)
        names = self.users.usernames_for({m.user_id for m in rows}) if rows else {}
        return Result.success([MessageView.of(m, names.get(m.user_id, UNKNOWN_SENDER)) for m in rows])

    def download_file(self, message_id: str, user_id: str) -> Result[FileBlob]:
        message = self.messages.get_by_id(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Message not found.")
        if not message.file_url:
            return Result.failure(ErrorKind.NOT_FOUND, "No file attached to this message.")
        if not self.authority.is_active_member(message.group_id, user_id):
            return Result.failure(ErrorKind.FORBIDDEN, "You must be a member of the group to download this file.")

        data = self.blobs.get(message.file_url) if self.blobs is not None else None
        if data is None:
            return Result.failure(ErrorKind.NOT_FOUND, "File not found.")

        _, ext = os.path.splitext(message.file_url)
        stamp = message.timestamp.strftime("%Y-%m-%d %H-%M-%S")
        return Result.success(
            FileBlob(
                data=data,
                file_name=f"{DOWNLOAD_NAME_PREFIX} - {stamp}{ext}",
                content_type=guess_content_type(message.file_url),
            )
        )

    # ── Owner mutations ──────────────────────────────────────

    def update_message(self, message_id: str, user_id: str, new_content: Optional[str]) -> Result[MessageView]:
        message = self._owned(message_id, user_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Message not found.")
        try:
            body = MessageBody(new_content, message.file_url, message.mime_type, max_chars=self.max_message_chars)
        except ValueError as e:
            return Result.failure(ErrorKind.INVALID_INPUT, str(e))

        updated = message.edited(body.content)
        self.messages.replace(message_id, updated)

        view = MessageView.of(updated, self._username(user_id))
        self._broadcast(updated.group_id, EVENT_MESSAGE_UPDATED, view.to_wire())
        return Result.success(view)

    def delete_message(self, message_id: str, user_id: str) -> Result[str]:
        """Soft delete. The result is falsy when the message is missing or not owned."""
        message = self._owned(message_id, user_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Message not found.")

        self.messages.replace(message_id, message.soft_deleted())
        self._broadcast(message.group_id, EVENT_MESSAGE_DELETED, message_id)
        log_audit_event(user_id, "message_delete", message.group_id, message_id)
        return Result.success(message_id)

    # ── helpers ──────────────────────────────────────────────

    def _owned(self, message_id: str, user_id: str) -> Optional[Message]:
        message = self.messages.get_by_id(message_id) if message_id else None
        if message is None or message.user_id != user_id:
            return None
        return message

    def _username(self, user_id: str) -> str:
        user = self.users.get(user_id)
        return user.username if user is not None else UNKNOWN_SENDER

    def _broadcast(self, group_id: str, event: str, payload) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster(group_id, event, payload)
        except Exception:
            logging.exception("Broadcast of %s to group %s failed; stored change kept", event, group_id)
