"""Client-side sync session for CRTalk.

One ``ClientSyncSession`` owns one Socket.IO connection plus a REST session
against the same server and keeps a per-group ``MessageCache`` consistent
across reconnects:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED           (transport lost; library reconnects)
    CONNECTING -> REAUTHENTICATING -> CONNECTING   (401, one refresh)
    any -> STOPPED                      (stop()/logout() or refresh failure)

Every (re)connect re-joins the tracked groups and re-fetches page 1 of each,
so messages broadcast while the socket was down are picked up by REST.
Broadcast echoes of the client's own sends are de-duplicated by message id.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
import socketio

from constants import (
    CONNECT_REFUSED_UNAUTHORIZED,
    EVENT_MESSAGE_DELETED,
    EVENT_MESSAGE_UPDATED,
    EVENT_RECEIVE_MESSAGE,
    METHOD_JOIN_GROUP,
    METHOD_LEAVE_GROUP,
)

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REAUTHENTICATING = "reauthenticating"
    STOPPED = "stopped"


class AuthExpiredError(Exception):
    """The refresh credential was rejected; the user has to log in again."""


class GroupAccessDenied(Exception):
    def __init__(self, group_id: str, reason: str = "forbidden"):
        super().__init__(f"access to group {group_id} denied: {reason}")
        self.group_id = group_id
        self.reason = reason


class ApiError(Exception):
    def __init__(self, status: int, kind: str | None, message: str | None):
        super().__init__(f"{status} {kind or ''}: {message or ''}".strip())
        self.status = status
        self.kind = kind
        self.message = message


class MessageCache:
    """Messages of one group keyed by id; insertion of a known id is a no-op."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_id: Dict[str, dict] = {}

    def add(self, view: dict) -> bool:
        """Insert ``view``; False if its id is already cached or it is deleted."""
        mid = view.get("id")
        if not mid:
            return False
        with self._lock:
            if view.get("isDeleted"):
                self._by_id.pop(mid, None)
                return False
            if mid in self._by_id:
                return False
            self._by_id[mid] = dict(view)
            return True

    def merge(self, views: Iterable[dict]) -> int:
        return sum(1 for v in views if self.add(v))

    def apply_update(self, view: dict) -> bool:
        mid = view.get("id")
        with self._lock:
            if mid not in self._by_id:
                return False
            self._by_id[mid] = dict(view)
            return True

    def remove(self, message_id: str) -> bool:
        with self._lock:
            return self._by_id.pop(message_id, None) is not None

    def messages(self) -> List[dict]:
        """Oldest first."""
        with self._lock:
            items = list(self._by_id.values())
        return sorted(items, key=lambda v: (v.get("timestamp") or "", v.get("id")))

    def __contains__(self, message_id) -> bool:
        with self._lock:
            return message_id in self._by_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)


def _default_sio_factory() -> socketio.Client:
    # Library retry policy: unlimited attempts, exponential backoff capped at 30 s.
    return socketio.Client(
        reconnection=True,
        reconnection_attempts=0,
        reconnection_delay=1,
        reconnection_delay_max=30,
        randomization_factor=0.5,
        logger=False,
        engineio_logger=False,
    )


class ClientSyncSession:
    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        http: Optional[requests.Session] = None,
        sio_factory: Optional[Callable[[], Any]] = None,
        page_size: int = 50,
        timeout: float = 10.0,
        on_event: Optional[Callable[[str, dict], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = int(page_size)
        self.timeout = timeout
        self.on_event = on_event
        self.on_error = on_error

        self._http = http or requests.Session()
        self._sio = (sio_factory or _default_sio_factory)()
        self._lock = threading.RLock()
        self._refresh_lock = threading.Lock()
        self._state = SessionState.DISCONNECTED
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._refresh_attempted = False
        self._last_connect_error: Optional[dict] = None
        self._connecting = False
        self._tracked: set[str] = set()
        self._caches: Dict[str, MessageCache] = {}
        self.user_id: Optional[str] = None
        self.username: Optional[str] = None

        self._register_handlers()

    # ── State ────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def _set_state(self, new: SessionState) -> None:
        with self._lock:
            if self._state == SessionState.STOPPED and new != SessionState.STOPPED:
                return
            if self._state != new:
                log.debug("session state %s -> %s", self._state.value, new.value)
            self._state = new

    @property
    def access_token(self) -> Optional[str]:
        with self._lock:
            return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._refresh_token

    def cache(self, group_id: str) -> MessageCache:
        with self._lock:
            return self._caches.setdefault(group_id, MessageCache())

    @property
    def tracked_groups(self) -> set[str]:
        with self._lock:
            return set(self._tracked)

    # ── Account ──────────────────────────────────────────────

    def login(self, username: str, password: str) -> dict:
        resp = self._http.post(
            self._url("/api/auth/login"),
            json={"username": username, "password": password},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise self._api_error(resp)
        self._store_tokens(resp.json())
        return resp.json()

    def logout(self) -> None:
        self.stop()
        with self._lock:
            self._access_token = None
            self._refresh_token = None

    # ── Connection lifecycle ─────────────────────────────────

    def start(self) -> None:
        """Connect the socket; one refresh-and-retry if the server answers 401."""
        with self._lock:
            if self._state == SessionState.STOPPED:
                raise RuntimeError("session was stopped; create a new one")
        self._connect()

    def stop(self) -> None:
        self._set_state(SessionState.STOPPED)
        try:
            self._sio.disconnect()
        except socketio.exceptions.SocketIOError as exc:
            log.debug("disconnect during stop failed: %s", exc)

    def _auth_payload(self, *args) -> dict:
        # Called by the Socket.IO client on every (re)connect attempt.
        return {"token": self.access_token or ""}

    def _connect(self) -> None:
        self._set_state(SessionState.CONNECTING)
        try:
            self._open_socket()
            return
        except socketio.exceptions.ConnectionError:
            if not self._was_unauthorized():
                self._set_state(SessionState.DISCONNECTED)
                raise
        # 401 on connect: exactly one refresh, then retry.
        self._reauthenticate()
        self._set_state(SessionState.CONNECTING)
        try:
            self._open_socket()
        except socketio.exceptions.ConnectionError:
            if self._was_unauthorized():
                self._fail_auth()
            self._set_state(SessionState.DISCONNECTED)
            raise

    def _open_socket(self) -> None:
        with self._lock:
            self._last_connect_error = None
            self._connecting = True
        try:
            self._sio.connect(
                self.base_url,
                auth=self._auth_payload,
                wait_timeout=self.timeout,
            )
        finally:
            with self._lock:
                self._connecting = False

    def _was_unauthorized(self) -> bool:
        with self._lock:
            err = self._last_connect_error
        if not isinstance(err, dict):
            return False
        data = err.get("data") if isinstance(err.get("data"), dict) else {}
        return err.get("message") == CONNECT_REFUSED_UNAUTHORIZED or data.get("status") == 401

    # ── Token refresh ────────────────────────────────────────

    def _reauthenticate(self) -> None:
        """One refresh per failure episode; a second 401 stops the session."""
        with self._refresh_lock:
            with self._lock:
                if self._refresh_attempted:
                    attempted = True
                else:
                    attempted = False
                    self._refresh_attempted = True
            if attempted:
                self._fail_auth()
            self._set_state(SessionState.REAUTHENTICATING)
            access, refresh = self.access_token, self.refresh_token
            if not refresh:
                self._fail_auth()
            resp = self._http.post(
                self._url("/api/auth/refresh"),
                json={"accessToken": access, "refreshToken": refresh},
                timeout=self.timeout,
            )
            if resp.status_code != 200:
                self._fail_auth()
            self._store_tokens(resp.json())

    def _fail_auth(self):
        self.stop()
        err = AuthExpiredError("session expired; log in again")
        if self.on_error is not None:
            self.on_error(err)
        raise err

    def _store_tokens(self, body: dict) -> None:
        with self._lock:
            self._access_token = body.get("accessToken") or self._access_token
            self._refresh_token = body.get("refreshToken") or self._refresh_token
            self.user_id = body.get("userId") or self.user_id
            self.username = body.get("username") or self.username

    # ── Groups ───────────────────────────────────────────────

    def join_group(self, group_id: str) -> List[dict]:
        """Track a group, subscribe to it and load page 1. Returns the cached messages."""
        with self._lock:
            self._tracked.add(group_id)
        if self.state == SessionState.CONNECTED:
            self._subscribe(group_id)
        self.fetch_page(group_id, 1)
        return self.cache(group_id).messages()

    def leave_group(self, group_id: str) -> None:
        with self._lock:
            self._tracked.discard(group_id)
        if self.state == SessionState.CONNECTED:
            self._sio.call(METHOD_LEAVE_GROUP, group_id, timeout=self.timeout)

    def _subscribe(self, group_id: str) -> None:
        ack = self._sio.call(METHOD_JOIN_GROUP, group_id, timeout=self.timeout) or {}
        if not ack.get("success"):
            with self._lock:
                self._tracked.discard(group_id)
            raise GroupAccessDenied(group_id, str(ack.get("error") or "forbidden"))

    def _resync(self) -> None:
        """Re-join every tracked group and catch up on page 1."""
        for group_id in sorted(self.tracked_groups):
            try:
                self._subscribe(group_id)
                self.fetch_page(group_id, 1)
            except GroupAccessDenied as exc:
                log.info("rejoin of %s denied: %s", group_id, exc.reason)
                self._report(exc)
            except (socketio.exceptions.SocketIOError, requests.RequestException, ApiError) as exc:
                log.warning("resync of group %s failed: %s", group_id, exc)
                self._report(exc)
            except AuthExpiredError:
                return

    def _report(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)

    # ── Messages (REST) ──────────────────────────────────────

    def fetch_page(self, group_id: str, page: int = 1, search_text: Optional[str] = None) -> List[dict]:
        params = {"page": page, "pageSize": self.page_size}
        if search_text:
            params["searchText"] = search_text
        views = self._request("GET", f"/api/groups/{group_id}/messages", params=params)
        self.cache(group_id).merge(views or [])
        return views or []

    def send_message(self, group_id: str, content: str) -> dict:
        view = self._request("POST", f"/api/groups/{group_id}/messages", json={"content": content})
        self.cache(group_id).add(view)
        return view

    def edit_message(self, group_id: str, message_id: str, content: str) -> dict:
        view = self._request("PUT", f"/api/groups/{group_id}/messages/{message_id}", json={"content": content})
        self.cache(group_id).apply_update(view)
        return view

    def delete_message(self, group_id: str, message_id: str) -> None:
        self._request("DELETE", f"/api/groups/{group_id}/messages/{message_id}")
        self.cache(group_id).remove(message_id)

    def _request(self, method: str, path: str, **kwargs):
        resp = self._send(method, path, **kwargs)
        if resp.status_code == 401:
            self._reauthenticate()
            resp = self._send(method, path, **kwargs)
            if resp.status_code == 401:
                self._fail_auth()
        with self._lock:
            self._refresh_attempted = False
        if resp.status_code >= 400:
            raise self._api_error(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        token = self.access_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return self._http.request(method, self._url(path), headers=headers, timeout=self.timeout, **kwargs)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _api_error(resp) -> ApiError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return ApiError(resp.status_code, body.get("error"), body.get("message"))

    # ── Socket.IO events ─────────────────────────────────────

    def _register_handlers(self) -> None:
        sio = self._sio

        @sio.on("connect")
        def _on_connect():
            self._set_state(SessionState.CONNECTED)
            with self._lock:
                self._refresh_attempted = False
            # call() can not run on the client's receive thread.
            sio.start_background_task(self._resync)

        @sio.on("connect_error")
        def _on_connect_error(data=None):
            with self._lock:
                self._last_connect_error = data if isinstance(data, dict) else {"message": data}
                explicit = self._connecting
            log.info("socket connect refused: %s", data)
            if not explicit and self._was_unauthorized():
                # Library reconnect presented a stale token; the next attempt uses the refreshed one.
                sio.start_background_task(self._recover_auth)

        @sio.on("disconnect")
        def _on_disconnect(*args):
            self._set_state(SessionState.DISCONNECTED)

        @sio.on(EVENT_RECEIVE_MESSAGE)
        def _on_receive(view):
            if isinstance(view, dict) and view.get("groupId"):
                self.cache(view["groupId"]).add(view)
            self._notify(EVENT_RECEIVE_MESSAGE, view)

        @sio.on(EVENT_MESSAGE_UPDATED)
        def _on_updated(view):
            if isinstance(view, dict) and view.get("groupId"):
                self.cache(view["groupId"]).apply_update(view)
            self._notify(EVENT_MESSAGE_UPDATED, view)

        @sio.on(EVENT_MESSAGE_DELETED)
        def _on_deleted(message_id):
            with self._lock:
                caches = list(self._caches.values())
            for c in caches:
                c.remove(str(message_id))
            self._notify(EVENT_MESSAGE_DELETED, {"id": message_id})

    def _recover_auth(self) -> None:
        """Refresh once after a 401 on a library reconnect; its next attempt sends the new token."""
        try:
            self._reauthenticate()
        except AuthExpiredError:
            return
        self._set_state(SessionState.CONNECTING)

    def _notify(self, event: str, payload) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception:
            log.exception("on_event callback failed for %s", event)
