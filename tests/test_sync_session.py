"""ClientSyncSession against a scripted Socket.IO client and HTTP session."""

import json
import threading
from datetime import timedelta
from urllib.parse import urlparse

import pytest
import socketio
from flask_jwt_extended import create_access_token
from werkzeug.serving import make_server

from client.sync_session import (
    AuthExpiredError,
    ClientSyncSession,
    GroupAccessDenied,
    MessageCache,
    SessionState,
)
from constants import (
    EVENT_MESSAGE_DELETED,
    EVENT_MESSAGE_UPDATED,
    EVENT_RECEIVE_MESSAGE,
    METHOD_JOIN_GROUP,
)

BASE = "http://chat.test"
# what python-socketio delivers for ConnectionRefusedError("unauthorized", {"status": 401})
UNAUTHORIZED_REFUSAL = {"message": "unauthorized", "data": {"status": 401}}


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body
        self.content = b"" if body is None else json.dumps(body).encode()

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeHttp:
    """Routes (method, path) to a callable or a queue of responses."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = urlparse(url).path
        self.calls.append((method, path, (headers or {}).get("Authorization"), kwargs))
        queue = self.routes.get((method, path))
        if not queue:
            return FakeResponse(404, {"error": "not_found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def post(self, url, json=None, timeout=None):
        return self.request("POST", url, json=json)


class FakeSio:
    """Socket.IO client double; ``connect_outcomes`` scripts each connect()."""

    def __init__(self):
        self.handlers = {}
        self.connect_outcomes = []
        self.acks = {}
        self.calls = []
        self.connected = False
        self.auth_tokens = []

    def on(self, event):
        def deco(fn):
            self.handlers[event] = fn
            return fn

        return deco

    def start_background_task(self, fn, *args):
        fn(*args)

    def connect(self, url, auth=None, wait_timeout=None):
        self.auth_tokens.append(auth()["token"] if callable(auth) else auth)
        outcome = self.connect_outcomes.pop(0) if self.connect_outcomes else "ok"
        if outcome == "ok":
            self.connected = True
            self.handlers["connect"]()
            return
        self.handlers["connect_error"](UNAUTHORIZED_REFUSAL)
        raise socketio.exceptions.ConnectionError("refused")

    def disconnect(self):
        if self.connected:
            self.connected = False
            self.handlers["disconnect"]()

    def call(self, event, data=None, timeout=None):
        self.calls.append((event, data))
        return self.acks.get((event, data), {"success": True, "groupId": data})

    def fire(self, event, *args):
        self.handlers[event](*args)


def _view(mid, group="g1", content="hi", ts="2024-01-01T00:00:00+00:00", deleted=False):
    return {"id": mid, "groupId": group, "content": content, "timestamp": ts, "isDeleted": deleted}


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def sio():
    return FakeSio()


@pytest.fixture
def events():
    return []


@pytest.fixture
def errors():
    return []


@pytest.fixture
def session(http, sio, events, errors):
    return ClientSyncSession(
        BASE,
        access_token="a1",
        refresh_token="r1",
        http=http,
        sio_factory=lambda: sio,
        on_event=lambda e, p: events.append((e, p)),
        on_error=errors.append,
    )


def _refresh_ok(http, access="a2", refresh="r2"):
    http.on(
        "POST",
        "/api/auth/refresh",
        FakeResponse(200, {"accessToken": access, "refreshToken": refresh, "userId": "u1", "username": "alice"}),
    )


# ── MessageCache ─────────────────────────────────────────────────────────────


def test_cache_dedups_by_id_and_drops_deleted():
    cache = MessageCache()
    assert cache.add(_view("m1"))
    assert not cache.add(_view("m1", content="dup"))
    assert cache.merge([_view("m2", ts="2024-01-01T00:00:01+00:00"), _view("m1")]) == 1
    assert [v["id"] for v in cache.messages()] == ["m1", "m2"]

    assert not cache.add(_view("m1", deleted=True))
    assert "m1" not in cache
    assert len(cache) == 1


def test_cache_update_only_known_ids():
    cache = MessageCache()
    assert not cache.apply_update(_view("m1", content="edited"))
    cache.add(_view("m1"))
    assert cache.apply_update(_view("m1", content="edited"))
    assert cache.messages()[0]["content"] == "edited"


# ── Connection + auth ────────────────────────────────────────────────────────


def test_start_connects_with_current_token(session, sio):
    session.start()
    assert session.state == SessionState.CONNECTED
    assert sio.auth_tokens == ["a1"]


def test_connect_401_refreshes_once_and_retries(session, sio, http):
    _refresh_ok(http)
    sio.connect_outcomes = ["401", "ok"]

    session.start()

    assert session.state == SessionState.CONNECTED
    assert sio.auth_tokens == ["a1", "a2"]
    assert session.refresh_token == "r2"
    refreshes = [c for c in http.calls if c[1] == "/api/auth/refresh"]
    assert len(refreshes) == 1
    assert refreshes[0][3]["json"] == {"accessToken": "a1", "refreshToken": "r1"}


def test_connect_401_after_refresh_stops_session(session, sio, http, errors):
    _refresh_ok(http)
    sio.connect_outcomes = ["401", "401"]

    with pytest.raises(AuthExpiredError):
        session.start()

    assert session.state == SessionState.STOPPED
    assert any(isinstance(e, AuthExpiredError) for e in errors)


def test_refresh_rejected_stops_session(session, sio, http, errors):
    http.on("POST", "/api/auth/refresh", FakeResponse(401, {"error": "unauthorized"}))
    sio.connect_outcomes = ["401"]

    with pytest.raises(AuthExpiredError):
        session.start()

    assert session.state == SessionState.STOPPED
    assert len(errors) == 1
    with pytest.raises(RuntimeError):
        session.start()


def test_rest_401_refreshes_then_retries(session, http):
    _refresh_ok(http)
    http.on(
        "GET",
        "/api/groups/g1/messages",
        FakeResponse(401, {"error": "unauthorized"}),
        FakeResponse(200, [_view("m1")]),
    )

    views = session.fetch_page("g1")

    assert [v["id"] for v in views] == ["m1"]
    auths = [c[2] for c in http.calls if c[1] == "/api/groups/g1/messages"]
    assert auths == ["Bearer a1", "Bearer a2"]


def test_rest_401_twice_raises_auth_expired(session, http):
    _refresh_ok(http)
    http.on("GET", "/api/groups/g1/messages", FakeResponse(401, {"error": "unauthorized"}))

    with pytest.raises(AuthExpiredError):
        session.fetch_page("g1")
    assert session.state == SessionState.STOPPED


def test_library_reconnect_refused_refreshes_for_next_attempt(session, sio, http):
    _refresh_ok(http)
    session.start()
    sio.disconnect()

    sio.fire("connect_error", UNAUTHORIZED_REFUSAL)

    assert session.access_token == "a2"
    assert session.state == SessionState.CONNECTING
    # the library retries with whatever the auth callable returns now
    sio.connect(BASE, auth=session._auth_payload)
    assert session.state == SessionState.CONNECTED
    assert sio.auth_tokens == ["a1", "a2"]


def test_other_connect_errors_do_not_refresh(session, sio, http):
    _refresh_ok(http)
    session.start()
    sio.disconnect()

    sio.fire("connect_error", {"message": "Connection rejected by server"})

    assert session.access_token == "a1"
    assert not [c for c in http.calls if c[1] == "/api/auth/refresh"]


# ── Groups + events ──────────────────────────────────────────────────────────


def test_join_group_subscribes_and_loads_first_page(session, sio, http):
    http.on("GET", "/api/groups/g1/messages", FakeResponse(200, [_view("m2"), _view("m1")]))
    session.start()

    cached = session.join_group("g1")

    assert (METHOD_JOIN_GROUP, "g1") in sio.calls
    assert {v["id"] for v in cached} == {"m1", "m2"}
    assert "g1" in session.tracked_groups


def test_join_group_denied(session, sio, http):
    sio.acks[(METHOD_JOIN_GROUP, "g9")] = {"success": False, "error": "forbidden"}
    session.start()

    with pytest.raises(GroupAccessDenied) as exc:
        session.join_group("g9")

    assert exc.value.reason == "forbidden"
    assert "g9" not in session.tracked_groups


def test_own_send_echo_is_deduplicated(session, sio, http, events):
    sent = _view("m1", content="mine")
    http.on("POST", "/api/groups/g1/messages", FakeResponse(200, sent))
    session.start()

    session.send_message("g1", "mine")
    sio.fire(EVENT_RECEIVE_MESSAGE, dict(sent))

    assert len(session.cache("g1")) == 1
    assert events == [(EVENT_RECEIVE_MESSAGE, sent)]


def test_update_and_delete_events(session, sio):
    session.start()
    sio.fire(EVENT_RECEIVE_MESSAGE, _view("m1"))
    sio.fire(EVENT_MESSAGE_UPDATED, _view("m1", content="edited"))
    assert session.cache("g1").messages()[0]["content"] == "edited"

    sio.fire(EVENT_MESSAGE_DELETED, "m1")
    assert "m1" not in session.cache("g1")


def test_reconnect_rejoins_and_catches_up(session, sio, http):
    http.on(
        "GET",
        "/api/groups/g1/messages",
        FakeResponse(200, [_view("m1")]),
        FakeResponse(200, [_view("m2", ts="2024-01-01T00:00:05+00:00"), _view("m1")]),
    )
    session.start()
    session.join_group("g1")

    # transport drops; message m2 arrives while offline; library reconnects
    sio.disconnect()
    assert session.state == SessionState.DISCONNECTED
    sio.connect(BASE, auth=session._auth_payload)

    assert session.state == SessionState.CONNECTED
    assert [c for c in sio.calls if c == (METHOD_JOIN_GROUP, "g1")] == [(METHOD_JOIN_GROUP, "g1")] * 2
    assert [v["id"] for v in session.cache("g1").messages()] == ["m1", "m2"]


def test_resync_reports_denied_group_and_continues(session, sio, http, errors):
    http.on("GET", "/api/groups/g1/messages", FakeResponse(200, []))
    http.on("GET", "/api/groups/g2/messages", FakeResponse(200, [_view("x", group="g2")]))
    session.start()
    session.join_group("g1")
    session.join_group("g2")
    sio.acks[(METHOD_JOIN_GROUP, "g1")] = {"success": False, "error": "forbidden"}

    sio.disconnect()
    sio.connect(BASE, auth=session._auth_payload)

    assert [type(e) for e in errors] == [GroupAccessDenied]
    assert session.tracked_groups == {"g2"}


def test_callback_errors_do_not_break_event_handling(http, sio):
    def boom(event, payload):
        raise RuntimeError("ui bug")

    s = ClientSyncSession(BASE, access_token="a1", refresh_token="r1", http=http, sio_factory=lambda: sio, on_event=boom)
    s.start()
    sio.fire(EVENT_RECEIVE_MESSAGE, _view("m1"))
    assert "m1" in s.cache("g1")


# ── Against a running server ─────────────────────────────────────────────────


@pytest.fixture
def live_server(app):
    server = make_server("127.0.0.1", 0, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}"
    server.shutdown()
    thread.join(timeout=5)


def test_expired_access_token_is_refreshed_on_connect(app, make_user, live_server):
    alice = make_user("alice")
    with app.app_context():
        expired = create_access_token(
            identity=alice["userId"],
            additional_claims={"username": "alice"},
            expires_delta=timedelta(seconds=-60),
        )

    s = ClientSyncSession(live_server, access_token=expired, refresh_token=alice["refreshToken"], timeout=5)
    try:
        s.start()
        assert s.state == SessionState.CONNECTED
        assert s.access_token != expired
        assert s.refresh_token != alice["refreshToken"]
        assert s.user_id == alice["userId"]
    finally:
        s.stop()


def test_rejected_refresh_stops_session_against_server(app, make_user, live_server):
    alice = make_user("alice")
    with app.app_context():
        expired = create_access_token(
            identity=alice["userId"],
            additional_claims={"username": "alice"},
            expires_delta=timedelta(seconds=-60),
        )

    s = ClientSyncSession(live_server, access_token=expired, refresh_token="not-the-credential", timeout=5)
    with pytest.raises(AuthExpiredError):
        s.start()
    assert s.state == SessionState.STOPPED
