"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from typing import Callable, Dict, List, Tuple

import pytest

from config import get_default_settings
from membership import MembershipAuthority
from memory_store import MemoryMembershipStore, MemoryMessageStore, MemoryUserStore
from messages import MessagePipeline
from file_storage import LocalBlobStore
from security import configure_password_hasher, hash_password
from server_init import create_app

PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def _cheap_password_hashing():
    # Argon2 with production parameters costs ~64 MiB per hash.
    configure_password_hasher(time_cost=1, memory_cost=8, parallelism=1)
    yield
    configure_password_hasher()


@pytest.fixture
def settings(tmp_path) -> dict:
    s = get_default_settings()
    s.update(
        {
            "storage_backend": "memory",
            "secret_key": "test-secret-key",
            "jwt_secret": "test-jwt-secret-that-is-long-enough-for-hs256",
            "rate_limit_enabled": False,
            "upload_dir": str(tmp_path / "uploads"),
            "socketio_async_mode": "threading",
            "password_hash_time_cost": 1,
            "password_hash_memory_kib": 8,
            "max_upload_bytes": 1024 * 1024,
        }
    )
    return s


@pytest.fixture
def app_bundle(settings):
    app, socketio = create_app(settings)
    app.config["TESTING"] = True
    return app, socketio, app.extensions["crtalk"]


@pytest.fixture
def app(app_bundle):
    return app_bundle[0]


@pytest.fixture
def socketio(app_bundle):
    return app_bundle[1]


@pytest.fixture
def services(app_bundle):
    return app_bundle[2]


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(client) -> Callable[[str], dict]:
    """Register + log in over HTTP. Returns the login body (tokens, userId, username)."""

    def _make(username: str) -> dict:
        r = client.post("/api/auth/register", json={"username": username, "password": PASSWORD})
        assert r.status_code == 201, r.get_json()
        r = client.post("/api/auth/login", json={"username": username, "password": PASSWORD})
        assert r.status_code == 200, r.get_json()
        return r.get_json()

    return _make


# ── Core (no Flask) ──────────────────────────────────────────────────────────


class RecordingBroadcaster:
    def __init__(self, fail: bool = False):
        self.calls: List[Tuple[str, str, object]] = []
        self.fail = fail

    def __call__(self, group_id, event, payload):
        self.calls.append((group_id, event, payload))
        if self.fail:
            raise RuntimeError("socket layer down")
        return 1


@pytest.fixture
def users() -> MemoryUserStore:
    return MemoryUserStore()


@pytest.fixture
def memberships() -> MemoryMembershipStore:
    return MemoryMembershipStore()


@pytest.fixture
def authority(memberships, users) -> MembershipAuthority:
    return MembershipAuthority(memberships, users)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def pipeline(users, authority, broadcaster, tmp_path) -> MessagePipeline:
    return MessagePipeline(
        MemoryMessageStore(),
        users,
        authority,
        blobs=LocalBlobStore(str(tmp_path / "blobs")),
        broadcaster=broadcaster,
        page_size_max=50,
        max_upload_bytes=1024,
    )


@pytest.fixture
def new_user(users) -> Callable[[str], str]:
    """Create a user directly in the store; returns the id."""

    def _new(username: str) -> str:
        user = users.create(username, hash_password(PASSWORD))
        assert user is not None
        return user.id

    return _new
