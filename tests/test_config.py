"""Settings: defaults, file formats, env overrides, secret persistence."""

import json

import pytest
import yaml

from config import apply_env_overrides, get_default_settings, load_settings, save_settings
from server_init import create_app

_ENV = [
    "DB_CONNECTION_STRING",
    "DATABASE_URL",
    "SECRET_KEY",
    "JWT_SECRET_KEY",
    "CRTALK_JWT_SECRET",
    "CRTALK_STORAGE_BACKEND",
    "CRTALK_UPLOAD_DIR",
    "CRTALK_SOCKETIO_MESSAGE_QUEUE",
    "SOCKETIO_MESSAGE_QUEUE",
    "REDIS_URL",
    "CRTALK_SOCKETIO_ASYNC",
    "CRTALK_LOG_LEVEL",
    "CRTALK_HOST",
    "CRTALK_PORT",
    "CRTALK_RATE_LIMIT_ENABLED",
    "CRTALK_PERSIST_SECRETS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = get_default_settings()
    assert s["storage_backend"] == "postgres"
    assert s["max_message_chars"] == 4000
    assert s["rate_limit_enabled"] is True
    assert s["secret_key"] == ""


def test_missing_file_gives_defaults(tmp_path):
    assert load_settings(tmp_path / "nope.json") == get_default_settings()


def test_load_json_and_yaml(tmp_path):
    j = tmp_path / "server_config.json"
    j.write_text(json.dumps({"port": 6001, "server_name": "ops"}), encoding="utf-8")
    y = tmp_path / "server_config.yaml"
    y.write_text(yaml.safe_dump({"port": 6002, "storage_backend": "memory"}), encoding="utf-8")

    from_json = load_settings(j)
    from_yaml = load_settings(y)

    assert (from_json["port"], from_json["server_name"]) == (6001, "ops")
    assert (from_yaml["port"], from_yaml["storage_backend"]) == (6002, "memory")
    assert from_yaml["max_message_chars"] == 4000


def test_corrupt_file_is_backed_up(tmp_path):
    path = tmp_path / "server_config.json"
    path.write_text("{not json", encoding="utf-8")

    settings = load_settings(path)

    assert settings == get_default_settings()
    assert not path.exists()
    assert len(list(tmp_path.glob("server_config.json.bad-*"))) == 1


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "from-env")
    monkeypatch.setenv("CRTALK_JWT_SECRET", "jwt-from-env")
    monkeypatch.setenv("CRTALK_STORAGE_BACKEND", "MEMORY")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("CRTALK_LOG_LEVEL", "debug")
    monkeypatch.setenv("CRTALK_PORT", "7000")
    monkeypatch.setenv("CRTALK_RATE_LIMIT_ENABLED", "off")

    s = get_default_settings()
    apply_env_overrides(s)

    assert s["secret_key"] == "from-env"
    assert s["jwt_secret"] == "jwt-from-env"
    assert s["storage_backend"] == "memory"
    assert s["socketio_message_queue"] == "redis://cache:6379/0"
    assert s["log_level"] == "DEBUG"
    assert s["port"] == 7000
    assert s["rate_limit_enabled"] is False


def test_bad_port_env_is_ignored(monkeypatch):
    monkeypatch.setenv("CRTALK_PORT", "http")
    s = get_default_settings()
    apply_env_overrides(s)
    assert s["port"] == 5000


def test_save_settings_scrubs_secrets_when_disabled(tmp_path, monkeypatch):
    monkeypatch.setenv("CRTALK_PERSIST_SECRETS", "0")
    s = get_default_settings()
    s.update({"secret_key": "s3cret", "jwt_secret": "j", "socketio_message_queue": "redis://:pw@r:6379"})
    path = tmp_path / "out.yaml"

    save_settings(path, s)

    saved = yaml.safe_load(path.read_text(encoding="utf-8"))
    for key in ("secret_key", "jwt_secret", "database_url", "socketio_message_queue"):
        assert key not in saved
    assert saved["port"] == 5000


def test_generated_secrets_are_persisted(tmp_path, settings):
    settings["secret_key"] = ""
    settings["jwt_secret"] = ""
    path = tmp_path / "server_config.json"

    create_app(settings, settings_file=path)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["secret_key"] and saved["jwt_secret"]
    assert saved["secret_key"] == settings["secret_key"]


def test_generated_secrets_not_persisted_when_disabled(tmp_path, settings, monkeypatch):
    monkeypatch.setenv("CRTALK_PERSIST_SECRETS", "0")
    settings["secret_key"] = ""
    settings["jwt_secret"] = ""
    path = tmp_path / "server_config.json"

    app, _ = create_app(settings, settings_file=path)

    assert app.secret_key
    assert not path.exists()
