"""Tests for settings parsing and environment substitution."""
import pytest

import config.settings as settings_module
from config.settings import _as_bool, _substitute_env_vars, load_settings, parse_settings


@pytest.fixture(autouse=True)
def reset_cached_settings(monkeypatch):
    monkeypatch.setattr(settings_module, "_settings", None)


def test_defaults_without_config():
    s = parse_settings({})
    assert s.queue.backend == "memory"
    assert s.queue.queues["webhook"].attempts == 5
    assert s.queue.queues["space-hold-expire"].attempts == 1
    assert s.database.store_backend == "memory"
    assert s.hold.duration_hours == 24
    assert s.maintenance.token_refresh_enabled


def test_queue_overrides_merge_with_defaults():
    s = parse_settings({"queue": {"queues": {"social": {"attempts": 7, "backoff_type": "fixed"}}}})
    assert s.queue.queues["social"].attempts == 7
    assert s.queue.queues["social"].backoff_type == "fixed"
    assert s.queue.queues["social"].concurrency == 5
    assert s.queue.queues["webhook"].attempts == 5


def test_env_substitution(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6380")
    monkeypatch.delenv("MISSING_VAR", raising=False)
    assert _substitute_env_vars("${REDIS_URL:-redis://localhost:6379}") == "redis://cache:6380"
    assert _substitute_env_vars("${MISSING_VAR:-fallback}") == "fallback"
    assert _substitute_env_vars("${MISSING_VAR}") == "${MISSING_VAR}"


@pytest.mark.parametrize("raw,expected", [
    ("true", True), ("1", True), ("Yes", True), ("false", False), ("0", False), ("", False),
    (True, True), (False, False),
])
def test_as_bool(raw, expected):
    assert _as_bool(raw) is expected


def test_env_driven_boolean_flag(monkeypatch):
    monkeypatch.setenv("FEATURE_REAL_PROVIDERS", "false")
    s = parse_settings({"providers": {"use_real_providers": "${FEATURE_REAL_PROVIDERS:-false}"}})
    assert s.providers.use_real_providers is False

    monkeypatch.setenv("FEATURE_REAL_PROVIDERS", "true")
    s = parse_settings({"providers": {"use_real_providers": "${FEATURE_REAL_PROVIDERS:-false}"}})
    assert s.providers.use_real_providers is True


def test_load_settings_from_yaml(tmp_path, monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", "k3y")
    path = tmp_path / "settings.yaml"
    path.write_text(
        "app_name: TestJobs\n"
        "queue:\n  backend: redis\n  key_prefix: test\n"
        "security:\n  token_encryption_key: \"${ENCRYPTION_KEY:-}\"\n"
        "hold:\n  duration_hours: 2\n"
    )

    s = load_settings(str(path))

    assert s.app_name == "TestJobs"
    assert s.queue.backend == "redis"
    assert s.queue.key_prefix == "test"
    assert s.security.token_encryption_key == "k3y"
    assert s.hold.duration_hours == 2
    assert settings_module.get_settings() is s


def test_missing_file_gives_defaults(tmp_path):
    s = load_settings(str(tmp_path / "nope.yaml"))
    assert s.app_name == "BookingJobs"
