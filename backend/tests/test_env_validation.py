"""Tests for configuration validation."""

from types import SimpleNamespace

import pytest

from backend.core.config import validate_config
from backend.features.streaks.persistence import InMemoryStateStorage, SqlStateStorage
from backend.features.streaks.service import build_streak_registry


def make_settings(**overrides):
    defaults = dict(
        ENV="development",
        CONFIG_STRICT=False,
        DATABASE_URL=None,
        TEST_DATABASE_URL=None,
        STREAK_STORAGE="memory",
        STREAK_TIMEZONE="UTC",
        STREAK_STATE_KEY_PREFIX="seek_streak_state",
        STREAK_MAX_ENGINES=1024,
        DEBUG_TOOLS_ENABLED=False,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def test_default_memory_config_passes():
    assert validate_config(strict=True, settings_obj=make_settings()) is True


def test_database_storage_requires_url_in_strict_mode():
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        validate_config(strict=True, settings_obj=make_settings(STREAK_STORAGE="database"))


def test_unknown_storage_rejected():
    with pytest.raises(RuntimeError, match="STREAK_STORAGE"):
        validate_config(strict=True, settings_obj=make_settings(STREAK_STORAGE="redis"))


def test_unknown_timezone_rejected():
    with pytest.raises(RuntimeError, match="STREAK_TIMEZONE"):
        validate_config(strict=True, settings_obj=make_settings(STREAK_TIMEZONE="Mars/Olympus_Mons"))


def test_non_strict_mode_only_warns(caplog):
    cfg = make_settings(STREAK_STORAGE="database", CONFIG_STRICT=False)
    assert validate_config(settings_obj=cfg) is True
    assert any("DATABASE_URL" in r.getMessage() for r in caplog.records)


def test_registry_uses_memory_storage_by_default():
    registry = build_streak_registry(make_settings(STREAK_TIMEZONE="Europe/London"))
    engine = registry.get("alice")
    assert isinstance(engine._store._storage, InMemoryStateStorage)
    registry.close_all()


def test_registry_uses_database_storage_when_configured():
    cfg = make_settings(STREAK_STORAGE="database", DATABASE_URL="sqlite://")
    registry = build_streak_registry(cfg)
    engine = registry.get("alice")
    assert isinstance(engine._store._storage, SqlStateStorage)
    registry.close_all()
