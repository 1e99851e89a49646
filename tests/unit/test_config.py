"""Unit tests for console configuration."""

import pytest

from labconsole.engine.constants import DEFAULT_FORBIDDEN_NAMES
from labconsole.session.config import ConsoleConfig


@pytest.mark.unit
class TestConsoleConfig:
    def test_defaults(self):
        config = ConsoleConfig()
        assert config.forbidden_names == DEFAULT_FORBIDDEN_NAMES
        assert config.debug is False
        assert config.linecache_max_size == 128
        assert config.command_window_name == "command_window"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LABCONSOLE_DEBUG", "true")
        monkeypatch.setenv("LABCONSOLE_LINECACHE_MAX", "16")
        monkeypatch.setenv("LABCONSOLE_SUBPROCESS_GRACE", "0.25")
        monkeypatch.setenv("LABCONSOLE_FORBIDDEN_NAMES", "alpha, beta,,")
        config = ConsoleConfig.from_env()
        assert config.debug is True
        assert config.linecache_max_size == 16
        assert config.subprocess_grace_period == 0.25
        assert config.forbidden_names == ("alpha", "beta")

    def test_invalid_env_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("LABCONSOLE_LINECACHE_MAX", "lots")
        monkeypatch.setenv("LABCONSOLE_FRAME_INTERVAL", "soon")
        config = ConsoleConfig.from_env()
        assert config.linecache_max_size == 128
        assert config.frame_interval == pytest.approx(1 / 60)

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("LABCONSOLE_DEBUG", "1")
        config = ConsoleConfig.from_env(debug=False, large_structure_threshold=5)
        assert config.debug is False
        assert config.large_structure_threshold == 5

    def test_forbidden_includes_catalogue(self):
        config = ConsoleConfig(forbidden_names=("config",))
        assert config.forbidden({"set_timeout"}) == frozenset({"config", "set_timeout"})

    def test_unprotected_catalogue(self):
        config = ConsoleConfig(forbidden_names=("config",), protect_catalogue=False)
        assert config.forbidden({"set_timeout"}) == frozenset({"config"})
