"""
Unit tests for ghostterm.config module.

Created by orpheus497
"""

import pytest

from ghostterm.config import DEFAULT_CONFIG, Config
from ghostterm.errors import ConfigError, ErrorCode


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os

    for var in list(os.environ):
        if var.startswith("GHOSTTERM_"):
            monkeypatch.delenv(var)


class TestConfig:
    def test_defaults_when_file_missing(self, tmp_path):
        config = Config(tmp_path / "absent.toml")
        assert config.data == DEFAULT_CONFIG
        assert config.get("presence", "heartbeat_interval") == 3.0

    def test_defaults_not_shared(self, tmp_path):
        config = Config(tmp_path / "absent.toml")
        config.data["ui"]["display_name"] = "Changed"
        assert DEFAULT_CONFIG["ui"]["display_name"] != "Changed"

    def test_file_values_merge_with_defaults(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[ui]\ndisplay_name = "Ava"\n\n[presence]\nliveness_timeout = 20.0\n')
        config = Config(path)
        assert config.get("ui", "display_name") == "Ava"
        assert config.get("ui", "copy_ticket") is True
        assert config.get("presence", "liveness_timeout") == 20.0
        assert config.get("presence", "heartbeat_interval") == 3.0

    def test_parse_error(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[ui\ndisplay_name = ")
        with pytest.raises(ConfigError) as exc:
            Config(path)
        assert exc.value.code == ErrorCode.E704_CONFIG_PARSE_ERROR

    def test_env_override_types(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GHOSTTERM_NETWORK_PORT", "4433")
        monkeypatch.setenv("GHOSTTERM_PRESENCE_LIVENESS_TIMEOUT", "12.5")
        monkeypatch.setenv("GHOSTTERM_UI_COPY_TICKET", "no")
        monkeypatch.setenv("GHOSTTERM_UI_DISPLAY_NAME", "Bo")
        config = Config(tmp_path / "absent.toml")
        assert config.get("network", "port") == 4433
        assert config.get("presence", "liveness_timeout") == 12.5
        assert config.get("ui", "copy_ticket") is False
        assert config.get("ui", "display_name") == "Bo"

    def test_env_override_beats_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text('[ui]\ndisplay_name = "Ava"\n')
        monkeypatch.setenv("GHOSTTERM_UI_DISPLAY_NAME", "Cy")
        assert Config(path).get("ui", "display_name") == "Cy"

    def test_bad_env_value_keeps_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GHOSTTERM_NETWORK_PORT", "not-a-number")
        assert Config(tmp_path / "absent.toml").get("network", "port") == 0

    def test_get_default(self, tmp_path):
        config = Config(tmp_path / "absent.toml")
        assert config.get("missing", "key", "fallback") == "fallback"
        assert config.get("ui", "missing") is None
