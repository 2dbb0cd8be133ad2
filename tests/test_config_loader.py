import json
import os
from unittest.mock import patch

import pytest

from tokenfeed.utils.config_loader import DEFAULT_SETTINGS, ConfigLoader


@pytest.fixture
def settings_file(tmp_path):
    def write(content):
        path = tmp_path / "settings.json"
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_text(json.dumps(content), encoding="utf-8")
        return str(path)

    return write


class TestConfigLoad:

    def test_load_returns_dict(self, settings_file):
        path = settings_file({"cache": {"ephemeral_ttl_seconds": 60}})

        assert ConfigLoader.load(path) == {"cache": {"ephemeral_ttl_seconds": 60}}

    def test_load_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader.load(str(tmp_path / "missing.json"))

    def test_load_invalid_json_raises(self, settings_file):
        path = settings_file("{not json")

        with pytest.raises(json.JSONDecodeError):
            ConfigLoader.load(path)

    def test_load_rejects_non_object_root(self, settings_file):
        path = settings_file([1, 2, 3])

        with pytest.raises(ValueError):
            ConfigLoader.load(path)

    def test_load_config_is_lenient(self, tmp_path, settings_file):
        assert ConfigLoader.load_config(str(tmp_path / "missing.json")) is None
        assert ConfigLoader.load_config(settings_file("{broken")) is None
        assert ConfigLoader.load_config(settings_file(["list"])) is None
        assert ConfigLoader.load_config(settings_file({"a": 1})) == {"a": 1}


class TestConfigMerge:

    def test_nested_override(self):
        base = {"cache": {"ephemeral_ttl_seconds": 300, "durable_enabled": True}, "level": "INFO"}
        override = {"cache": {"ephemeral_ttl_seconds": 60}, "level": "DEBUG"}

        merged = ConfigLoader.merge(base, override)

        assert merged == {"cache": {"ephemeral_ttl_seconds": 60, "durable_enabled": True}, "level": "DEBUG"}

    def test_merge_does_not_mutate_inputs(self):
        base = {"cache": {"ttl": 1}}
        override = {"cache": {"ttl": 2}}

        merged = ConfigLoader.merge(base, override)
        merged["cache"]["ttl"] = 99

        assert base == {"cache": {"ttl": 1}}
        assert override == {"cache": {"ttl": 2}}

    def test_scalar_replaces_dict(self):
        assert ConfigLoader.merge({"a": {"b": 1}}, {"a": 5}) == {"a": 5}

    def test_none_override(self):
        assert ConfigLoader.merge({"a": 1}, None) == {"a": 1}


class TestLoadSettings:

    @pytest.fixture(autouse=True)
    def no_dotenv(self):
        with patch("tokenfeed.utils.config_loader.load_dotenv") as mocked:
            yield mocked

    def test_defaults_when_file_missing(self, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            settings = ConfigLoader.load_settings(str(tmp_path / "missing.json"))

        assert settings["fetcher"] == DEFAULT_SETTINGS["fetcher"]
        assert settings["provider"]["mobula"]["api_key"] is None

    def test_file_overrides_defaults(self, settings_file):
        path = settings_file({"batching": {"max_chunk_size": 25}})

        with patch.dict(os.environ, {}, clear=True):
            settings = ConfigLoader.load_settings(path)

        assert settings["batching"]["max_chunk_size"] == 25
        assert settings["batching"]["inter_chunk_delay_seconds"] == 0.3

    def test_api_key_comes_from_environment(self, settings_file):
        path = settings_file({"provider": {"mobula": {"api_key": "from-file"}}})

        with patch.dict(os.environ, {"MOBULA_API_KEY": "  env-key  "}, clear=True):
            settings = ConfigLoader.load_settings(path)

        assert settings["provider"]["mobula"]["api_key"] == "env-key"

    def test_blank_api_key_is_none(self):
        with patch.dict(os.environ, {"MOBULA_API_KEY": ""}, clear=True):
            settings = ConfigLoader.load_settings(None)

        assert settings["provider"]["mobula"]["api_key"] is None

    def test_log_level_override(self):
        with patch.dict(os.environ, {"TOKENFEED_LOG_LEVEL": "debug"}, clear=True):
            settings = ConfigLoader.load_settings(None)

        assert settings["logging"]["level"] == "DEBUG"

    def test_dotenv_is_loaded(self, no_dotenv):
        with patch.dict(os.environ, {}, clear=True):
            ConfigLoader.load_settings(None)

        no_dotenv.assert_called_once()

    def test_defaults_are_not_mutated(self):
        with patch.dict(os.environ, {"MOBULA_API_KEY": "k"}, clear=True):
            settings = ConfigLoader.load_settings(None)
        settings["cache"]["ephemeral_ttl_seconds"] = 1

        assert DEFAULT_SETTINGS["cache"]["ephemeral_ttl_seconds"] == 300
        assert "api_key" not in DEFAULT_SETTINGS["provider"]["mobula"]
