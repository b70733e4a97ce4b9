"""
Tests for the config module.

Tests configuration loading, validation, settings projection and default
file generation.
"""

import stat
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from relsync.config.generator import generate_default_config, save_config_file
from relsync.config.loader import (
    DEFAULT_CONFIG_FILE,
    VALID_KEYS,
    ConfigError,
    ConfigLoader,
)
from relsync.config.settings import Settings, SettingsError, check_bounds


@pytest.fixture
def loader(tmp_path):
    """Create a ConfigLoader instance with temp config dir."""
    return ConfigLoader(config_dir=tmp_path)


class TestConfigLoaderInitialization:
    """Tests for ConfigLoader initialization."""

    def test_custom_config_dir(self, tmp_path):
        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.config_dir == tmp_path.resolve()

    def test_config_dir_from_environment_variable(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELSYNC_CONFIG_DIR", str(tmp_path))
        assert ConfigLoader().config_dir == tmp_path.resolve()

    def test_config_path(self, tmp_path):
        loader = ConfigLoader(config_dir=tmp_path, config_file="custom.yaml")
        assert loader.config_path == tmp_path.resolve() / "custom.yaml"

    def test_default_config_file_name(self, loader):
        assert loader.config_file == DEFAULT_CONFIG_FILE == "config.yaml"


class TestConfigLoading:
    """Tests for configuration file loading."""

    def test_load_nonexistent_file_returns_empty_dict(self, loader):
        assert loader.load() == {}

    def test_load_valid_yaml_file(self, loader):
        loader.config_path.write_text(
            yaml.dump({"page_size": 50, "verbose": True}), encoding="utf-8"
        )
        assert loader.load() == {"page_size": 50, "verbose": True}

    def test_load_yaml_with_only_comments_returns_empty_dict(self, loader):
        loader.config_path.write_text("# nothing here\n", encoding="utf-8")
        assert loader.load() == {}

    def test_load_invalid_yaml_raises_config_error(self, loader):
        loader.config_path.write_text("key: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            loader.load()

    def test_load_non_dict_yaml_raises_config_error(self, loader):
        loader.config_path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="YAML dictionary"):
            loader.load()

    def test_load_from_file_with_string_path(self, loader, tmp_path):
        path = tmp_path / "other.yaml"
        path.write_text("debug: true\n", encoding="utf-8")
        assert loader.load_from_file(str(path)) == {"debug": True}

    @patch("builtins.open", side_effect=OSError("Permission denied"))
    def test_load_permission_error_raises_config_error(self, mock_open, loader):
        loader.config_path.write_text("debug: true", encoding="utf-8")
        with pytest.raises(ConfigError, match="Failed to read configuration file"):
            loader.load()


class TestConfigValidation:
    """Tests for configuration validation."""

    def test_validate_empty_config(self, loader):
        loader.validate({})

    def test_validate_non_dict_raises_error(self, loader):
        with pytest.raises(ConfigError, match="must be a dictionary"):
            loader.validate(["page_size"])

    def test_validate_accepts_known_values(self, loader):
        loader.validate(
            {
                "page_size": 10,
                "retry_base_delay": 1,
                "poll_interval": 0.5,
                "google_client_id": "abc",
                "verbose": False,
            }
        )

    def test_unknown_keys_allowed(self, loader):
        loader.validate({"future_option": [1, 2, 3]})

    def test_none_values_skipped(self, loader):
        loader.validate({"page_size": None})

    @pytest.mark.parametrize(
        "config",
        [
            {"page_size": "ten"},
            {"page_size": 1.5},
            {"page_size": True},
            {"verbose": "yes"},
            {"database_path": 42},
        ],
    )
    def test_wrong_types_rejected(self, loader, config):
        with pytest.raises(ConfigError, match="Invalid type"):
            loader.validate(config)

    @pytest.mark.parametrize(
        "config",
        [
            {"page_size": 0},
            {"max_attempts": 0},
            {"poll_interval": 0},
            {"fan_out_timeout": -1.0},
            {"retry_base_delay": -5},
        ],
    )
    def test_out_of_range_rejected(self, loader, config):
        with pytest.raises(ConfigError, match="must be"):
            loader.validate(config)

    def test_every_setting_is_a_valid_key(self):
        settings_keys = set(Settings().to_dict())
        assert set(VALID_KEYS) == settings_keys

    def test_load_and_validate(self, loader):
        loader.config_path.write_text("page_size: -1\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            loader.load_and_validate()


class TestSettings:
    """Tests for the typed Settings projection."""

    def test_defaults(self):
        settings = Settings()
        assert settings.max_attempts == 3
        assert settings.page_size == 100
        assert settings.worker_concurrency == 1
        assert settings.error_log_limit == 100

    def test_bounds_checked_on_construction(self):
        with pytest.raises(SettingsError, match="worker_concurrency"):
            Settings(worker_concurrency=0)

    def test_check_bounds(self):
        assert check_bounds("poll_interval", 0) is not None
        assert check_bounds("retry_base_delay", 0) is None
        assert check_bounds("not_numeric", -1) is None

    def test_from_dict_default_database_path(self, tmp_path):
        settings = Settings.from_dict({}, config_dir=tmp_path)
        assert settings.database_path == str(tmp_path.resolve() / "relsync.db")

    def test_from_dict_relative_paths(self, tmp_path):
        settings = Settings.from_dict(
            {"database_path": "data/sync.db", "log_dir": "logs"}, config_dir=tmp_path
        )
        assert settings.database_path == str(tmp_path.resolve() / "data" / "sync.db")
        assert settings.log_dir == str(tmp_path.resolve() / "logs")

    def test_from_dict_keeps_memory_and_absolute(self, tmp_path):
        settings = Settings.from_dict(
            {"database_path": ":memory:", "log_dir": "/var/log/relsync"},
            config_dir=tmp_path,
        )
        assert settings.database_path == ":memory:"
        assert settings.log_dir == "/var/log/relsync"

    def test_from_dict_ignores_unknown(self, tmp_path):
        settings = Settings.from_dict(
            {"page_size": 5, "legacy": True}, config_dir=tmp_path
        )
        assert settings.page_size == 5

    def test_to_dict_masks_secret(self):
        data = Settings(google_client_secret="hunter2").to_dict()
        assert data["google_client_secret"] == "********"
        assert "hunter2" not in str(data)

    def test_load_settings(self, loader):
        loader.config_path.write_text(
            "max_attempts: 5\npoll_interval: 0.5\nlog_dir:\n", encoding="utf-8"
        )
        settings = loader.load_settings()
        assert settings.max_attempts == 5
        assert settings.poll_interval == 0.5
        assert settings.log_dir is None


class TestConfigGenerator:
    """Tests for default config generation."""

    def test_generated_config_is_valid_yaml(self, loader):
        content = generate_default_config()
        parsed = yaml.safe_load(content)
        assert parsed is None or isinstance(parsed, dict)
        loader.validate(parsed or {})

    def test_every_key_documented(self):
        content = generate_default_config()
        for key in VALID_KEYS:
            assert f"# {key}:" in content

    def test_save_creates_file_with_private_permissions(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        success, error = save_config_file(path)
        assert success is True
        assert error is None
        assert path.read_text(encoding="utf-8") == generate_default_config()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_save_refuses_to_overwrite(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("page_size: 5\n", encoding="utf-8")
        success, error = save_config_file(path)
        assert success is False
        assert "already exists" in error
        assert path.read_text(encoding="utf-8") == "page_size: 5\n"

    def test_save_overwrite(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("page_size: 5\n", encoding="utf-8")
        success, _ = save_config_file(Path(path), overwrite=True)
        assert success is True
        assert "relsync configuration" in path.read_text(encoding="utf-8")
