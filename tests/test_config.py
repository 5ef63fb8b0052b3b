"""Tests for configuration loading, inheritance resolution and settings providers."""

from __future__ import annotations

import pytest

from dvstore.core.errors import ConfigurationError
from dvstore.core.utils.config import (
    ConfigError,
    EnvironmentConfigProvider,
    InMemoryConfigProvider,
    LayeredConfigProvider,
    bool_from_string_or_default,
    int_limit_from_string_or_default,
    load_and_resolve_config,
    load_config_from_module,
    read_env_file,
    resolve_config_inheritance,
)


class TestConfigInheritance:
    """Test suite for configuration inheritance resolution."""

    def test_resolve_inheritance_basic(self):
        """Test that a driver inherits and overrides its template."""
        config = {
            "_s3": {
                "type": "s3",
                "endpoint": "http://localhost:9000",
                "bucket": "mybucket",
                "path_style_access": False,
            },
            "minio1": {
                "__inherits__": "_s3",
                "label": "MinIO",
                "path_style_access": True,
            },
        }

        resolved = resolve_config_inheritance(config)

        # Template unchanged
        assert resolved["_s3"]["path_style_access"] is False
        assert "label" not in resolved["_s3"]

        # Child inherits and overrides
        assert resolved["minio1"]["type"] == "s3"
        assert resolved["minio1"]["bucket"] == "mybucket"
        assert resolved["minio1"]["label"] == "MinIO"
        assert resolved["minio1"]["path_style_access"] is True
        assert "__inherits__" not in resolved["minio1"]

    def test_resolve_inheritance_multi_level(self):
        """Test multi-level inheritance (grandchild -> child -> parent)."""
        config = {
            "level0": {"type": "s3", "val0": "0"},
            "level1": {"__inherits__": "level0", "val1": "1"},
            "level2": {"__inherits__": "level1", "val2": "2", "val0": "overridden"},
        }

        resolved = resolve_config_inheritance(config)

        assert resolved["level2"] == {
            "type": "s3",
            "val0": "overridden",
            "val1": "1",
            "val2": "2",
        }

    def test_resolve_inheritance_circular_detection(self):
        """Test that circular inheritance is detected."""
        config = {
            "a": {"__inherits__": "b"},
            "b": {"__inherits__": "a"},
        }

        with pytest.raises(ConfigError, match="Circular inheritance detected"):
            resolve_config_inheritance(config)

    def test_resolve_inheritance_self_reference(self):
        """Test that self-referencing inheritance is detected."""
        with pytest.raises(ConfigError, match="Circular inheritance detected"):
            resolve_config_inheritance({"a": {"__inherits__": "a"}})

    def test_resolve_inheritance_missing_parent(self):
        """Test error when parent config doesn't exist."""
        config = {"child": {"__inherits__": "nonexistent"}}

        with pytest.raises(
            ConfigError, match="inherits from 'nonexistent', but 'nonexistent' not found"
        ):
            resolve_config_inheritance(config)

    def test_config_error_is_configuration_error(self):
        """Test that resolution failures belong to the configuration error family."""
        with pytest.raises(ConfigurationError):
            resolve_config_inheritance({"a": {"__inherits__": "missing"}})

    def test_resolve_inheritance_empty_config(self):
        """Test resolving empty configuration."""
        assert resolve_config_inheritance({}) == {}


class TestModuleLoading:
    """Test loading configuration dicts from modules."""

    def test_load_missing_module_returns_default(self):
        """Test that an unknown module yields the default."""
        assert load_config_from_module("configs.does_not_exist", default={}) == {}

    def test_load_missing_attribute_returns_default(self):
        """Test that a module without the attribute yields the default."""
        assert load_config_from_module("dvstore.core.errors", "CONFIGURATION", default=None) is None

    def test_load_storage_driver_configuration(self):
        """Test that the shipped driver configuration resolves its templates."""
        resolved = load_and_resolve_config("configs.storage_drivers", default={})

        assert resolved["minio1"]["label"] == "MinIO"
        assert resolved["minio1"]["type"] == "s3"
        assert resolved["localstack1"]["label"] == "LocalStack"
        assert resolved["file1"]["type"] == "filesystem"


class TestNumericSettings:
    """Test parsing of numeric and boolean settings."""

    def test_int_limit_none_returns_default(self):
        assert int_limit_from_string_or_default(None, 5) == 5

    def test_int_limit_non_numeric_returns_default(self):
        assert int_limit_from_string_or_default("test", 5) == 5

    def test_int_limit_negative_is_kept(self):
        assert int_limit_from_string_or_default("-10", 5) == -10

    def test_int_limit_strips_whitespace(self):
        assert int_limit_from_string_or_default(" 1024 ", 5) == 1024

    @pytest.mark.parametrize(
        "value,expected",
        [("true", True), ("1", True), ("ON", True), ("false", False), ("no", False)],
    )
    def test_bool_values(self, value, expected):
        assert bool_from_string_or_default(value, not expected) is expected

    def test_bool_blank_returns_default(self):
        assert bool_from_string_or_default("  ", True) is True
        assert bool_from_string_or_default(None, False) is False


class TestConfigProviders:
    """Test settings providers."""

    def test_in_memory_provider(self):
        """Test that values are stored as strings and can be overridden."""
        provider = InMemoryConfigProvider({"min_part_size": 1024, "unset": None})

        assert provider.get("min_part_size") == "1024"
        assert provider.get("unset") is None

        provider.set("min_part_size", 2048)
        assert provider.get("min_part_size") == "2048"

    def test_environment_provider_reads_prefixed_variables(self, monkeypatch):
        """Test that keys map to DVSTORE_-prefixed upper-case variables."""
        monkeypatch.setenv("DVSTORE_DEFAULT_DRIVER", "file1")

        provider = EnvironmentConfigProvider()

        assert provider.get("default_driver") == "file1"
        assert provider.get("files_directory") is None

    def test_environment_provider_env_file(self, tmp_path, monkeypatch):
        """Test that the process environment wins over the .env file."""
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# settings\nDVSTORE_DEFAULT_DRIVER='minio1'\nDVSTORE_CHECKSUM_ALGORITHM=SHA-1\n"
        )
        monkeypatch.setenv("DVSTORE_CHECKSUM_ALGORITHM", "MD5")

        provider = EnvironmentConfigProvider(env_file=env_file)

        assert provider.get("default_driver") == "minio1"
        assert provider.get("checksum_algorithm") == "MD5"

    def test_read_env_file_missing(self, tmp_path):
        assert read_env_file(tmp_path / "missing.env") == {}

    def test_layered_provider_first_value_wins(self):
        """Test that database-style overrides take precedence over defaults."""
        overrides = InMemoryConfigProvider({"default_driver": "minio1"})
        defaults = InMemoryConfigProvider({"default_driver": "local", "verify_checksums": "true"})

        provider = LayeredConfigProvider(overrides, defaults)

        assert provider.get("default_driver") == "minio1"
        assert provider.get("verify_checksums") == "true"
        assert provider.get("missing") is None
