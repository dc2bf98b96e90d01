"""
Unit tests for config.loaders module.

Tests cover:
- Path resolution (relative vs absolute)
- YAML loading with environment variable expansion
- Error handling (missing files, invalid YAML)
"""

import os

import pytest
import yaml

from call_trainer.config.loaders import resolve_config_path, load_yaml_with_env_expansion


class TestResolveConfigPath:
    """Tests for resolve_config_path function."""

    def test_absolute_path_unchanged(self):
        """Absolute paths should be returned unchanged."""
        abs_path = "/etc/config/test.yaml"
        assert resolve_config_path(abs_path) == abs_path

    def test_relative_path_resolved(self):
        """Relative paths should be resolved relative to project root."""
        rel_path = "config/call-trainer.yaml"
        result = resolve_config_path(rel_path)

        assert os.path.isabs(result)
        assert result.endswith(rel_path)

    def test_shipped_config_exists(self):
        """The default config file ships with the project."""
        assert os.path.exists(resolve_config_path("config/call-trainer.yaml"))


class TestLoadYamlWithEnvExpansion:
    """Tests for load_yaml_with_env_expansion function."""

    def test_load_simple_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 9000\n")

        result = load_yaml_with_env_expansion(str(path))

        assert result == {"server": {"port": 9000}}

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        """Should expand ${VAR} references before parsing."""
        monkeypatch.setenv("TEST_RESULTS_HOST", "results.internal")
        path = tmp_path / "config.yaml"
        path.write_text("results:\n  endpoint: http://${TEST_RESULTS_HOST}:3000\n")

        result = load_yaml_with_env_expansion(str(path))

        assert result["results"]["endpoint"] == "http://results.internal:3000"

    def test_empty_file_returns_empty_dict(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_yaml_with_env_expansion(str(path)) == {}

    def test_non_mapping_returns_empty_dict(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        assert load_yaml_with_env_expansion(str(path)) == {}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            load_yaml_with_env_expansion(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("server: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_yaml_with_env_expansion(str(path))
