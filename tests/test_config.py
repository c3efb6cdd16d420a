"""
Tests for pkgtrace.config.loader module.

Tests configuration loading and merging including:
- YAML file loading
- Layered merging (built-in -> org -> project)
- Path resolution
- Validation of required fields and value types
- Error handling
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pkgtrace.config.loader import DEFAULT_CONFIG, load_effective_config
from pkgtrace.exceptions import ConfigError


class TestConfigLoading:
    """Tests for basic configuration loading."""

    def test_load_minimal_project(self, create_yaml_file):
        """Built-in defaults fill everything a project leaves out."""
        path = create_yaml_file(
            "projects/app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "  Contoso App  "}},
        )

        config = load_effective_config(path)

        assert config["project"]["name"] == "Contoso App"
        assert config["capture"]["depth"] == DEFAULT_CONFIG["capture"]["depth"]
        assert config["capture"]["registry_retry"] == {"attempts": 3, "delay": 10}
        assert config["scripts"] == {"log_rotation_mb": 3, "log_level": "INFO"}
        assert config["sandbox"]["networking"] is False

    def test_defaults_not_mutated(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {
                "apiVersion": "pkgtrace/v1",
                "project": {"name": "A"},
                "capture": {"paths": ["D:\\Only"]},
            },
        )

        load_effective_config(path)

        assert "D:\\Only" not in DEFAULT_CONFIG["capture"]["paths"]

    def test_org_defaults_merged(self, tmp_test_dir, create_yaml_file):
        create_yaml_file(
            "defaults/org.yaml",
            {
                "scripts": {"log_level": "warning", "log_rotation_mb": 5},
                "capture": {"registry_retry": {"attempts": 5}},
            },
        )
        path = create_yaml_file(
            "projects/app.yaml",
            {
                "apiVersion": "pkgtrace/v1",
                "project": {"name": "App"},
                "scripts": {"log_rotation_mb": 8},
            },
        )

        config = load_effective_config(path)

        assert config["scripts"]["log_level"] == "WARNING"
        assert config["scripts"]["log_rotation_mb"] == 8
        assert config["capture"]["registry_retry"] == {"attempts": 5, "delay": 10}

    def test_lists_replaced_not_concatenated(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {
                "apiVersion": "pkgtrace/v1",
                "project": {"name": "App"},
                "capture": {"registry_roots": ["HKLM:\\SOFTWARE\\Contoso"]},
            },
        )

        config = load_effective_config(path)

        assert config["capture"]["registry_roots"] == ["HKLM:\\SOFTWARE\\Contoso"]


class TestPathResolution:
    """Tests for relative path resolution."""

    def test_output_dir_relative_to_project(self, tmp_test_dir, create_yaml_file):
        path = create_yaml_file(
            "projects/app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "App"}, "output": {"dir": "out"}},
        )

        config = load_effective_config(path)

        assert Path(config["output"]["dir"]) == (tmp_test_dir / "projects" / "out").resolve()

    def test_existing_installer_resolved(self, tmp_test_dir, create_yaml_file):
        (tmp_test_dir / "projects").mkdir()
        (tmp_test_dir / "projects" / "setup.msi").write_bytes(b"")
        path = create_yaml_file(
            "projects/app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "App", "installer": "setup.msi"}},
        )

        config = load_effective_config(path)

        assert Path(config["project"]["installer"]).is_absolute()

    def test_bare_installer_command_kept(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "App", "installer": "winget.exe"}},
        )

        config = load_effective_config(path)

        assert config["project"]["installer"] == "winget.exe"


class TestConfigErrors:
    """Tests for invalid configurations."""

    def test_missing_file(self, tmp_test_dir):
        with pytest.raises(ConfigError, match="file not found"):
            load_effective_config(tmp_test_dir / "nope.yaml")

    def test_empty_file(self, tmp_test_dir):
        path = tmp_test_dir / "empty.yaml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ConfigError, match="empty"):
            load_effective_config(path)

    def test_invalid_yaml(self, tmp_test_dir):
        path = tmp_test_dir / "bad.yaml"
        path.write_text("project: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Error parsing YAML"):
            load_effective_config(path)

    def test_wrong_api_version(self, create_yaml_file):
        path = create_yaml_file("app.yaml", {"apiVersion": "legacy/v1", "project": {"name": "A"}})
        with pytest.raises(ConfigError, match="apiVersion"):
            load_effective_config(path)

    def test_missing_project_name(self, create_yaml_file):
        path = create_yaml_file("app.yaml", {"apiVersion": "pkgtrace/v1", "project": {}})
        with pytest.raises(ConfigError, match="project.name"):
            load_effective_config(path)

    def test_invalid_depth(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "A"}, "capture": {"depth": 0}},
        )
        with pytest.raises(ConfigError, match="capture.depth"):
            load_effective_config(path)

    def test_invalid_retry_attempts(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {
                "apiVersion": "pkgtrace/v1",
                "project": {"name": "A"},
                "capture": {"registry_retry": {"attempts": 0}},
            },
        )
        with pytest.raises(ConfigError, match="registry_retry.attempts"):
            load_effective_config(path)

    def test_invalid_log_level(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "A"}, "scripts": {"log_level": "LOUD"}},
        )
        with pytest.raises(ConfigError, match="log_level"):
            load_effective_config(path)

    def test_install_args_must_be_list(self, create_yaml_file):
        path = create_yaml_file(
            "app.yaml",
            {"apiVersion": "pkgtrace/v1", "project": {"name": "A", "install_args": "/qn"}},
        )
        with pytest.raises(ConfigError, match="install_args"):
            load_effective_config(path)
