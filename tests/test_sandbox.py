"""
Tests for pkgtrace.sandbox module.
"""

from __future__ import annotations

from pathlib import Path
import subprocess
import xml.etree.ElementTree as ET

import pytest

from pkgtrace.exceptions import PackagingError
from pkgtrace.sandbox import (
    SandboxConfig,
    launch_sandbox,
    render_sandbox_config,
    sandbox_config_from,
    write_sandbox_config,
)

pytestmark = pytest.mark.unit


class TestSandboxConfig:
    """Tests for SandboxConfig and its rendering."""

    def test_default_command_traces_project(self):
        config = SandboxConfig(host_folder=Path("/work/projects"), project_file="app.yaml")

        assert config.sandbox_project_path == "C:\\PkgTrace\\app.yaml"
        assert "pkgtrace trace -v 'C:\\PkgTrace\\app.yaml'" in config.command

    def test_custom_logon_command(self):
        config = SandboxConfig(Path("/w"), "app.yaml", logon_command="cmd.exe /c echo hi")
        assert config.command == "cmd.exe /c echo hi"

    def test_rendered_xml(self):
        config = SandboxConfig(
            host_folder=Path("/work/R&D"), project_file="app.yaml", networking=True, memory_mb=8192
        )

        root = ET.fromstring(render_sandbox_config(config))

        assert root.findtext("Networking") == "Enable"
        assert root.findtext("MemoryInMB") == "8192"
        folder = root.find("MappedFolders/MappedFolder")
        assert folder.findtext("HostFolder") == str(Path("/work/R&D"))
        assert folder.findtext("SandboxFolder") == "C:\\PkgTrace"
        assert folder.findtext("ReadOnly") == "false"
        assert "pkgtrace trace" in root.findtext("LogonCommand/Command")

    def test_config_from_project(self, tmp_test_dir):
        project = tmp_test_dir / "app.yaml"
        config = sandbox_config_from(
            project, {"sandbox": {"networking": True, "memory_mb": 2048}}
        )

        assert config.host_folder == tmp_test_dir.resolve()
        assert config.project_file == "app.yaml"
        assert config.networking is True
        assert config.memory_mb == 2048
        assert config.logon_command is None


class TestWriteSandboxConfig:
    """Tests for write_sandbox_config function."""

    def test_writes_wsb(self, tmp_test_dir, create_yaml_file, sample_project_data):
        project = create_yaml_file("projects/app.yaml", sample_project_data)

        output = write_sandbox_config(project, tmp_test_dir / "out" / "app.wsb")

        root = ET.fromstring(output.read_text(encoding="utf-8"))
        assert root.findtext("Networking") == "Disable"
        assert root.findtext("MemoryInMB") == "4096"


class TestLaunchSandbox:
    """Tests for launch_sandbox function."""

    def test_launch_command(self, tmp_test_dir):
        calls = []

        def runner(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0)

        launch_sandbox(tmp_test_dir / "app.wsb", runner=runner)

        assert calls == [["WindowsSandbox.exe", str(tmp_test_dir / "app.wsb")]]

    def test_sandbox_not_installed(self, tmp_test_dir):
        def runner(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        with pytest.raises(PackagingError, match="Windows Sandbox"):
            launch_sandbox(tmp_test_dir / "app.wsb", runner=runner)

    def test_sandbox_fails(self, tmp_test_dir):
        def runner(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd)

        with pytest.raises(PackagingError, match="exit code 1"):
            launch_sandbox(tmp_test_dir / "app.wsb", runner=runner)
