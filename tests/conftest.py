"""
Pytest configuration and shared fixtures for PkgTrace tests.

This module provides reusable fixtures and test utilities used across
the test suite, including an in-memory registry and sample change-sets.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import yaml

from pkgtrace.changeset import ChangeSet
from pkgtrace.snapshot.collector import RegistryKeyData
from pkgtrace.snapshot.models import FileInfo, ProgramInfo, RegistryEntry

HKLM_UNINSTALL = "HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall"
HKLM_WOW64_UNINSTALL = (
    "HKLM:\\SOFTWARE\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\Uninstall"
)
CONTOSO_CODE = "{11111111-2222-3333-4444-555555555555}"


class FakeRegistry:
    """In-memory RegistryReader keyed by case-insensitive path.

    ``keys`` maps a path to its values; subkeys are derived from the paths.
    Paths in ``denied`` raise PermissionError on read.
    """

    def __init__(
        self,
        keys: dict[str, dict[str, Any]] | None = None,
        denied: set[str] | None = None,
    ) -> None:
        self.keys: dict[str, dict[str, Any]] = {}
        self._names: dict[str, str] = {}
        self.denied = {d.casefold() for d in (denied or set())}
        self.reads: list[str] = []
        for path, values in (keys or {}).items():
            self.set_key(path, values)

    def set_key(self, path: str, values: dict[str, Any]) -> None:
        self.keys[path.casefold()] = dict(values)
        self._names[path.casefold()] = path
        parent = path.rsplit("\\", 1)[0]
        # Intermediate keys exist implicitly
        while "\\" in parent and parent.casefold() not in self.keys:
            self.keys[parent.casefold()] = {}
            self._names[parent.casefold()] = parent
            parent = parent.rsplit("\\", 1)[0]

    def remove_key(self, path: str) -> None:
        self.keys.pop(path.casefold(), None)

    def _children(self, path: str) -> list[str]:
        prefix = path.casefold().rstrip("\\") + "\\"
        return [
            self._names[k][len(prefix):]
            for k in self.keys
            if k.startswith(prefix) and "\\" not in k[len(prefix):]
        ]

    def list_subkeys(self, path: str) -> list[str]:
        if path.casefold() not in self.keys:
            raise FileNotFoundError(path)
        return sorted(self._children(path))

    def read_key(self, path: str) -> RegistryKeyData:
        self.reads.append(path)
        if path.casefold() in self.denied:
            raise PermissionError(path)
        if path.casefold() not in self.keys:
            raise FileNotFoundError(path)
        return RegistryKeyData(
            values=dict(self.keys[path.casefold()]),
            sub_key_count=len(self._children(path)),
        )


@pytest.fixture
def tmp_test_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary directory for test artifacts.

    Automatically cleaned up after test completion.
    """
    return tmp_path


@pytest.fixture
def create_yaml_file(tmp_test_dir: Path):
    """
    Factory fixture for creating temporary YAML files.

    Usage:
        yaml_path = create_yaml_file("projects/test.yaml", {"key": "value"})
    """

    def _create(filename: str, data: dict[str, Any]) -> Path:
        path = tmp_test_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f)
        return path

    return _create


@pytest.fixture
def sample_project_data() -> dict[str, Any]:
    """Provide a minimal valid project configuration."""
    return {
        "apiVersion": "pkgtrace/v1",
        "project": {
            "name": "Contoso App",
            "installer": "ContosoSetup.msi",
            "install_args": ["/qn"],
        },
        "capture": {
            "paths": [],
            "registry_roots": [HKLM_UNINSTALL],
            "stabilization_delay": 0,
            "finalization_delay": 0,
        },
    }


@pytest.fixture
def fake_registry_cls() -> type[FakeRegistry]:
    """Provide the FakeRegistry class for tests that build their own."""
    return FakeRegistry


@pytest.fixture
def fixed_timestamp() -> datetime:
    return datetime(2025, 3, 1, 12, 30, 0, tzinfo=UTC)


def registry_entry(path: str, **values: Any) -> RegistryEntry:
    """Build a RegistryEntry the way the collector would."""
    return RegistryEntry(
        full_path=path,
        key_name=path.rsplit("\\", 1)[-1],
        values=dict(values),
        value_count=len(values),
    )


@pytest.fixture
def contoso_changeset(fixed_timestamp: datetime) -> ChangeSet:
    """
    Change-set of an MSI install of "Contoso App" 2.1.0.

    The uninstall key is named after the product code and carries an
    msiexec uninstall string; the install created a Program Files folder.
    """
    return ChangeSet(
        project_name="Contoso App",
        timestamp=fixed_timestamp,
        new_files=(
            FileInfo(path="C:\\Program Files\\Contoso", is_directory=True),
            FileInfo(path="C:\\Program Files\\Contoso\\bin", is_directory=True),
            FileInfo(path="C:\\Program Files\\Contoso\\bin\\app.exe", size=1024),
        ),
        new_registry_keys=(
            registry_entry(
                f"{HKLM_UNINSTALL}\\{CONTOSO_CODE}",
                DisplayName="Contoso App",
                DisplayVersion="2.1.0",
                Publisher="Contoso Ltd",
                UninstallString=f"MsiExec.exe /X{CONTOSO_CODE}",
            ),
            registry_entry("HKLM:\\SOFTWARE\\Contoso\\App", InstallDir="C:\\Program Files\\Contoso"),
        ),
        new_programs=(ProgramInfo(name="Contoso App", version="2.1.0", vendor="Contoso Ltd"),),
    )


@pytest.fixture
def exe_changeset(fixed_timestamp: datetime) -> ChangeSet:
    """Change-set of an EXE install with both uninstall strings present."""
    return ChangeSet(
        project_name="Fabrikam Tool",
        timestamp=fixed_timestamp,
        new_files=(
            FileInfo(path="C:\\Program Files (x86)\\Fabrikam", is_directory=True),
        ),
        new_registry_keys=(
            registry_entry(
                f"{HKLM_WOW64_UNINSTALL}\\FabrikamTool",
                DisplayName="Fabrikam Tool",
                DisplayVersion="5.0",
                Publisher="Fabrikam",
                UninstallString='"C:\\Program Files (x86)\\Fabrikam\\uninst.exe"',
                QuietUninstallString='"C:\\Program Files (x86)\\Fabrikam\\uninst.exe" /S',
            ),
        ),
    )


@pytest.fixture
def make_entry():
    """Provide the registry_entry() factory."""
    return registry_entry
