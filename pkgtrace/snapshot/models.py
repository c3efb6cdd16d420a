# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Snapshot data model for PkgTrace.

All record types are frozen dataclasses so a captured snapshot cannot be
mutated after the Collector hands it over. Collections are tuples.

Identity rules (Windows semantics):

- FileInfo: full path, compared case-insensitively
- RegistryEntry: full registry path, compared case-insensitively
- ServiceInfo / ProgramInfo: name
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Diagnostic summary used for registry entries whose values could not be read
INACCESSIBLE_MARKER = "<inaccessible>"


@dataclass(frozen=True)
class FileInfo:
    """A filesystem entry seen during a snapshot.

    Attributes:
        path: Full path of the file or directory.
        size: Size in bytes (0 for directories).
        created_at: Creation timestamp, if known.
        modified_at: Last write timestamp, if known.
        is_directory: True for directories.
    """

    path: str
    size: int = 0
    created_at: datetime | None = None
    modified_at: datetime | None = None
    is_directory: bool = False

    @property
    def identity(self) -> str:
        return self.path.casefold()


@dataclass(frozen=True)
class RegistryEntry:
    """A registry key and its named values.

    Attributes:
        full_path: Registry path in PowerShell drive form
            (e.g., "HKLM:\\SOFTWARE\\...\\Uninstall\\{GUID}").
        key_name: Leaf key name.
        values: Mapping of value name to data.
        value_count: Number of named values.
        sub_key_count: Number of direct subkeys.
        accessible: False when the values could not be read.
    """

    full_path: str
    key_name: str = ""
    values: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    value_count: int = 0
    sub_key_count: int = 0
    accessible: bool = True

    @property
    def identity(self) -> str:
        return self.full_path.casefold()

    @property
    def properties_summary(self) -> str:
        """Short diagnostic summary of the key's values."""
        if not self.accessible:
            return INACCESSIBLE_MARKER
        return f"{self.value_count} properties"


@dataclass(frozen=True)
class ServiceInfo:
    """A Windows service.

    Attributes:
        name: Service name (identity).
        display_name: Friendly name.
        status: Running state (e.g., "Running", "Stopped").
        start_type: Start mode (e.g., "Automatic", "Manual").
    """

    name: str
    display_name: str = ""
    status: str = ""
    start_type: str = ""


@dataclass(frozen=True)
class ProgramInfo:
    """An installed program as listed in the uninstall registry.

    Attributes:
        name: Display name (identity).
        version: Display version.
        vendor: Publisher.
        install_date: Install date as recorded by the installer (YYYYMMDD).
    """

    name: str
    version: str = ""
    vendor: str = ""
    install_date: str = ""


@dataclass(frozen=True)
class SystemSnapshot:
    """Point-in-time listing of files, registry keys, services and programs.

    Attributes:
        files: Filesystem entries in scan order.
        registry_entries: Registry keys in scan order.
        services: Services, unique by name, sorted by name.
        programs: Installed programs, unique by name, sorted by name.
        captured_at: When the capture started.
    """

    files: tuple[FileInfo, ...] = ()
    registry_entries: tuple[RegistryEntry, ...] = ()
    services: tuple[ServiceInfo, ...] = ()
    programs: tuple[ProgramInfo, ...] = ()
    captured_at: datetime | None = None
