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

"""Public API return types for PkgTrace.

This module defines dataclasses for return values from public API functions.
These types represent the results of operations like snapshot capture,
tracing an installation, script generation, and validation.

All dataclasses are frozen (immutable) to prevent accidental mutation of
return values.

Example:
    Using result types:
        ```python
        from pathlib import Path
        from pkgtrace.core import trace_installation
        from pkgtrace.results import TraceResult

        result: TraceResult = trace_installation(Path("projects/contoso.yaml"))
        print(result.changeset_path)  # Attribute access, not dict access
        ```

Note:
    Only public API return types belong in this module. Domain types
    (like ChangeSet and DetectionPlan) remain co-located with their
    related logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class SnapshotResult:
    """Result from capturing and saving a snapshot.

    Attributes:
        snapshot_path: Path to the saved snapshot JSON file.
        file_count: Number of filesystem entries captured.
        registry_count: Number of registry keys captured.
        service_count: Number of services captured.
        program_count: Number of installed programs captured.
    """

    snapshot_path: Path
    file_count: int
    registry_count: int
    service_count: int
    program_count: int


@dataclass(frozen=True)
class GenerateResult:
    """Result from running both script generators on a change-set.

    A generator that fails leaves its path as None and records the error;
    the other generator still runs.

    Attributes:
        detection_script: Path to the detection script, if generated.
        uninstall_script: Path to the uninstall script, if generated.
        errors: Error messages of failed generators.
    """

    detection_script: Path | None = None
    uninstall_script: Path | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "success" if not self.errors else "partial"


@dataclass(frozen=True)
class TraceResult:
    """Result from tracing one installation end to end.

    Attributes:
        project_name: Packaging project name.
        changeset_path: Path to the saved change-set JSON file.
        new_files: Number of new filesystem entries.
        modified_files: Number of modified files.
        new_registry_keys: Number of new registry keys.
        new_services: Number of new services.
        new_programs: Number of new programs.
        registry_retries: Registry re-captures needed (0 = first diff hit).
        scripts: Result of script generation.
    """

    project_name: str
    changeset_path: Path
    new_files: int
    modified_files: int
    new_registry_keys: int
    new_services: int
    new_programs: int
    registry_retries: int
    scripts: GenerateResult


@dataclass(frozen=True)
class ValidationResult:
    """Result from validating a change-set document.

    Attributes:
        status: Validation status ("valid" or "invalid").
        errors: List of error messages (empty if valid).
        warnings: List of warning messages.
        changeset_path: String path to the validated file.
        app_name: Reference application name, if one was found.
    """

    status: str
    errors: list[str]
    warnings: list[str]
    changeset_path: str
    app_name: str | None = None


@dataclass(frozen=True)
class ExportResult:
    """Result from exporting Intune policies through Microsoft Graph.

    Attributes:
        output_dir: Directory the policies were exported to.
        files: Paths of the written policy JSON files.
    """

    output_dir: Path
    files: list[Path] = field(default_factory=list)

    @property
    def policy_count(self) -> int:
        return len(self.files)
