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

"""Exception hierarchy for PkgTrace.

This module defines a custom exception hierarchy that allows library users
to distinguish between different types of errors. All exceptions inherit from
PkgTraceError, allowing users to catch all PkgTrace errors with a single
except clause if needed.

Example:
    Catching specific error types:
        ```python
        from pkgtrace.detection import generate_detection_script
        from pkgtrace.exceptions import NoApplicationFound

        try:
            generate_detection_script(changeset, Path("Detection.ps1"))
        except NoApplicationFound as e:
            print(f"Nothing to detect: {e}")
        ```

    Catching all PkgTrace errors:
        ```python
        from pkgtrace.exceptions import PkgTraceError

        try:
            result = trace_installation(Path("projects/contoso.yaml"))
        except PkgTraceError as e:
            print(f"PkgTrace error: {e}")
        ```
"""

from __future__ import annotations

__all__ = [
    "PkgTraceError",
    "ConfigError",
    "CaptureError",
    "GenerationError",
    "NoApplicationFound",
    "NetworkError",
    "PackagingError",
]


class PkgTraceError(Exception):
    """Base exception for all PkgTrace errors.

    All PkgTrace-specific exceptions inherit from this class, allowing users
    to catch all PkgTrace errors with a single except clause if needed.
    """

    pass


class ConfigError(PkgTraceError):
    """Raised for configuration and input-file errors.

    This exception is raised when there are problems with:

    - YAML parsing (syntax errors, invalid structure)
    - Missing or invalid configuration fields
    - Missing project, snapshot or change-set files
    - Change-set documents that cannot be parsed
    """

    pass


class CaptureError(PkgTraceError):
    """Raised when a system snapshot cannot be captured at all.

    Individual unreadable files or registry keys are skipped and logged;
    this error is only raised when every snapshot source failed.
    """

    pass


class GenerationError(PkgTraceError):
    """Raised when a detection or uninstall script cannot be generated."""

    pass


class NoApplicationFound(GenerationError):
    """Raised when a change-set holds no uninstall entry with a DisplayName.

    Without a reference application identity neither generator can produce
    a meaningful script. The change-set itself stays valid.

    Example:
        Skipping a generator:
            ```python
            try:
                generate_uninstall_script(changeset, output_path)
            except NoApplicationFound:
                print("Installer did not register an application")
            ```
    """

    pass


class NetworkError(PkgTraceError):
    """Raised for Microsoft Graph API and other network failures."""

    pass


class PackagingError(PkgTraceError):
    """Raised for installer execution and sandbox launch failures.

    This exception is raised when there are problems with:

    - Installer command failing to start or timing out
    - Windows Sandbox not being available on the host
    """

    pass
