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

"""Change-set validation module.

This module checks a change-set JSON document before it is handed to the
script generators, e.g. when the document was edited by hand or produced by
older PowerShell tooling.

Validation Checks:

- File exists and is valid JSON
- InstallationInfo with ProjectName and Timestamp is present
- Sections are arrays of objects
- Records have their identity field (FullName, Path, Name)
- An uninstall registry entry with a DisplayName exists

Records that would be dropped on load, legacy layouts, inaccessible
registry keys and a missing application identity are warnings: the
document still loads, but a generator may have nothing to work with.

Example:
    Validate a change-set and handle results:
        ```python
        from pathlib import Path
        from pkgtrace.validation import validate_changeset

        result = validate_changeset(Path("output/Contoso-App-Changes.json"))
        if result.status == "valid":
            print(f"Change-set for {result.app_name} is valid")
        else:
            for error in result.errors:
                print(f"Error: {error}")
        ```

"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pkgtrace.changeset import changeset_from_dict
from pkgtrace.exceptions import ConfigError, NoApplicationFound
from pkgtrace.identity import find_app_identity
from pkgtrace.logging import get_global_logger
from pkgtrace.results import ValidationResult
from pkgtrace.snapshot.models import INACCESSIBLE_MARKER

__all__ = ["validate_changeset"]

_IDENTITY_FIELDS = {
    "NewFiles": "FullName",
    "ModifiedFiles": "FullName",
    "NewRegistryKeys": "Path",
    "NewServices": "Name",
    "NewPrograms": "Name",
}


def _check_sections(data: dict[str, Any], errors: list[str], warnings: list[str]) -> None:
    for section, identity in _IDENTITY_FIELDS.items():
        items = data.get(section)
        if items is None:
            continue
        if isinstance(items, dict):
            warnings.append(f"{section}: single object instead of an array (legacy)")
            items = [items]
        if not isinstance(items, list):
            errors.append(f"{section}: must be an array")
            continue
        missing = 0
        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                errors.append(f"{section}[{idx}]: must be an object")
                continue
            if not str(item.get(identity) or "").strip():
                missing += 1
            if section == "NewRegistryKeys" and item.get("Properties") == INACCESSIBLE_MARKER:
                warnings.append(
                    f"{section}[{idx}]: values could not be read ({item.get('Path')})"
                )
        if missing:
            warnings.append(
                f"{section}: {missing} record(s) without {identity} will be dropped"
            )


def validate_changeset(changeset_path: Path) -> ValidationResult:
    """Validate a change-set file without generating anything.

    Args:
        changeset_path: Path to the change-set JSON file.

    Returns:
        ValidationResult with status "valid" or "invalid", error and warning
        messages, and the reference application name if one was found.

    """
    logger = get_global_logger()
    errors: list[str] = []
    warnings: list[str] = []

    def _result(app_name: str | None = None) -> ValidationResult:
        return ValidationResult(
            status="valid" if not errors else "invalid",
            errors=errors,
            warnings=warnings,
            changeset_path=str(changeset_path),
            app_name=app_name,
        )

    logger.verbose("VALIDATION", f"Validating change-set: {changeset_path}")

    if not changeset_path.exists():
        errors.append(f"Change-set file not found: {changeset_path}")
        return _result()

    try:
        with open(changeset_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except json.JSONDecodeError as err:
        errors.append(f"Invalid JSON syntax: {err}")
        return _result()
    except OSError as err:
        errors.append(f"Failed to read change-set file: {err}")
        return _result()

    if not isinstance(data, dict):
        errors.append("Change-set must be a JSON object")
        return _result()

    info = data.get("InstallationInfo")
    if not isinstance(info, dict):
        errors.append("Missing required field: InstallationInfo")
        return _result()
    for field in ("ProjectName", "Timestamp"):
        if not str(info.get(field) or "").strip():
            errors.append(f"Missing required field: InstallationInfo.{field}")
    if "SchemaVersion" not in info:
        warnings.append("No SchemaVersion: legacy layout will be migrated on load")

    _check_sections(data, errors, warnings)
    if errors:
        return _result()

    try:
        changeset = changeset_from_dict(data)
    except (ConfigError, TypeError, ValueError) as err:
        errors.append(f"Change-set cannot be loaded: {err}")
        return _result()

    try:
        identity = find_app_identity(changeset)
    except NoApplicationFound as err:
        warnings.append(f"No scripts can be generated: {err}")
        return _result()

    if not identity.version:
        warnings.append(
            f"{identity.display_name} has no DisplayVersion; "
            "detection will not check the version"
        )
    logger.verbose("VALIDATION", f"Reference application: {identity.display_name}")
    return _result(identity.display_name)
