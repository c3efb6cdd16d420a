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

"""Change record building and the change-set JSON contract.

A ChangeSet is the normalized result of diffing two snapshots. It is the
only artifact handed from the Differ to the detection and uninstall script
generators, and it is persisted as a JSON document that other tools read.

JSON Layout (key names are part of the contract):

    {
      "InstallationInfo": {"ProjectName", "Timestamp", "DocumentationDate",
                           "SchemaVersion"},
      "NewFiles":        [{"FullName", "Length", "CreationTime",
                           "LastWriteTime", "PSIsContainer"}],
      "ModifiedFiles":   [... same as NewFiles ...],
      "NewRegistryKeys": [{"Path", "KeyName", "ValueCount", "SubKeyCount",
                           "Values": {...}, "Properties"}],
      "NewServices":     [{"Name", "DisplayName", "Status", "StartType"}],
      "NewPrograms":     [{"Name", "Version", "Vendor", "InstallDate"}]
    }

Schema Migration:
    Documents without InstallationInfo.SchemaVersion were written by older
    PowerShell tooling and come in several shapes: a single object instead
    of an array, registry values stored as a mapping under "Properties", or
    values stored as loose properties of the registry entry itself. These
    are migrated to the current layout on load.

Example:
    Build, save and reload:
        ```python
        from pathlib import Path
        from pkgtrace.changeset import build_changeset, load_changeset, save_changeset

        changeset = build_changeset(diff, project_name="Contoso App")
        save_changeset(changeset, Path("output/Contoso-App-Changes.json"))
        again = load_changeset(Path("output/Contoso-App-Changes.json"))
        ```
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
import json
from pathlib import Path
from typing import Any, TypeVar

from pkgtrace.exceptions import ConfigError
from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.snapshot.collector import clean_values
from pkgtrace.snapshot.differ import SnapshotDiff
from pkgtrace.snapshot.models import (
    INACCESSIBLE_MARKER,
    FileInfo,
    ProgramInfo,
    RegistryEntry,
    ServiceInfo,
)

SCHEMA_VERSION = 2

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"

_REGISTRY_RESERVED_KEYS = frozenset(
    {"Path", "KeyName", "ValueCount", "SubKeyCount", "Values", "Properties"}
)

_SECTIONS = (
    "NewFiles",
    "ModifiedFiles",
    "NewRegistryKeys",
    "NewServices",
    "NewPrograms",
)

T = TypeVar("T")


@dataclass(frozen=True)
class ChangeSet:
    """What one install action changed on the system.

    Attributes:
        project_name: Name of the packaging project.
        timestamp: When the change-set was recorded (UTC).
        new_files: Files and directories created by the install.
        modified_files: Pre-existing files the install touched.
        new_registry_keys: Registry keys created by the install.
        new_services: Services registered by the install.
        new_programs: Programs that appeared in Add/Remove Programs.
    """

    project_name: str
    timestamp: datetime
    new_files: tuple[FileInfo, ...] = ()
    modified_files: tuple[FileInfo, ...] = ()
    new_registry_keys: tuple[RegistryEntry, ...] = ()
    new_services: tuple[ServiceInfo, ...] = ()
    new_programs: tuple[ProgramInfo, ...] = ()


def _normalize(
    records: Iterable[T],
    identity: Callable[[T], str],
    category: str,
    logger: Logger,
) -> tuple[T, ...]:
    """Drop identity-less records and keep the first of each identity."""
    kept: list[T] = []
    seen: set[str] = set()
    dropped = 0
    for record in records:
        key = identity(record)
        if not key:
            dropped += 1
            continue
        if key in seen:
            continue
        seen.add(key)
        kept.append(record)
    if dropped:
        logger.warning("CHANGESET", f"Dropped {dropped} {category} without identity")
    return tuple(kept)


def build_changeset(
    diff: SnapshotDiff,
    project_name: str,
    timestamp: datetime | None = None,
    logger: Logger | None = None,
) -> ChangeSet:
    """Normalize a raw snapshot diff into a ChangeSet.

    Records lacking a primary identity (no path, no registry path, no name)
    are dropped; duplicates are removed keeping the first occurrence.

    Args:
        diff: Raw differ output.
        project_name: Packaging project the change-set belongs to.
        timestamp: Capture timestamp. Defaults to now (UTC, whole seconds).
        logger: Optional logger; defaults to the global logger.

    Returns:
        The normalized change-set.
    """
    if logger is None:
        logger = get_global_logger()
    if timestamp is None:
        timestamp = datetime.now(UTC).replace(microsecond=0)

    changeset = ChangeSet(
        project_name=project_name,
        timestamp=timestamp,
        new_files=_normalize(
            diff.new_files, lambda f: f.path.strip().casefold(), "files", logger
        ),
        modified_files=_normalize(
            diff.modified_files, lambda f: f.path.strip().casefold(), "files", logger
        ),
        new_registry_keys=_normalize(
            diff.new_registry_keys,
            lambda r: r.full_path.strip().casefold(),
            "registry keys",
            logger,
        ),
        new_services=_normalize(
            diff.new_services, lambda s: s.name.strip(), "services", logger
        ),
        new_programs=_normalize(
            diff.new_programs, lambda p: p.name.strip(), "programs", logger
        ),
    )
    logger.verbose(
        "CHANGESET",
        f"{project_name}: {len(changeset.new_files)} new files, "
        f"{len(changeset.modified_files)} modified files, "
        f"{len(changeset.new_registry_keys)} registry keys, "
        f"{len(changeset.new_services)} services, "
        f"{len(changeset.new_programs)} programs",
    )
    return changeset


# -------------------------------
# Serialization
# -------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    try:
        parsed = datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _file_to_dict(f: FileInfo) -> dict[str, Any]:
    return {
        "FullName": f.path,
        "Length": f.size,
        "CreationTime": _iso(f.created_at),
        "LastWriteTime": _iso(f.modified_at),
        "PSIsContainer": f.is_directory,
    }


def _registry_to_dict(r: RegistryEntry) -> dict[str, Any]:
    return {
        "Path": r.full_path,
        "KeyName": r.key_name,
        "ValueCount": r.value_count,
        "SubKeyCount": r.sub_key_count,
        "Values": dict(r.values),
        "Properties": r.properties_summary,
    }


def changeset_to_dict(changeset: ChangeSet) -> dict[str, Any]:
    """Convert a ChangeSet into its JSON document form."""
    return {
        "InstallationInfo": {
            "ProjectName": changeset.project_name,
            "Timestamp": changeset.timestamp.strftime(TIMESTAMP_FORMAT),
            "DocumentationDate": changeset.timestamp.strftime(DATE_FORMAT),
            "SchemaVersion": SCHEMA_VERSION,
        },
        "NewFiles": [_file_to_dict(f) for f in changeset.new_files],
        "ModifiedFiles": [_file_to_dict(f) for f in changeset.modified_files],
        "NewRegistryKeys": [_registry_to_dict(r) for r in changeset.new_registry_keys],
        "NewServices": [
            {
                "Name": s.name,
                "DisplayName": s.display_name,
                "Status": s.status,
                "StartType": s.start_type,
            }
            for s in changeset.new_services
        ],
        "NewPrograms": [
            {
                "Name": p.name,
                "Version": p.version,
                "Vendor": p.vendor,
                "InstallDate": p.install_date,
            }
            for p in changeset.new_programs
        ],
    }


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return list(value)


def _migrate_registry_entry(entry: dict[str, Any]) -> dict[str, Any]:
    values = entry.get("Values")
    properties = entry.get("Properties")
    if isinstance(values, dict) and values:
        migrated_values = values
    elif isinstance(properties, dict):
        migrated_values = properties
    else:
        migrated_values = clean_values(
            {k: v for k, v in entry.items() if k not in _REGISTRY_RESERVED_KEYS}
        )
    migrated = {k: entry[k] for k in ("Path", "KeyName") if k in entry}
    migrated["Values"] = migrated_values
    migrated["ValueCount"] = entry.get("ValueCount", len(migrated_values))
    migrated["SubKeyCount"] = entry.get("SubKeyCount", 0)
    migrated["Properties"] = (
        properties if isinstance(properties, str) else f"{len(migrated_values)} properties"
    )
    return migrated


def migrate_changeset_document(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a change-set document to the current schema.

    Current documents pass through with only their arrays normalized.
    Legacy documents (no SchemaVersion) get their registry entries rewritten
    so values always live under "Values".

    Args:
        data: Parsed JSON document.

    Returns:
        A new document in the current schema.
    """
    info = dict(data.get("InstallationInfo") or {})
    version = int(info.get("SchemaVersion") or 1)
    migrated: dict[str, Any] = {"InstallationInfo": info}
    for section in _SECTIONS:
        migrated[section] = [
            item for item in _as_list(data.get(section)) if isinstance(item, dict)
        ]
    if version < SCHEMA_VERSION:
        migrated["NewRegistryKeys"] = [
            _migrate_registry_entry(entry) for entry in migrated["NewRegistryKeys"]
        ]
        info["SchemaVersion"] = SCHEMA_VERSION
    return migrated


def _file_from_dict(item: dict[str, Any]) -> FileInfo:
    return FileInfo(
        path=str(item.get("FullName") or ""),
        size=int(item.get("Length") or 0),
        created_at=_parse_datetime(item.get("CreationTime")),
        modified_at=_parse_datetime(item.get("LastWriteTime")),
        is_directory=bool(item.get("PSIsContainer")),
    )


def _registry_from_dict(item: dict[str, Any]) -> RegistryEntry:
    path = str(item.get("Path") or "")
    values = item.get("Values") if isinstance(item.get("Values"), dict) else {}
    accessible = item.get("Properties") != INACCESSIBLE_MARKER
    return RegistryEntry(
        full_path=path,
        key_name=str(item.get("KeyName") or path.rsplit("\\", 1)[-1]),
        values=dict(values),
        value_count=int(item.get("ValueCount") or len(values)),
        sub_key_count=int(item.get("SubKeyCount") or 0),
        accessible=accessible,
    )


def changeset_from_dict(data: dict[str, Any]) -> ChangeSet:
    """Rebuild a ChangeSet from its JSON document form (any schema version).

    Raises:
        ConfigError: If the document has no usable InstallationInfo.
    """
    document = migrate_changeset_document(data)
    info = document["InstallationInfo"]
    project_name = str(info.get("ProjectName") or "").strip()
    if not project_name:
        raise ConfigError("change-set is missing InstallationInfo.ProjectName")
    timestamp = _parse_datetime(info.get("Timestamp")) or _parse_datetime(
        info.get("DocumentationDate")
    )
    if timestamp is None:
        raise ConfigError("change-set is missing a valid InstallationInfo.Timestamp")

    # Route through the builder so loaded documents get the same validation
    # (identity-less records dropped, duplicates removed) as fresh ones.
    diff = SnapshotDiff(
        new_files=tuple(_file_from_dict(i) for i in document["NewFiles"]),
        modified_files=tuple(_file_from_dict(i) for i in document["ModifiedFiles"]),
        new_registry_keys=tuple(
            _registry_from_dict(i) for i in document["NewRegistryKeys"]
        ),
        new_services=tuple(
            ServiceInfo(
                name=str(i.get("Name") or ""),
                display_name=str(i.get("DisplayName") or ""),
                status=str(i.get("Status") or ""),
                start_type=str(i.get("StartType") or ""),
            )
            for i in document["NewServices"]
        ),
        new_programs=tuple(
            ProgramInfo(
                name=str(i.get("Name") or ""),
                version=str(i.get("Version") or ""),
                vendor=str(i.get("Vendor") or ""),
                install_date=str(i.get("InstallDate") or ""),
            )
            for i in document["NewPrograms"]
        ),
    )
    return build_changeset(diff, project_name, timestamp)


def save_changeset(changeset: ChangeSet, output_path: Path) -> Path:
    """Write a ChangeSet JSON document.

    Creates parent directories if needed. Keys keep their contract order.

    Returns:
        The path written.

    Raises:
        OSError: If the file cannot be written.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(changeset_to_dict(changeset), f, indent=2, ensure_ascii=False)
        f.write("\n")  # Trailing newline for git
    return output_path


def load_changeset(changeset_path: Path) -> ChangeSet:
    """Load a ChangeSet JSON document, migrating legacy layouts.

    PowerShell's Out-File writes UTF-8 with BOM, so the file is read with
    ``utf-8-sig``.

    Raises:
        ConfigError: If the file is missing, not JSON, or not a change-set.
    """
    try:
        with open(changeset_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except FileNotFoundError as err:
        raise ConfigError(f"change-set file not found: {changeset_path}") from err
    except json.JSONDecodeError as err:
        raise ConfigError(f"invalid JSON in {changeset_path}: {err}") from err

    if not isinstance(data, dict):
        raise ConfigError(f"change-set must be a JSON object: {changeset_path}")
    try:
        return changeset_from_dict(data)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"malformed change-set {changeset_path}: {err}") from err
