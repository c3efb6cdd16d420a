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

"""Flat-file persistence for system snapshots.

Snapshots are stored as JSON so the pre-install capture can be taken in one
process (or one sandbox session) and diffed later against the post-install
capture.

Example:
    Save and reload a snapshot:
        ```python
        from pathlib import Path
        from pkgtrace.snapshot import load_snapshot, save_snapshot

        save_snapshot(snapshot, Path("output/pre.json"))
        pre = load_snapshot(Path("output/pre.json"))
        ```

Note:
    - Uses 2-space indentation for readability
    - Timestamps are ISO 8601 strings
    - Adds trailing newline for git compatibility
"""

from __future__ import annotations

from datetime import datetime
import json
from pathlib import Path
from typing import Any

from pkgtrace import __version__
from pkgtrace.exceptions import ConfigError
from pkgtrace.snapshot.models import (
    FileInfo,
    ProgramInfo,
    RegistryEntry,
    ServiceInfo,
    SystemSnapshot,
)

SNAPSHOT_SCHEMA_VERSION = "1"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def snapshot_to_dict(snapshot: SystemSnapshot) -> dict[str, Any]:
    """Convert a snapshot into a JSON-serializable dictionary."""
    return {
        "metadata": {
            "pkgtrace_version": __version__,
            "schema_version": SNAPSHOT_SCHEMA_VERSION,
            "captured_at": _iso(snapshot.captured_at),
        },
        "files": [
            {
                "path": f.path,
                "size": f.size,
                "created_at": _iso(f.created_at),
                "modified_at": _iso(f.modified_at),
                "is_directory": f.is_directory,
            }
            for f in snapshot.files
        ],
        "registry": [
            {
                "path": r.full_path,
                "key_name": r.key_name,
                "values": r.values,
                "value_count": r.value_count,
                "sub_key_count": r.sub_key_count,
                "accessible": r.accessible,
            }
            for r in snapshot.registry_entries
        ],
        "services": [
            {
                "name": s.name,
                "display_name": s.display_name,
                "status": s.status,
                "start_type": s.start_type,
            }
            for s in snapshot.services
        ],
        "programs": [
            {
                "name": p.name,
                "version": p.version,
                "vendor": p.vendor,
                "install_date": p.install_date,
            }
            for p in snapshot.programs
        ],
    }


def snapshot_from_dict(data: dict[str, Any]) -> SystemSnapshot:
    """Rebuild a snapshot from the dictionary produced by snapshot_to_dict."""
    return SystemSnapshot(
        files=tuple(
            FileInfo(
                path=f["path"],
                size=int(f.get("size") or 0),
                created_at=_parse_iso(f.get("created_at")),
                modified_at=_parse_iso(f.get("modified_at")),
                is_directory=bool(f.get("is_directory")),
            )
            for f in data.get("files", [])
        ),
        registry_entries=tuple(
            RegistryEntry(
                full_path=r["path"],
                key_name=r.get("key_name", ""),
                values=dict(r.get("values") or {}),
                value_count=int(r.get("value_count") or 0),
                sub_key_count=int(r.get("sub_key_count") or 0),
                accessible=bool(r.get("accessible", True)),
            )
            for r in data.get("registry", [])
        ),
        services=tuple(
            ServiceInfo(
                name=s["name"],
                display_name=s.get("display_name", ""),
                status=s.get("status", ""),
                start_type=s.get("start_type", ""),
            )
            for s in data.get("services", [])
        ),
        programs=tuple(
            ProgramInfo(
                name=p["name"],
                version=p.get("version", ""),
                vendor=p.get("vendor", ""),
                install_date=p.get("install_date", ""),
            )
            for p in data.get("programs", [])
        ),
        captured_at=_parse_iso(data.get("metadata", {}).get("captured_at")),
    )


def save_snapshot(snapshot: SystemSnapshot, snapshot_file: Path) -> Path:
    """Save a snapshot to a JSON file, creating parent directories.

    Returns:
        The path written.

    Raises:
        OSError: If the file cannot be written.
    """
    snapshot_file.parent.mkdir(parents=True, exist_ok=True)
    with open(snapshot_file, "w", encoding="utf-8") as f:
        json.dump(snapshot_to_dict(snapshot), f, indent=2)
        f.write("\n")  # Trailing newline for git
    return snapshot_file


def load_snapshot(snapshot_file: Path) -> SystemSnapshot:
    """Load a snapshot from a JSON file.

    Raises:
        ConfigError: If the file is missing or is not a snapshot document.
    """
    try:
        with open(snapshot_file, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as err:
        raise ConfigError(f"snapshot file not found: {snapshot_file}") from err
    except json.JSONDecodeError as err:
        raise ConfigError(f"invalid snapshot JSON in {snapshot_file}: {err}") from err

    if not isinstance(data, dict):
        raise ConfigError(f"snapshot must be a JSON object: {snapshot_file}")
    try:
        return snapshot_from_dict(data)
    except (KeyError, TypeError, ValueError) as err:
        raise ConfigError(f"malformed snapshot {snapshot_file}: {err}") from err
