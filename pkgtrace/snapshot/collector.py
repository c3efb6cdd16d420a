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

"""System snapshot capture for PkgTrace.

This module walks a fixed allow-list of directories and registry roots and
lists services and installed programs. It never modifies the system.

Sources:

- Filesystem: each watched path is listed recursively up to ``depth`` levels.
    Missing paths are skipped. Unreadable entries are logged and skipped.
- Registry: every descendant key of each configured root is read through a
    RegistryReader. The production reader uses ``winreg``; tests inject an
    in-memory reader. Unreadable keys are logged and skipped.
- Services: PowerShell ``Get-Service`` output parsed from JSON.
- Programs: DisplayName/DisplayVersion/Publisher/InstallDate of the
    uninstall registry keys (HKLM 64-bit, HKLM 32-bit, HKCU).

Registry paths use the PowerShell drive form so they can be pasted into
generated scripts unchanged:

    HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\{GUID}

Example:
    Capture with the default allow-lists:
        ```python
        from pkgtrace.snapshot import capture_snapshot
        from pkgtrace.snapshot.collector import (
            DEFAULT_REGISTRY_ROOTS,
            DEFAULT_WATCH_PATHS,
        )

        snapshot = capture_snapshot(
            DEFAULT_WATCH_PATHS, DEFAULT_REGISTRY_ROOTS, depth=3
        )
        print(len(snapshot.files), len(snapshot.registry_entries))
        ```

Note:
    A single unreadable path or key never fails the capture. CaptureError is
    raised only when every attempted source failed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
import json
import os
from pathlib import Path
import re
import subprocess
from typing import Any, Protocol

try:
    import winreg  # type: ignore  # Windows-only standard library module
except ImportError:
    winreg = None  # type: ignore

from pkgtrace.exceptions import CaptureError
from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.snapshot.models import (
    FileInfo,
    ProgramInfo,
    RegistryEntry,
    ServiceInfo,
    SystemSnapshot,
)

UNINSTALL_KEY = "SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall"
WOW64_UNINSTALL_KEY = "SOFTWARE\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\Uninstall"
APP_PATHS_KEY = "SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\App Paths"

UNINSTALL_ROOTS = (
    f"HKLM:\\{UNINSTALL_KEY}",
    f"HKLM:\\{WOW64_UNINSTALL_KEY}",
    f"HKCU:\\{UNINSTALL_KEY}",
)

DEFAULT_REGISTRY_ROOTS = UNINSTALL_ROOTS + (
    f"HKLM:\\{APP_PATHS_KEY}",
    f"HKCU:\\{APP_PATHS_KEY}",
)

DEFAULT_WATCH_PATHS = (
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
    "%LOCALAPPDATA%",
    "%APPDATA%",
)

DEFAULT_DEPTH = 3

# PowerShell provider properties that Get-ItemProperty adds to every key
_META_PROPERTIES = frozenset(
    {"PSPath", "PSParentPath", "PSChildName", "PSDrive", "PSProvider"}
)

_ENV_VAR = re.compile(r"%([^%]+)%")

_REGISTRY_PATH = re.compile(
    r"^(?P<hive>HKLM|HKCU|HKCR|HKU|HKEY_[A-Z_]+):?(?:\\(?P<subkey>.*))?$",
    re.IGNORECASE,
)

_HIVE_NAMES = {
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKCU": "HKEY_CURRENT_USER",
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKU": "HKEY_USERS",
}

ServiceSource = Callable[[], Iterable[ServiceInfo]]
ProgramSource = Callable[[], Iterable[ProgramInfo]]


@dataclass(frozen=True)
class RegistryKeyData:
    """Raw contents of one registry key.

    Attributes:
        values: Named values of the key.
        sub_key_count: Number of direct subkeys.
    """

    values: dict[str, Any]
    sub_key_count: int = 0


class RegistryReader(Protocol):
    """Read-only access to the registry.

    Implementations raise FileNotFoundError for missing keys and
    PermissionError (or another OSError) for unreadable ones.
    """

    def list_subkeys(self, path: str) -> list[str]:
        """Return the names of the direct subkeys of ``path``."""
        ...

    def read_key(self, path: str) -> RegistryKeyData:
        """Return the values and subkey count of ``path``."""
        ...


def split_registry_path(path: str) -> tuple[str, str]:
    """Split a registry path into its full hive name and subkey.

    Args:
        path: Registry path in drive form ("HKLM:\\SOFTWARE\\...") or
            native form ("HKEY_LOCAL_MACHINE\\SOFTWARE\\...").

    Returns:
        Tuple of (hive name such as "HKEY_LOCAL_MACHINE", subkey path).

    Raises:
        ValueError: If the path does not start with a known hive.

    Example:
        ```python
        split_registry_path("HKCU:\\Software\\Contoso")
        # Returns: ("HKEY_CURRENT_USER", "Software\\Contoso")
        ```
    """
    match = _REGISTRY_PATH.match(path.strip())
    if not match:
        raise ValueError(f"not a registry path: {path!r}")
    hive = match.group("hive").upper()
    hive = _HIVE_NAMES.get(hive, hive)
    subkey = (match.group("subkey") or "").strip("\\")
    return hive, subkey


def _normalize_value(data: Any) -> Any:
    """Make registry data JSON-serializable (REG_BINARY becomes hex)."""
    if isinstance(data, bytes | bytearray):
        return bytes(data).hex()
    if isinstance(data, list):
        return [_normalize_value(item) for item in data]
    return data


def clean_values(values: dict[str, Any]) -> dict[str, Any]:
    """Drop meta-properties and the unnamed default value."""
    return {
        name: _normalize_value(data)
        for name, data in values.items()
        if name and name not in _META_PROPERTIES
    }


class WinRegistryReader:
    """RegistryReader backed by the ``winreg`` module.

    Keys are opened with the 64-bit view so WOW6432Node paths are read
    explicitly rather than through registry redirection.

    Raises:
        CaptureError: On construction when ``winreg`` is unavailable
            (non-Windows host).
    """

    def __init__(self) -> None:
        if winreg is None:
            raise CaptureError("registry access requires Windows (winreg unavailable)")
        self._access = winreg.KEY_READ | winreg.KEY_WOW64_64KEY

    def _open(self, path: str):
        hive_name, subkey = split_registry_path(path)
        hive = getattr(winreg, hive_name)
        return winreg.OpenKey(hive, subkey, 0, self._access)

    def list_subkeys(self, path: str) -> list[str]:
        with self._open(path) as key:
            sub_count, _, _ = winreg.QueryInfoKey(key)
            return [winreg.EnumKey(key, i) for i in range(sub_count)]

    def read_key(self, path: str) -> RegistryKeyData:
        with self._open(path) as key:
            sub_count, value_count, _ = winreg.QueryInfoKey(key)
            values: dict[str, Any] = {}
            for i in range(value_count):
                name, data, _ = winreg.EnumValue(key, i)
                values[name] = data
        return RegistryKeyData(values=values, sub_key_count=sub_count)


class _SourceTally:
    """Counts snapshot sources that succeeded or failed."""

    def __init__(self) -> None:
        self.succeeded = 0
        self.failed: list[str] = []

    def ok(self) -> None:
        self.succeeded += 1

    def fail(self, source: str) -> None:
        self.failed.append(source)


def expand_windows_path(path: str) -> str:
    """Expand %VAR% references from the environment.

    Unknown variables are left untouched so the path is later reported as
    missing and skipped.

    Example:
        ```python
        expand_windows_path("%LOCALAPPDATA%\\Programs")
        # Returns: "C:\\Users\\me\\AppData\\Local\\Programs"
        ```
    """

    def _replace(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), match.group(0))

    return _ENV_VAR.sub(_replace, path)


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


def _file_info(entry: Path) -> FileInfo:
    st = entry.stat()
    is_dir = entry.is_dir()
    # st_birthtime is the creation time where the platform exposes it;
    # on Windows st_ctime already is the creation time.
    created = getattr(st, "st_birthtime", st.st_ctime)
    return FileInfo(
        path=str(entry),
        size=0 if is_dir else st.st_size,
        created_at=_timestamp(created),
        modified_at=_timestamp(st.st_mtime),
        is_directory=is_dir,
    )


def scan_path(root: Path, depth: int, logger: Logger | None = None) -> list[FileInfo]:
    """List entries below ``root`` up to ``depth`` levels deep.

    Args:
        root: Directory to scan. Must exist.
        depth: Number of levels to descend (1 = direct children only).
        logger: Optional logger; defaults to the global logger.

    Returns:
        FileInfo records in scan order (children sorted case-insensitively).

    Raises:
        OSError: If ``root`` itself cannot be listed.
    """
    if logger is None:
        logger = get_global_logger()

    results: list[FileInfo] = []

    def _walk(directory: Path, level: int) -> None:
        try:
            children = sorted(directory.iterdir(), key=lambda p: p.name.casefold())
        except OSError as err:
            if level == 1:
                raise
            logger.warning("CAPTURE", f"Skipping unreadable directory {directory}: {err}")
            return
        for child in children:
            try:
                info = _file_info(child)
            except OSError as err:
                logger.warning("CAPTURE", f"Skipping unreadable entry {child}: {err}")
                continue
            results.append(info)
            if info.is_directory and level < depth and not child.is_symlink():
                _walk(child, level + 1)

    _walk(root, 1)
    return results


def _capture_files(
    paths: Iterable[str | Path], depth: int, logger: Logger, tally: _SourceTally
) -> tuple[FileInfo, ...]:
    files: list[FileInfo] = []
    seen: set[str] = set()
    for raw in paths:
        root = Path(expand_windows_path(str(raw)))
        if not root.exists():
            logger.verbose("CAPTURE", f"Skipping missing path: {root}")
            continue
        logger.verbose("CAPTURE", f"Scanning {root} (depth {depth})")
        try:
            entries = scan_path(root, depth, logger)
        except OSError as err:
            logger.warning("CAPTURE", f"Cannot read {root}: {err}")
            tally.fail(str(root))
            continue
        tally.ok()
        for info in entries:
            # Overlapping roots (e.g. ProgramData and a child of it) list the
            # same entry twice; first occurrence wins.
            if info.identity in seen:
                continue
            seen.add(info.identity)
            files.append(info)
    return tuple(files)


def _read_entry(path: str, registry: RegistryReader) -> RegistryEntry:
    data = registry.read_key(path)
    values = clean_values(data.values)
    return RegistryEntry(
        full_path=path,
        key_name=path.rsplit("\\", 1)[-1],
        values=values,
        value_count=len(values),
        sub_key_count=data.sub_key_count,
    )


def _capture_registry(
    roots: Iterable[str],
    registry: RegistryReader,
    logger: Logger,
    tally: _SourceTally,
) -> tuple[RegistryEntry, ...]:
    entries: list[RegistryEntry] = []
    seen: set[str] = set()

    def _descend(path: str, names: list[str] | None = None) -> None:
        if names is None:
            try:
                names = registry.list_subkeys(path)
            except OSError as err:
                logger.warning("REGISTRY", f"Cannot enumerate {path}: {err}")
                return
        for name in names:
            child = f"{path}\\{name}"
            if child.casefold() in seen:
                continue
            try:
                entry = _read_entry(child, registry)
            except OSError as err:
                logger.warning("REGISTRY", f"Skipping unreadable key {child}: {err}")
                continue
            seen.add(entry.identity)
            entries.append(entry)
            logger.debug("REGISTRY", f"{child}: {entry.properties_summary}")
            _descend(child)

    for root in roots:
        try:
            top_level = registry.list_subkeys(root)
        except FileNotFoundError:
            logger.verbose("REGISTRY", f"Skipping missing root: {root}")
            continue
        except OSError as err:
            logger.warning("REGISTRY", f"Cannot read root {root}: {err}")
            tally.fail(root)
            continue
        tally.ok()
        logger.verbose("REGISTRY", f"Scanning {root} ({len(top_level)} subkeys)")
        _descend(root, top_level)

    return tuple(entries)


def capture_registry(
    roots: Iterable[str],
    registry: RegistryReader,
    logger: Logger | None = None,
) -> tuple[RegistryEntry, ...]:
    """Capture only the registry part of a snapshot.

    Used by the Differ to re-capture registry state when an installer's
    writes lag behind the post-install snapshot.

    Args:
        roots: Registry roots to enumerate.
        registry: Reader used to access the registry.
        logger: Optional logger; defaults to the global logger.

    Returns:
        Registry entries for all readable descendant keys of the roots.
    """
    if logger is None:
        logger = get_global_logger()
    return _capture_registry(roots, registry, logger, _SourceTally())


def list_services() -> list[ServiceInfo]:
    """List Windows services through PowerShell Get-Service.

    Returns:
        Services sorted by name.

    Raises:
        CaptureError: If PowerShell is unavailable, fails, or returns
            output that is not JSON.
    """
    command = (
        "Get-Service | Select-Object Name, DisplayName, "
        "@{n='Status';e={$_.Status.ToString()}}, "
        "@{n='StartType';e={$_.StartType.ToString()}} | ConvertTo-Json -Compress"
    )
    cmd = ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", command]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, check=True, timeout=120
        )
        data = json.loads(result.stdout or "[]")
    except FileNotFoundError as err:
        raise CaptureError("PowerShell not found; cannot list services") from err
    except subprocess.CalledProcessError as err:
        raise CaptureError(f"Get-Service failed (exit code {err.returncode})") from err
    except subprocess.TimeoutExpired as err:
        raise CaptureError(f"Get-Service timed out after {err.timeout}s") from err
    except json.JSONDecodeError as err:
        raise CaptureError(f"Get-Service returned invalid JSON: {err}") from err

    # ConvertTo-Json emits a bare object when there is a single item
    items = data if isinstance(data, list) else [data]
    return sorted(
        (
            ServiceInfo(
                name=str(item.get("Name") or ""),
                display_name=str(item.get("DisplayName") or ""),
                status=str(item.get("Status") or ""),
                start_type=str(item.get("StartType") or ""),
            )
            for item in items
            if isinstance(item, dict) and item.get("Name")
        ),
        key=lambda s: s.name.casefold(),
    )


def list_programs(
    registry: RegistryReader, logger: Logger | None = None
) -> list[ProgramInfo]:
    """List installed programs from the uninstall registry keys.

    Keys without a DisplayName are not programs in the Add/Remove Programs
    sense and are ignored.

    Returns:
        Programs sorted by name, unique by name (first root wins).
    """
    if logger is None:
        logger = get_global_logger()

    programs: dict[str, ProgramInfo] = {}
    readable_roots = 0
    for root in UNINSTALL_ROOTS:
        try:
            names = registry.list_subkeys(root)
        except FileNotFoundError:
            continue
        except OSError as err:
            logger.warning("PROGRAMS", f"Cannot read {root}: {err}")
            continue
        readable_roots += 1
        for name in names:
            try:
                values = registry.read_key(f"{root}\\{name}").values
            except OSError:
                continue
            display_name = str(values.get("DisplayName") or "").strip()
            if not display_name or display_name in programs:
                continue
            programs[display_name] = ProgramInfo(
                name=display_name,
                version=str(values.get("DisplayVersion") or ""),
                vendor=str(values.get("Publisher") or ""),
                install_date=str(values.get("InstallDate") or ""),
            )
    if readable_roots == 0:
        raise CaptureError("no uninstall registry root could be read")
    return sorted(programs.values(), key=lambda p: p.name.casefold())


def _unique_by_name(items: Iterable[Any]) -> tuple[Any, ...]:
    unique: dict[str, Any] = {}
    for item in items:
        if item.name and item.name not in unique:
            unique[item.name] = item
    return tuple(sorted(unique.values(), key=lambda i: i.name.casefold()))


def capture_snapshot(
    paths: Iterable[str | Path],
    registry_roots: Iterable[str],
    depth: int = DEFAULT_DEPTH,
    *,
    registry: RegistryReader | None = None,
    service_source: ServiceSource | None = None,
    program_source: ProgramSource | None = None,
    logger: Logger | None = None,
) -> SystemSnapshot:
    """Capture a point-in-time snapshot of the system.

    Args:
        paths: Directories to scan (``%VAR%`` references are expanded).
        registry_roots: Registry roots whose descendant keys are captured.
        depth: Filesystem recursion depth (1 = direct children only).
        registry: Registry reader. Defaults to WinRegistryReader.
        service_source: Callable returning services. Defaults to
            list_services().
        program_source: Callable returning installed programs. Defaults to
            list_programs() over ``registry``.
        logger: Optional logger; defaults to the global logger.

    Returns:
        The captured snapshot.

    Raises:
        ValueError: If depth is less than 1.
        CaptureError: If every attempted source failed.
    """
    if logger is None:
        logger = get_global_logger()
    if depth < 1:
        raise ValueError(f"depth must be >= 1, got {depth}")

    captured_at = datetime.now(UTC)
    tally = _SourceTally()

    files = _capture_files(paths, depth, logger, tally)
    logger.verbose("CAPTURE", f"Captured {len(files)} filesystem entries")

    if registry is None:
        try:
            registry = WinRegistryReader()
        except CaptureError as err:
            logger.warning("REGISTRY", str(err))

    registry_entries: tuple[RegistryEntry, ...] = ()
    if registry is not None:
        registry_entries = _capture_registry(registry_roots, registry, logger, tally)
    else:
        tally.fail("registry")
    logger.verbose("CAPTURE", f"Captured {len(registry_entries)} registry keys")

    if service_source is None:
        service_source = list_services
    try:
        services = _unique_by_name(service_source())
        tally.ok()
    except CaptureError as err:
        logger.warning("SERVICES", str(err))
        services = ()
        tally.fail("services")

    if program_source is None and registry is not None:
        reader = registry

        def program_source() -> list[ProgramInfo]:
            return list_programs(reader, logger)

    programs: tuple[ProgramInfo, ...] = ()
    if program_source is None:
        tally.fail("programs")
    else:
        try:
            programs = _unique_by_name(program_source())
            tally.ok()
        except CaptureError as err:
            logger.warning("PROGRAMS", str(err))
            tally.fail("programs")

    logger.verbose(
        "CAPTURE", f"Captured {len(services)} services, {len(programs)} programs"
    )

    if tally.failed and not tally.succeeded:
        raise CaptureError(
            f"all snapshot sources failed: {', '.join(tally.failed)}"
        )

    return SystemSnapshot(
        files=files,
        registry_entries=registry_entries,
        services=services,
        programs=programs,
        captured_at=captured_at,
    )
