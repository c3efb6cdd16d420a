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

"""Uninstall script generation from a change-set.

The generated PowerShell script is a best-effort uninstaller. It tries each
uninstall method in a fixed order, stops at the first one that succeeds and
then removes the install directories the installer created.

Attempt Order:
    1. msiexec /x for every product code found in an uninstall-key path
    2. msiexec /x for MSI uninstall strings whose code was not tried yet
    3. EXE uninstall strings (QuietUninstallString preferred per entry)

Exit codes 0 and 3010 (success, reboot required) count as success.

Cleanup:
    Top-most new directories below Program Files and Program Files (x86),
    on any drive, are removed recursively, whether or not an
    uninstall attempt succeeded. The roots themselves are never removed.

Exit Contract:
    The script always exits 0. $UninstallSuccess is written to the log and a
    warning asks for manual verification when no method succeeded.

Example:
    ```python
    from pathlib import Path
    from pkgtrace.changeset import load_changeset
    from pkgtrace.uninstall import build_uninstall_plan, generate_uninstall_script

    changeset = load_changeset(Path("output/Contoso-App-Changes.json"))
    for attempt in build_uninstall_plan(changeset).attempts():
        print(attempt.kind, attempt.product_code or attempt.command)
    generate_uninstall_script(changeset, Path("output/Contoso-App-Uninstall.ps1"))
    ```
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
import ntpath
from pathlib import Path
import re
import string

from pkgtrace.changeset import TIMESTAMP_FORMAT, ChangeSet
from pkgtrace.identity import find_app_identity, uninstall_entries
from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.parsing import (
    UninstallCandidate,
    extract_product_codes,
    select_uninstall_candidate,
)
from pkgtrace.powershell import (
    LogFormat,
    LogLevel,
    cmtrace_functions,
    comment_safe,
    ps_array,
    ps_literal,
    write_script,
)
from pkgtrace.snapshot.models import FileInfo

# Anything strictly below Program Files or Program Files (x86), on any drive
_UNDER_PROGRAM_FILES = re.compile(r"^[A-Z]:\\Program Files(?: \(x86\))?\\.", re.IGNORECASE)

SUCCESS_EXIT_CODES = (0, 3010)

MSIEXEC = "msiexec.exe"


@dataclass(frozen=True)
class UninstallConfig:
    """Configuration for uninstall script generation.

    Attributes:
        log_format: Log format (currently only "cmtrace" supported).
        log_level: Minimum log level (INFO, WARNING, ERROR, DEBUG).
        log_rotation_mb: Maximum log file size in MB before rotation.
        cleanup: If False, no install directories are removed.
    """

    log_format: LogFormat = "cmtrace"
    log_level: LogLevel = "INFO"
    log_rotation_mb: int = 3
    cleanup: bool = True


@dataclass(frozen=True)
class UninstallPlan:
    """Uninstall methods and cleanup targets derived from a change-set.

    Attributes:
        app_name: Reference DisplayName.
        product_codes: Product codes found in uninstall-key paths.
        candidates: At most one candidate per uninstall entry.
        cleanup_dirs: Install directories to remove afterwards.
    """

    app_name: str
    product_codes: tuple[str, ...] = ()
    candidates: tuple[UninstallCandidate, ...] = ()
    cleanup_dirs: tuple[str, ...] = ()

    def attempts(self) -> list[UninstallCandidate]:
        """All uninstall attempts in execution order."""
        ordered = [
            UninstallCandidate(kind="MSI", product_code=code, source="RegistryPath")
            for code in self.product_codes
        ]
        tried = set(self.product_codes)
        for candidate in self.candidates:
            if candidate.kind == "MSI" and candidate.product_code not in tried:
                ordered.append(candidate)
                tried.add(candidate.product_code)
        ordered.extend(c for c in self.candidates if c.kind == "EXE")
        return ordered


def msi_uninstall_arguments(product_code: str) -> str:
    """Arguments for a silent native MSI uninstall of ``product_code``."""
    return f"/x {product_code} /quiet /norestart"


def _is_strictly_under(path: str, root: str) -> bool:
    return path.casefold().startswith(root.rstrip("\\").casefold() + "\\")


def _is_below_root(path: str, roots: tuple[str, ...] | None) -> bool:
    if roots is not None:
        return any(_is_strictly_under(path, r) for r in roots)
    return _UNDER_PROGRAM_FILES.match(path) is not None


def find_cleanup_dirs(
    new_files: Iterable[FileInfo], roots: Iterable[str] | None = None
) -> list[str]:
    """Top-most new directories below the Program Files roots.

    Args:
        new_files: New filesystem entries of a change-set.
        roots: Directories under which removal is allowed. When omitted,
            the Program Files roots of every drive are used.

    Returns:
        Directory paths, excluding the roots and any directory whose parent
        is itself selected.
    """
    allowed = tuple(roots) if roots is not None else None
    dirs = []
    for f in new_files:
        path = ntpath.normpath(f.path.strip()) if f.path.strip() else ""
        if f.is_directory and path and _is_below_root(path, allowed):
            dirs.append(path)

    selected: list[str] = []
    for path in sorted(dirs, key=lambda p: (p.count("\\"), p.casefold())):
        if any(
            path.casefold() == s.casefold() or _is_strictly_under(path, s)
            for s in selected
        ):
            continue
        selected.append(path)
    return selected


def build_uninstall_plan(changeset: ChangeSet) -> UninstallPlan:
    """Derive the uninstall plan of a change-set.

    Raises:
        NoApplicationFound: If no uninstall entry has a DisplayName.
    """
    identity = find_app_identity(changeset)
    entries = uninstall_entries(changeset)

    candidates: list[UninstallCandidate] = []
    for entry in entries:
        candidate = select_uninstall_candidate(entry.values, entry.full_path)
        if candidate is not None:
            candidates.append(candidate)

    return UninstallPlan(
        app_name=identity.display_name,
        product_codes=tuple(extract_product_codes(*(e.full_path for e in entries))),
        candidates=tuple(candidates),
        cleanup_dirs=tuple(find_cleanup_dirs(changeset.new_files)),
    )


def _attempt_literal(candidate: UninstallCandidate) -> str:
    if candidate.kind == "MSI":
        file_path = MSIEXEC
        arguments = msi_uninstall_arguments(candidate.product_code or "")
    else:
        file_path = candidate.command or ""
        arguments = candidate.arguments
    return (
        f"@{{ Kind = {ps_literal(candidate.kind)}; "
        f"FilePath = {ps_literal(file_path)}; "
        f"Arguments = {ps_literal(arguments)}; "
        f"Source = {ps_literal(candidate.source)} }}"
    )


# PowerShell uninstall script template
_UNINSTALL_SCRIPT_TEMPLATE = """\
# Uninstall script for ${app_comment}
# Generated by PkgTrace from the change-set recorded ${generated_at}
# Best effort: tries each uninstall method until one succeeds, then removes
# install directories. Always exits 0; check the log for $$UninstallSuccess.

$$AppName = ${app_name}
$$Attempts = ${attempts}
$$CleanupDirs = ${cleanup_dirs}
$$SuccessCodes = @(${success_codes})

${logging_functions}
# Main uninstall logic
Initialize-LogFile

Write-CMTraceLog -Message "Running as: $$($$script:CurrentIdentity.Name)" -Component "Initialization"
Write-CMTraceLog -Message "Starting uninstall for: $$AppName ($$($$Attempts.Count) method(s))" -Component "Initialization"

$$UninstallSuccess = $$false

foreach ($$Attempt in $$Attempts) {
    $$FilePath = $$Attempt.FilePath
    if ($$Attempt.Kind -eq 'EXE' -and [System.IO.Path]::IsPathRooted($$FilePath) -and -not (Test-Path -LiteralPath $$FilePath)) {
        Write-CMTraceLog -Message "Uninstaller not found, skipping: $$FilePath" -Type "WARNING"
        continue
    }

    Write-CMTraceLog -Message "Attempting $$($$Attempt.Kind) uninstall ($$($$Attempt.Source)): $$FilePath $$($$Attempt.Arguments)"
    try {
        $$ProcessParams = @{ FilePath = $$FilePath; Wait = $$true; PassThru = $$true; ErrorAction = 'Stop' }
        if ($$Attempt.Arguments) {
            $$ProcessParams.ArgumentList = $$Attempt.Arguments
        }
        $$Process = Start-Process @ProcessParams
        $$ExitCode = $$Process.ExitCode
    } catch {
        Write-CMTraceLog -Message "Failed to start $$FilePath : $$($$_.Exception.Message)" -Type "ERROR"
        continue
    }

    if ($$SuccessCodes -contains $$ExitCode) {
        Write-CMTraceLog -Message "Uninstall succeeded with exit code $$ExitCode"
        $$UninstallSuccess = $$true
        break
    }
    Write-CMTraceLog -Message "Uninstall attempt returned exit code $$ExitCode" -Type "WARNING"
}

# Cleanup of install directories
foreach ($$Dir in $$CleanupDirs) {
    if (-not (Test-Path -LiteralPath $$Dir)) {
        Write-CMTraceLog -Message "Directory already removed: $$Dir" -Component "Cleanup"
        continue
    }
    try {
        Remove-Item -LiteralPath $$Dir -Recurse -Force -ErrorAction Stop
        Write-CMTraceLog -Message "Removed directory: $$Dir" -Component "Cleanup"
    } catch {
        Write-CMTraceLog -Message "Failed to remove $$Dir : $$($$_.Exception.Message)" -Type "WARNING" -Component "Cleanup"
    }
}

Write-CMTraceLog -Message "UninstallSuccess: $$UninstallSuccess" -Component "Result"
if (-not $$UninstallSuccess) {
    Write-CMTraceLog -Message "No uninstall method succeeded for $$AppName; verify manually" -Type "WARNING" -Component "Result"
}
exit 0
"""


def render_uninstall_script(
    plan: UninstallPlan,
    config: UninstallConfig | None = None,
    generated_at: datetime | None = None,
) -> str:
    """Render the uninstall script text for a plan.

    Args:
        plan: Uninstall plan from build_uninstall_plan().
        config: Logging and cleanup settings (defaults to UninstallConfig()).
        generated_at: Timestamp written into the header (normally the
            change-set timestamp).

    Returns:
        PowerShell source of the uninstall script.
    """
    if config is None:
        config = UninstallConfig()
    stamp = generated_at.strftime(TIMESTAMP_FORMAT) if generated_at else "(unknown)"
    attempts = [_attempt_literal(c) for c in plan.attempts()]
    attempts_block = "@(\n    " + ",\n    ".join(attempts) + "\n)" if attempts else "@()"
    cleanup_dirs = plan.cleanup_dirs if config.cleanup else ()
    return string.Template(_UNINSTALL_SCRIPT_TEMPLATE).safe_substitute(
        app_comment=comment_safe(plan.app_name),
        generated_at=stamp,
        app_name=ps_literal(plan.app_name),
        attempts=attempts_block,
        cleanup_dirs=ps_array(cleanup_dirs),
        success_codes=", ".join(str(c) for c in SUCCESS_EXIT_CODES),
        logging_functions=cmtrace_functions(
            "PkgTraceUninstall", "Uninstall", config.log_level, config.log_rotation_mb
        ),
    )


def generate_uninstall_script(
    changeset: ChangeSet,
    output_path: Path,
    config: UninstallConfig | None = None,
    logger: Logger | None = None,
) -> Path:
    """Generate PowerShell uninstall script for Intune Win32 app.

    Args:
        changeset: Change-set recorded while tracing the installer.
        output_path: Path where the uninstall script will be saved.
        config: Uninstall settings (defaults to UninstallConfig()).
        logger: Optional logger; defaults to the global logger.

    Returns:
        Path to the generated uninstall script.

    Raises:
        NoApplicationFound: If the change-set holds no uninstall entry with
            a DisplayName.
        OSError: If the script file cannot be written.
    """
    if logger is None:
        logger = get_global_logger()
    if config is None:
        config = UninstallConfig()

    logger.verbose("UNINSTALL", f"Generating uninstall script: {output_path.name}")
    plan = build_uninstall_plan(changeset)
    attempts = plan.attempts()
    if not attempts:
        logger.warning(
            "UNINSTALL",
            f"No uninstall method found for {plan.app_name}; script will only clean up",
        )
    logger.verbose(
        "UNINSTALL",
        f"{len(attempts)} uninstall attempt(s), "
        f"{len(plan.cleanup_dirs)} cleanup director(ies)",
    )
    content = render_uninstall_script(plan, config, changeset.timestamp)
    return write_script(content, output_path, logger, "UNINSTALL")
