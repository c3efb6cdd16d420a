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

"""Detection script generation from a change-set.

This module generates PowerShell detection scripts for Intune Win32 app
deployments. The application identity, product codes and required version
all come from the change-set recorded while tracing the installer.

Detection Logic:
    1. Product-code pass: for each MSI product code found in the change-set,
       look for HKLM/HKLM WOW6432Node/HKCU ...\\Uninstall\\<code>. Found if
       its DisplayName contains the first word of the reference name.
    2. Name pass: scan the three uninstall roots for a DisplayName equal to
       or containing the reference name. The first match wins.
    3. Version: installed >= required by numeric component comparison. An
       unparseable version on either side counts as met (fail-open).
    4. Exit 0 and print "Installed" when met, exit 1 otherwise.

Logging:
    - Primary (System): C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs\\PkgTraceDetections.log
    - Primary (User): C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs\\PkgTraceDetectionsUser.log
    - Fallback (System): C:\\ProgramData\\PkgTrace\\PkgTraceDetections.log
    - Fallback (User): %LOCALAPPDATA%\\PkgTrace\\PkgTraceDetectionsUser.log
    - Log rotation: 2-file rotation (.log and .log.old), configurable max size
        (default: 3MB)
    - Format: CMTrace format for compatibility with Intune diagnostics

Example:
    Generate detection script:
        ```python
        from pathlib import Path
        from pkgtrace.changeset import load_changeset
        from pkgtrace.detection import DetectionConfig, generate_detection_script

        changeset = load_changeset(Path("output/Contoso-App-Changes.json"))
        script_path = generate_detection_script(
            changeset,
            Path("output/Contoso-App-Detection.ps1"),
            DetectionConfig(log_level="DEBUG"),
        )
        ```

Note:
    The only timestamp embedded in the script is the change-set's, so
    generating twice from the same change-set gives identical output.

"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import re
import string

from pkgtrace.changeset import TIMESTAMP_FORMAT, ChangeSet
from pkgtrace.identity import find_app_identity, uninstall_entries
from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.parsing import collect_product_codes
from pkgtrace.powershell import (
    LogFormat,
    LogLevel,
    cmtrace_functions,
    comment_safe,
    ps_array,
    ps_literal,
    write_script,
)
from pkgtrace.snapshot.collector import UNINSTALL_ROOTS
from pkgtrace.snapshot.models import RegistryEntry
from pkgtrace.versioning import version_requirement_met


@dataclass(frozen=True)
class DetectionConfig:
    """Configuration for detection script generation.

    Attributes:
        log_format: Log format (currently only "cmtrace" supported).
        log_level: Minimum log level (INFO, WARNING, ERROR, DEBUG).
        log_rotation_mb: Maximum log file size in MB before rotation.
        check_version: If False, any installed version satisfies detection.

    """

    log_format: LogFormat = "cmtrace"
    log_level: LogLevel = "INFO"
    log_rotation_mb: int = 3
    check_version: bool = True


@dataclass(frozen=True)
class DetectionPlan:
    """Everything the detection script needs, derived from a change-set.

    Attributes:
        app_name: Reference DisplayName.
        name_token: First word of the reference DisplayName.
        required_version: Minimum DisplayVersion ("" means any version).
        product_codes: MSI product codes checked before the name scan.
        uninstall_roots: Uninstall roots scanned, in order.
    """

    app_name: str
    name_token: str
    required_version: str
    product_codes: tuple[str, ...]
    uninstall_roots: tuple[str, ...] = UNINSTALL_ROOTS


@dataclass(frozen=True)
class DetectionOutcome:
    """Result of evaluating detection logic against registry entries.

    Attributes:
        found: True if the application was found.
        installed_version: DisplayVersion of the match, if any.
        requirement_met: True if found and the version requirement holds.
        exit_code: Exit code the generated script would return (0 or 1).
        matched_path: Registry path of the match, if any.
    """

    found: bool
    installed_version: str | None
    requirement_met: bool
    exit_code: int
    matched_path: str | None = None


def sanitize_filename(name: str, app_id: str = "") -> str:
    """Sanitize string for use in Windows filename.

    Rules:
        - Replace spaces with hyphens
        - Remove invalid Windows filename characters (< > : " | ? * \\ /)
        - Normalize multiple consecutive hyphens to single hyphen
        - Remove leading/trailing hyphens and dots
        - If result is empty, fallback to app_id (or "app" if app_id is empty)

    Args:
        name: String to sanitize (e.g., "Contoso App").
        app_id: Fallback identifier if name becomes empty after sanitization.

    Returns:
        Sanitized filename-safe string (e.g., "Contoso-App").

    Example:
        ```python
        sanitize_filename("Contoso App")  # Returns: "Contoso-App"
        sanitize_filename("Test<>App")    # Returns: "TestApp"
        sanitize_filename("  ", "proj")   # Returns: "proj"
        ```

    """
    sanitized = name.strip().replace(" ", "-")

    # Remove invalid Windows filename characters: < > : " | ? * \ /
    for char in '<>:"|?*\\/':
        sanitized = sanitized.replace(char, "")

    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized.strip(".-")

    if not sanitized:
        sanitized = app_id if app_id else "app"

    return sanitized


def build_detection_plan(changeset: ChangeSet, check_version: bool = True) -> DetectionPlan:
    """Derive the detection plan of a change-set.

    Raises:
        NoApplicationFound: If no uninstall entry has a DisplayName.
    """
    identity = find_app_identity(changeset)
    codes = collect_product_codes(
        (r.full_path, r.values) for r in uninstall_entries(changeset)
    )
    return DetectionPlan(
        app_name=identity.display_name,
        name_token=identity.name_token,
        required_version=identity.version if check_version else "",
        product_codes=tuple(codes),
    )


# PowerShell detection script template
_DETECTION_SCRIPT_TEMPLATE = """\
# Detection script for ${app_comment}
# Generated by PkgTrace from the change-set recorded ${generated_at}
# This script checks Windows uninstall registry keys for software installation.

$$AppName = ${app_name}
$$NameToken = ${name_token}
$$RequiredVersion = ${required_version}
$$ProductCodes = ${product_codes}
$$UninstallRoots = ${uninstall_roots}

${logging_functions}
# Minimum version comparison (installed >= required), fails open
function Compare-Version {
    param(
        [string]$$InstalledVersion,
        [string]$$RequiredVersion
    )

    if (-not $$RequiredVersion -or -not $$InstalledVersion) {
        return $$true
    }

    try {
        $$InstalledParts = @($$InstalledVersion -split '[._-]' | Where-Object { $$_ -ne '' } | ForEach-Object { [long]$$_ })
        $$RequiredParts = @($$RequiredVersion -split '[._-]' | Where-Object { $$_ -ne '' } | ForEach-Object { [long]$$_ })
    } catch {
        Write-CMTraceLog -Message "Cannot parse versions '$$InstalledVersion' / '$$RequiredVersion', treating requirement as met" -Type "WARNING"
        return $$true
    }

    $$MaxLength = [Math]::Max($$InstalledParts.Count, $$RequiredParts.Count)

    for ($$i = 0; $$i -lt $$MaxLength; $$i++) {
        $$InstalledPart = if ($$i -lt $$InstalledParts.Count) { $$InstalledParts[$$i] } else { 0 }
        $$RequiredPart = if ($$i -lt $$RequiredParts.Count) { $$RequiredParts[$$i] } else { 0 }

        if ($$InstalledPart -gt $$RequiredPart) {
            return $$true
        }
        if ($$InstalledPart -lt $$RequiredPart) {
            return $$false
        }
    }

    return $$true  # Versions are equal
}

function Test-NameContains {
    param([string]$$Value, [string]$$Fragment)

    if (-not $$Value -or -not $$Fragment) {
        return $$false
    }
    return $$Value.IndexOf($$Fragment, [System.StringComparison]::OrdinalIgnoreCase) -ge 0
}

# Main detection logic
Initialize-LogFile

Write-CMTraceLog -Message "Running as: $$($$script:CurrentIdentity.Name)" -Component "Initialization"
Write-CMTraceLog -Message "Starting detection for: $$AppName (Required: $$RequiredVersion)" -Component "Initialization"

$$Found = $$false
$$InstalledVersion = $$null
$$MatchedPath = $$null

# Pass 1: MSI product codes recorded at install time
foreach ($$Code in $$ProductCodes) {
    foreach ($$Root in $$UninstallRoots) {
        $$KeyPath = Join-Path $$Root $$Code
        $$Entry = Get-ItemProperty -Path $$KeyPath -ErrorAction SilentlyContinue
        if ($$Entry -and (Test-NameContains -Value $$Entry.DisplayName -Fragment $$NameToken)) {
            $$Found = $$true
            $$InstalledVersion = $$Entry.DisplayVersion
            $$MatchedPath = $$KeyPath
            Write-CMTraceLog -Message "Found product code $$Code at $$KeyPath ($$($$Entry.DisplayName))"
            break
        }
        Write-CMTraceLog -Message "Product code $$Code not matched under $$Root" -Type "DEBUG"
    }
    if ($$Found) {
        break
    }
}

# Pass 2: DisplayName scan of all uninstall roots
if (-not $$Found) {
    foreach ($$Root in $$UninstallRoots) {
        try {
            $$Keys = Get-ChildItem -Path $$Root -ErrorAction SilentlyContinue | Sort-Object -Property PSChildName
            foreach ($$Key in $$Keys) {
                $$Entry = Get-ItemProperty -Path $$Key.PSPath -ErrorAction SilentlyContinue
                if (-not $$Entry -or -not $$Entry.DisplayName) {
                    continue
                }
                if ($$Entry.DisplayName -eq $$AppName -or (Test-NameContains -Value $$Entry.DisplayName -Fragment $$AppName)) {
                    $$Found = $$true
                    $$InstalledVersion = $$Entry.DisplayVersion
                    $$MatchedPath = Join-Path $$Root $$Key.PSChildName
                    Write-CMTraceLog -Message "Found matching DisplayName: $$($$Entry.DisplayName) at $$MatchedPath"
                    break
                }
            }
        } catch {
            Write-CMTraceLog -Message "Error checking registry path $$Root : $$($$_.Exception.Message)" -Type "ERROR"
        }
        if ($$Found) {
            break
        }
    }
}

if ($$Found -and (Compare-Version -InstalledVersion $$InstalledVersion -RequiredVersion $$RequiredVersion)) {
    Write-CMTraceLog -Message "Detection SUCCESS: $$AppName $$InstalledVersion meets requirement" -Component "Result"
    Write-Output "Installed"
    exit 0
} elseif ($$Found) {
    Write-CMTraceLog -Message "Detection FAILED: $$AppName $$InstalledVersion is older than $$RequiredVersion" -Component "Result"
    exit 1
} else {
    Write-CMTraceLog -Message "Detection FAILED: $$AppName not found" -Component "Result"
    exit 1
}
"""


def render_detection_script(
    plan: DetectionPlan,
    config: DetectionConfig | None = None,
    generated_at: datetime | None = None,
) -> str:
    """Render the detection script text for a plan.

    Args:
        plan: Detection plan from build_detection_plan().
        config: Logging settings (defaults to DetectionConfig()).
        generated_at: Timestamp written into the header (normally the
            change-set timestamp). Omitted when None.

    Returns:
        PowerShell source of the detection script.
    """
    if config is None:
        config = DetectionConfig()
    stamp = generated_at.strftime(TIMESTAMP_FORMAT) if generated_at else "(unknown)"
    # Use safe_substitute() so PowerShell variables ($$Variable) are preserved
    # as $Variable without raising KeyError for missing placeholders
    return string.Template(_DETECTION_SCRIPT_TEMPLATE).safe_substitute(
        app_comment=comment_safe(f"{plan.app_name} {plan.required_version}".strip()),
        generated_at=stamp,
        app_name=ps_literal(plan.app_name),
        name_token=ps_literal(plan.name_token),
        required_version=ps_literal(plan.required_version),
        product_codes=ps_array(plan.product_codes),
        uninstall_roots=ps_array(plan.uninstall_roots),
        logging_functions=cmtrace_functions(
            "PkgTraceDetections", "Detection", config.log_level, config.log_rotation_mb
        ),
    )


def generate_detection_script(
    changeset: ChangeSet,
    output_path: Path,
    config: DetectionConfig | None = None,
    logger: Logger | None = None,
) -> Path:
    """Generate PowerShell detection script for Intune Win32 app.

    Args:
        changeset: Change-set recorded while tracing the installer.
        output_path: Path where the detection script will be saved.
        config: Detection settings (defaults to DetectionConfig()).
        logger: Optional logger; defaults to the global logger.

    Returns:
        Path to the generated detection script.

    Raises:
        NoApplicationFound: If the change-set holds no uninstall entry with
            a DisplayName.
        OSError: If the script file cannot be written.

    Note:
        The script is saved with UTF-8 BOM encoding for proper PowerShell
        execution on Windows systems.

    """
    if logger is None:
        logger = get_global_logger()
    if config is None:
        config = DetectionConfig()

    logger.verbose("DETECTION", f"Generating detection script: {output_path.name}")
    plan = build_detection_plan(changeset, check_version=config.check_version)
    logger.verbose(
        "DETECTION",
        f"Reference application: {plan.app_name} {plan.required_version} "
        f"({len(plan.product_codes)} product code(s))",
    )
    content = render_detection_script(plan, config, changeset.timestamp)
    return write_script(content, output_path, logger, "DETECTION")


# -------------------------------
# Python evaluation of the emitted logic
# -------------------------------


def _parent_path(path: str) -> str:
    return path.rsplit("\\", 1)[0] if "\\" in path else ""


def _contains(value: str, fragment: str) -> bool:
    return bool(value) and bool(fragment) and fragment.casefold() in value.casefold()


def evaluate_detection(
    plan: DetectionPlan, entries: Iterable[RegistryEntry]
) -> DetectionOutcome:
    """Evaluate the detection logic against a set of registry entries.

    Mirrors the generated script so a snapshot of a target machine can be
    checked without running PowerShell.

    Args:
        plan: Detection plan from build_detection_plan().
        entries: Registry entries of the machine (e.g., a snapshot).

    Returns:
        The outcome the generated script would report.
    """
    by_path = {e.identity: e for e in entries}

    match: RegistryEntry | None = None
    for code in plan.product_codes:
        for root in plan.uninstall_roots:
            entry = by_path.get(f"{root}\\{code}".casefold())
            if entry and _contains(str(entry.values.get("DisplayName") or ""), plan.name_token):
                match = entry
                break
        if match:
            break

    if match is None:
        for root in plan.uninstall_roots:
            children = sorted(
                (e for e in by_path.values() if _parent_path(e.identity) == root.casefold()),
                key=lambda e: e.identity,
            )
            for entry in children:
                name = str(entry.values.get("DisplayName") or "")
                if not name:
                    continue
                if name.casefold() == plan.app_name.casefold() or _contains(name, plan.app_name):
                    match = entry
                    break
            if match:
                break

    if match is None:
        return DetectionOutcome(
            found=False, installed_version=None, requirement_met=False, exit_code=1
        )

    installed = match.values.get("DisplayVersion")
    installed_version = str(installed) if installed is not None else None
    met = version_requirement_met(installed_version, plan.required_version)
    return DetectionOutcome(
        found=True,
        installed_version=installed_version,
        requirement_met=met,
        exit_code=0 if met else 1,
        matched_path=match.full_path,
    )
