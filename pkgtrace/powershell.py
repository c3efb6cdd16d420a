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

"""Shared building blocks for generated PowerShell scripts.

Both generated scripts log in CMTrace format to the Intune Management
Extension log folder, falling back to ProgramData (system context) or
%LOCALAPPDATA% (user context). Logs rotate between two files (.log and
.log.old) once they reach the configured size.

Templates use string.Template: ``${name}`` is a placeholder and ``$$`` is a
literal PowerShell ``$``. Values are embedded as single-quoted PowerShell
literals so no expansion happens inside them.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
import string
from typing import Literal

from pkgtrace.logging import Logger

LogFormat = Literal["cmtrace"]
LogLevel = Literal["INFO", "WARNING", "ERROR", "DEBUG"]

INTUNE_LOG_DIR = "C:\\ProgramData\\Microsoft\\IntuneManagementExtension\\Logs"

_CMTRACE_FUNCTIONS_TEMPLATE = """\
$$script:LogLevelRank = @{ "DEBUG" = 0; "INFO" = 1; "WARNING" = 2; "ERROR" = 3 }
$$script:MinLogLevel = '${log_level}'

# CMTrace log format function
function Write-CMTraceLog {
    param(
        [string]$$Message,
        [string]$$Component = '${default_component}',
        [string]$$Type = "INFO"  # "INFO", "WARNING", "ERROR", "DEBUG"
    )

    $$LogFile = $$script:LogFilePath

    if (-not $$LogFile) {
        return
    }

    if ($$script:LogLevelRank[$$Type.ToUpper()] -lt $$script:LogLevelRank[$$script:MinLogLevel]) {
        return
    }

    # Convert string log level to CMTrace numeric type
    # 1=Info, 2=Warning, 3=Error, 4=Debug
    $$TypeNumber = switch ($$Type.ToUpper()) {
        "INFO" { 1 }
        "WARNING" { 2 }
        "ERROR" { 3 }
        "DEBUG" { 4 }
        default { 1 }
    }

    $$Time = Get-Date -Format 'HH:mm:ss.fff'
    $$Date = Get-Date -Format 'MM-dd-yyyy'
    $$Line = "<![LOG[$$Message]LOG]!><time=""$$Time"" date=""$$Date"" component=""$$Component"" context="""" type=""$$TypeNumber"" thread=""$$PID"" file="""">"

    try {
        Add-Content -Path $$LogFile -Value $$Line -Encoding UTF8 -ErrorAction SilentlyContinue
    } catch {
        # Logging must never change the script result
    }
}

function Select-LogFile {
    param([string]$$Directory, [string]$$FileName)

    if (-not (Test-Path -Path $$Directory)) {
        New-Item -Path $$Directory -ItemType Directory -Force -ErrorAction Stop | Out-Null
    }
    $$LogFile = Join-Path $$Directory $$FileName
    if (Test-Path -Path $$LogFile) {
        $$MaxSize = ${log_rotation_mb} * 1024 * 1024
        if ((Get-Item $$LogFile).Length -ge $$MaxSize) {
            $$OldLogFile = "$$LogFile.old"
            if (Test-Path $$OldLogFile) {
                Remove-Item $$OldLogFile -Force
            }
            Move-Item -Path $$LogFile -Destination $$OldLogFile -Force
        }
    }
    return $$LogFile
}

# Determine log file location
function Initialize-LogFile {
    $$script:CurrentIdentity = [System.Security.Principal.WindowsIdentity]::GetCurrent()
    $$IsSystemContext = $$script:CurrentIdentity.Name -eq "NT AUTHORITY\\SYSTEM"

    if ($$IsSystemContext) {
        $$FileName = '${log_name}.log'
        $$FallbackDir = Join-Path $$env:ProgramData "PkgTrace"
    } else {
        $$FileName = '${log_name}User.log'
        $$FallbackDir = Join-Path $$env:LOCALAPPDATA "PkgTrace"
    }

    try {
        $$script:LogFilePath = Select-LogFile -Directory '${intune_log_dir}' -FileName $$FileName
        return
    } catch {
        # Fall through to fallback
    }

    try {
        $$script:LogFilePath = Select-LogFile -Directory $$FallbackDir -FileName $$FileName
    } catch {
        $$script:LogFilePath = $$null
    }
}
"""


def ps_literal(value: object) -> str:
    """Quote a value as a single-quoted PowerShell string literal.

    Example:
        ```python
        ps_literal("O'Brien $Tools")  # Returns: "'O''Brien $Tools'"
        ```
    """
    return "'" + str(value).replace("'", "''") + "'"


def ps_array(values: Iterable[object]) -> str:
    """Render values as a PowerShell array of single-quoted literals."""
    items = [ps_literal(v) for v in values]
    if not items:
        return "@()"
    return "@(\n    " + ",\n    ".join(items) + "\n)"


def comment_safe(value: str) -> str:
    """Collapse a value onto one line for use in a script comment."""
    return " ".join(str(value).split())


def cmtrace_functions(
    log_name: str,
    default_component: str,
    log_level: LogLevel = "INFO",
    log_rotation_mb: int = 3,
) -> str:
    """Render the CMTrace logging functions shared by generated scripts.

    Args:
        log_name: Base log file name without extension (e.g.,
            "PkgTraceDetections"). User context appends "User".
        default_component: Component name used when none is given.
        log_level: Minimum level that is written.
        log_rotation_mb: Size in MB at which the log rotates.

    Returns:
        PowerShell source defining Write-CMTraceLog and Initialize-LogFile.
    """
    return string.Template(_CMTRACE_FUNCTIONS_TEMPLATE).safe_substitute(
        log_name=log_name,
        default_component=default_component,
        log_level=log_level,
        log_rotation_mb=int(log_rotation_mb),
        intune_log_dir=INTUNE_LOG_DIR,
    )


def write_script(
    content: str, output_path: Path, logger: Logger, prefix: str
) -> Path:
    """Write a generated script with UTF-8 BOM encoding.

    Windows PowerShell 5.1 reads BOM-less files in the ANSI code page, so the
    BOM is required for non-ASCII application names.

    Raises:
        OSError: If the script file cannot be written.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        output_path.write_bytes(content.encode("utf-8-sig"))
        logger.verbose(prefix, f"Script written to: {output_path}")
    except OSError as err:
        logger.error(prefix, f"Failed to write script to {output_path}: {err}")
        raise
    return output_path
