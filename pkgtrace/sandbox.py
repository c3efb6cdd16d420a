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

"""Windows Sandbox configuration for disposable trace runs.

Tracing an installer on a workstation records whatever else happens on it
at the same time. A Windows Sandbox starts from a clean image every time,
so the pre-install snapshot is small and the diff only shows the installer.

The generated .wsb file maps the project folder read-write into the
sandbox and runs ``pkgtrace trace`` at logon, so the change-set and the
scripts land back in the project folder on the host.

Example:
    ```python
    from pathlib import Path
    from pkgtrace.sandbox import write_sandbox_config

    wsb = write_sandbox_config(
        Path("projects/contoso.yaml"), Path("output/contoso.wsb")
    )
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
import string
import subprocess
from typing import Any
from xml.sax.saxutils import escape

from pkgtrace.config.loader import load_effective_config
from pkgtrace.exceptions import PackagingError
from pkgtrace.logging import Logger, get_global_logger

SANDBOX_FOLDER = "C:\\PkgTrace"

SANDBOX_EXECUTABLE = "WindowsSandbox.exe"

_WSB_TEMPLATE = """\
<Configuration>
  <Networking>${networking}</Networking>
  <MemoryInMB>${memory_mb}</MemoryInMB>
  <MappedFolders>
    <MappedFolder>
      <HostFolder>${host_folder}</HostFolder>
      <SandboxFolder>${sandbox_folder}</SandboxFolder>
      <ReadOnly>false</ReadOnly>
    </MappedFolder>
  </MappedFolders>
  <LogonCommand>
    <Command>${command}</Command>
  </LogonCommand>
</Configuration>
"""


@dataclass(frozen=True)
class SandboxConfig:
    """Settings of one sandbox session.

    Attributes:
        host_folder: Host folder mapped into the sandbox (read-write).
        project_file: Project file name relative to ``host_folder``.
        networking: Whether the sandbox has network access.
        memory_mb: Memory assigned to the sandbox.
        logon_command: Command run at logon; defaults to ``pkgtrace trace``
            on the mapped project file.
    """

    host_folder: Path
    project_file: str
    networking: bool = False
    memory_mb: int = 4096
    logon_command: str | None = None

    @property
    def sandbox_project_path(self) -> str:
        return str(PureWindowsPath(SANDBOX_FOLDER) / PureWindowsPath(self.project_file))

    @property
    def command(self) -> str:
        if self.logon_command:
            return self.logon_command
        return (
            "powershell.exe -NoProfile -ExecutionPolicy Bypass -NoExit -Command "
            f"\"Set-Location '{SANDBOX_FOLDER}'; "
            f"pkgtrace trace -v '{self.sandbox_project_path}'\""
        )


def sandbox_config_from(project_path: Path, config: dict[str, Any]) -> SandboxConfig:
    """Build sandbox settings for a project from its loaded config."""
    sandbox = config.get("sandbox", {})
    project_path = project_path.resolve()
    return SandboxConfig(
        host_folder=project_path.parent,
        project_file=project_path.name,
        networking=bool(sandbox.get("networking", False)),
        memory_mb=int(sandbox.get("memory_mb", 4096)),
        logon_command=sandbox.get("logon_command"),
    )


def render_sandbox_config(sandbox: SandboxConfig) -> str:
    """Render the .wsb XML document for a sandbox session."""
    return string.Template(_WSB_TEMPLATE).substitute(
        networking="Enable" if sandbox.networking else "Disable",
        memory_mb=int(sandbox.memory_mb),
        host_folder=escape(str(sandbox.host_folder)),
        sandbox_folder=escape(SANDBOX_FOLDER),
        command=escape(sandbox.command),
    )


def write_sandbox_config(
    project_path: Path, output_path: Path, logger: Logger | None = None
) -> Path:
    """Write a .wsb file that traces a project inside Windows Sandbox.

    Raises:
        ConfigError: On invalid project configuration.
        OSError: If the file cannot be written.
    """
    if logger is None:
        logger = get_global_logger()
    config = load_effective_config(project_path)
    sandbox = sandbox_config_from(project_path, config)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_sandbox_config(sandbox), encoding="utf-8")
    logger.verbose("SANDBOX", f"Sandbox configuration written to: {output_path}")
    return output_path


def launch_sandbox(
    wsb_path: Path,
    *,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    logger: Logger | None = None,
) -> None:
    """Start Windows Sandbox with a .wsb configuration.

    Raises:
        PackagingError: If Windows Sandbox is not installed or fails to start.
    """
    if logger is None:
        logger = get_global_logger()
    cmd = [SANDBOX_EXECUTABLE, str(wsb_path)]
    logger.verbose("SANDBOX", f"Launching: {' '.join(cmd)}")
    try:
        runner(cmd, capture_output=True, text=True, check=True, timeout=60)
    except FileNotFoundError as err:
        raise PackagingError(
            f"{SANDBOX_EXECUTABLE} not found; enable the Windows Sandbox feature"
        ) from err
    except subprocess.CalledProcessError as err:
        raise PackagingError(
            f"{SANDBOX_EXECUTABLE} failed (exit code {err.returncode})"
        ) from err
    except subprocess.TimeoutExpired as err:
        raise PackagingError(
            f"{SANDBOX_EXECUTABLE} did not return after {err.timeout}s"
        ) from err
