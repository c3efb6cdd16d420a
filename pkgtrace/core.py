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

"""Core orchestration for PkgTrace.

This module provides high-level orchestration functions that coordinate the
complete workflow: capture, install, diff, record, generate.

Pipeline:

    Collector -> Differ -> Change Record Builder -> {Detection, Uninstall}

Data flows one way. Each stage consumes its input completely and returns an
immutable value before the next stage starts.

Live Trace (trace_installation):

1. Load effective configuration (built-in + org + project merged)
2. Wait for the system to settle (capture.stabilization_delay)
3. Capture the pre-install snapshot
4. Run the installer and wait for it to exit
5. Wait for late writes (capture.finalization_delay)
6. Capture the post-install snapshot
7. Diff, re-capturing the registry if no new keys showed up yet
8. Save the change-set and generate both scripts

Design Principles:

- Functions return structured data (dataclasses) for easy testing
- Error handling uses exceptions; CLI layer formats for user display
- One generator failing never prevents the other from running
- Waits, registry access, services, programs and the installer runner are
  injectable so the pipeline can run without Windows

Example:
    Offline documentation of two stored snapshots:
        ```python
        from pathlib import Path
        from pkgtrace.core import document_changes, generate_scripts

        changeset, changeset_path = document_changes(
            Path("output/pre.json"),
            Path("output/post.json"),
            project_name="Contoso App",
            output_path=Path("output/Contoso-App-Changes.json"),
        )
        result = generate_scripts(changeset_path, Path("output"))
        print(result.detection_script, result.uninstall_script, result.errors)
        ```

"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
import subprocess
import time
from typing import Any

from pkgtrace.changeset import ChangeSet, build_changeset, load_changeset, save_changeset
from pkgtrace.config.loader import load_effective_config
from pkgtrace.detection import (
    DetectionConfig,
    DetectionOutcome,
    build_detection_plan,
    evaluate_detection,
    generate_detection_script,
    sanitize_filename,
)
from pkgtrace.exceptions import GenerationError, PackagingError
from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.results import GenerateResult, SnapshotResult, TraceResult
from pkgtrace.retry import RetryPolicy
from pkgtrace.snapshot.collector import (
    ProgramSource,
    RegistryReader,
    ServiceSource,
    WinRegistryReader,
    capture_registry,
    capture_snapshot,
    clean_values,
)
from pkgtrace.snapshot.differ import diff_snapshots
from pkgtrace.snapshot.models import SystemSnapshot
from pkgtrace.snapshot.store import load_snapshot, save_snapshot
from pkgtrace.uninstall import UninstallConfig, generate_uninstall_script

# Installer exit codes meaning success (1641/3010: reboot initiated/required)
INSTALLER_SUCCESS_CODES = (0, 1641, 3010)

Runner = Callable[..., subprocess.CompletedProcess]


# -------------------------------
# Config accessors
# -------------------------------


def detection_config_from(config: dict[str, Any]) -> DetectionConfig:
    scripts = config.get("scripts", {})
    return DetectionConfig(
        log_level=scripts.get("log_level", "INFO"),
        log_rotation_mb=int(scripts.get("log_rotation_mb", 3)),
    )


def uninstall_config_from(config: dict[str, Any]) -> UninstallConfig:
    scripts = config.get("scripts", {})
    return UninstallConfig(
        log_level=scripts.get("log_level", "INFO"),
        log_rotation_mb=int(scripts.get("log_rotation_mb", 3)),
    )


def retry_policy_from(config: dict[str, Any]) -> RetryPolicy:
    retry = config["capture"]["registry_retry"]
    return RetryPolicy(attempts=int(retry["attempts"]), delay=float(retry["delay"]))


def artifact_paths(project_name: str, output_dir: Path) -> dict[str, Path]:
    """Standard artifact file names of a project.

    Example:
        ```python
        artifact_paths("Contoso App", Path("out"))["detection"]
        # Returns: Path("out/Contoso-App-Detection.ps1")
        ```
    """
    stem = sanitize_filename(project_name)
    return {
        "pre": output_dir / f"{stem}-PreSnapshot.json",
        "post": output_dir / f"{stem}-PostSnapshot.json",
        "changeset": output_dir / f"{stem}-Changes.json",
        "detection": output_dir / f"{stem}-Detection.ps1",
        "uninstall": output_dir / f"{stem}-Uninstall.ps1",
    }


# -------------------------------
# Capture
# -------------------------------


def capture_from_config(
    config: dict[str, Any],
    *,
    registry: RegistryReader | None = None,
    service_source: ServiceSource | None = None,
    program_source: ProgramSource | None = None,
    logger: Logger | None = None,
) -> SystemSnapshot:
    """Capture a snapshot using the capture section of a loaded config.

    Raises:
        CaptureError: If every snapshot source failed.
    """
    capture = config["capture"]
    return capture_snapshot(
        capture["paths"],
        capture["registry_roots"],
        int(capture["depth"]),
        registry=registry,
        service_source=service_source,
        program_source=program_source,
        logger=logger,
    )


def take_snapshot(
    project_path: Path,
    output_path: Path,
    *,
    registry: RegistryReader | None = None,
    service_source: ServiceSource | None = None,
    program_source: ProgramSource | None = None,
) -> SnapshotResult:
    """Capture a snapshot for a project and save it to a JSON file.

    This is the entry point for the 'pkgtrace snapshot' command.

    Raises:
        ConfigError: On invalid project configuration.
        CaptureError: If every snapshot source failed.
    """
    logger = get_global_logger()
    config = load_effective_config(project_path)
    snapshot = capture_from_config(
        config,
        registry=registry,
        service_source=service_source,
        program_source=program_source,
        logger=logger,
    )
    save_snapshot(snapshot, output_path)
    logger.verbose("SNAPSHOT", f"Snapshot saved to: {output_path}")
    return SnapshotResult(
        snapshot_path=output_path,
        file_count=len(snapshot.files),
        registry_count=len(snapshot.registry_entries),
        service_count=len(snapshot.services),
        program_count=len(snapshot.programs),
    )


# -------------------------------
# Installer
# -------------------------------


def installer_command(config: dict[str, Any]) -> list[str]:
    """Build the installer command line from project settings.

    MSI packages are run through msiexec /i; anything else is executed
    directly.

    Raises:
        PackagingError: If project.installer is not set.
    """
    project = config["project"]
    installer = str(project.get("installer") or "").strip()
    if not installer:
        raise PackagingError(
            f"project.installer is not set for {project.get('name')!r}"
        )
    args = [str(a) for a in project.get("install_args") or []]
    if installer.lower().endswith(".msi"):
        return ["msiexec.exe", "/i", installer, *args]
    return [installer, *args]


def run_installer(
    config: dict[str, Any],
    *,
    runner: Runner = subprocess.run,
    logger: Logger | None = None,
) -> int:
    """Run the project's installer and wait for it to exit.

    Returns:
        The installer exit code (0, 1641 or 3010).

    Raises:
        PackagingError: If the installer cannot be started, times out, or
            exits with a failure code.
    """
    if logger is None:
        logger = get_global_logger()
    cmd = installer_command(config)
    timeout = int(config["project"].get("install_timeout", 3600))
    logger.verbose("INSTALL", f"Running: {' '.join(cmd)}")
    try:
        result = runner(
            cmd, capture_output=True, text=True, check=False, timeout=timeout
        )
    except FileNotFoundError as err:
        raise PackagingError(f"installer not found: {cmd[0]}") from err
    except subprocess.TimeoutExpired as err:
        raise PackagingError(f"installer timed out after {err.timeout}s") from err

    if result.stdout:
        for line in result.stdout.strip().split("\n"):
            logger.debug("INSTALL", f"  {line}")
    if result.returncode not in INSTALLER_SUCCESS_CODES:
        error_msg = f"installer failed (exit code {result.returncode})"
        if result.stderr:
            error_msg += f"\n{result.stderr}"
        raise PackagingError(error_msg)
    logger.verbose("INSTALL", f"Installer exited with code {result.returncode}")
    return result.returncode


# -------------------------------
# Generation
# -------------------------------


def generate_all(
    changeset: ChangeSet,
    output_dir: Path,
    detection_config: DetectionConfig | None = None,
    uninstall_config: UninstallConfig | None = None,
    logger: Logger | None = None,
) -> GenerateResult:
    """Run both script generators, isolating failures.

    A generator that raises GenerationError or OSError is recorded in
    ``errors``; the other one still runs.
    """
    if logger is None:
        logger = get_global_logger()
    paths = artifact_paths(changeset.project_name, output_dir)
    errors: list[str] = []

    detection_path: Path | None = None
    try:
        detection_path = generate_detection_script(
            changeset, paths["detection"], detection_config, logger
        )
    except (GenerationError, OSError) as err:
        logger.error("DETECTION", f"Detection script not generated: {err}")
        errors.append(f"detection: {err}")

    uninstall_path: Path | None = None
    try:
        uninstall_path = generate_uninstall_script(
            changeset, paths["uninstall"], uninstall_config, logger
        )
    except (GenerationError, OSError) as err:
        logger.error("UNINSTALL", f"Uninstall script not generated: {err}")
        errors.append(f"uninstall: {err}")

    return GenerateResult(
        detection_script=detection_path,
        uninstall_script=uninstall_path,
        errors=errors,
    )


def generate_scripts(
    changeset_path: Path,
    output_dir: Path,
    detection_config: DetectionConfig | None = None,
    uninstall_config: UninstallConfig | None = None,
) -> GenerateResult:
    """Generate detection and uninstall scripts from a change-set file.

    This is the entry point for the 'pkgtrace generate' command.

    Raises:
        ConfigError: If the change-set file is missing or malformed.
    """
    logger = get_global_logger()
    changeset = load_changeset(changeset_path)
    logger.verbose("GENERATE", f"Loaded change-set for {changeset.project_name}")
    return generate_all(
        changeset, output_dir, detection_config, uninstall_config, logger
    )


# -------------------------------
# Diff
# -------------------------------


def document_changes(
    pre_path: Path,
    post_path: Path,
    project_name: str,
    output_path: Path,
) -> tuple[ChangeSet, Path]:
    """Diff two stored snapshots and save the resulting change-set.

    This is the entry point for the 'pkgtrace diff' command. Without a live
    system there is no registry re-capture and snapshot values are used.

    Returns:
        The change-set and the path it was saved to.

    Raises:
        ConfigError: If a snapshot file is missing or malformed.
    """
    logger = get_global_logger()
    pre = load_snapshot(pre_path)
    post = load_snapshot(post_path)
    diff = diff_snapshots(pre, post, logger=logger)
    changeset = build_changeset(diff, project_name, logger=logger)
    save_changeset(changeset, output_path)
    logger.verbose("DIFF", f"Change-set saved to: {output_path}")
    return changeset, output_path


def verify_detection(changeset_path: Path, snapshot_path: Path) -> DetectionOutcome:
    """Evaluate a change-set's detection logic against a stored snapshot.

    This is the entry point for the 'pkgtrace verify' command.

    Raises:
        ConfigError: If an input file is missing or malformed.
        NoApplicationFound: If the change-set has no application identity.
    """
    changeset = load_changeset(changeset_path)
    snapshot = load_snapshot(snapshot_path)
    plan = build_detection_plan(changeset)
    return evaluate_detection(plan, snapshot.registry_entries)


# -------------------------------
# Live trace
# -------------------------------


def _wait(seconds: float, reason: str, sleep: Callable[[float], None], logger: Logger) -> None:
    if seconds > 0:
        logger.verbose("WAIT", f"Waiting {seconds:g}s {reason}")
        sleep(seconds)


def trace_installation(
    project_path: Path,
    *,
    registry: RegistryReader | None = None,
    service_source: ServiceSource | None = None,
    program_source: ProgramSource | None = None,
    runner: Runner = subprocess.run,
    sleep: Callable[[float], None] = time.sleep,
) -> TraceResult:
    """Trace what a project's installer changes and generate its scripts.

    This is the entry point for the 'pkgtrace trace' command, normally run
    inside a disposable Windows Sandbox.

    Args:
        project_path: Path to the project YAML file.
        registry: Registry reader. Defaults to WinRegistryReader.
        service_source: Callable returning services.
        program_source: Callable returning installed programs.
        runner: subprocess.run-compatible callable used for the installer.
        sleep: Delay function used for all fixed waits.

    Returns:
        TraceResult with change counts, the change-set path and the
        script generation result.

    Raises:
        ConfigError: On invalid project configuration.
        CaptureError: If a snapshot could not be captured at all.
        PackagingError: If the installer fails.
    """
    logger = get_global_logger()

    logger.step(1, 6, "Loading configuration...")
    config = load_effective_config(project_path)
    project_name = config["project"]["name"]
    capture = config["capture"]
    output_dir = Path(config["output"]["dir"])
    paths = artifact_paths(project_name, output_dir)

    if registry is None:
        registry = WinRegistryReader()
    reader = registry

    def _capture() -> SystemSnapshot:
        return capture_from_config(
            config,
            registry=reader,
            service_source=service_source,
            program_source=program_source,
            logger=logger,
        )

    logger.step(2, 6, "Capturing pre-install snapshot...")
    _wait(float(capture["stabilization_delay"]), "for the system to settle", sleep, logger)
    pre = _capture()
    save_snapshot(pre, paths["pre"])

    logger.step(3, 6, "Running installer...")
    run_installer(config, runner=runner, logger=logger)
    _wait(float(capture["finalization_delay"]), "for the installer to finish", sleep, logger)

    logger.step(4, 6, "Capturing post-install snapshot...")
    post = _capture()
    save_snapshot(post, paths["post"])

    logger.step(5, 6, "Diffing snapshots...")

    def _recapture():
        return capture_registry(capture["registry_roots"], reader, logger)

    def _read_values(path: str) -> dict[str, Any]:
        return clean_values(reader.read_key(path).values)

    diff = diff_snapshots(
        pre,
        post,
        recapture_registry=_recapture,
        read_values=_read_values,
        retry_policy=retry_policy_from(config),
        sleep=sleep,
        logger=logger,
    )
    changeset = build_changeset(diff, project_name, logger=logger)
    save_changeset(changeset, paths["changeset"])
    logger.verbose("TRACE", f"Change-set saved to: {paths['changeset']}")

    logger.step(6, 6, "Generating scripts...")
    scripts = generate_all(
        changeset,
        output_dir,
        detection_config_from(config),
        uninstall_config_from(config),
        logger,
    )

    return TraceResult(
        project_name=project_name,
        changeset_path=paths["changeset"],
        new_files=len(changeset.new_files),
        modified_files=len(changeset.modified_files),
        new_registry_keys=len(changeset.new_registry_keys),
        new_services=len(changeset.new_services),
        new_programs=len(changeset.new_programs),
        registry_retries=diff.registry_retries,
        scripts=scripts,
    )
