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

"""Command-line interface for PkgTrace.

This module provides the main CLI entry point for the pkgtrace tool,
offering commands for capturing snapshots, tracing installers and
generating Intune detection and uninstall scripts.

Commands:

    snapshot: Capture a system snapshot to a JSON file
    diff: Diff two stored snapshots into a change-set
    trace: Snapshot, install, snapshot, diff and generate in one run
    generate: Generate detection and uninstall scripts from a change-set
    validate: Validate a change-set document
    verify: Evaluate detection logic against a stored snapshot
    sandbox: Write (and optionally launch) a Windows Sandbox configuration
    export-policies: Export Intune policies through Microsoft Graph

Example:
    Trace an installer inside Windows Sandbox:
        ```bash
        $ pkgtrace sandbox projects/contoso.yaml --output contoso.wsb --launch
        ```

    Generate scripts from an existing change-set:
        ```bash
        $ pkgtrace generate output/Contoso-App-Changes.json --output-dir output
        ```

    Enable verbose output:
        ```bash
        $ pkgtrace trace projects/contoso.yaml --verbose
        ```

Exit Codes:

- 0: Success
- 1: Error (configuration, capture, generation or network failure)

Note:
    Each command has its own handler function (cmd_<command>).
    Verbose mode shows full tracebacks on errors for debugging.
    Debug mode implies verbose mode and shows detailed configuration dumps.

"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

from pkgtrace import __version__
from pkgtrace.core import (
    document_changes,
    generate_scripts,
    take_snapshot,
    trace_installation,
    verify_detection,
)
from pkgtrace.exceptions import PkgTraceError
from pkgtrace.graph import CredentialManager, GraphClient
from pkgtrace.logging import get_logger, set_global_logger
from pkgtrace.results import GenerateResult
from pkgtrace.sandbox import launch_sandbox, write_sandbox_config
from pkgtrace.validation import validate_changeset


def _configure_logger(args: argparse.Namespace) -> None:
    debug = getattr(args, "debug", False)
    logger = get_logger(verbose=args.verbose or debug, debug=debug)
    set_global_logger(logger)


def _print_error(err: Exception, args: argparse.Namespace) -> None:
    print(f"Error: {err}")
    if args.verbose or getattr(args, "debug", False):
        import traceback

        traceback.print_exc()


def _print_scripts(result: GenerateResult) -> None:
    print(f"Detection Script: {result.detection_script or '(not generated)'}")
    print(f"Uninstall Script: {result.uninstall_script or '(not generated)'}")
    for error in result.errors:
        print(f"  [X] {error}")


def cmd_snapshot(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace snapshot' command.

    Captures the watched paths, registry roots, services and programs of the
    running system and saves them as a snapshot JSON file.

    Returns:
        Exit code (0 for success, 1 for failure).

    """
    _configure_logger(args)
    project_path = Path(args.project).resolve()
    output_path = Path(args.output).resolve()

    print(f"Capturing snapshot for project: {project_path}")
    print()

    try:
        result = take_snapshot(project_path, output_path)
    except PkgTraceError as err:
        _print_error(err, args)
        return 1

    print("=" * 70)
    print("SNAPSHOT RESULTS")
    print("=" * 70)
    print(f"Snapshot:        {result.snapshot_path}")
    print(f"Files:           {result.file_count}")
    print(f"Registry Keys:   {result.registry_count}")
    print(f"Services:        {result.service_count}")
    print(f"Programs:        {result.program_count}")
    print("=" * 70)
    print()
    print("[SUCCESS] Snapshot captured successfully!")
    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace diff' command.

    Diffs two stored snapshots and saves the change-set JSON document.

    Returns:
        Exit code (0 for success, 1 for failure).

    """
    _configure_logger(args)
    pre_path = Path(args.pre).resolve()
    post_path = Path(args.post).resolve()
    output_path = Path(args.output).resolve()

    try:
        changeset, saved = document_changes(
            pre_path, post_path, args.project, output_path
        )
    except PkgTraceError as err:
        _print_error(err, args)
        return 1

    print("=" * 70)
    print("DIFF RESULTS")
    print("=" * 70)
    print(f"Project:         {changeset.project_name}")
    print(f"New Files:       {len(changeset.new_files)}")
    print(f"Modified Files:  {len(changeset.modified_files)}")
    print(f"Registry Keys:   {len(changeset.new_registry_keys)}")
    print(f"Services:        {len(changeset.new_services)}")
    print(f"Programs:        {len(changeset.new_programs)}")
    print(f"Change-set:      {saved}")
    print("=" * 70)
    print()
    print("[SUCCESS] Change-set written successfully!")
    return 0


def cmd_trace(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace trace' command.

    Runs the full live pipeline: settle, pre-snapshot, install, settle,
    post-snapshot, diff, change-set, scripts. Meant to run inside a
    disposable Windows Sandbox.

    Returns:
        Exit code (0 for success, 1 for failure). A failed script
        generator is reported but does not fail the trace.

    """
    _configure_logger(args)
    project_path = Path(args.project).resolve()

    if not project_path.exists():
        print(f"Error: Project file not found: {project_path}")
        return 1

    print(f"Tracing installation for project: {project_path}")
    print()

    try:
        result = trace_installation(project_path)
    except PkgTraceError as err:
        _print_error(err, args)
        return 1

    print("=" * 70)
    print("TRACE RESULTS")
    print("=" * 70)
    print(f"Project:          {result.project_name}")
    print(f"New Files:        {result.new_files}")
    print(f"Modified Files:   {result.modified_files}")
    print(f"Registry Keys:    {result.new_registry_keys}")
    print(f"Services:         {result.new_services}")
    print(f"Programs:         {result.new_programs}")
    print(f"Registry Retries: {result.registry_retries}")
    print(f"Change-set:       {result.changeset_path}")
    _print_scripts(result.scripts)
    print("=" * 70)
    print()
    if result.scripts.errors:
        print("[WARNING] Installation traced, but not every script was generated.")
    else:
        print("[SUCCESS] Installation traced successfully!")
    return 0


def cmd_generate(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace generate' command.

    Runs both script generators on a change-set. Each generator fails
    independently.

    Returns:
        Exit code (0 if both scripts were generated, 1 otherwise).

    """
    _configure_logger(args)
    changeset_path = Path(args.changeset).resolve()
    output_dir = Path(args.output_dir).resolve()

    try:
        result = generate_scripts(changeset_path, output_dir)
    except PkgTraceError as err:
        _print_error(err, args)
        return 1

    print("=" * 70)
    print("GENERATE RESULTS")
    print("=" * 70)
    _print_scripts(result)
    print(f"Status:           {result.status}")
    print("=" * 70)
    print()
    if result.errors:
        print(f"[FAILED] {len(result.errors)} generator(s) failed.")
        return 1
    print("[SUCCESS] Scripts generated successfully!")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace validate' command.

    Returns:
        Exit code (0 for valid change-set, 1 for invalid).

    """
    _configure_logger(args)
    changeset_path = Path(args.changeset).resolve()

    print(f"Validating change-set: {changeset_path}")
    print()

    result = validate_changeset(changeset_path)

    print("=" * 70)
    print("VALIDATION RESULTS")
    print("=" * 70)
    print(f"Change-set:  {result.changeset_path}")
    print(f"Status:      {result.status.upper()}")
    print(f"Application: {result.app_name or '(none)'}")
    print()

    if result.warnings:
        print(f"Warnings ({len(result.warnings)}):")
        for warning in result.warnings:
            print(f"  [WARNING] {warning}")
        print()

    if result.errors:
        print(f"Errors ({len(result.errors)}):")
        for error in result.errors:
            print(f"  [X] {error}")
        print()

    print("=" * 70)

    if result.status == "valid":
        print()
        print("[SUCCESS] Change-set is valid!")
        return 0
    print()
    print(f"[FAILED] Change-set validation failed with {len(result.errors)} error(s).")
    return 1


def cmd_verify(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace verify' command.

    Evaluates the detection logic of a change-set against the registry
    entries of a stored snapshot, without running PowerShell.

    Returns:
        The exit code the detection script would return (0 or 1).

    """
    _configure_logger(args)
    changeset_path = Path(args.changeset).resolve()
    snapshot_path = Path(args.snapshot).resolve()

    try:
        outcome = verify_detection(changeset_path, snapshot_path)
    except PkgTraceError as err:
        _print_error(err, args)
        return 1

    print("=" * 70)
    print("VERIFY RESULTS")
    print("=" * 70)
    print(f"Found:             {outcome.found}")
    print(f"Matched Key:       {outcome.matched_path or '(none)'}")
    print(f"Installed Version: {outcome.installed_version or '(unknown)'}")
    print(f"Requirement Met:   {outcome.requirement_met}")
    print(f"Exit Code:         {outcome.exit_code}")
    print("=" * 70)
    return outcome.exit_code


def cmd_sandbox(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace sandbox' command.

    Returns:
        Exit code (0 for success, 1 for failure).

    """
    _configure_logger(args)
    project_path = Path(args.project).resolve()
    output_path = Path(args.output).resolve()

    try:
        wsb_path = write_sandbox_config(project_path, output_path)
        if args.launch:
            launch_sandbox(wsb_path)
    except PkgTraceError as err:
        _print_error(err, args)
        return 1

    print(f"Sandbox configuration: {wsb_path}")
    if args.launch:
        print("[SUCCESS] Windows Sandbox launched!")
    else:
        print("[SUCCESS] Sandbox configuration written!")
    return 0


def cmd_export_policies(args: argparse.Namespace) -> int:
    """Handler for 'pkgtrace export-policies' command.

    Exports Intune compliance policies and configuration profiles with their
    assignments, using GRAPH_TENANT_ID, GRAPH_CLIENT_ID and
    GRAPH_CLIENT_SECRET (optionally from .env).

    Returns:
        Exit code (0 for success, 1 for failure).

    """
    _configure_logger(args)
    output_dir = Path(args.output_dir).resolve()

    try:
        credentials = CredentialManager(interactive=args.interactive)
        client = GraphClient(credentials.get_token)
        result = client.export_policies(output_dir)
    except (PkgTraceError, OSError) as err:
        _print_error(err, args)
        return 1

    print("=" * 70)
    print("EXPORT RESULTS")
    print("=" * 70)
    print(f"Output Directory: {result.output_dir}")
    print(f"Policies:         {result.policy_count}")
    print("=" * 70)
    print()
    print("[SUCCESS] Policies exported successfully!")
    return 0


def _add_output_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show progress and high-level status updates",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Show detailed debugging output (implies --verbose)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pkgtrace",
        description="PkgTrace - trace Windows installers and generate Intune scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"pkgtrace {__version__}",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
        required=True,
    )

    # 'snapshot' command
    p = subparsers.add_parser(
        "snapshot",
        help="Capture a system snapshot to a JSON file",
        description="Capture files, registry keys, services and programs of this machine.",
    )
    p.add_argument("project", help="Path to the project YAML file")
    p.add_argument("--output", required=True, help="Snapshot JSON file to write")
    _add_output_flags(p)
    p.set_defaults(func=cmd_snapshot)

    # 'diff' command
    p = subparsers.add_parser(
        "diff",
        help="Diff two stored snapshots into a change-set",
        description="Compute what changed between a pre- and a post-install snapshot.",
    )
    p.add_argument("pre", help="Pre-install snapshot JSON file")
    p.add_argument("post", help="Post-install snapshot JSON file")
    p.add_argument("--project", required=True, help="Project name for the change-set")
    p.add_argument("--output", required=True, help="Change-set JSON file to write")
    _add_output_flags(p)
    p.set_defaults(func=cmd_diff)

    # 'trace' command
    p = subparsers.add_parser(
        "trace",
        help="Trace an installer and generate its scripts",
        description="Snapshot, run the installer, snapshot again, diff and generate scripts.",
    )
    p.add_argument("project", help="Path to the project YAML file")
    _add_output_flags(p)
    p.set_defaults(func=cmd_trace)

    # 'generate' command
    p = subparsers.add_parser(
        "generate",
        help="Generate detection and uninstall scripts from a change-set",
        description="Run both script generators; each one fails independently.",
    )
    p.add_argument("changeset", help="Change-set JSON file")
    p.add_argument(
        "--output-dir",
        default="./output",
        help="Directory for the generated scripts (default: ./output)",
    )
    _add_output_flags(p)
    p.set_defaults(func=cmd_generate)

    # 'validate' command
    p = subparsers.add_parser(
        "validate",
        help="Validate a change-set document",
        description="Check a change-set JSON document for structural problems.",
    )
    p.add_argument("changeset", help="Change-set JSON file")
    _add_output_flags(p)
    p.set_defaults(func=cmd_validate)

    # 'verify' command
    p = subparsers.add_parser(
        "verify",
        help="Evaluate detection logic against a stored snapshot",
        description="Report what the detection script would return on the snapshot's machine.",
    )
    p.add_argument("changeset", help="Change-set JSON file")
    p.add_argument("snapshot", help="Snapshot JSON file of the machine to check")
    _add_output_flags(p)
    p.set_defaults(func=cmd_verify)

    # 'sandbox' command
    p = subparsers.add_parser(
        "sandbox",
        help="Write a Windows Sandbox configuration for a project",
        description="Create a .wsb file that runs 'pkgtrace trace' in a disposable sandbox.",
    )
    p.add_argument("project", help="Path to the project YAML file")
    p.add_argument("--output", required=True, help=".wsb file to write")
    p.add_argument("--launch", action="store_true", help="Start Windows Sandbox afterwards")
    _add_output_flags(p)
    p.set_defaults(func=cmd_sandbox)

    # 'export-policies' command
    p = subparsers.add_parser(
        "export-policies",
        help="Export Intune policies through Microsoft Graph",
        description="Save compliance policies and configuration profiles with assignments as JSON.",
    )
    p.add_argument("--output-dir", required=True, help="Directory for exported policies")
    p.add_argument(
        "--interactive",
        action="store_true",
        help="Prompt for the client secret if GRAPH_CLIENT_SECRET is not set",
    )
    _add_output_flags(p)
    p.set_defaults(func=cmd_export_policies)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the pkgtrace CLI.

    This function is registered as the 'pkgtrace' console script in pyproject.toml.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
