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

"""Configuration loading and merging for PkgTrace.

This module implements a three-layer configuration system that lets
organization-wide defaults be overridden per packaging project.

Configuration Layers:
    1. **Built-in defaults** (DEFAULT_CONFIG)
       - Watched paths, registry roots, delays, retry policy, logging

    2. **Organization defaults** (defaults/org.yaml)
       - Found by walking upward from the project file
       - Optional; overrides built-in defaults

    3. **Project configuration** (projects/<name>.yaml)
       - Always required; names the project and its installer
       - Overrides organization and built-in defaults

Merge Behavior:
    The loader performs deep merging with "last wins" semantics:

    - **Dicts**: Recursively merged (keys from overlay override base)
    - **Lists**: Completely replaced (NOT appended/extended)
    - **Scalars**: Overwritten (strings, numbers, booleans)

Path Resolution:
    Relative paths are resolved against the PROJECT FILE location, making
    projects relocatable. Currently resolved paths:

    - output.dir
    - project.installer

Error Handling:
    - ConfigError: Project file doesn't exist, YAML parse errors, empty
        files, invalid structure, or missing/invalid required fields
    - All errors are chained with "from err" for better debugging

Example:
    Basic usage:
        ```python
        from pathlib import Path
        from pkgtrace.config import load_effective_config

        cfg = load_effective_config(Path("projects/contoso.yaml"))
        print(cfg["project"]["name"])  # Output: Contoso App
        print(cfg["capture"]["registry_retry"]["attempts"])  # Output: 3
        ```

"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from pkgtrace.exceptions import ConfigError
from pkgtrace.logging import get_global_logger
from pkgtrace.snapshot.collector import (
    DEFAULT_DEPTH,
    DEFAULT_REGISTRY_ROOTS,
    DEFAULT_WATCH_PATHS,
)

API_VERSION = "pkgtrace/v1"

DEFAULT_CONFIG: dict[str, Any] = {
    "apiVersion": API_VERSION,
    "project": {
        "install_args": [],
        "install_timeout": 3600,
    },
    "capture": {
        "paths": list(DEFAULT_WATCH_PATHS),
        "registry_roots": list(DEFAULT_REGISTRY_ROOTS),
        "depth": DEFAULT_DEPTH,
        "stabilization_delay": 30,
        "finalization_delay": 30,
        "registry_retry": {"attempts": 3, "delay": 10},
    },
    "output": {"dir": "output"},
    "scripts": {"log_rotation_mb": 3, "log_level": "INFO"},
    "sandbox": {"networking": False, "memory_mb": 4096},
}

_LOG_LEVELS = ("INFO", "WARNING", "ERROR", "DEBUG")


# -------------------------------
# YAML helpers
# -------------------------------


def _load_yaml_file(p: Path) -> Any:
    """Loads a YAML file and returns the parsed Python object.

    Raises:
        ConfigError: When file does not exist, invalid YAML (parse error), or empty files.
    """
    if not p.exists():
        raise ConfigError(f"file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigError(f"Error parsing YAML: {p}: {err}") from err
    if data is None:
        raise ConfigError(f"YAML file is empty: {p}")
    return data


# -------------------------------
# Merge logic
# -------------------------------


def _deep_merge_dicts(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep-merges two dicts with "overlay wins" semantics.

    Merge behavior:

    - dict + dict -> deep merge
    - list + list -> overlay REPLACES base (not concatenated)
    - everything else -> overlay overwrites base

    This function does not mutate inputs; returns a new dict.
    """
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge_dicts(result[k], v)
        else:
            # Replace lists and scalars entirely
            result[k] = v
    return result


# -------------------------------
# Defaults discovery
# -------------------------------


def _find_defaults_root(start_dir: Path) -> Path | None:
    """Walks upward from start_dir looking for a defaults/org.yaml file.

    Returns:
        The defaults/ directory if found, None otherwise.
    """
    for parent in [start_dir] + list(start_dir.parents):
        candidate = parent / "defaults" / "org.yaml"
        if candidate.exists():
            return parent / "defaults"
    return None


# -------------------------------
# Path resolution and validation
# -------------------------------


def _resolve_known_paths(cfg: dict[str, Any], project_dir: Path) -> None:
    """Resolves relative path fields inside the merged config in place."""
    output = cfg.get("output", {})
    raw_dir = output.get("dir")
    if isinstance(raw_dir, str) and raw_dir and not Path(raw_dir).is_absolute():
        output["dir"] = str((project_dir / raw_dir).resolve())

    project = cfg.get("project", {})
    installer = project.get("installer")
    # Installer may be a bare command on PATH (e.g., "msiexec.exe"); only
    # rewrite values that look like relative file paths
    if isinstance(installer, str) and installer and not Path(installer).is_absolute():
        candidate = project_dir / installer
        if candidate.exists():
            project["installer"] = str(candidate.resolve())


def _require_int(cfg: dict[str, Any], section: str, key: str, minimum: int) -> None:
    value = cfg.get(section, {}).get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ConfigError(
            f"{section}.{key} must be a number >= {minimum}, got {value!r}"
        )


def _validate(cfg: dict[str, Any], project_path: Path) -> None:
    """Checks required fields and value types of the merged config."""
    api_version = cfg.get("apiVersion")
    if api_version != API_VERSION:
        raise ConfigError(
            f"unsupported apiVersion {api_version!r} in {project_path} "
            f"(expected {API_VERSION!r})"
        )

    project = cfg.get("project")
    if not isinstance(project, dict):
        raise ConfigError(f"'project' must be a mapping: {project_path}")
    name = project.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"project.name is required: {project_path}")
    if not isinstance(project.get("install_args", []), list):
        raise ConfigError("project.install_args must be a list")

    capture = cfg.get("capture")
    if not isinstance(capture, dict):
        raise ConfigError("'capture' must be a mapping")
    for key in ("paths", "registry_roots"):
        if not isinstance(capture.get(key), list):
            raise ConfigError(f"capture.{key} must be a list")
    _require_int(cfg, "capture", "depth", 1)
    _require_int(cfg, "capture", "stabilization_delay", 0)
    _require_int(cfg, "capture", "finalization_delay", 0)

    retry = capture.get("registry_retry")
    if not isinstance(retry, dict):
        raise ConfigError("capture.registry_retry must be a mapping")
    _require_int(capture, "registry_retry", "attempts", 1)
    _require_int(capture, "registry_retry", "delay", 0)

    log_level = str(cfg.get("scripts", {}).get("log_level", "")).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(
            f"scripts.log_level must be one of {', '.join(_LOG_LEVELS)}, "
            f"got {log_level!r}"
        )
    cfg["scripts"]["log_level"] = log_level
    _require_int(cfg, "scripts", "log_rotation_mb", 1)


# -------------------------------
# Verbose helpers
# -------------------------------


def _print_yaml_content(data: dict[str, Any], indent: int = 0) -> None:
    """Print YAML content in a readable format for debug mode."""
    logger = get_global_logger()

    # The logger.debug() call will only print if debug mode is enabled
    yaml_str = yaml.dump(data, default_flow_style=False, sort_keys=False)
    for line in yaml_str.split("\n"):
        if line.strip():
            logger.debug("CONFIG", " " * indent + line)


# -------------------------------
# Public API
# -------------------------------


def load_effective_config(project_path: Path) -> dict[str, Any]:
    """Loads and merges the effective configuration for a project.

    Performs the following operations:

    1. Read project YAML
    2. Find defaults root by scanning upwards for defaults/org.yaml
    3. Merge: built-in -> org -> project (dicts deep-merge, lists replace)
    4. Resolve known relative paths (relative to the project directory)
    5. Validate required fields

    Args:
        project_path: Path to the project YAML file.

    Returns:
        A merged configuration dict.

    Raises:
        ConfigError: On YAML parse errors, empty files, invalid structure,
            missing project.name, or if the project file is missing.
    """
    logger = get_global_logger()
    project_path = project_path.resolve()
    project_dir = project_path.parent

    logger.verbose("CONFIG", f"Loading project: {project_path}")

    project_obj = _load_yaml_file(project_path)
    if not isinstance(project_obj, dict):
        raise ConfigError(f"top-level YAML must be a mapping (dict): {project_path}")

    merged = copy.deepcopy(DEFAULT_CONFIG)
    layers_merged = 1

    defaults_root = _find_defaults_root(project_dir)
    if defaults_root:
        org_defaults_path = defaults_root / "org.yaml"
        logger.verbose(
            "CONFIG", f"Loading: {org_defaults_path.relative_to(defaults_root.parent)}"
        )
        org_defaults = _load_yaml_file(org_defaults_path)
        if isinstance(org_defaults, dict):
            logger.debug("CONFIG", "--- Content from org.yaml ---")
            _print_yaml_content(org_defaults)
            merged = _deep_merge_dicts(merged, org_defaults)
            layers_merged += 1
        else:
            logger.warning(
                "CONFIG", f"Ignoring {org_defaults_path}: top-level YAML is not a mapping"
            )

    logger.debug("CONFIG", f"--- Content from {project_path.name} ---")
    _print_yaml_content(project_obj)
    merged = _deep_merge_dicts(merged, project_obj)
    layers_merged += 1

    logger.verbose("CONFIG", f"Deep merging {layers_merged} layer(s)")
    logger.debug("CONFIG", "--- Final Merged Configuration ---")
    _print_yaml_content(merged)

    _resolve_known_paths(merged, project_dir)
    _validate(merged, project_path)
    merged["project"]["name"] = merged["project"]["name"].strip()
    return merged
