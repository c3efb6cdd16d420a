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

"""
PkgTrace - installation tracing for Windows/Intune packaging.

PkgTrace records what a Windows installer changes on a machine and turns
those changes into the two PowerShell scripts an Intune Win32 app needs:
a detection script and an uninstall script.

Key Features
------------
  - Filesystem, registry, service and program snapshots
  - Snapshot diffing with registry re-capture retries
  - Versioned change-set documents (JSON) with legacy migration
  - Detection scripts with product-code and display-name matching
  - Uninstall scripts with MSI/EXE fallbacks and folder cleanup
  - CMTrace-format logging with rotation in generated scripts
  - Windows Sandbox configuration for disposable trace runs
  - Intune policy export through Microsoft Graph

Quick Start
-----------
Trace an installer inside Windows Sandbox:

    $ pkgtrace sandbox projects/contoso.yaml --output contoso.wsb --launch

Generate scripts from an existing change-set:

    $ pkgtrace generate output/Contoso-App-Changes.json

For full CLI documentation:

    $ pkgtrace --help

Package Structure
-----------------
cli : module
    Command-line interface with argparse.
core : module
    High-level orchestration functions.
config : package
    YAML configuration loading and merging.
snapshot : package
    Snapshot capture, storage and diffing.
changeset : module
    Change-set document model and persistence.
detection, uninstall : modules
    PowerShell script generators.
graph : package
    Microsoft Graph client for Intune policy export.

Public API
----------
The primary interface is the CLI, but key functions are exported for
programmatic use:

    from pkgtrace.core import trace_installation, generate_scripts
    from pkgtrace.validation import validate_changeset
    from pkgtrace.config import load_effective_config
    from pkgtrace.changeset import build_changeset, load_changeset
    from pkgtrace.snapshot import capture_snapshot, diff_snapshots

For more details, see the individual module docstrings.

Project Information
-------------------
Author: Roger Cibrian
License: Apache-2.0
"""

__version__ = "0.1.0"
__author__ = "Roger Cibrian"
__license__ = "Apache-2.0"
__description__ = "PkgTrace - installation tracing for Windows/Intune packaging"

# Re-export commonly used functions for convenience
from pkgtrace.changeset import build_changeset, load_changeset
from pkgtrace.config import load_effective_config
from pkgtrace.core import document_changes, generate_scripts, trace_installation
from pkgtrace.snapshot import capture_snapshot, diff_snapshots
from pkgtrace.validation import validate_changeset

__all__ = [
    "__version__",
    "build_changeset",
    "capture_snapshot",
    "diff_snapshots",
    "document_changes",
    "generate_scripts",
    "load_changeset",
    "load_effective_config",
    "trace_installation",
    "validate_changeset",
]
