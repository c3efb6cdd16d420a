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

"""System snapshots: capture, storage and diffing.

A snapshot is a point-in-time listing of filesystem entries, registry keys,
services and installed programs. Two snapshots taken around one install
action are diffed to find out what the installer changed.

Public API:

- capture_snapshot: Capture a snapshot of the running system
- capture_registry: Capture only registry state (used for retries)
- diff_snapshots: Compute new/modified entries between two snapshots
- load_snapshot / save_snapshot: Flat-file JSON persistence

Example:
    Basic usage:

        from pathlib import Path
        from pkgtrace.snapshot import capture_snapshot, diff_snapshots

        pre = capture_snapshot(paths, roots, depth=3)
        # ... run installer ...
        post = capture_snapshot(paths, roots, depth=3)
        diff = diff_snapshots(pre, post)

"""

from .collector import (
    RegistryKeyData,
    RegistryReader,
    WinRegistryReader,
    capture_registry,
    capture_snapshot,
)
from .differ import SnapshotDiff, diff_snapshots
from .models import (
    FileInfo,
    ProgramInfo,
    RegistryEntry,
    ServiceInfo,
    SystemSnapshot,
)
from .store import load_snapshot, save_snapshot

__all__ = [
    "FileInfo",
    "ProgramInfo",
    "RegistryEntry",
    "RegistryKeyData",
    "RegistryReader",
    "ServiceInfo",
    "SnapshotDiff",
    "SystemSnapshot",
    "WinRegistryReader",
    "capture_registry",
    "capture_snapshot",
    "diff_snapshots",
    "load_snapshot",
    "save_snapshot",
]
