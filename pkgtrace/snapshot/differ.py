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

"""Snapshot diffing for PkgTrace.

Computes what an installer added or modified between a pre-install and a
post-install snapshot.

Diff Rules:

- Files: new = path in post but not in pre; modified = in both with a
    later modified timestamp in post. Paths compare case-insensitively.
- Registry: new = key path in post but not in pre (case-insensitive).
- Services and programs: new = name in post but not in pre.

Registry Retry:
    Installers may finish writing registry keys after their process exits.
    When the first registry diff finds nothing and a re-capture function is
    available, the registry is re-captured after a fixed delay, up to three
    attempts in total. An empty result after the last attempt is reported
    with a warning, not raised.

Value Enrichment:
    Each new registry key is re-read at diff time so the change-set carries
    the freshest values. Keys that can no longer be read are kept and marked
    inaccessible instead of being dropped.

Example:
    Offline diff of two stored snapshots:
        ```python
        from pkgtrace.snapshot import diff_snapshots, load_snapshot

        diff = diff_snapshots(load_snapshot(pre_path), load_snapshot(post_path))
        print(len(diff.new_registry_keys))
        ```
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
import time
from typing import Any

from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.retry import RetryPolicy, retry_until
from pkgtrace.snapshot.models import (
    FileInfo,
    ProgramInfo,
    RegistryEntry,
    ServiceInfo,
    SystemSnapshot,
)

RegistryRecapture = Callable[[], Sequence[RegistryEntry]]
ValueReader = Callable[[str], dict[str, Any]]


@dataclass(frozen=True)
class SnapshotDiff:
    """Raw differ output, normalized later by build_changeset().

    Attributes:
        new_files: Files present only in the post snapshot.
        modified_files: Files whose modified timestamp moved forward.
        new_registry_keys: Registry keys present only after install.
        new_services: Services present only after install.
        new_programs: Programs present only after install.
        registry_attempts: Registry diff attempts made (1 = no retry).
    """

    new_files: tuple[FileInfo, ...] = ()
    modified_files: tuple[FileInfo, ...] = ()
    new_registry_keys: tuple[RegistryEntry, ...] = ()
    new_services: tuple[ServiceInfo, ...] = ()
    new_programs: tuple[ProgramInfo, ...] = ()
    registry_attempts: int = 1

    @property
    def registry_retries(self) -> int:
        return self.registry_attempts - 1

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_files
            or self.modified_files
            or self.new_registry_keys
            or self.new_services
            or self.new_programs
        )


def diff_files(
    pre: Iterable[FileInfo], post: Iterable[FileInfo]
) -> tuple[tuple[FileInfo, ...], tuple[FileInfo, ...]]:
    """Return (new, modified) files between two file listings."""
    before = {f.identity: f for f in pre}
    new: list[FileInfo] = []
    modified: list[FileInfo] = []
    for f in post:
        old = before.get(f.identity)
        if old is None:
            new.append(f)
        elif (
            old.modified_at is not None
            and f.modified_at is not None
            and f.modified_at > old.modified_at
        ):
            modified.append(f)
    return tuple(new), tuple(modified)


def diff_registry(
    pre: Iterable[RegistryEntry], post: Iterable[RegistryEntry]
) -> tuple[RegistryEntry, ...]:
    """Return registry entries of ``post`` whose path is absent from ``pre``."""
    before = {r.identity for r in pre}
    return tuple(r for r in post if r.identity not in before)


def _diff_by_name(pre: Iterable[Any], post: Iterable[Any]) -> tuple[Any, ...]:
    before = {item.name for item in pre}
    return tuple(item for item in post if item.name not in before)


def enrich_registry_entry(
    entry: RegistryEntry, read_values: ValueReader, logger: Logger
) -> RegistryEntry:
    """Replace an entry's values with a fresh read.

    An entry that cannot be read is kept with empty values and
    ``accessible=False`` so evidence of the installation is not lost.
    """
    try:
        values = read_values(entry.full_path)
    except OSError as err:
        logger.warning(
            "DIFF", f"Cannot re-read {entry.full_path}, marking inaccessible: {err}"
        )
        return replace(entry, values={}, value_count=0, accessible=False)
    return replace(entry, values=dict(values), value_count=len(values), accessible=True)


def diff_snapshots(
    pre: SystemSnapshot,
    post: SystemSnapshot,
    *,
    recapture_registry: RegistryRecapture | None = None,
    read_values: ValueReader | None = None,
    retry_policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: Logger | None = None,
) -> SnapshotDiff:
    """Diff a pre-install and a post-install snapshot.

    Args:
        pre: Snapshot taken before the install.
        post: Snapshot taken after the install.
        recapture_registry: Returns a fresh post-install registry listing.
            When omitted, no registry retry is attempted.
        read_values: Returns the current values of a registry key. When
            omitted (offline diff), snapshot values are kept.
        retry_policy: Registry retry policy (default: 3 attempts, 10s).
        sleep: Delay function used between registry attempts.
        logger: Optional logger; defaults to the global logger.

    Returns:
        The raw diff, including how many registry attempts were made.
    """
    if logger is None:
        logger = get_global_logger()
    if retry_policy is None:
        retry_policy = RetryPolicy()

    new_files, modified_files = diff_files(pre.files, post.files)
    logger.verbose(
        "DIFF", f"Files: {len(new_files)} new, {len(modified_files)} modified"
    )

    def _registry_attempt(attempt: int) -> tuple[RegistryEntry, ...]:
        if attempt == 1 or recapture_registry is None:
            current = post.registry_entries
        else:
            logger.verbose("DIFF", f"Re-capturing registry (attempt {attempt})")
            current = recapture_registry()
        return diff_registry(pre.registry_entries, current)

    policy = retry_policy if recapture_registry is not None else RetryPolicy(1, 0)
    outcome = retry_until(
        _registry_attempt,
        lambda entries: len(entries) > 0,
        policy,
        sleep=sleep,
        logger=logger,
        label="registry diff",
    )
    new_registry = outcome.value
    if not new_registry:
        logger.warning(
            "DIFF",
            f"No new registry keys found after {outcome.attempts} attempt(s)",
        )
    else:
        logger.verbose(
            "DIFF",
            f"Registry: {len(new_registry)} new keys "
            f"({outcome.retries} retries)",
        )

    if read_values is not None:
        new_registry = tuple(
            enrich_registry_entry(entry, read_values, logger) for entry in new_registry
        )

    new_services = _diff_by_name(pre.services, post.services)
    new_programs = _diff_by_name(pre.programs, post.programs)
    logger.verbose(
        "DIFF",
        f"Services: {len(new_services)} new, Programs: {len(new_programs)} new",
    )

    return SnapshotDiff(
        new_files=new_files,
        modified_files=modified_files,
        new_registry_keys=new_registry,
        new_services=new_services,
        new_programs=new_programs,
        registry_attempts=outcome.attempts,
    )
