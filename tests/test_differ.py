"""
Tests for pkgtrace.snapshot.differ module.

Tests snapshot diffing including:
- New and modified file detection
- Registry diff with re-capture retries
- Fresh value reads for new registry keys
- Services and programs by name
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pkgtrace.logging import RecordingLogger
from pkgtrace.retry import RetryPolicy
from pkgtrace.snapshot.differ import diff_files, diff_registry, diff_snapshots
from pkgtrace.snapshot.models import (
    FileInfo,
    ProgramInfo,
    RegistryEntry,
    ServiceInfo,
    SystemSnapshot,
)

pytestmark = pytest.mark.unit

T0 = datetime(2025, 1, 1, tzinfo=UTC)
KEY = "HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\App"


def _snapshot(**kwargs) -> SystemSnapshot:
    return SystemSnapshot(**kwargs)


class TestDiffFiles:
    """Tests for diff_files function."""

    def test_new_and_modified(self):
        pre = [
            FileInfo("C:\\a.txt", modified_at=T0),
            FileInfo("C:\\b.txt", modified_at=T0),
        ]
        post = [
            FileInfo("C:\\a.txt", modified_at=T0),
            FileInfo("C:\\b.txt", modified_at=T0 + timedelta(seconds=5)),
            FileInfo("C:\\c.txt", modified_at=T0),
        ]

        new, modified = diff_files(pre, post)

        assert [f.path for f in new] == ["C:\\c.txt"]
        assert [f.path for f in modified] == ["C:\\b.txt"]

    def test_paths_compared_case_insensitively(self):
        new, modified = diff_files([FileInfo("C:\\App\\X.dll")], [FileInfo("c:\\app\\x.DLL")])
        assert new == () and modified == ()

    def test_older_timestamp_is_not_modified(self):
        pre = [FileInfo("C:\\a.txt", modified_at=T0)]
        post = [FileInfo("C:\\a.txt", modified_at=T0 - timedelta(days=1))]
        assert diff_files(pre, post) == ((), ())

    def test_removed_files_not_reported(self):
        assert diff_files([FileInfo("C:\\gone.txt")], []) == ((), ())


class TestDiffRegistry:
    """Tests for diff_registry function."""

    def test_only_new_paths(self):
        pre = [RegistryEntry(KEY)]
        post = [RegistryEntry(KEY.upper()), RegistryEntry(KEY + "2")]
        assert [r.full_path for r in diff_registry(pre, post)] == [KEY + "2"]


class TestDiffSnapshots:
    """Tests for diff_snapshots function."""

    def test_identical_snapshots_give_empty_diff(self):
        snap = _snapshot(
            files=(FileInfo("C:\\a.txt", modified_at=T0),),
            registry_entries=(RegistryEntry(KEY),),
            services=(ServiceInfo("svc"),),
            programs=(ProgramInfo("App"),),
        )

        diff = diff_snapshots(snap, snap, sleep=lambda s: None)

        assert diff.is_empty
        assert diff.registry_attempts == 1

    def test_services_and_programs_by_name(self):
        pre = _snapshot(services=(ServiceInfo("a"),), programs=(ProgramInfo("P1"),))
        post = _snapshot(
            services=(ServiceInfo("a", status="Running"), ServiceInfo("b")),
            programs=(ProgramInfo("P1", version="2"), ProgramInfo("P2")),
        )

        diff = diff_snapshots(pre, post)

        assert [s.name for s in diff.new_services] == ["b"]
        assert [p.name for p in diff.new_programs] == ["P2"]

    def test_registry_recaptured_until_keys_appear(self):
        """Registry writes that land late are picked up on the third attempt."""
        pre = _snapshot()
        post = _snapshot()
        recaptures = [(), (RegistryEntry(KEY, key_name="App"),)]
        sleeps: list[float] = []

        diff = diff_snapshots(
            pre,
            post,
            recapture_registry=lambda: recaptures.pop(0),
            retry_policy=RetryPolicy(attempts=3, delay=10),
            sleep=sleeps.append,
        )

        assert [r.full_path for r in diff.new_registry_keys] == [KEY]
        assert diff.registry_attempts == 3
        assert diff.registry_retries == 2
        assert sleeps == [10, 10]

    def test_no_retry_without_recapture(self):
        sleeps: list[float] = []
        logger = RecordingLogger()

        diff = diff_snapshots(_snapshot(), _snapshot(), sleep=sleeps.append, logger=logger)

        assert diff.registry_attempts == 1
        assert sleeps == []
        assert any("No new registry keys" in m for m in logger.messages("warning"))

    def test_exhausted_retries_give_empty_registry(self):
        diff = diff_snapshots(
            _snapshot(),
            _snapshot(),
            recapture_registry=lambda: (),
            retry_policy=RetryPolicy(attempts=2, delay=0),
            sleep=lambda s: None,
        )

        assert diff.new_registry_keys == ()
        assert diff.registry_attempts == 2

    def test_values_come_from_fresh_read(self):
        stale = RegistryEntry(KEY, values={"DisplayName": "Old"}, value_count=1)
        post = _snapshot(registry_entries=(stale,))

        diff = diff_snapshots(
            _snapshot(),
            post,
            read_values=lambda path: {"DisplayName": "App", "DisplayVersion": "1.0"},
        )

        entry = diff.new_registry_keys[0]
        assert entry.values == {"DisplayName": "App", "DisplayVersion": "1.0"}
        assert entry.value_count == 2
        assert entry.accessible

    def test_unreadable_key_kept_as_inaccessible(self):
        def read_values(path):
            raise PermissionError(path)

        post = _snapshot(registry_entries=(RegistryEntry(KEY, values={"A": 1}, value_count=1),))
        logger = RecordingLogger()

        diff = diff_snapshots(_snapshot(), post, read_values=read_values, logger=logger)

        entry = diff.new_registry_keys[0]
        assert entry.full_path == KEY
        assert entry.values == {}
        assert not entry.accessible
        assert entry.properties_summary == "<inaccessible>"
        assert logger.messages("warning")
