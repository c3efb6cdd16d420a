"""
Tests for pkgtrace.snapshot.collector module.

Tests snapshot capture including:
- Filesystem scanning with a depth limit
- Registry enumeration through a RegistryReader
- Partial failure handling (unreadable keys, failing sources)
- Registry path helpers
"""

from __future__ import annotations

import pytest

from pkgtrace.exceptions import CaptureError
from pkgtrace.logging import RecordingLogger
from pkgtrace.snapshot.collector import (
    UNINSTALL_ROOTS,
    capture_registry,
    capture_snapshot,
    clean_values,
    expand_windows_path,
    list_programs,
    scan_path,
    split_registry_path,
)
from pkgtrace.snapshot.models import ProgramInfo, ServiceInfo

pytestmark = pytest.mark.unit

ROOT = UNINSTALL_ROOTS[0]


def _no_services():
    return []


def _no_programs():
    return []


class TestSplitRegistryPath:
    """Tests for split_registry_path function."""

    def test_drive_form(self):
        assert split_registry_path("HKCU:\\Software\\Contoso") == (
            "HKEY_CURRENT_USER",
            "Software\\Contoso",
        )

    def test_native_form(self):
        assert split_registry_path("HKEY_LOCAL_MACHINE\\SOFTWARE") == (
            "HKEY_LOCAL_MACHINE",
            "SOFTWARE",
        )

    def test_hive_only(self):
        assert split_registry_path("HKLM:") == ("HKEY_LOCAL_MACHINE", "")

    def test_unknown_hive_raises(self):
        with pytest.raises(ValueError):
            split_registry_path("C:\\Windows")


class TestCleanValues:
    """Tests for clean_values function."""

    def test_meta_properties_and_default_value_dropped(self):
        values = {"": "default", "PSPath": "x", "PSChildName": "y", "DisplayName": "App"}
        assert clean_values(values) == {"DisplayName": "App"}

    def test_binary_data_becomes_hex(self):
        assert clean_values({"Blob": b"\x01\xff"}) == {"Blob": "01ff"}


class TestExpandWindowsPath:
    """Tests for expand_windows_path function."""

    def test_known_variable(self, monkeypatch):
        monkeypatch.setenv("PKGTRACE_TEST_DIR", "D:\\Data")
        assert expand_windows_path("%PKGTRACE_TEST_DIR%\\Apps") == "D:\\Data\\Apps"

    def test_unknown_variable_left_untouched(self, monkeypatch):
        monkeypatch.delenv("PKGTRACE_UNSET_VAR", raising=False)
        assert expand_windows_path("%PKGTRACE_UNSET_VAR%\\x") == "%PKGTRACE_UNSET_VAR%\\x"


class TestScanPath:
    """Tests for scan_path function."""

    def test_depth_limit(self, tmp_test_dir):
        (tmp_test_dir / "a" / "b" / "c").mkdir(parents=True)
        (tmp_test_dir / "a" / "b" / "c" / "deep.txt").write_text("x")
        (tmp_test_dir / "top.txt").write_text("hello")

        names = {p.path for p in scan_path(tmp_test_dir, depth=2)}

        assert str(tmp_test_dir / "a") in names
        assert str(tmp_test_dir / "a" / "b") in names
        assert str(tmp_test_dir / "top.txt") in names
        assert str(tmp_test_dir / "a" / "b" / "c") not in names

    def test_file_metadata(self, tmp_test_dir):
        (tmp_test_dir / "file.bin").write_bytes(b"12345")
        (tmp_test_dir / "dir").mkdir()

        entries = {p.path: p for p in scan_path(tmp_test_dir, depth=1)}

        f = entries[str(tmp_test_dir / "file.bin")]
        d = entries[str(tmp_test_dir / "dir")]
        assert f.size == 5 and not f.is_directory
        assert d.size == 0 and d.is_directory
        assert f.modified_at is not None and f.modified_at.tzinfo is not None

    def test_missing_root_raises(self, tmp_test_dir):
        with pytest.raises(OSError):
            scan_path(tmp_test_dir / "missing", depth=1)


class TestCaptureRegistry:
    """Tests for registry capture."""

    def test_descendant_keys_captured(self, fake_registry_cls):
        registry = fake_registry_cls(
            {
                f"{ROOT}\\AppA": {"DisplayName": "App A", "PSPath": "meta"},
                f"{ROOT}\\AppA\\Sub": {"X": 1},
                f"{ROOT}\\AppB": {"DisplayName": "App B"},
            }
        )

        entries = capture_registry([ROOT], registry)

        paths = [e.full_path for e in entries]
        assert paths == [f"{ROOT}\\AppA", f"{ROOT}\\AppA\\Sub", f"{ROOT}\\AppB"]
        app_a = entries[0]
        assert app_a.key_name == "AppA"
        assert app_a.values == {"DisplayName": "App A"}
        assert app_a.value_count == 1
        assert app_a.sub_key_count == 1

    def test_missing_root_skipped(self, fake_registry_cls):
        registry = fake_registry_cls({f"{ROOT}\\AppA": {"DisplayName": "App A"}})

        entries = capture_registry([ROOT, "HKCU:\\Software\\Missing"], registry)

        assert len(entries) == 1

    def test_unreadable_key_skipped_and_logged(self, fake_registry_cls):
        registry = fake_registry_cls(
            {
                f"{ROOT}\\Locked": {"DisplayName": "Locked"},
                f"{ROOT}\\Open": {"DisplayName": "Open"},
            },
            denied={f"{ROOT}\\Locked"},
        )
        logger = RecordingLogger()

        entries = capture_registry([ROOT], registry, logger)

        assert [e.key_name for e in entries] == ["Open"]
        assert any("Locked" in m for m in logger.messages("warning"))

    def test_overlapping_roots_not_duplicated(self, fake_registry_cls):
        registry = fake_registry_cls({f"{ROOT}\\AppA\\Sub": {"X": 1}})

        entries = capture_registry([ROOT, f"{ROOT}\\AppA"], registry)

        assert [e.full_path for e in entries] == [f"{ROOT}\\AppA", f"{ROOT}\\AppA\\Sub"]


class TestListPrograms:
    """Tests for list_programs function."""

    def test_programs_from_uninstall_keys(self, fake_registry_cls):
        registry = fake_registry_cls(
            {
                f"{ROOT}\\B": {"DisplayName": "Beta", "DisplayVersion": "1.0"},
                f"{ROOT}\\A": {"DisplayName": "alpha", "Publisher": "Contoso"},
                f"{ROOT}\\KB123": {"ParentKeyName": "OperatingSystem"},
            }
        )

        programs = list_programs(registry)

        assert [p.name for p in programs] == ["alpha", "Beta"]
        assert programs[0].vendor == "Contoso"
        assert programs[1].version == "1.0"

    def test_no_readable_root_raises(self, fake_registry_cls):
        with pytest.raises(CaptureError):
            list_programs(fake_registry_cls())


class TestCaptureSnapshot:
    """Tests for capture_snapshot function."""

    def test_full_capture(self, tmp_test_dir, fake_registry_cls):
        (tmp_test_dir / "app.txt").write_text("x")
        registry = fake_registry_cls({f"{ROOT}\\App": {"DisplayName": "App"}})

        snapshot = capture_snapshot(
            [tmp_test_dir],
            [ROOT],
            depth=1,
            registry=registry,
            service_source=lambda: [ServiceInfo("svcB"), ServiceInfo("svcA"), ServiceInfo("svcA")],
            program_source=lambda: [ProgramInfo("App")],
        )

        assert [f.path for f in snapshot.files] == [str(tmp_test_dir / "app.txt")]
        assert [r.key_name for r in snapshot.registry_entries] == ["App"]
        assert [s.name for s in snapshot.services] == ["svcA", "svcB"]
        assert [p.name for p in snapshot.programs] == ["App"]
        assert snapshot.captured_at is not None

    def test_programs_default_to_registry(self, fake_registry_cls):
        registry = fake_registry_cls({f"{ROOT}\\App": {"DisplayName": "App"}})

        snapshot = capture_snapshot(
            [], [ROOT], registry=registry, service_source=_no_services
        )

        assert [p.name for p in snapshot.programs] == ["App"]

    def test_missing_watch_path_skipped(self, tmp_test_dir, fake_registry_cls):
        snapshot = capture_snapshot(
            [tmp_test_dir / "nope"],
            [ROOT],
            registry=fake_registry_cls({f"{ROOT}\\App": {}}),
            service_source=_no_services,
            program_source=_no_programs,
        )

        assert snapshot.files == ()

    def test_failing_service_source_tolerated(self, fake_registry_cls):
        def failing():
            raise CaptureError("no PowerShell")

        logger = RecordingLogger()
        snapshot = capture_snapshot(
            [],
            [ROOT],
            registry=fake_registry_cls({f"{ROOT}\\App": {}}),
            service_source=failing,
            program_source=_no_programs,
            logger=logger,
        )

        assert snapshot.services == ()
        assert "no PowerShell" in logger.messages("warning")

    def test_all_sources_failing_raises(self, fake_registry_cls):
        def failing():
            raise CaptureError("unavailable")

        with pytest.raises(CaptureError, match="all snapshot sources failed"):
            capture_snapshot(
                [],
                ["HKLM:\\Broken"],
                registry=_DenyingRegistry(),
                service_source=failing,
                program_source=failing,
            )

    def test_invalid_depth(self):
        with pytest.raises(ValueError):
            capture_snapshot([], [], depth=0, service_source=_no_services, program_source=_no_programs)


class _DenyingRegistry:
    def list_subkeys(self, path):
        raise PermissionError(path)

    def read_key(self, path):
        raise PermissionError(path)
