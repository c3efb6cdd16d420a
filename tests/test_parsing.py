"""
Tests for pkgtrace.parsing module.

Tests uninstall-string handling including:
- Product code extraction and normalization
- Command line splitting (quoted, unquoted with spaces, bare)
- MSI/EXE classification
- Candidate precedence per registry entry
"""

from __future__ import annotations

import pytest

from pkgtrace.parsing import (
    classify_uninstall_string,
    collect_product_codes,
    extract_product_codes,
    is_uninstall_key,
    select_uninstall_candidate,
    split_command,
)

pytestmark = pytest.mark.unit

CODE = "{AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE}"


class TestExtractProductCodes:
    """Tests for extract_product_codes function."""

    def test_code_is_upper_cased(self):
        assert extract_product_codes(f"MsiExec.exe /X{CODE.lower()}") == [CODE]

    def test_duplicates_removed_in_first_seen_order(self):
        other = "{00000000-1111-2222-3333-444444444444}"
        codes = extract_product_codes(f"x {CODE}", f"{other} {CODE.lower()}")
        assert codes == [CODE, other]

    def test_unbracketed_guid_ignored(self):
        assert extract_product_codes("AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE") == []

    def test_none_and_empty_ignored(self):
        assert extract_product_codes(None, "") == []


class TestIsUninstallKey:
    """Tests for is_uninstall_key function."""

    @pytest.mark.parametrize(
        "path",
        [
            "HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\App",
            "HKLM:\\SOFTWARE\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\App",
            "HKCU:\\Software\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\App",
        ],
    )
    def test_uninstall_subkeys(self, path):
        assert is_uninstall_key(path) is True

    def test_uninstall_root_itself_is_not_an_entry(self):
        assert not is_uninstall_key(
            "HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall"
        )

    def test_other_key(self):
        assert not is_uninstall_key("HKLM:\\SOFTWARE\\Contoso\\App")


class TestSplitCommand:
    """Tests for split_command function."""

    def test_quoted_path_with_arguments(self):
        assert split_command('"C:\\App Dir\\u.exe" /S /quiet') == (
            "C:\\App Dir\\u.exe",
            "/S /quiet",
        )

    def test_quoted_path_without_arguments(self):
        assert split_command('"C:\\App Dir\\u.exe"') == ("C:\\App Dir\\u.exe", "")

    def test_unquoted_path_with_spaces(self):
        assert split_command("C:\\Program Files\\App\\u.exe /S") == (
            "C:\\Program Files\\App\\u.exe",
            "/S",
        )

    def test_bare_command(self):
        assert split_command("uninstall.cmd --all") == ("uninstall.cmd", "--all")


class TestClassifyUninstallString:
    """Tests for classify_uninstall_string function."""

    def test_msiexec_with_code_is_msi(self):
        candidate = classify_uninstall_string(f"MsiExec.exe /I{CODE}")
        assert candidate.kind == "MSI"
        assert candidate.product_code == CODE
        assert candidate.command is None

    def test_msiexec_without_code_is_dropped(self):
        assert classify_uninstall_string("msiexec.exe /x something") is None

    def test_exe_string(self):
        candidate = classify_uninstall_string(
            '"C:\\Program Files\\App\\unins000.exe" /SILENT',
            source="QuietUninstallString",
            registry_path="HKLM:\\X",
        )
        assert candidate.kind == "EXE"
        assert candidate.command == "C:\\Program Files\\App\\unins000.exe"
        assert candidate.arguments == "/SILENT"
        assert candidate.source == "QuietUninstallString"
        assert candidate.registry_path == "HKLM:\\X"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_values(self, value):
        assert classify_uninstall_string(value) is None


class TestSelectUninstallCandidate:
    """Tests for select_uninstall_candidate function."""

    def test_quiet_string_preferred(self):
        values = {
            "UninstallString": '"C:\\App\\u.exe"',
            "QuietUninstallString": '"C:\\App\\u.exe" /S',
        }
        candidate = select_uninstall_candidate(values)
        assert candidate.source == "QuietUninstallString"
        assert candidate.arguments == "/S"

    def test_exe_preferred_over_msi(self):
        values = {
            "UninstallString": f"MsiExec.exe /X{CODE}",
            "QuietUninstallString": '"C:\\App\\u.exe" /S',
        }
        assert select_uninstall_candidate(values).kind == "EXE"

    def test_msi_when_only_msi(self):
        candidate = select_uninstall_candidate({"UninstallString": f"MsiExec.exe /X{CODE}"})
        assert candidate.kind == "MSI"
        assert candidate.product_code == CODE

    def test_no_uninstall_values(self):
        assert select_uninstall_candidate({"DisplayName": "App"}) is None


class TestCollectProductCodes:
    """Tests for collect_product_codes function."""

    def test_codes_from_paths_and_strings(self):
        other = "{00000000-1111-2222-3333-444444444444}"
        entries = [
            (f"HKLM:\\...\\Uninstall\\{CODE}", {}),
            ("HKLM:\\...\\Uninstall\\App", {"UninstallString": f"MsiExec.exe /X{other}"}),
        ]
        assert collect_product_codes(entries) == [CODE, other]
