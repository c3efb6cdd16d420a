"""
Tests for change-set validation module.

This module tests the validation functionality that checks change-set
documents without generating any scripts.
"""

from __future__ import annotations

import json

from pkgtrace.changeset import changeset_to_dict, save_changeset
from pkgtrace.validation import validate_changeset

KEY = "HKLM:\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\App"


def _write(tmp_path, data, name="changes.json"):
    path = tmp_path / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def _info(**extra):
    info = {"ProjectName": "App", "Timestamp": "2025-01-01 00:00:00", "SchemaVersion": 2}
    info.update(extra)
    return info


class TestValidateChangeset:
    """Tests for validate_changeset function."""

    def test_valid_changeset(self, contoso_changeset, tmp_path):
        path = save_changeset(contoso_changeset, tmp_path / "Changes.json")

        result = validate_changeset(path)

        assert result.status == "valid"
        assert result.errors == []
        assert result.warnings == []
        assert result.app_name == "Contoso App"
        assert result.changeset_path == str(path)

    def test_missing_file(self, tmp_path):
        result = validate_changeset(tmp_path / "missing.json")

        assert result.status == "invalid"
        assert "not found" in result.errors[0]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{", encoding="utf-8")

        result = validate_changeset(path)

        assert result.status == "invalid"
        assert "Invalid JSON" in result.errors[0]

    def test_not_an_object(self, tmp_path):
        result = validate_changeset(_write(tmp_path, [1, 2]))
        assert result.errors == ["Change-set must be a JSON object"]

    def test_missing_installation_info(self, tmp_path):
        result = validate_changeset(_write(tmp_path, {"NewFiles": []}))
        assert result.errors == ["Missing required field: InstallationInfo"]

    def test_missing_project_name_and_timestamp(self, tmp_path):
        result = validate_changeset(_write(tmp_path, {"InstallationInfo": {"SchemaVersion": 2}}))

        assert result.status == "invalid"
        assert "Missing required field: InstallationInfo.ProjectName" in result.errors
        assert "Missing required field: InstallationInfo.Timestamp" in result.errors

    def test_section_must_be_array(self, tmp_path):
        result = validate_changeset(_write(tmp_path, {"InstallationInfo": _info(), "NewFiles": "x"}))
        assert result.errors == ["NewFiles: must be an array"]

    def test_items_must_be_objects(self, tmp_path):
        result = validate_changeset(
            _write(tmp_path, {"InstallationInfo": _info(), "NewServices": ["svc"]})
        )
        assert result.errors == ["NewServices[0]: must be an object"]

    def test_no_application_is_a_warning(self, tmp_path):
        result = validate_changeset(
            _write(tmp_path, {"InstallationInfo": _info(), "NewFiles": [{"FullName": "C:\\x"}]})
        )

        assert result.status == "valid"
        assert result.app_name is None
        assert any("No scripts can be generated" in w for w in result.warnings)

    def test_legacy_layout_warnings(self, tmp_path):
        data = {
            "InstallationInfo": {"ProjectName": "App", "Timestamp": "2025-01-01 00:00:00"},
            "NewRegistryKeys": {"Path": KEY, "DisplayName": "App"},
            "NewFiles": [{"Length": 3}],
        }

        result = validate_changeset(_write(tmp_path, data))

        assert result.status == "valid"
        assert result.app_name == "App"
        assert any("SchemaVersion" in w for w in result.warnings)
        assert any("single object" in w for w in result.warnings)
        assert any("without FullName" in w for w in result.warnings)
        assert any("no DisplayVersion" in w for w in result.warnings)

    def test_inaccessible_key_warning(self, contoso_changeset, tmp_path):
        data = changeset_to_dict(contoso_changeset)
        data["NewRegistryKeys"].append({"Path": KEY, "Values": {}, "Properties": "<inaccessible>"})

        result = validate_changeset(_write(tmp_path, data))

        assert result.status == "valid"
        assert any("could not be read" in w for w in result.warnings)
