"""
Tests for storage.writer module.

Tests JSON artifact writing (plans, results, backup manifest) with proper
error handling.
"""

import json

import pytest

from schema_reconciler.storage.writer import read_json_list, write_json, write_plan, write_result


class TestWriteJson:
    """Tests for write_json function."""

    def test_writes_pretty_json_with_newline(self, tmp_path):
        """Test indent=2 formatting and trailing newline."""
        path = tmp_path / "plan.json"

        write_json(path, {"steps": [], "dialect": "sqlite"})

        content = path.read_text(encoding="utf-8")
        assert content.endswith("}\n")
        assert '  "steps": []' in content
        assert json.loads(content) == {"steps": [], "dialect": "sqlite"}

    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / "reports" / "nested" / "result.json"
        write_json(str(path), [1, 2])
        assert json.loads(path.read_text(encoding="utf-8")) == [1, 2]

    def test_unicode_preserved(self, tmp_path):
        path = tmp_path / "u.json"
        write_json(path, {"name": "café"})
        assert "café" in path.read_text(encoding="utf-8")

    def test_not_serializable(self, tmp_path):
        """Test that TypeError names the target file."""
        with pytest.raises(TypeError, match="not JSON-serializable"):
            write_json(tmp_path / "bad.json", {"value": object()})

    def test_unwritable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises(OSError, match="Check disk space and permissions"):
            write_json(blocker / "out.json", {})


class TestReadJsonList:
    """Tests for read_json_list function."""

    def test_missing_file_is_empty(self, tmp_path):
        assert read_json_list(tmp_path / "backups.json") == []

    def test_reads_array(self, tmp_path):
        path = tmp_path / "backups.json"
        path.write_text('[{"filename": "a"}]', encoding="utf-8")
        assert read_json_list(path) == [{"filename": "a"}]

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "backups.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(ValueError, match="Corrupt JSON file"):
            read_json_list(path)

    def test_object_instead_of_array(self, tmp_path):
        path = tmp_path / "backups.json"
        path.write_text("{}", encoding="utf-8")
        with pytest.raises(ValueError, match="Expected a JSON array"):
            read_json_list(path)


def test_write_plan_and_result(tmp_path):
    write_plan(tmp_path / "plan.json", {"steps": [{"kind": "add_column"}]})
    write_result(tmp_path / "result.json", {"status": "success", "exit_code": 0})

    assert json.loads((tmp_path / "plan.json").read_text())["steps"][0]["kind"] == "add_column"
    assert json.loads((tmp_path / "result.json").read_text())["exit_code"] == 0
