"""
Tests for CLI module.

Drives the Typer application end to end against real SQLite files:

Commands:
    - validate: schema file validation
    - plan / apply: dry run and reconciliation, exit codes
    - inspect: live schema output
    - backups list / prune / restore
    - main callback: --version

Output Modes:
    - Human mode (--format text)
    - Agent mode (--format json): valid JSON on stdout
    - Quiet mode (--quiet): tab-separated output
"""

import json
import logging
import sqlite3

import pytest
from typer.testing import CliRunner

from schema_reconciler.cli import app
from schema_reconciler.executor.results import (
    EXIT_BACKUP_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_PLANNING_ERROR,
    EXIT_SUCCESS,
)
from schema_reconciler.storage.backup import SQLiteFileBackupProvider

SCHEMA_YAML = """\
name: jmf-bot
version: 2
tables:
  - name: command_usage
    columns:
      - {name: id, type: INTEGER, primary_key: true, auto_increment: true}
      - {name: user_id, type: VARCHAR(20), nullable: false}
      - {name: command, type: TEXT}
    indexes:
      - {name: idx_command_usage_user_id, columns: [user_id]}
drops:
  - {table: legacy_command_usage}
"""

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cli_runner():
    """Return CliRunner for testing Typer apps."""
    return CliRunner()


@pytest.fixture
def reset_output_mode():
    """Reset global output_mode and root logging handlers after each test."""
    from schema_reconciler.utils.console import output_mode

    original_format = output_mode.format
    original_quiet = output_mode.quiet
    output_mode._json_buffer.clear()
    root = logging.getLogger()
    handlers = list(root.handlers)

    yield output_mode

    output_mode.format = original_format
    output_mode.quiet = original_quiet
    output_mode._json_buffer.clear()
    root.handlers.clear()
    root.handlers.extend(handlers)


@pytest.fixture
def schema_file(tmp_path):
    path = tmp_path / "bot.schema.yaml"
    path.write_text(SCHEMA_YAML, encoding="utf-8")
    return path


@pytest.fixture
def db_path(tmp_path):
    """SQLite database holding only an undeclared legacy table."""
    path = tmp_path / "data" / "database.sqlite"
    path.parent.mkdir()
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE legacy_command_usage (id INTEGER PRIMARY KEY, name TEXT)")
    conn.execute("INSERT INTO legacy_command_usage (name) VALUES ('ping')")
    conn.commit()
    conn.close()
    return path


def _tables(path):
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall()
    finally:
        conn.close()
    return [r[0] for r in rows]


# ============================================================================
# validate
# ============================================================================


class TestValidateCommand:
    """Test 'validate' command."""

    def test_valid_schema(self, cli_runner, schema_file, reset_output_mode):
        result = cli_runner.invoke(app, ["validate", "--schema", str(schema_file)])

        assert result.exit_code == EXIT_SUCCESS
        assert "Schema is valid" in result.stdout

    def test_valid_schema_json(self, cli_runner, schema_file, reset_output_mode):
        result = cli_runner.invoke(
            app, ["validate", "--schema", str(schema_file), "--format", "json"]
        )

        assert result.exit_code == EXIT_SUCCESS
        data = json.loads(result.stdout)
        assert data["valid"] is True
        assert data["name"] == "jmf-bot"
        assert data["tables"] == ["command_usage"]
        assert data["drops"] == ["legacy_command_usage"]

    def test_invalid_schema(self, cli_runner, tmp_path, reset_output_mode):
        bad = tmp_path / "bad.yaml"
        bad.write_text("name: x\ntables:\n  - name: t\n    columns: []\n", encoding="utf-8")

        result = cli_runner.invoke(app, ["validate", "--schema", str(bad), "--format", "json"])

        assert result.exit_code == EXIT_PLANNING_ERROR
        data = json.loads(result.stdout)
        assert data["valid"] is False
        assert "Validation failed" in data["error"]

    def test_invalid_format(self, cli_runner, schema_file, reset_output_mode):
        result = cli_runner.invoke(
            app, ["validate", "--schema", str(schema_file), "--format", "yaml"]
        )
        assert result.exit_code == EXIT_PLANNING_ERROR


# ============================================================================
# plan
# ============================================================================


class TestPlanCommand:
    """Test 'plan' command."""

    def test_plan_json_lists_steps_with_sql(
        self, cli_runner, schema_file, db_path, reset_output_mode
    ):
        result = cli_runner.invoke(
            app,
            ["plan", "-s", str(schema_file), "-d", str(db_path), "--format", "json"],
        )

        assert result.exit_code == EXIT_SUCCESS
        data = json.loads(result.stdout)
        steps = data["plan"]["steps"]
        assert [s["kind"] for s in steps] == ["create_table", "create_index"]
        assert steps[0]["sql"][0].startswith('CREATE TABLE "command_usage"')
        assert data["plan"]["withheld_drops"] == ["legacy_command_usage"]
        assert _tables(db_path) == ["legacy_command_usage"]

    def test_plan_quiet_output(self, cli_runner, schema_file, db_path, reset_output_mode):
        result = cli_runner.invoke(
            app,
            ["plan", "-s", str(schema_file), "-d", f"sqlite:///{db_path}", "--quiet"],
        )

        assert result.exit_code == EXIT_SUCCESS
        lines = [line for line in result.stdout.splitlines() if "\t" in line]
        assert lines[0].startswith("0\tcreate_table\tcommand_usage\t")
        assert lines[1].startswith("1\tcreate_index\tcommand_usage\t")

    def test_plan_with_allow_destructive_includes_drop(
        self, cli_runner, schema_file, db_path, reset_output_mode
    ):
        result = cli_runner.invoke(
            app,
            [
                "plan", "-s", str(schema_file), "-d", str(db_path),
                "--allow-destructive", "--format", "json",
            ],
        )

        data = json.loads(result.stdout)
        kinds = [s["kind"] for s in data["plan"]["steps"]]
        assert "drop_table" in kinds
        assert "require_backup" in kinds
        assert data["plan"]["withheld_drops"] == []

    def test_plan_writes_output_file(
        self, cli_runner, schema_file, db_path, tmp_path, reset_output_mode
    ):
        output = tmp_path / "out" / "plan.json"
        result = cli_runner.invoke(
            app, ["plan", "-s", str(schema_file), "-d", str(db_path), "-o", str(output)]
        )

        assert result.exit_code == EXIT_SUCCESS
        written = json.loads(output.read_text(encoding="utf-8"))
        assert len(written["sql"]) == len(written["steps"])

    def test_plan_reads_database_from_env(
        self, cli_runner, schema_file, db_path, reset_output_mode
    ):
        result = cli_runner.invoke(
            app,
            ["plan", "-s", str(schema_file), "--format", "json"],
            env={"SCHEMA_RECONCILER_DATABASE": str(db_path)},
        )
        assert result.exit_code == EXIT_SUCCESS


# ============================================================================
# apply
# ============================================================================


class TestApplyCommand:
    """Test 'apply' command."""

    def test_apply_then_idempotent(self, cli_runner, schema_file, db_path, reset_output_mode):
        args = ["apply", "-s", str(schema_file), "-d", str(db_path), "--yes", "--format", "json"]

        first = cli_runner.invoke(app, args)
        assert first.exit_code == EXIT_SUCCESS
        data = json.loads(first.stdout)
        assert data["result"]["status"] == "success"
        assert [s["status"] for s in data["result"]["steps"]] == ["applied", "applied"]
        assert data["warnings"] == [
            "Withheld destructive request (use --allow-destructive): legacy_command_usage"
        ]
        assert _tables(db_path) == ["command_usage", "legacy_command_usage"]

        second = cli_runner.invoke(app, args)
        assert second.exit_code == EXIT_SUCCESS
        data = json.loads(second.stdout)
        assert data["result"]["steps"] == []
        assert data["result"]["states"][-1] == "idle"

    def test_apply_dry_run_changes_nothing(
        self, cli_runner, schema_file, db_path, reset_output_mode
    ):
        result = cli_runner.invoke(
            app, ["apply", "-s", str(schema_file), "-d", str(db_path), "--dry-run"]
        )

        assert result.exit_code == EXIT_SUCCESS
        assert _tables(db_path) == ["legacy_command_usage"]

    def test_destructive_apply_backs_up_first(
        self, cli_runner, schema_file, db_path, tmp_path, reset_output_mode
    ):
        backup_dir = tmp_path / "backups"
        result = cli_runner.invoke(
            app,
            [
                "apply", "-s", str(schema_file), "-d", str(db_path),
                "--allow-destructive", "--yes", "--backup-dir", str(backup_dir), "--quiet",
            ],
        )

        assert result.exit_code == EXIT_SUCCESS
        assert _tables(db_path) == ["command_usage"]
        status, applied, unapplied, location = result.stdout.strip().splitlines()[-1].split("\t")
        assert (status, applied, unapplied) == ("success", "4", "0")
        assert location.startswith(str(backup_dir / "database.sqlite.backup."))
        assert _tables(location) == ["legacy_command_usage"]

    def test_backup_failure_applies_nothing(
        self, cli_runner, schema_file, db_path, tmp_path, reset_output_mode
    ):
        not_a_dir = tmp_path / "backups"
        not_a_dir.write_text("occupied", encoding="utf-8")

        result = cli_runner.invoke(
            app,
            [
                "apply", "-s", str(schema_file), "-d", str(db_path),
                "--allow-destructive", "--yes", "--backup-dir", str(not_a_dir),
                "--format", "json",
            ],
        )

        assert result.exit_code == EXIT_BACKUP_ERROR
        data = json.loads(result.stdout)
        assert data["result"]["status"] == "aborted"
        assert data["result"]["error_kind"] == "backup"
        assert _tables(db_path) == ["legacy_command_usage"]

    def test_declined_confirmation_changes_nothing(
        self, cli_runner, schema_file, db_path, reset_output_mode
    ):
        result = cli_runner.invoke(
            app,
            ["apply", "-s", str(schema_file), "-d", str(db_path), "--allow-destructive"],
            input="n\n",
        )

        assert result.exit_code == EXIT_SUCCESS
        assert "Cancelled by user" in result.stdout
        assert _tables(db_path) == ["legacy_command_usage"]

    def test_invalid_schema_exits_planning_error(
        self, cli_runner, tmp_path, db_path, reset_output_mode
    ):
        bad = tmp_path / "bad.yaml"
        bad.write_text("name: [unclosed\n", encoding="utf-8")

        result = cli_runner.invoke(app, ["apply", "-s", str(bad), "-d", str(db_path), "--yes"])

        assert result.exit_code == EXIT_PLANNING_ERROR


# ============================================================================
# inspect
# ============================================================================


class TestInspectCommand:
    """Test 'inspect' command."""

    def test_inspect_json(self, cli_runner, db_path, reset_output_mode):
        result = cli_runner.invoke(app, ["inspect", "-d", str(db_path), "--format", "json"])

        assert result.exit_code == EXIT_SUCCESS
        data = json.loads(result.stdout)
        table = data["snapshot"]["tables"]["legacy_command_usage"]
        assert list(table["columns"]) == ["id", "name"]
        assert table["row_count"] == 1

    def test_inspect_quiet(self, cli_runner, db_path, reset_output_mode):
        result = cli_runner.invoke(app, ["inspect", "-d", str(db_path), "--quiet"])

        assert result.exit_code == EXIT_SUCCESS
        assert "legacy_command_usage\tname\tTEXT\tTrue" in result.stdout

    def test_missing_database_file(self, cli_runner, tmp_path, reset_output_mode):
        missing = tmp_path / "missing.sqlite"
        result = cli_runner.invoke(app, ["inspect", "-d", str(missing)])

        assert result.exit_code == EXIT_CONNECTION_ERROR
        assert not missing.exists()


# ============================================================================
# backups
# ============================================================================


class TestBackupsCommands:
    """Test 'backups list', 'backups prune' and 'backups restore'."""

    def _make_backups(self, db_path, count):
        provider = SQLiteFileBackupProvider(max_backups=10)
        return [provider.create_backup(str(db_path)) for _ in range(count)]

    def test_list_quiet(self, cli_runner, db_path, reset_output_mode):
        handles = self._make_backups(db_path, 2)

        result = cli_runner.invoke(
            app, ["backups", "list", "--dir", str(db_path.parent), "--quiet"]
        )

        assert result.exit_code == EXIT_SUCCESS
        locations = [line.split("\t")[2] for line in result.stdout.strip().splitlines()]
        assert sorted(locations) == sorted(h.location for h in handles)

    def test_list_empty_directory(self, cli_runner, tmp_path, reset_output_mode):
        result = cli_runner.invoke(app, ["backups", "list", "--dir", str(tmp_path)])

        assert result.exit_code == EXIT_SUCCESS
        assert "No backups recorded" in result.stdout

    def test_prune_json(self, cli_runner, db_path, reset_output_mode):
        self._make_backups(db_path, 3)

        result = cli_runner.invoke(
            app,
            ["backups", "prune", "--dir", str(db_path.parent), "--keep", "1", "--format", "json"],
        )

        assert result.exit_code == EXIT_SUCCESS
        data = json.loads(result.stdout)
        assert len(data["removed"]) == 2

    def test_restore(self, cli_runner, db_path, tmp_path, reset_output_mode):
        (handle,) = self._make_backups(db_path, 1)
        target = tmp_path / "restored.sqlite"

        result = cli_runner.invoke(
            app,
            ["backups", "restore", "--backup", handle.location, "--target", str(target), "--yes"],
        )

        assert result.exit_code == EXIT_SUCCESS
        assert _tables(target) == ["legacy_command_usage"]


# ============================================================================
# main callback
# ============================================================================


def test_version_flag(cli_runner):
    result = cli_runner.invoke(app, ["--version"])
    assert result.exit_code == EXIT_SUCCESS
    assert "schema-reconciler" in result.stdout


def test_no_command_shows_hint(cli_runner):
    result = cli_runner.invoke(app, [])
    assert "Use --help" in result.stdout
