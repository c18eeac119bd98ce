"""
CLI entrypoint for Schema Reconciler.

Provides a dual-mode command-line interface with:
- Human-friendly output: Rich spinners, tables, colored panels
- Agent-friendly output: Structured JSON for automation
- Quiet mode: Tab-separated minimal output for shell scripts

Commands:
    plan: Inspect the database and print the migration plan (dry run)
    apply: Reconcile the database with the declared schema
    inspect: Print the live schema snapshot
    validate: Validate a declared schema file without touching a database
    backups list / prune / restore: Manage backup artifacts

Exit codes:
    0: Success (also: nothing to do, dry run)
    1: Planning error (invalid schema file, unsafe or inexpressible change)
    2: Connection or introspection error
    3: Partial application (auto-commit dialect, a step failed)
    4: Rolled back (transactional dialect, a step failed, nothing changed)
    5: Backup error (nothing applied)

Examples:
    # Show what would change
    schema-reconciler plan --schema bot.schema.yaml --database sqlite:///data/database.sqlite

    # Apply, including the schema file's explicit drops
    schema-reconciler apply -s bot.schema.yaml -d sqlite:///data/database.sqlite \\
        --allow-destructive --yes

    # Automation
    SCHEMA_RECONCILER_DATABASE=mysql://bot:secret@db/jmf \\
        schema-reconciler apply -s bot.schema.yaml --format json --yes

Security:
    - Prefer the SCHEMA_RECONCILER_DATABASE environment variable for URLs
      carrying passwords
    - Displayed URLs and log lines never contain the password
"""

from pathlib import Path

import typer
from rich.traceback import install as install_rich_traceback

from schema_reconciler.config.capabilities import Dialect
from schema_reconciler.config.constants import DEFAULT_MAX_BACKUPS
from schema_reconciler.config.loader import load_schema
from schema_reconciler.exceptions import (
    BackupError,
    SchemaFileNotFoundError,
    SchemaReconcilerError,
    SchemaValidationError,
)
from schema_reconciler.executor.results import (
    EXIT_BACKUP_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_PLANNING_ERROR,
    EXIT_SUCCESS,
    OverallStatus,
)
from schema_reconciler.planner.sql import render_plan
from schema_reconciler.reconciler import Reconciler
from schema_reconciler.storage.backup import (
    MySQLDumpBackupProvider,
    SQLiteFileBackupProvider,
    list_backups,
    prune_backups,
    restore_sqlite_backup,
)
from schema_reconciler.storage.connection import DatabaseConnection, open_connection
from schema_reconciler.storage.inspector import inspect as inspect_database
from schema_reconciler.storage.writer import write_plan, write_result
from schema_reconciler.utils.console import (
    error,
    info,
    output_mode,
    print_backups_table,
    print_plan_table,
    print_result_summary,
    print_snapshot,
    print_statements,
    spinner,
    success,
    warning,
)
from schema_reconciler.utils.logging import setup_logging

# Install Rich tracebacks for better error messages
install_rich_traceback(show_locals=False)

DATABASE_ENVVAR = "SCHEMA_RECONCILER_DATABASE"

app = typer.Typer(
    name="schema-reconciler",
    help="Reconcile a live SQLite or MySQL schema with a declared schema",
    add_completion=False,
)


def _configure_output(format: str, quiet: bool, verbose: bool) -> None:
    if format not in ("text", "json"):
        error(f"Invalid format: {format}. Must be 'text' or 'json'")
        raise typer.Exit(EXIT_PLANNING_ERROR)
    output_mode.format = format
    output_mode.quiet = quiet
    # JSON logs would clutter the human view; keep warnings and errors
    setup_logging(verbose=verbose, quiet_logs=not verbose)


def _load_declared(schema: Path):
    try:
        with spinner("Loading declared schema..."):
            declared = load_schema(schema)
    except SchemaFileNotFoundError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_PLANNING_ERROR)
    except SchemaValidationError as e:
        error(f"Schema validation failed: {e}")
        output_mode.flush_json()
        raise typer.Exit(EXIT_PLANNING_ERROR)
    success(f"Loaded schema '{declared.name}' v{declared.version} ({len(declared.tables)} tables)")
    return declared


def _backup_provider(
    conn: DatabaseConnection,
    backup_dir: Path | None,
    max_backups: int,
    mysqldump: str,
):
    if conn.dialect == Dialect.SQLITE:
        return SQLiteFileBackupProvider(backup_dir=backup_dir, max_backups=max_backups)
    return MySQLDumpBackupProvider(
        conn.url,
        backup_dir or Path("backups"),
        mysqldump_path=mysqldump,
        max_backups=max_backups,
    )


def _write_output(output: Path | None, writer, data: dict, what: str) -> None:
    if output is None:
        return
    try:
        writer(output, data)
        info(f"{what} written to {output}")
    except (OSError, TypeError) as e:
        warning(f"Could not write {output}: {e}")


# ============================================================================
# plan / apply
# ============================================================================


def _run_plan(
    schema: Path,
    database: str,
    dialect: str | None,
    allow_destructive: bool,
    output: Path | None,
) -> None:
    declared = _load_declared(schema)
    try:
        with open_connection(database, dialect) as conn:
            with spinner("Inspecting database and computing plan..."):
                result = Reconciler(conn, allow_destructive=allow_destructive).plan(declared)
    except SchemaReconcilerError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_CONNECTION_ERROR)

    if result.status == OverallStatus.ABORTED:
        error(result.error or "Planning failed")
        output_mode.add_json("result", result.to_dict())
        output_mode.flush_json()
        raise typer.Exit(result.exit_code)

    statements = render_plan(result.plan)
    print_plan_table(result.plan.to_dict(), statements)
    print_statements(statements)
    _write_output(output, write_plan, dict(result.plan.to_dict(), sql=statements), "Plan")
    output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def plan(
    schema: Path = typer.Option(
        ...,
        "--schema",
        "-s",
        help="Path to the declared schema YAML file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    database: str = typer.Option(
        ...,
        "--database",
        "-d",
        envvar=DATABASE_ENVVAR,
        help="Database URL (sqlite:///path.db, a file path, or mysql://user:pw@host/db)",
    ),
    dialect: str = typer.Option(
        None,
        "--dialect",
        help="Override dialect detection: 'sqlite' or 'mysql'",
    ),
    allow_destructive: bool = typer.Option(
        False,
        "--allow-destructive",
        help="Include the schema file's explicit drop requests in the plan",
    ),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Also write the plan as JSON to this file",
    ),
    format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: 'text' (human-friendly) or 'json' (machine-readable)",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Minimal tab-separated output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    Compute and print the migration plan without executing it.

    Exit codes:
      0: Plan computed (possibly empty)
      1: Schema invalid or change not expressible safely
      2: Database unreachable or introspection failed
    """
    _configure_output(format, quiet, verbose)
    _run_plan(schema, database, dialect, allow_destructive, output)


@app.command()
def apply(
    schema: Path = typer.Option(
        ...,
        "--schema",
        "-s",
        help="Path to the declared schema YAML file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    database: str = typer.Option(
        ...,
        "--database",
        "-d",
        envvar=DATABASE_ENVVAR,
        help="Database URL (sqlite:///path.db, a file path, or mysql://user:pw@host/db)",
    ),
    dialect: str = typer.Option(
        None,
        "--dialect",
        help="Override dialect detection: 'sqlite' or 'mysql'",
    ),
    allow_destructive: bool = typer.Option(
        False,
        "--allow-destructive",
        help="Apply the schema file's explicit drop requests",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Compute and print the plan only (same as 'plan')",
    ),
    backup_dir: Path = typer.Option(
        None,
        "--backup-dir",
        help="Backup directory (default: next to the SQLite file, ./backups for MySQL)",
    ),
    max_backups: int = typer.Option(
        DEFAULT_MAX_BACKUPS,
        "--max-backups",
        min=1,
        help="Backups of this database to keep",
    ),
    mysqldump: str = typer.Option(
        "mysqldump",
        "--mysqldump",
        help="mysqldump executable used for MySQL backups",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt for destructive plans",
    ),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Also write the result as JSON to this file",
    ),
    format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: 'text' (human-friendly) or 'json' (machine-readable)",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Minimal tab-separated output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    Reconcile the database with the declared schema.

    Plans with destructive steps (rebuilds, column changes, drops) are backed
    up first; if the backup fails nothing is applied.

    Exit codes:
      0: Success (or nothing to do)
      1: Schema invalid or change not expressible safely
      2: Database unreachable or introspection failed
      3: Partial (MySQL): some steps committed, see the report
      4: Rolled back (SQLite): nothing changed
      5: Backup failed: nothing changed
    """
    _configure_output(format, quiet, verbose)
    if dry_run:
        _run_plan(schema, database, dialect, allow_destructive, output)

    declared = _load_declared(schema)

    try:
        with open_connection(database, dialect) as conn:
            reconciler = Reconciler(
                conn,
                _backup_provider(conn, backup_dir, max_backups, mysqldump),
                allow_destructive=allow_destructive,
            )

            if output_mode.is_human() and not yes:
                with spinner("Computing plan..."):
                    preview = reconciler.plan(declared)
                if preview.plan is not None and preview.plan.has_destructive_steps:
                    print_plan_table(preview.plan.to_dict())
                    if not typer.confirm("Plan contains destructive steps. Continue?"):
                        info("Cancelled by user")
                        raise typer.Exit(EXIT_SUCCESS)

            with spinner("Reconciling..."):
                result = reconciler.reconcile(declared)
    except SchemaReconcilerError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_CONNECTION_ERROR)

    if result.plan is not None and result.plan.withheld_drops:
        for withheld in result.plan.withheld_drops:
            warning(
                f"Withheld destructive request (use --allow-destructive): {withheld.describe()}"
            )

    _write_output(output, write_result, result.to_dict(), "Result")
    print_result_summary(result.to_dict())
    raise typer.Exit(result.exit_code)


# ============================================================================
# inspect / validate
# ============================================================================


@app.command()
def inspect(
    database: str = typer.Option(
        ...,
        "--database",
        "-d",
        envvar=DATABASE_ENVVAR,
        help="Database URL (sqlite:///path.db, a file path, or mysql://user:pw@host/db)",
    ),
    dialect: str = typer.Option(
        None,
        "--dialect",
        help="Override dialect detection: 'sqlite' or 'mysql'",
    ),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Minimal tab-separated output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    Print the live schema: tables, columns (logical types), indexes and foreign keys.
    """
    _configure_output(format, quiet, verbose)
    try:
        with open_connection(database, dialect, must_exist=True) as conn:
            with spinner("Inspecting database..."):
                snapshot = inspect_database(conn)
    except SchemaReconcilerError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_CONNECTION_ERROR)

    print_snapshot(snapshot.to_dict())
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def validate(
    schema: Path = typer.Option(
        ...,
        "--schema",
        "-s",
        help="Path to the declared schema YAML file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
):
    """
    Validate a declared schema file without connecting to a database.

    Exit codes:
      0: Schema is valid
      1: Schema is invalid
    """
    _configure_output(format, False, False)

    try:
        declared = load_schema(schema)
    except (SchemaFileNotFoundError, SchemaValidationError) as e:
        error(f"Validation failed: {e}")
        if output_mode.is_agent():
            output_mode.add_json("valid", False)
            output_mode.flush_json()
        raise typer.Exit(EXIT_PLANNING_ERROR)

    success("Schema is valid")
    info(f"Name: {declared.name} (version {declared.version})")
    info(f"Tables: {', '.join(declared.table_names)}")
    if declared.drops:
        info(f"Drop requests: {', '.join(d.describe() for d in declared.drops)}")

    if output_mode.is_agent():
        output_mode.add_json("valid", True)
        output_mode.add_json("name", declared.name)
        output_mode.add_json("version", declared.version)
        output_mode.add_json("tables", declared.table_names)
        output_mode.add_json("drops", [d.describe() for d in declared.drops])
        output_mode.flush_json()

    raise typer.Exit(EXIT_SUCCESS)


# ============================================================================
# backups
# ============================================================================

backups_app = typer.Typer(help="List, prune and restore backups")
app.add_typer(backups_app, name="backups")


@backups_app.command("list")
def backups_list(
    directory: Path = typer.Option(..., "--dir", help="Backup directory"),
    prefix: str = typer.Option(None, "--prefix", help="Only files starting with this prefix"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Minimal tab-separated output"),
):
    """
    List recorded backups, newest first.
    """
    _configure_output(format, quiet, False)
    try:
        backups = list_backups(directory, prefix)
    except BackupError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_BACKUP_ERROR)

    print_backups_table([b.to_dict() for b in backups])
    raise typer.Exit(EXIT_SUCCESS)


@backups_app.command("prune")
def backups_prune(
    directory: Path = typer.Option(..., "--dir", help="Backup directory"),
    keep: int = typer.Option(DEFAULT_MAX_BACKUPS, "--keep", min=1, help="Backups to keep"),
    prefix: str = typer.Option(None, "--prefix", help="Only prune files starting with this prefix"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
):
    """
    Delete all but the newest backups.
    """
    _configure_output(format, False, False)
    try:
        removed = prune_backups(directory, keep, prefix)
    except (BackupError, ValueError) as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_BACKUP_ERROR)

    success(f"Removed {len(removed)} backup(s), kept up to {keep}")
    if output_mode.is_agent():
        output_mode.add_json("removed", removed)
        output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@backups_app.command("restore")
def backups_restore(
    backup: Path = typer.Option(
        ...,
        "--backup",
        help="SQLite backup file to restore",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    target: Path = typer.Option(..., "--target", help="SQLite database file to overwrite"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
):
    """
    Restore a SQLite backup over a database file.
    """
    _configure_output(format, False, False)
    if output_mode.is_human() and not yes:
        if not typer.confirm(f"Overwrite {target} with {backup.name}?"):
            info("Cancelled by user")
            raise typer.Exit(EXIT_SUCCESS)

    try:
        restored = restore_sqlite_backup(backup, target)
    except BackupError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_BACKUP_ERROR)

    success(f"Restored {restored} from {backup.name}")
    if output_mode.is_agent():
        output_mode.add_json("restored", str(restored))
        output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
    ),
):
    """
    Schema Reconciler - bring a live database in line with a declared schema.

    Use 'schema-reconciler COMMAND --help' for detailed command documentation.
    """
    if version:
        from rich.console import Console

        console = Console()
        console.print(f"[bold cyan]schema-reconciler[/bold cyan] version {_read_version()}")
        raise typer.Exit(EXIT_SUCCESS)

    if ctx.invoked_subcommand is None:
        from rich.console import Console

        console = Console()
        console.print("[yellow]Use --help to see available commands[/yellow]")
        console.print()
        console.print("Quick start:")
        console.print("  schema-reconciler plan --schema schema.yaml --database sqlite:///bot.db")


def _read_version() -> str:
    """Version from installed package metadata (pyproject.toml)."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("schema-reconciler")
    except PackageNotFoundError:
        # Running from a source checkout without an install
        return "0.1.0"


if __name__ == "__main__":
    app()
