"""
Rich console utilities for dual-mode CLI output.

Provides readable terminal output for operators and structured JSON for
automation. All output functions adapt to the global output_mode setting.

This module provides:
- OutputMode: Class to manage output format (text/json/quiet)
- Context manager: spinner()
- Output functions: success(), error(), warning(), info()
- Display functions: print_plan_table(), print_statements(),
  print_result_summary(), print_snapshot(), print_backups_table()

Human Mode (--format text):
    - Rich spinners and colored tables
    - Panels for the final outcome
    - ANSI colors and Unicode symbols

Agent Mode (--format json):
    - Structured JSON output to stdout
    - No ANSI codes or spinners
    - Machine-readable format

Quiet Mode (--quiet):
    - Minimal output
    - Tab-separated values
    - No decorations

Examples:
    >>> from schema_reconciler.utils.console import output_mode, spinner, success
    >>> output_mode.format = "text"
    >>> with spinner("Inspecting database..."):
    ...     snapshot = inspect(conn)
    >>> success("Inspected 5 tables")

    >>> output_mode.format = "json"
    >>> success("Plan computed")   # Buffers to JSON
    >>> output_mode.flush_json()   # Outputs JSON to stdout
"""

from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


class OutputMode:
    """
    Output mode configuration for dual-mode CLI.

    Attributes:
        format: Output format - "text" (human) or "json" (agent)
        quiet: If True, suppress non-essential output
        _json_buffer: Internal buffer for JSON output in agent mode

    Examples:
        >>> mode = OutputMode()
        >>> mode.is_human()
        True
        >>> mode.format = "json"
        >>> mode.is_agent()
        True
    """

    def __init__(self, format_type: str = "text", quiet: bool = False):
        """
        Initialize output mode.

        Args:
            format_type: Output format - "text" for human, "json" for agent
            quiet: If True, suppress non-essential output

        Raises:
            ValueError: If format_type is not "text" or "json"
        """
        if format_type not in ["text", "json"]:
            raise ValueError(f"Invalid format: {format_type}. Must be 'text' or 'json'")

        self.format = format_type
        self.quiet = quiet
        self._json_buffer: dict[str, Any] = {}

    def is_human(self) -> bool:
        return self.format == "text"

    def is_agent(self) -> bool:
        return self.format == "json"

    def add_json(self, key: str, value: Any) -> None:
        """Add key-value pair to the JSON buffer (flushed by flush_json())."""
        self._json_buffer[key] = value

    def flush_json(self) -> None:
        """
        Output buffered JSON to stdout and clear buffer.

        Only outputs in agent mode. In human mode, this is a no-op.
        """
        if self.is_agent() and self._json_buffer:
            json.dump(self._json_buffer, sys.stdout, indent=2, default=str)
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._json_buffer.clear()


# Global output mode instance (set by CLI flags)
output_mode = OutputMode()

# Global Rich console instances for human mode
console = Console()  # stdout
console_err = Console(stderr=True)  # stderr

_STATUS_STYLES = {
    "applied": "green",
    "success": "green",
    "skipped-already-satisfied": "cyan",
    "planned": "cyan",
    "failed": "red",
    "aborted": "red",
    "rolled-back": "yellow",
    "partial": "yellow",
    "not-run": "dim",
}


def _styled_status(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@contextmanager
def spinner(message: str):
    """
    Show a spinner while a block runs (human mode only).

    Examples:
        >>> with spinner("Backing up database..."):
        ...     handle = provider.create_backup(conn.identifier)
    """
    if output_mode.is_human() and not output_mode.quiet:
        with console.status(f"[bold blue]{message}", spinner="dots") as status:
            yield status
    else:
        yield None


def success(message: str) -> None:
    """
    Print a success message.

    Human mode: Green checkmark with message
    Agent mode: Buffer to JSON
    Quiet mode: Silent
    """
    if output_mode.is_agent():
        output_mode.add_json("message", message)
    elif not output_mode.quiet:
        console.print(f"[green]✓[/green] {message}")


def error(message: str) -> None:
    """
    Print an error message.

    Human mode: Red X with message to stderr (also in quiet mode)
    Agent mode: Buffer to JSON
    """
    if output_mode.is_agent():
        output_mode.add_json("error", message)
    else:
        console_err.print(f"[red]✗[/red] {message}", style="red")


def warning(message: str) -> None:
    """
    Print a warning message.

    Human mode: Yellow warning symbol with message
    Agent mode: Appended to the "warnings" list in the JSON buffer
    """
    if output_mode.is_agent():
        warnings = output_mode._json_buffer.setdefault("warnings", [])
        warnings.append(message)
    elif not output_mode.quiet:
        console.print(f"[yellow]⚠[/yellow] {message}", style="yellow")


def info(message: str) -> None:
    """Print an info message (human mode only)."""
    if output_mode.is_human() and not output_mode.quiet:
        console.print(f"[blue]ℹ[/blue] {message}")


def print_plan_table(plan_data: dict[str, Any], statements: list[list[str]] | None = None) -> None:
    """
    Print the steps of a migration plan.

    Human mode: Rich table (index, kind, table, description, destructive flag)
    Agent mode: Buffer the plan under "plan"
    Quiet mode: index<TAB>kind<TAB>table<TAB>description per step

    Args:
        plan_data: MigrationPlan.to_dict()
        statements: Rendered statements per step (index-aligned), shown in
            agent mode under each step's "sql"
    """
    steps = plan_data.get("steps", [])

    if output_mode.is_agent():
        if statements is not None:
            steps = [dict(step, sql=sql) for step, sql in zip(steps, statements)]
        output_mode.add_json("plan", dict(plan_data, steps=steps))
        return

    if output_mode.quiet:
        for step in steps:
            table_name = step.get("table") or ""
            print(f"{step['index']}\t{step['kind']}\t{table_name}\t{step['description']}")
        return

    if not steps:
        success("Plan is empty: the database already matches the declared schema")
    else:
        schema = plan_data.get("schema", {})
        table = Table(
            title=f"Migration Plan ({schema.get('name')} v{schema.get('version')}, "
            f"{plan_data.get('dialect')})",
            box=box.ROUNDED,
        )
        table.add_column("#", justify="right", style="dim")
        table.add_column("Kind", style="cyan", no_wrap=True)
        table.add_column("Table", style="magenta")
        table.add_column("Description")
        table.add_column("Destructive", justify="center")

        for step in steps:
            destructive = "[red]✗ yes[/red]" if step.get("destructive") else ""
            table.add_row(
                str(step["index"]),
                step["kind"],
                step.get("table") or "",
                step["description"],
                destructive,
            )
        console.print(table)

    for withheld in plan_data.get("withheld_drops", []):
        warning(f"Withheld destructive request (use --allow-destructive): {withheld}")


def print_statements(statements: list[list[str]]) -> None:
    """Print rendered SQL per step (human mode only)."""
    if not output_mode.is_human() or output_mode.quiet:
        return
    for index, step_statements in enumerate(statements):
        for statement in step_statements:
            console.print(f"[dim]-- step {index}[/dim]")
            console.print(f"{statement};", markup=False, highlight=False)


def print_result_summary(result_data: dict[str, Any]) -> None:
    """
    Print the outcome of a reconciliation.

    Human mode: Per-step table plus a panel; on partial or rolled-back runs
        the applied and unapplied steps and the backup location are listed
        so an operator can resume by hand
    Agent mode: Buffer the full result and flush
    Quiet mode: status<TAB>applied<TAB>unapplied<TAB>backup

    Args:
        result_data: ReconciliationResult.to_dict()
    """
    steps = result_data.get("steps", [])
    backup = result_data.get("backup") or {}
    status = result_data.get("status", "unknown")
    applied = [s for s in steps if s["status"] == "applied"]
    skipped = [s for s in steps if s["status"] == "skipped-already-satisfied"]
    unapplied = [s for s in steps if s["status"] in ("failed", "not-run", "rolled-back")]

    if output_mode.is_agent():
        output_mode.add_json("result", result_data)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        print(f"{status}\t{len(applied)}\t{len(unapplied)}\t{backup.get('location', '')}")
        return

    if steps and status != "planned":
        table = Table(title="Steps", box=box.ROUNDED)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Kind", style="cyan", no_wrap=True)
        table.add_column("Table", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("ms", justify="right")
        for step in steps:
            table.add_row(
                str(step["index"]),
                step["kind"],
                step.get("table") or "",
                _styled_status(step["status"]),
                str(step.get("duration_ms", 0)),
            )
        console.print(table)

    target = f"{result_data.get('identifier')} ({result_data.get('dialect')})"
    lines = [f"[bold]Database:[/bold] {target}"]
    schema = result_data.get("schema")
    if schema:
        lines.append(f"[bold]Schema:[/bold] {schema['name']} v{schema['version']}")
    lines.append(
        f"[bold]Steps:[/bold] {len(applied)} applied, {len(skipped)} skipped, "
        f"{len(unapplied)} unapplied"
    )
    if backup:
        lines.append(f"[bold]Backup:[/bold] {backup.get('location')}")
    if result_data.get("error"):
        lines.append(f"[bold]Error:[/bold] {result_data['error']}")

    if status in ("partial", "rolled-back") and steps:
        lines.append("")
        lines.append("[bold]Applied:[/bold]")
        lines.extend(f"  {s['index']}. {s['description']}" for s in applied)
        if not applied:
            lines.append("  (none)")
        lines.append("[bold]Not applied:[/bold]")
        lines.extend(f"  {s['index']}. {s['description']} [{s['status']}]" for s in unapplied)
        if status == "partial":
            lines.append("")
            lines.append(
                "Earlier steps are committed and cannot be rolled back; resume by hand "
                "or restore from the backup above."
            )

    if status in ("success", "planned"):
        border_style = "green"
        title = f"[bold green]✓ {status}[/bold green]"
    elif status in ("partial", "rolled-back"):
        border_style = "yellow"
        title = f"[bold yellow]⚠ {status}[/bold yellow]"
    else:
        border_style = "red"
        title = f"[bold red]✗ {status}[/bold red]"

    console.print(Panel("\n".join(lines), title=title, border_style=border_style, box=box.ROUNDED))


def print_snapshot(snapshot_data: dict[str, Any]) -> None:
    """
    Print a live schema snapshot.

    Human mode: One table per database table (columns, types, nullability, defaults)
    Agent mode: Buffer under "snapshot" and flush
    Quiet mode: table<TAB>column<TAB>type<TAB>nullable per column

    Args:
        snapshot_data: LiveSchemaSnapshot.to_dict()
    """
    tables = snapshot_data.get("tables", {})

    if output_mode.is_agent():
        output_mode.add_json("snapshot", snapshot_data)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        for table_name, table in tables.items():
            for column_name, column in table["columns"].items():
                print(f"{table_name}\t{column_name}\t{column['type']}\t{column['nullable']}")
        return

    if not tables:
        info(f"{snapshot_data.get('identifier')} has no tables")
        return

    for table_name, table in tables.items():
        grid = Table(
            title=f"{table_name} ({table.get('row_count', 0)} rows)",
            box=box.SIMPLE_HEAVY,
            title_justify="left",
        )
        grid.add_column("Column", style="cyan", no_wrap=True)
        grid.add_column("Type", style="magenta")
        grid.add_column("Null", justify="center")
        grid.add_column("Default")
        grid.add_column("Key", justify="center")
        primary_key = table.get("primary_key", [])
        for column_name, column in table["columns"].items():
            default = column.get("default")
            if default is None:
                default_text = ""
            elif default.get("kind") == "current_timestamp":
                default_text = "CURRENT_TIMESTAMP"
            else:
                default_text = repr(default.get("value"))
            key = "PK" if column_name in primary_key else ("UQ" if column.get("unique") else "")
            grid.add_row(
                column_name,
                column["type"],
                "yes" if column["nullable"] else "no",
                default_text,
                key,
            )
        console.print(grid)
        for index_name, index in table.get("indexes", {}).items():
            unique = "unique " if index.get("unique") else ""
            columns = ", ".join(index["columns"])
            console.print(f"  [dim]{unique}index {index_name} ({columns})[/dim]")
        for fk in table.get("foreign_keys", []):
            console.print(
                f"  [dim]foreign key ({', '.join(fk['columns'])}) -> "
                f"{fk['references_table']}({', '.join(fk['references_columns'])}) "
                f"ON DELETE {fk['on_delete']}[/dim]"
            )


def print_backups_table(backups: list[dict[str, Any]]) -> None:
    """
    Print recorded backups, newest first.

    Human mode: Rich table
    Agent mode: Buffer under "backups" and flush
    Quiet mode: created_at<TAB>size<TAB>location
    """
    if output_mode.is_agent():
        output_mode.add_json("backups", backups)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        for backup in backups:
            print(f"{backup['created_at']}\t{backup['size_bytes']}\t{backup['location']}")
        return

    if not backups:
        info("No backups recorded")
        return

    table = Table(title="Backups", box=box.ROUNDED)
    table.add_column("Created", style="cyan", no_wrap=True)
    table.add_column("Size", justify="right", style="green")
    table.add_column("Source", style="magenta")
    table.add_column("Location")
    for backup in backups:
        table.add_row(
            backup["created_at"],
            f"{backup['size_bytes']:,}",
            backup.get("identifier", ""),
            backup["location"],
        )
    console.print(table)
