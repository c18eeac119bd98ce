"""
Migration Executor for Schema Reconciler.

Applies a MigrationPlan to a live connection and reports one StepOutcome per
step. Two execution modes, chosen by the dialect's capabilities:

Transactional DDL (SQLite):
    BEGIN IMMEDIATE ... COMMIT around the whole plan. Any failing statement
    rolls everything back; the result is "rolled-back" and the schema is
    exactly as it was before the call.

Auto-committing DDL (MySQL):
    Steps are applied one at a time with autocommit on. The first failure
    halts the plan; the result is "partial" with applied and not-run steps
    listed, and recovery relies on the pre-mutation backup.

Plans with a destructive step are backed up once, before the first mutating
statement. A BackupError propagates with nothing applied.

Before CreateTable, AddColumn and CreateIndex the executor re-checks the live
database and marks the step "skipped-already-satisfied" when the object
already exists, so replaying a plan is harmless.
"""

import logging
import sqlite3
import time
from collections.abc import Callable

import mysql.connector

from ..config.capabilities import Dialect, DialectCapabilities, get_dialect_capabilities
from ..exceptions import BackupError, ExecutionError, SchemaReconcilerError
from ..planner.sql import render_plan
from ..planner.steps import (
    AddColumn,
    CreateIndex,
    CreateTable,
    MigrationPlan,
    MigrationStep,
    RebuildTable,
    RequireBackup,
)
from ..storage.backup import BackupHandle, BackupProvider
from ..storage.connection import DatabaseConnection
from ..storage.inspector import column_exists, index_exists, table_exists
from ..utils.logging import StepLogger
from .results import OverallStatus, ReconciliationResult, StepOutcome, StepStatus

logger = logging.getLogger(__name__)

DATABASE_ERRORS = (sqlite3.Error, mysql.connector.Error)

# Anything that can stop a single step: driver errors, and engine errors
# raised by the existence re-check (e.g. no default MySQL database)
STEP_ERRORS = (*DATABASE_ERRORS, SchemaReconcilerError)


def _elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


class MigrationExecutor:
    """
    Applies one plan to one connection.

    Args:
        connection: Open connection (owned by the caller, never closed here)
        backup_provider: Provider called before destructive plans
        step_logger: Sink for per-step entries (default: StepLogger())
        capabilities: Override the bundled capabilities for the dialect
        on_phase: Called with "backing-up" and "executing" as each phase starts
    """

    def __init__(
        self,
        connection: DatabaseConnection,
        backup_provider: BackupProvider | None = None,
        step_logger: StepLogger | None = None,
        capabilities: DialectCapabilities | None = None,
        on_phase: Callable[[str], None] | None = None,
    ):
        self.connection = connection
        self.backup_provider = backup_provider
        self.step_logger = step_logger or StepLogger()
        self.capabilities = capabilities or get_dialect_capabilities(connection.dialect)
        self.on_phase = on_phase or (lambda phase: None)

    def execute(self, plan: MigrationPlan) -> ReconciliationResult:
        """
        Apply a plan.

        Returns:
            ReconciliationResult with status success, rolled-back or partial

        Raises:
            BackupError: Destructive plan and no backup could be taken
                (zero statements issued)
            ExecutionError: The plan cannot be run on this connection at all
                (dialect mismatch, transaction already open, missing MySQL
                database that cannot be created)
        """
        if plan.dialect != self.connection.dialect:
            raise ExecutionError(
                f"Plan targets {plan.dialect.value} but the connection is "
                f"{self.connection.dialect.value}"
            )

        # Render everything up front: a rendering bug must surface before any DDL
        rendered = render_plan(plan)
        outcomes = [
            StepOutcome(
                index=i,
                kind=step.kind,
                table=step.table,
                description=step.describe(),
                statements=list(statements),
            )
            for i, (step, statements) in enumerate(zip(plan.steps, rendered))
        ]
        result = ReconciliationResult(
            status=OverallStatus.SUCCESS,
            dialect=self.connection.dialect.value,
            identifier=self.connection.identifier,
            schema_name=plan.schema_name,
            schema_version=plan.schema_version,
            outcomes=outcomes,
            plan=plan,
        )

        if plan.is_empty:
            logger.info(f"Nothing to apply to {self.connection.identifier}")
            return result

        if self.capabilities.transactional_ddl and self.connection.in_transaction:
            raise ExecutionError(
                "Connection has an open transaction; commit or roll it back first"
            )

        if plan.has_destructive_steps:
            self.on_phase("backing-up")
            started = time.perf_counter()
            result.backup = self._take_backup()
            result.timings["backup"] = time.perf_counter() - started

        if self.connection.database_missing:
            self._create_database()

        self.on_phase("executing")
        started = time.perf_counter()
        if self.capabilities.transactional_ddl:
            self._execute_transactional(plan, rendered, result)
        else:
            self._execute_stepwise(plan, rendered, result)
        result.timings["execute"] = time.perf_counter() - started

        logger.info(
            f"Plan on {self.connection.identifier} finished: {result.status.value} "
            f"({len(result.applied_steps)} applied, {len(result.skipped_steps)} skipped, "
            f"{len(result.unapplied_steps)} unapplied)"
        )
        return result

    # ------------------------------------------------------------------ backup

    def _take_backup(self) -> BackupHandle:
        if self.backup_provider is None:
            raise BackupError("Plan contains destructive steps but no backup provider was given")

        self.step_logger.log(
            logging.INFO, RequireBackup.kind, None, "Creating backup before destructive steps"
        )
        try:
            handle = self.backup_provider.create_backup(self.connection.identifier)
        except BackupError as e:
            self.step_logger.log(
                logging.ERROR, RequireBackup.kind, None, f"Backup failed: {e}", location=e.location
            )
            raise
        except OSError as e:
            self.step_logger.log(logging.ERROR, RequireBackup.kind, None, f"Backup failed: {e}")
            raise BackupError(f"Backup provider failed: {e}") from e

        self.step_logger.log(
            logging.INFO,
            RequireBackup.kind,
            None,
            "Backup created",
            location=handle.location,
            size_bytes=handle.size_bytes,
        )
        return handle

    # ------------------------------------------------------------------- steps

    def _create_database(self) -> None:
        try:
            self.connection.create_database()
        except DATABASE_ERRORS as e:
            raise ExecutionError(
                f"Cannot create database for {self.connection.identifier}: {e}"
            ) from e

    def _already_satisfied(self, step: MigrationStep) -> bool:
        conn = self.connection
        if isinstance(step, CreateTable):
            return table_exists(conn, step.table)
        if isinstance(step, AddColumn):
            return column_exists(conn, step.table, step.column.name)
        if isinstance(step, CreateIndex):
            return index_exists(conn, step.table, step.index.name)
        return False

    def _run_step(
        self,
        step: MigrationStep,
        statements: list[str],
        outcome: StepOutcome,
        backup: BackupHandle | None,
    ) -> None:
        """Run one step and set its outcome; any failure becomes ExecutionError."""
        started = time.perf_counter()

        if isinstance(step, RequireBackup):
            outcome.status = StepStatus.APPLIED
            if backup is not None:
                outcome.description += f" (backup: {backup.location})"
            return

        statement = None
        sent: list[str] = []
        try:
            if self._already_satisfied(step):
                outcome.status = StepStatus.SKIPPED
                outcome.statements = []
                outcome.duration_ms = _elapsed_ms(started)
                self.step_logger.log(
                    logging.INFO,
                    step.kind,
                    step.table,
                    "skipped: already satisfied",
                    step_index=outcome.index,
                )
                return
            for statement in statements:
                self.connection.execute(statement)
                sent.append(statement)
        except STEP_ERRORS as e:
            outcome.status = StepStatus.FAILED
            outcome.statements = sent + ([statement] if statement else [])
            outcome.duration_ms = _elapsed_ms(started)
            outcome.error = str(e)
            self.step_logger.log(
                logging.ERROR,
                step.kind,
                step.table,
                f"failed: {e}",
                step_index=outcome.index,
                statement=statement,
                duration_ms=outcome.duration_ms,
            )
            raise ExecutionError(
                str(e), step_index=outcome.index, table=step.table, statement=statement
            ) from e

        outcome.status = StepStatus.APPLIED
        outcome.statements = sent
        outcome.duration_ms = _elapsed_ms(started)
        self.step_logger.log(
            logging.INFO,
            step.kind,
            step.table,
            "applied",
            step_index=outcome.index,
            statements=sent,
            duration_ms=outcome.duration_ms,
        )

    # ----------------------------------------------------------- transactional

    def _execute_transactional(
        self,
        plan: MigrationPlan,
        rendered: list[list[str]],
        result: ReconciliationResult,
    ) -> None:
        conn = self.connection
        rebuilds = [i for i, s in enumerate(plan.steps) if isinstance(s, RebuildTable)]
        sqlite_rebuild = conn.dialect == Dialect.SQLITE and bool(rebuilds)

        # foreign_keys cannot change inside a transaction; rebuilds copy
        # parent tables, so enforcement is paused and checked before COMMIT
        restore_foreign_keys = False
        if sqlite_rebuild:
            rows = conn.query("PRAGMA foreign_keys")
            if rows and rows[0][0]:
                conn.query("PRAGMA foreign_keys = OFF")
                restore_foreign_keys = True

        try:
            conn.begin()
            try:
                for step, statements, outcome in zip(plan.steps, rendered, result.outcomes):
                    self._run_step(step, statements, outcome, result.backup)
                if restore_foreign_keys:
                    self._check_foreign_keys(rebuilds[-1])
                conn.commit()
            except ExecutionError as e:
                self._rollback(result, e, sqlite_rebuild)
            except DATABASE_ERRORS as e:
                # COMMIT itself failed
                self._rollback(result, ExecutionError(f"Commit failed: {e}"), sqlite_rebuild)
            except Exception:
                conn.rollback()
                if sqlite_rebuild:
                    conn.query("PRAGMA legacy_alter_table = OFF")
                raise
        finally:
            if restore_foreign_keys:
                conn.query("PRAGMA foreign_keys = ON")

    def _check_foreign_keys(self, step_index: int) -> None:
        violations = self.connection.query("PRAGMA foreign_key_check")
        if violations:
            tables = sorted({str(row[0]) for row in violations})
            raise ExecutionError(
                f"Foreign key check failed after rebuild: {len(violations)} violation(s) "
                f"in {', '.join(tables)}",
                step_index=step_index,
                table=tables[0],
                statement="PRAGMA foreign_key_check",
            )

    def _rollback(
        self, result: ReconciliationResult, error: ExecutionError, sqlite_rebuild: bool
    ) -> None:
        conn = self.connection
        try:
            conn.rollback()
            if sqlite_rebuild:
                conn.query("PRAGMA legacy_alter_table = OFF")
        except DATABASE_ERRORS as e:
            logger.error(f"Rollback on {conn.identifier} reported an error: {e}")

        for outcome in result.outcomes:
            if outcome.status == StepStatus.APPLIED:
                outcome.status = StepStatus.ROLLED_BACK
            if error.step_index == outcome.index and outcome.status != StepStatus.FAILED:
                outcome.status = StepStatus.FAILED
                outcome.error = str(error)

        result.status = OverallStatus.ROLLED_BACK
        result.error = self._describe_error(error)
        result.error_kind = error.error_kind
        result.first_failed_index = error.step_index
        self.step_logger.log(
            logging.ERROR,
            None,
            error.table,
            "Plan rolled back; database unchanged",
            step_index=error.step_index,
        )

    # ---------------------------------------------------------------- stepwise

    def _execute_stepwise(
        self,
        plan: MigrationPlan,
        rendered: list[list[str]],
        result: ReconciliationResult,
    ) -> None:
        previous = self.connection.set_autocommit(True)
        try:
            for step, statements, outcome in zip(plan.steps, rendered, result.outcomes):
                try:
                    self._run_step(step, statements, outcome, result.backup)
                except ExecutionError as e:
                    result.status = OverallStatus.PARTIAL
                    result.error = self._describe_error(e)
                    result.error_kind = e.error_kind
                    result.first_failed_index = e.step_index
                    self.step_logger.log(
                        logging.ERROR,
                        step.kind,
                        step.table,
                        "Plan halted; earlier steps stay committed",
                        step_index=e.step_index,
                        applied=len(result.applied_steps),
                        not_run=len(plan.steps) - outcome.index - 1,
                    )
                    break
        finally:
            self.connection.set_autocommit(previous)

    @staticmethod
    def _describe_error(error: ExecutionError) -> str:
        if error.step_index is None:
            return str(error)
        return f"Step {error.step_index} ({error.table}) failed: {error}"


def execute(
    plan: MigrationPlan,
    connection: DatabaseConnection,
    backup_provider: BackupProvider | None = None,
    step_logger: StepLogger | None = None,
    capabilities: DialectCapabilities | None = None,
) -> ReconciliationResult:
    """
    Apply a plan to a connection.

    See MigrationExecutor.execute for the result and error contract.

    Example:
        >>> with open_connection("sqlite:///data/bot.sqlite") as conn:
        ...     result = execute(plan, conn, SQLiteFileBackupProvider())
        >>> result.status
        <OverallStatus.SUCCESS: 'success'>
    """
    return MigrationExecutor(connection, backup_provider, step_logger, capabilities).execute(plan)
