"""
Reconciler: the single entry point of the engine.

    reconcile(declared, connection, backup_provider) -> ReconciliationResult

composes Inspector -> Differ -> Executor and walks this state machine:

    inspecting -> diffing -> idle                      (nothing to do)
                          -> planned                   (dry run)
                          -> [backing-up ->] executing -> succeeded
                                                       -> rolled-back  (transactional dialects)
                                                       -> partial      (auto-commit dialects)
    any state before executing -> aborted              (connection, introspection,
                                                        planning or backup failure)

Engine errors never escape: every SchemaReconcilerError becomes an aborted
result carrying the error kind, so callers branch on result.status and
result.exit_code instead of exception types. The connection belongs to the
caller and is never opened or closed here.

Example:
    >>> schema = load_schema("schema.yaml")
    >>> with open_connection("sqlite:///data/database.sqlite") as conn:
    ...     result = reconcile(schema, conn, SQLiteFileBackupProvider())
    >>> result.status, result.exit_code
    (<OverallStatus.SUCCESS: 'success'>, 0)
"""

import logging
import time
from enum import Enum

from .config.capabilities import DialectCapabilities, get_dialect_capabilities
from .config.schema import SchemaDefinition
from .exceptions import SchemaReconcilerError
from .executor.executor import MigrationExecutor
from .executor.results import OverallStatus, ReconciliationResult, StepOutcome
from .planner.differ import diff
from .planner.sql import render_plan
from .planner.steps import MigrationPlan
from .storage.backup import BackupProvider
from .storage.connection import DatabaseConnection
from .storage.inspector import inspect
from .utils.logging import StepLogger
from .utils.time import backup_suffix_from_timestamp

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    INSPECTING = "inspecting"
    DIFFING = "diffing"
    IDLE = "idle"
    PLANNED = "planned"
    BACKING_UP = "backing-up"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled-back"
    PARTIAL = "partial"
    ABORTED = "aborted"


_TERMINAL_STATES = {
    OverallStatus.SUCCESS: ReconcilerState.SUCCEEDED,
    OverallStatus.ROLLED_BACK: ReconcilerState.ROLLED_BACK,
    OverallStatus.PARTIAL: ReconcilerState.PARTIAL,
    OverallStatus.ABORTED: ReconcilerState.ABORTED,
}


class Reconciler:
    """
    One reconciliation of one connection.

    Args:
        connection: Open connection, owned by the caller
        backup_provider: Called once before plans with destructive steps
        step_logger: Per-step log sink (default: StepLogger with a fresh run_id)
        allow_destructive: Plan the declared schema's explicit drops
        capabilities: Override the bundled capabilities for the dialect
    """

    def __init__(
        self,
        connection: DatabaseConnection,
        backup_provider: BackupProvider | None = None,
        step_logger: StepLogger | None = None,
        *,
        allow_destructive: bool = False,
        capabilities: DialectCapabilities | None = None,
    ):
        self.connection = connection
        self.backup_provider = backup_provider
        self.step_logger = step_logger or StepLogger(run_id=backup_suffix_from_timestamp())
        self.allow_destructive = allow_destructive
        self.capabilities = capabilities
        self.states: list[ReconcilerState] = []

    def _enter(self, state: ReconcilerState) -> None:
        self.states.append(state)
        self.step_logger.log(logging.DEBUG, None, None, f"state: {state.value}")

    def _result(
        self, status: OverallStatus, declared: SchemaDefinition, **kwargs
    ) -> ReconciliationResult:
        return ReconciliationResult(
            status=status,
            dialect=self.connection.dialect.value,
            identifier=self.connection.identifier,
            schema_name=declared.name,
            schema_version=declared.version,
            **kwargs,
        )

    def _abort(
        self,
        error: SchemaReconcilerError,
        declared: SchemaDefinition,
        plan: MigrationPlan | None,
        timings: dict[str, float],
    ) -> ReconciliationResult:
        self._enter(ReconcilerState.ABORTED)
        logger.error(f"Reconciliation of {self.connection.identifier} aborted: {error}")
        self.step_logger.log(
            logging.ERROR, None, None, f"aborted: {error}", error_kind=error.error_kind
        )
        return self._result(
            OverallStatus.ABORTED,
            declared,
            plan=plan,
            error=str(error),
            error_kind=error.error_kind,
            states=[s.value for s in self.states],
            timings=timings,
        )

    def _compute_plan(self, declared: SchemaDefinition, timings: dict[str, float]) -> MigrationPlan:
        self._enter(ReconcilerState.INSPECTING)
        capabilities = self.capabilities or get_dialect_capabilities(self.connection.dialect)
        self.capabilities = capabilities

        started = time.perf_counter()
        snapshot = inspect(self.connection)
        timings["inspect"] = time.perf_counter() - started

        self._enter(ReconcilerState.DIFFING)
        started = time.perf_counter()
        migration_plan = diff(declared, snapshot, capabilities, self.allow_destructive)
        timings["diff"] = time.perf_counter() - started

        logger.info(
            f"Plan for {self.connection.identifier}: {len(migration_plan.steps)} steps "
            f"({len(migration_plan.destructive_steps)} destructive)"
        )
        return migration_plan

    def plan(self, declared: SchemaDefinition) -> ReconciliationResult:
        """
        Dry run: inspect and diff, never execute.

        Returns:
            Result with status planned (or aborted); every step is not-run and
            carries its rendered statements
        """
        self.states = []
        timings: dict[str, float] = {}
        try:
            migration_plan = self._compute_plan(declared, timings)
            rendered = render_plan(migration_plan)
        except SchemaReconcilerError as e:
            return self._abort(e, declared, None, timings)

        self._enter(ReconcilerState.PLANNED)
        outcomes = [
            StepOutcome(
                index=i,
                kind=step.kind,
                table=step.table,
                description=step.describe(),
                statements=statements,
            )
            for i, (step, statements) in enumerate(zip(migration_plan.steps, rendered))
        ]
        return self._result(
            OverallStatus.PLANNED,
            declared,
            plan=migration_plan,
            outcomes=outcomes,
            states=[s.value for s in self.states],
            timings=timings,
        )

    def reconcile(self, declared: SchemaDefinition) -> ReconciliationResult:
        """
        Bring the live database in line with the declared schema.

        Returns:
            ReconciliationResult; never raises SchemaReconcilerError
        """
        self.states = []
        timings: dict[str, float] = {}
        try:
            migration_plan = self._compute_plan(declared, timings)
        except SchemaReconcilerError as e:
            return self._abort(e, declared, None, timings)

        if migration_plan.is_empty:
            self._enter(ReconcilerState.IDLE)
            logger.info(f"{self.connection.identifier} already matches {declared.name}")
            return self._result(
                OverallStatus.SUCCESS,
                declared,
                plan=migration_plan,
                states=[s.value for s in self.states],
                timings=timings,
            )

        executor = MigrationExecutor(
            self.connection,
            self.backup_provider,
            self.step_logger,
            self.capabilities,
            on_phase=lambda phase: self._enter(ReconcilerState(phase)),
        )
        try:
            result = executor.execute(migration_plan)
        except SchemaReconcilerError as e:
            return self._abort(e, declared, migration_plan, timings)

        self._enter(_TERMINAL_STATES[result.status])
        result.states = [s.value for s in self.states]
        result.timings = {**timings, **result.timings}
        return result


def reconcile(
    declared: SchemaDefinition,
    connection: DatabaseConnection,
    backup_provider: BackupProvider | None = None,
    logger: StepLogger | None = None,
    *,
    allow_destructive: bool = False,
    capabilities: DialectCapabilities | None = None,
) -> ReconciliationResult:
    """Inspect, diff and apply; see Reconciler.reconcile."""
    return Reconciler(
        connection,
        backup_provider,
        logger,
        allow_destructive=allow_destructive,
        capabilities=capabilities,
    ).reconcile(declared)


def plan(
    declared: SchemaDefinition,
    connection: DatabaseConnection,
    logger: StepLogger | None = None,
    *,
    allow_destructive: bool = False,
    capabilities: DialectCapabilities | None = None,
) -> ReconciliationResult:
    """Inspect and diff only; see Reconciler.plan."""
    return Reconciler(
        connection,
        None,
        logger,
        allow_destructive=allow_destructive,
        capabilities=capabilities,
    ).plan(declared)
