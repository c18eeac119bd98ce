"""
Result types for plan execution and reconciliation.

Per-step statuses:
    applied                     statements ran (and, on SQLite, were committed)
    skipped-already-satisfied   existence re-check found the work already done
    failed                      a statement of this step raised
    not-run                     never attempted (an earlier step failed)
    rolled-back                 ran, then undone by the transaction rollback

Overall statuses:
    success      every step applied or skipped (also: empty plan)
    planned      dry run, nothing executed
    rolled-back  transactional dialect, a step failed, nothing persisted
    partial      non-transactional dialect, a step failed after others committed
    aborted      nothing executed (connection, introspection, planning or backup failure)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..planner.steps import MigrationPlan
from ..storage.backup import BackupHandle

EXIT_SUCCESS = 0
EXIT_PLANNING_ERROR = 1
EXIT_CONNECTION_ERROR = 2
EXIT_PARTIAL = 3
EXIT_ROLLED_BACK = 4
EXIT_BACKUP_ERROR = 5


class StepStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped-already-satisfied"
    FAILED = "failed"
    NOT_RUN = "not-run"
    ROLLED_BACK = "rolled-back"


class OverallStatus(str, Enum):
    SUCCESS = "success"
    PLANNED = "planned"
    ROLLED_BACK = "rolled-back"
    PARTIAL = "partial"
    ABORTED = "aborted"


@dataclass
class StepOutcome:
    """
    What happened to one plan step.

    Attributes:
        index: Zero-based position in the plan
        kind: Step kind (e.g., "add_column")
        table: Table the step targets
        description: One-line human description
        status: StepStatus
        statements: Rendered statements (the ones sent, for applied steps)
        duration_ms: Wall time spent on the step
        error: Driver error text for the failing step
    """

    index: int
    kind: str
    table: str | None
    description: str
    status: StepStatus = StepStatus.NOT_RUN
    statements: list[str] = field(default_factory=list)
    duration_ms: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind,
            "table": self.table,
            "description": self.description,
            "status": self.status.value,
            "statements": list(self.statements),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class ReconciliationResult:
    """
    Typed outcome of execute() / reconcile(); engine errors never escape as exceptions.

    Attributes:
        status: OverallStatus
        dialect: Dialect value of the target database
        identifier: Target database identifier (no secrets)
        schema_name: Name of the declared schema the run reconciled against
        schema_version: Version of that declared schema
        outcomes: One StepOutcome per plan step, in plan order
        plan: The plan that was computed (None if planning never finished)
        backup: Handle of the backup taken for this run, if any
        error: Human-readable error message
        error_kind: connection / introspection / planning / backup / execution
        states: Reconciler states visited, in order
        timings: Seconds spent per phase (inspect, diff, backup, execute)
        first_failed_index: Index of the failing step (partial / rolled-back)
    """

    status: OverallStatus
    dialect: str | None = None
    identifier: str | None = None
    schema_name: str | None = None
    schema_version: int | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)
    plan: MigrationPlan | None = None
    backup: BackupHandle | None = None
    error: str | None = None
    error_kind: str | None = None
    states: list[str] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    first_failed_index: int | None = None

    @property
    def ok(self) -> bool:
        return self.status in (OverallStatus.SUCCESS, OverallStatus.PLANNED)

    @property
    def applied_steps(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.APPLIED]

    @property
    def skipped_steps(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.SKIPPED]

    @property
    def unapplied_steps(self) -> list[StepOutcome]:
        """Steps whose effect is not in the database (the operator's to-do list)."""
        return [
            o
            for o in self.outcomes
            if o.status in (StepStatus.FAILED, StepStatus.NOT_RUN, StepStatus.ROLLED_BACK)
        ]

    @property
    def exit_code(self) -> int:
        if self.status in (OverallStatus.SUCCESS, OverallStatus.PLANNED):
            return EXIT_SUCCESS
        if self.status == OverallStatus.PARTIAL:
            return EXIT_PARTIAL
        if self.status == OverallStatus.ROLLED_BACK:
            return EXIT_ROLLED_BACK
        if self.error_kind in ("connection", "introspection"):
            return EXIT_CONNECTION_ERROR
        if self.error_kind == "backup":
            return EXIT_BACKUP_ERROR
        return EXIT_PLANNING_ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "dialect": self.dialect,
            "identifier": self.identifier,
            "schema": (
                {"name": self.schema_name, "version": self.schema_version}
                if self.schema_name is not None
                else None
            ),
            "error": self.error,
            "error_kind": self.error_kind,
            "first_failed_index": self.first_failed_index,
            "backup": self.backup.to_dict() if self.backup else None,
            "states": list(self.states),
            "timings": {k: round(v, 4) for k, v in self.timings.items()},
            "steps": [o.to_dict() for o in self.outcomes],
            "plan": self.plan.to_dict() if self.plan else None,
        }
