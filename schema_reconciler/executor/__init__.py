"""Plan execution and its result types."""

from .executor import MigrationExecutor, execute
from .results import OverallStatus, ReconciliationResult, StepOutcome, StepStatus

__all__ = [
    "MigrationExecutor",
    "OverallStatus",
    "ReconciliationResult",
    "StepOutcome",
    "StepStatus",
    "execute",
]
