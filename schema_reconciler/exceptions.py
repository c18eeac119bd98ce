"""
Custom exceptions for Schema Reconciler.

This module provides the error taxonomy used throughout the engine. All
exceptions inherit from the base SchemaReconcilerError so the Reconciler can
convert any engine failure into a typed result with a single except clause.

Exception Hierarchy:
    SchemaReconcilerError (base)
    ├── DatabaseConnectionError
    │   └── DatabaseNotFoundError
    ├── IntrospectionError
    ├── PlanningError
    │   ├── SchemaFileNotFoundError
    │   ├── SchemaValidationError
    │   └── CapabilityError
    ├── BackupError
    └── ExecutionError

Each class carries an ``error_kind`` string that appears in results, JSON
output and logs, so callers can branch on the failure family without
importing the classes.

Usage:
    from schema_reconciler.exceptions import PlanningError

    try:
        schema = load_schema(path)
    except SchemaFileNotFoundError as e:
        logger.error(f"Schema file not found: {e}")
        sys.exit(1)
"""


class SchemaReconcilerError(Exception):
    """
    Base exception for all Schema Reconciler errors.

    All custom exceptions in this package inherit from this class. The
    Reconciler catches it at its boundary and never lets it escape.
    """

    error_kind = "unknown"


# ============================================================================
# Fatal pre-mutation errors
# ============================================================================


class DatabaseConnectionError(SchemaReconcilerError):
    """
    The live database cannot be reached.

    Fatal: no snapshot is taken and no plan is computed.

    Example:
        raise DatabaseConnectionError("Cannot connect to mysql://bot@db:3306/jmf_bot")
    """

    error_kind = "connection"


class DatabaseNotFoundError(DatabaseConnectionError):
    """
    The server or file system answered, but the named database does not exist.

    Example:
        raise DatabaseNotFoundError("Unknown database 'jmf_bot' on db:3306")
    """


class IntrospectionError(SchemaReconcilerError):
    """
    A metadata query failed while scanning the live schema.

    The inspector fails closed: no partial snapshot is ever returned,
    because a partial snapshot would make the differ under-migrate.

    Example:
        raise IntrospectionError("PRAGMA table_info(account_links) failed: disk I/O error")
    """

    error_kind = "introspection"


class PlanningError(SchemaReconcilerError):
    """
    The declared schema is invalid, or asks for a change that cannot be
    expressed safely against the live database.

    Raised before any mutation. Should result in exit code 1.

    Example:
        raise PlanningError("Column 'users.score' cannot narrow BIGINT -> INTEGER: 120 rows")
    """

    error_kind = "planning"


class SchemaFileNotFoundError(PlanningError):
    """
    Declared schema file does not exist at the specified path.

    Example:
        raise SchemaFileNotFoundError("/etc/bot/schema.yaml")
    """


class SchemaValidationError(PlanningError):
    """
    Declared schema file could not be parsed or failed validation.

    Should include details about which field(s) failed validation.

    Example:
        raise SchemaValidationError("tables.0.columns.2.type: unknown logical type 'MONEY'")
    """


class CapabilityError(PlanningError):
    """
    No capability description exists for the requested dialect.

    Example:
        raise CapabilityError("No capabilities defined for dialect 'oracle'")
    """


# ============================================================================
# Backup and execution errors
# ============================================================================


class BackupError(SchemaReconcilerError):
    """
    A backup could not be created before a destructive plan.

    Fatal and never bypassed: the run aborts before the first mutating
    statement is issued.

    Attributes:
        location: Where the backup was being written, if known

    Example:
        raise BackupError("mysqldump exited with status 2", location="/var/backups/jmf_bot.sql")
    """

    error_kind = "backup"

    def __init__(self, message: str, location: str | None = None):
        super().__init__(message)
        self.location = location


class ExecutionError(SchemaReconcilerError):
    """
    A specific DDL/DML statement failed while applying a plan.

    On transactional dialects this triggers a full rollback; on
    non-transactional dialects it halts the plan and the run is reported as
    partial.

    Attributes:
        step_index: Zero-based index of the failing step within the plan
        table: Table the failing step targets
        statement: The rendered SQL statement that failed

    Example:
        raise ExecutionError(
            "duplicate column name: command",
            step_index=3,
            table="command_usage",
            statement='ALTER TABLE "command_usage" ADD COLUMN "command" TEXT',
        )
    """

    error_kind = "execution"

    def __init__(
        self,
        message: str,
        step_index: int | None = None,
        table: str | None = None,
        statement: str | None = None,
    ):
        super().__init__(message)
        self.step_index = step_index
        self.table = table
        self.statement = statement
