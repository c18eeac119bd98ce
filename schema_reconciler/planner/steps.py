"""
Migration steps and plans.

A MigrationPlan is an ordered list of MigrationStep variants produced by the
differ and consumed by the executor. Steps carry declared definitions, never
SQL; rendering happens per dialect in planner.sql.

Step kinds:
    create_table, create_index, add_column, backfill_column, add_foreign_key,
    require_backup, modify_column, rebuild_table, drop_column, drop_table

Destructive steps (rebuild_table, modify_column, drop_column, drop_table)
are always preceded by a require_backup marker.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..config.capabilities import Dialect
from ..config.schema import (
    ColumnDefinition,
    DefaultValue,
    DropRequest,
    ForeignKeyDefinition,
    IndexDefinition,
    TableDefinition,
)
from ..storage.snapshot import LiveColumn


class MigrationStep:
    """Base for every step variant."""

    kind: ClassVar[str] = "step"
    destructive: ClassVar[bool] = False

    table: str | None

    def describe(self) -> str:
        raise NotImplementedError

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "table": self.table,
            "destructive": self.destructive,
            "description": self.describe(),
            **self.details(),
        }


@dataclass(frozen=True)
class CreateTable(MigrationStep):
    definition: TableDefinition

    kind: ClassVar[str] = "create_table"

    @property
    def table(self) -> str:
        return self.definition.name

    def describe(self) -> str:
        return f"create table {self.table} ({len(self.definition.columns)} columns)"

    def details(self) -> dict[str, Any]:
        return {"columns": self.definition.column_names}


@dataclass(frozen=True)
class CreateIndex(MigrationStep):
    table: str
    index: IndexDefinition

    kind: ClassVar[str] = "create_index"

    def describe(self) -> str:
        unique = "unique " if self.index.unique else ""
        columns = ", ".join(self.index.columns)
        return f"create {unique}index {self.index.name} on {self.table}({columns})"

    def details(self) -> dict[str, Any]:
        return {"index": self.index.name, "columns": list(self.index.columns)}


@dataclass(frozen=True)
class AddColumn(MigrationStep):
    table: str
    column: ColumnDefinition

    kind: ClassVar[str] = "add_column"

    def describe(self) -> str:
        null = "NULL" if self.column.nullable else "NOT NULL"
        return f"add column {self.table}.{self.column.name} {self.column.type} {null}"

    def details(self) -> dict[str, Any]:
        return {"column": self.column.name, "type": str(self.column.type)}


@dataclass(frozen=True)
class BackfillColumn(MigrationStep):
    """UPDATE t SET column = source WHERE column IS NULL."""

    table: str
    column: str
    source: str

    kind: ClassVar[str] = "backfill_column"

    def describe(self) -> str:
        return f"backfill {self.table}.{self.column} <- {self.source} where NULL"

    def details(self) -> dict[str, Any]:
        return {"column": self.column, "source": self.source}


@dataclass(frozen=True)
class AddForeignKey(MigrationStep):
    table: str
    foreign_key: ForeignKeyDefinition

    kind: ClassVar[str] = "add_foreign_key"

    @property
    def constraint_name(self) -> str:
        return self.foreign_key.constraint_name(self.table)

    def describe(self) -> str:
        fk = self.foreign_key
        return (
            f"add foreign key {self.constraint_name}: {self.table}({', '.join(fk.columns)}) "
            f"-> {fk.references_table}({', '.join(fk.references_columns)}) ON DELETE {fk.on_delete}"
        )

    def details(self) -> dict[str, Any]:
        return {
            "constraint": self.constraint_name,
            "references_table": self.foreign_key.references_table,
        }


@dataclass(frozen=True)
class RequireBackup(MigrationStep):
    """Checkpoint marker: a backup must exist before the steps that follow."""

    reason: str
    table: str | None = None

    kind: ClassVar[str] = "require_backup"

    def describe(self) -> str:
        return f"backup required: {self.reason}"


@dataclass(frozen=True)
class ModifyColumn(MigrationStep):
    """
    Inline change of an existing column's type, nullability or default.

    ``fill_nulls`` is set when the column becomes NOT NULL on a populated
    table: existing NULLs are replaced with it before the change.
    """

    table: str
    column: ColumnDefinition
    previous: LiveColumn | None = None
    fill_nulls: DefaultValue | None = None

    kind: ClassVar[str] = "modify_column"
    destructive: ClassVar[bool] = True

    def describe(self) -> str:
        null = "NULL" if self.column.nullable else "NOT NULL"
        target = f"{self.column.type} {null}"
        if self.column.default is not None:
            target += f" DEFAULT {self.column.default}"
        if self.previous is None:
            return f"modify column {self.table}.{self.column.name} -> {target}"
        before = f"{self.previous.type_label} {'NULL' if self.previous.nullable else 'NOT NULL'}"
        return f"modify column {self.table}.{self.column.name}: {before} -> {target}"

    def details(self) -> dict[str, Any]:
        return {"column": self.column.name, "type": str(self.column.type)}


@dataclass(frozen=True)
class ColumnCopy:
    """
    How one column of a rebuilt table is populated from the old table.

    source set, fallback None    -> old value
    source set, fallback set     -> COALESCE(old value, fallback)
    source None, fallback set    -> fallback (literal or CURRENT_TIMESTAMP)
    source None, fallback None   -> NULL
    """

    column: str
    source: str | None = None
    fallback: DefaultValue | None = None


@dataclass(frozen=True)
class RebuildTable(MigrationStep):
    """
    Rename / create / copy / drop / reindex a table the dialect cannot alter.

    Attributes:
        table: Table being rebuilt
        columns: Target column set, declared columns first
        preserved_columns: Live columns that are not declared, kept verbatim
        primary_key: Identity of the new table
        indexes: Indexes recreated after the copy
        foreign_keys: Foreign keys declared inline on the new table
        projection: One ColumnCopy per target column, in target order
        reasons: Changes that required the rebuild
        dropped_columns: Live columns deliberately left out (explicit drops)
        live_foreign_key_names: Constraint names on the old table, released
            before the new table claims them where names are schema-global
    """

    table: str
    columns: tuple[ColumnDefinition, ...]
    preserved_columns: tuple[LiveColumn, ...]
    primary_key: tuple[str, ...]
    indexes: tuple[IndexDefinition, ...]
    foreign_keys: tuple[ForeignKeyDefinition, ...]
    projection: tuple[ColumnCopy, ...]
    reasons: tuple[str, ...] = ()
    dropped_columns: tuple[str, ...] = ()
    live_foreign_key_names: tuple[str, ...] = ()

    kind: ClassVar[str] = "rebuild_table"
    destructive: ClassVar[bool] = True

    @property
    def target_column_names(self) -> list[str]:
        return [c.name for c in self.columns] + [c.name for c in self.preserved_columns]

    def describe(self) -> str:
        return f"rebuild table {self.table}: {'; '.join(self.reasons)}"

    def details(self) -> dict[str, Any]:
        return {
            "reasons": list(self.reasons),
            "columns": self.target_column_names,
            "dropped_columns": list(self.dropped_columns),
        }


@dataclass(frozen=True)
class DropColumn(MigrationStep):
    table: str
    column: str

    kind: ClassVar[str] = "drop_column"
    destructive: ClassVar[bool] = True

    def describe(self) -> str:
        return f"drop column {self.table}.{self.column}"

    def details(self) -> dict[str, Any]:
        return {"column": self.column}


@dataclass(frozen=True)
class DropTable(MigrationStep):
    table: str

    kind: ClassVar[str] = "drop_table"
    destructive: ClassVar[bool] = True

    def describe(self) -> str:
        return f"drop table {self.table}"


@dataclass
class MigrationPlan:
    """
    Ordered steps computed for one reconcile call.

    Attributes:
        dialect: Dialect the plan targets
        schema_name: Declared schema name
        schema_version: Declared schema version
        steps: Ordered steps
        withheld_drops: Drop requests not planned because destructive steps
            were not allowed
    """

    dialect: Dialect
    schema_name: str
    schema_version: int
    steps: list[MigrationStep] = field(default_factory=list)
    withheld_drops: list[DropRequest] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def destructive_steps(self) -> list[MigrationStep]:
        return [s for s in self.steps if s.destructive]

    @property
    def has_destructive_steps(self) -> bool:
        return any(s.destructive for s in self.steps)

    @property
    def mutating_steps(self) -> list[MigrationStep]:
        return [s for s in self.steps if not isinstance(s, RequireBackup)]

    def count_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for step in self.steps:
            counts[step.kind] = counts.get(step.kind, 0) + 1
        return counts

    def describe(self) -> list[str]:
        return [f"{i}. {step.describe()}" for i, step in enumerate(self.steps)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dialect": self.dialect.value,
            "schema": {"name": self.schema_name, "version": self.schema_version},
            "is_empty": self.is_empty,
            "has_destructive_steps": self.has_destructive_steps,
            "steps": [dict(index=i, **step.to_dict()) for i, step in enumerate(self.steps)],
            "withheld_drops": [d.describe() for d in self.withheld_drops],
        }
