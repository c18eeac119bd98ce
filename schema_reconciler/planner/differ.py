"""
Schema Differ for Schema Reconciler.

Compares a declared SchemaDefinition against a LiveSchemaSnapshot and emits
an ordered MigrationPlan. Every strategy decision (inline ALTER vs. rebuild)
is taken from DialectCapabilities; dialect names are never consulted.

Rules:
- Missing tables are created, ordered so referenced tables come first.
- Missing columns are added inline when the dialect can express them,
  otherwise the table is rebuilt. Columns with a backfill source get a
  trailing BackfillColumn step (WHERE column IS NULL).
- Changed columns are modified inline or folded into the table's rebuild.
  Narrowing a type, or tightening to NOT NULL without a default, on a table
  that holds rows is refused with PlanningError.
- Missing indexes are created; existence is checked by name.
- Undeclared live tables, columns and indexes are never touched. Drops only
  come from the schema's explicit ``drops`` list and only when the caller
  allows destructive steps.

Plan order:
    CreateTable (+ their CreateIndex) -> AddColumn -> BackfillColumn ->
    AddForeignKey -> RequireBackup -> ModifyColumn / RebuildTable ->
    DropColumn -> DropTable -> CreateIndex on existing tables
"""

import logging
from dataclasses import dataclass, field

from ..config.capabilities import DialectCapabilities
from ..config.schema import (
    ColumnDefinition,
    ColumnType,
    DropRequest,
    ForeignKeyDefinition,
    IndexDefinition,
    LogicalType,
    SchemaDefinition,
    TableDefinition,
)
from ..exceptions import PlanningError
from ..storage.snapshot import LiveColumn, LiveSchemaSnapshot, LiveTable
from .steps import (
    AddColumn,
    AddForeignKey,
    BackfillColumn,
    ColumnCopy,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropTable,
    MigrationPlan,
    MigrationStep,
    ModifyColumn,
    RebuildTable,
    RequireBackup,
)

logger = logging.getLogger(__name__)


def is_narrowing(old: ColumnType, new: ColumnType) -> bool:
    """
    True if converting ``old`` values to ``new`` can lose or reject data.

    Example:
        >>> is_narrowing(ColumnType.parse("VARCHAR(64)"), ColumnType.parse("VARCHAR(20)"))
        True
        >>> is_narrowing(ColumnType.parse("INTEGER"), ColumnType.parse("BIGINT"))
        False
    """
    if old == new:
        return False
    if new.kind == LogicalType.BOOLEAN:
        return True
    if new.kind == LogicalType.JSON:
        return True
    if old.kind == LogicalType.BIGINT and new.kind == LogicalType.INTEGER:
        return True
    if old.is_textual and new.kind in (
        LogicalType.INTEGER,
        LogicalType.BIGINT,
        LogicalType.TIMESTAMP,
    ):
        return True
    if old.kind == LogicalType.TIMESTAMP and new.is_integer:
        return True
    if new.kind == LogicalType.VARCHAR:
        if old.kind == LogicalType.VARCHAR:
            return new.length < old.length
        # TEXT/JSON into a bounded length
        return old.is_textual
    return False


@dataclass
class _TableChanges:
    """Per-table steps collected before they are merged into plan order."""

    add_columns: list[AddColumn] = field(default_factory=list)
    backfills: list[BackfillColumn] = field(default_factory=list)
    add_foreign_keys: list[AddForeignKey] = field(default_factory=list)
    modifies: list[ModifyColumn] = field(default_factory=list)
    drop_columns: list[DropColumn] = field(default_factory=list)
    create_indexes: list[CreateIndex] = field(default_factory=list)
    rebuild_reasons: list[str] = field(default_factory=list)
    rebuild_drops: list[str] = field(default_factory=list)
    rebuild: RebuildTable | None = None


class SchemaDiffer:
    """
    Decision table keyed on DialectCapabilities.

    Args:
        capabilities: Capabilities of the live database's dialect
        allow_destructive: Plan explicit drop requests (otherwise withheld)
    """

    def __init__(self, capabilities: DialectCapabilities, allow_destructive: bool = False):
        self.capabilities = capabilities
        self.allow_destructive = allow_destructive

    def diff(self, declared: SchemaDefinition, live: LiveSchemaSnapshot) -> MigrationPlan:
        if live.dialect != self.capabilities.dialect:
            raise PlanningError(
                f"Snapshot dialect {live.dialect.value} does not match capabilities "
                f"for {self.capabilities.dialect.value}"
            )

        plan = MigrationPlan(
            dialect=live.dialect,
            schema_name=declared.name,
            schema_version=declared.version,
        )

        new_tables = [t for t in declared.tables if not live.has_table(t.name)]
        for table in declared.tables:
            for fk in table.foreign_keys:
                if declared.get_table(fk.references_table) is None and not live.has_table(
                    fk.references_table
                ):
                    raise PlanningError(
                        f"Foreign key on '{table.name}' references table "
                        f"'{fk.references_table}', which is neither declared nor present"
                    )

        changes: dict[str, _TableChanges] = {}
        for table in declared.tables:
            live_table = live.get_table(table.name)
            if live_table is not None:
                changes[table.name] = self._diff_table(table, live_table, declared.drops, plan)

        drop_tables = []
        for drop in declared.drops:
            if drop.is_column_drop and declared.get_table(drop.table) is None:
                raise PlanningError(
                    f"Cannot drop column '{drop.describe()}': column drops need the table "
                    f"to be declared"
                )
            if drop.is_column_drop or not live.has_table(drop.table):
                continue
            if self.allow_destructive:
                drop_tables.append(DropTable(drop.table))
            else:
                plan.withheld_drops.append(drop)

        steps: list[MigrationStep] = []
        for table in order_by_dependencies(new_tables):
            steps.append(CreateTable(table))
            steps.extend(CreateIndex(table.name, index) for index in table.all_indexes())

        for section in ("add_columns", "backfills", "add_foreign_keys"):
            for table_changes in changes.values():
                steps.extend(getattr(table_changes, section))

        destructive: list[MigrationStep] = []
        for table_changes in changes.values():
            destructive.extend(table_changes.modifies)
            if table_changes.rebuild is not None:
                destructive.append(table_changes.rebuild)
        for table_changes in changes.values():
            destructive.extend(table_changes.drop_columns)
        destructive.extend(drop_tables)

        if destructive:
            tables = sorted({s.table for s in destructive if s.table})
            steps.append(RequireBackup(reason=f"destructive changes to {', '.join(tables)}"))
            steps.extend(destructive)

        for table_changes in changes.values():
            steps.extend(table_changes.create_indexes)

        plan.steps = steps
        for drop in plan.withheld_drops:
            logger.warning(
                f"Drop of {drop.describe()} withheld: destructive steps are not allowed"
            )
        logger.info(
            f"Planned {len(steps)} steps for schema '{declared.name}' v{declared.version} "
            f"({len(plan.destructive_steps)} destructive)"
        )
        return plan

    # ------------------------------------------------------------------ tables

    def _diff_table(
        self,
        table: TableDefinition,
        live_table: LiveTable,
        drops: list[DropRequest],
        plan: MigrationPlan,
    ) -> _TableChanges:
        changes = _TableChanges()

        if tuple(table.primary_key) != live_table.primary_key:
            raise PlanningError(
                f"Identity of '{table.name}' differs: declared ({', '.join(table.primary_key)}), "
                f"live ({', '.join(live_table.primary_key) or 'none'}); "
                f"changing a table identity is not supported"
            )

        for column in table.columns:
            live_column = live_table.get_column(column.name)
            if live_column is None:
                self._plan_missing_column(table, live_table, column, changes)
            else:
                self._plan_existing_column(table, live_table, column, live_column, changes)

        for fk in table.foreign_keys:
            if live_table.has_foreign_key(fk):
                continue
            if self.capabilities.add_foreign_key:
                changes.add_foreign_keys.append(AddForeignKey(table.name, fk))
            else:
                changes.rebuild_reasons.append(
                    f"add foreign key {fk.constraint_name(table.name)}"
                )

        for drop in drops:
            if drop.table != table.name or not drop.is_column_drop:
                continue
            if live_table.get_column(drop.column) is None:
                continue
            if not self.allow_destructive:
                plan.withheld_drops.append(drop)
            elif self.capabilities.drop_column:
                changes.drop_columns.append(DropColumn(table.name, drop.column))
            else:
                changes.rebuild_drops.append(drop.column)
                changes.rebuild_reasons.append(f"drop column {drop.column}")

        if changes.rebuild_reasons:
            if not self.capabilities.rename_table:
                raise PlanningError(
                    f"Table '{table.name}' needs a rebuild ({'; '.join(changes.rebuild_reasons)}) "
                    f"but the dialect cannot rename tables"
                )
            changes.rebuild = self._build_rebuild(table, live_table, changes)
            changes.add_columns.clear()
            changes.backfills.clear()
            changes.add_foreign_keys.clear()
            changes.modifies.clear()
            changes.drop_columns.clear()
            return changes

        for index in table.all_indexes():
            existing = live_table.get_index(index.name)
            if existing is not None:
                if existing.columns != tuple(index.columns):
                    logger.warning(
                        f"Index {index.name} on {table.name} covers "
                        f"({', '.join(existing.columns)}), "
                        f"declared ({', '.join(index.columns)}); existing index kept"
                    )
                continue
            implied = index.name not in {i.name for i in table.indexes}
            if implied and index.unique and len(index.columns) == 1:
                # Implied by a unique column: any unique index on it satisfies it
                if live_table.is_unique_on(index.columns[0]):
                    continue
            changes.create_indexes.append(CreateIndex(table.name, index))

        return changes

    def _plan_missing_column(
        self,
        table: TableDefinition,
        live_table: LiveTable,
        column: ColumnDefinition,
        changes: _TableChanges,
    ) -> None:
        needs_fill = not column.nullable and column.default is None
        if needs_fill and live_table.has_rows and column.backfill_from is None:
            raise PlanningError(
                f"Cannot add NOT NULL column '{table.name}.{column.name}' without a default "
                f"or backfill source: table has {live_table.row_count} rows"
            )

        caps = self.capabilities
        if caps.can_add_inline(column, live_table.has_rows):
            changes.add_columns.append(AddColumn(table.name, column))
            if column.backfill_from is not None:
                changes.backfills.append(
                    BackfillColumn(table.name, column.name, column.backfill_from)
                )
            return

        relaxed = column.model_copy(update={"nullable": True})
        if needs_fill and caps.modify_column and caps.can_add_inline(relaxed, live_table.has_rows):
            # Add nullable, backfill, then tighten
            changes.add_columns.append(AddColumn(table.name, relaxed))
            if column.backfill_from is not None:
                changes.backfills.append(
                    BackfillColumn(table.name, column.name, column.backfill_from)
                )
            changes.modifies.append(ModifyColumn(table.name, column))
            return

        changes.rebuild_reasons.append(f"add column {column.name}")

    def _plan_existing_column(
        self,
        table: TableDefinition,
        live_table: LiveTable,
        column: ColumnDefinition,
        live_column: LiveColumn,
        changes: _TableChanges,
    ) -> None:
        type_changed = (
            live_column.logical_type is not None
            and live_column.logical_type != column.type
            # SQLite stores every auto-increment identity as INTEGER
            and not (column.auto_increment and live_column.is_integer_identity)
        )
        nullability_changed = live_column.nullable != column.nullable
        default_changed = live_column.default != column.default

        if live_column.logical_type is None:
            logger.debug(
                f"Type of {table.name}.{column.name} ({live_column.raw_type!r}) "
                f"is not recognized; type is not compared"
            )

        if not (type_changed or nullability_changed or default_changed):
            return

        narrowing = type_changed and is_narrowing(live_column.logical_type, column.type)
        if narrowing and live_table.has_rows:
            raise PlanningError(
                f"Column '{table.name}.{column.name}' cannot narrow "
                f"{live_column.logical_type} -> {column.type}: table has "
                f"{live_table.row_count} rows"
            )

        fill_nulls = None
        if live_column.nullable and not column.nullable and live_table.has_rows:
            if column.default is None:
                raise PlanningError(
                    f"Column '{table.name}.{column.name}' cannot become NOT NULL without a "
                    f"default: table has {live_table.row_count} rows"
                )
            fill_nulls = column.default

        if self.capabilities.modify_column:
            changes.modifies.append(
                ModifyColumn(table.name, column, previous=live_column, fill_nulls=fill_nulls)
            )
        else:
            what = [
                name
                for name, changed in (
                    ("type", type_changed),
                    ("nullability", nullability_changed),
                    ("default", default_changed),
                )
                if changed
            ]
            changes.rebuild_reasons.append(f"modify column {column.name} ({', '.join(what)})")

    # ----------------------------------------------------------------- rebuild

    def _build_rebuild(
        self,
        table: TableDefinition,
        live_table: LiveTable,
        changes: _TableChanges,
    ) -> RebuildTable:
        declared_names = set(table.column_names)
        dropped = set(changes.rebuild_drops)
        preserved = tuple(
            c
            for c in live_table.columns
            if c.name not in declared_names and c.name not in dropped
        )
        surviving = declared_names | {c.name for c in preserved}

        projection = []
        for column in table.columns:
            live_column = live_table.get_column(column.name)
            if live_column is not None:
                tightening = live_column.nullable and not column.nullable
                projection.append(
                    ColumnCopy(
                        column.name,
                        source=column.name,
                        fallback=column.default if tightening else None,
                    )
                )
            else:
                projection.append(self._new_column_copy(table, live_table, column))
        projection.extend(ColumnCopy(c.name, source=c.name) for c in preserved)

        for copy in projection:
            if copy.source is not None and live_table.get_column(copy.source) is None:
                raise PlanningError(
                    f"Rebuild of '{table.name}' would copy '{copy.column}' from "
                    f"'{copy.source}', which is not a column of the live table"
                )

        indexes: list[IndexDefinition] = list(table.all_indexes())
        names = {i.name for i in indexes}
        for live_index in live_table.indexes:
            if live_index.origin == "pk" or not set(live_index.columns) <= surviving:
                continue
            if live_index.is_generated:
                if not live_index.unique or any(
                    i.unique and tuple(i.columns) == live_index.columns for i in indexes
                ):
                    continue
                name = f"uq_{table.name}_{'_'.join(live_index.columns)}"
            else:
                name = live_index.name
            if name in names:
                continue
            indexes.append(
                IndexDefinition(
                    name=name, columns=list(live_index.columns), unique=live_index.unique
                )
            )
            names.add(name)

        foreign_keys: list[ForeignKeyDefinition] = list(table.foreign_keys)
        for live_fk in live_table.foreign_keys:
            if not set(live_fk.columns) <= surviving:
                continue
            if any(live_fk.matches(fk) for fk in foreign_keys):
                continue
            foreign_keys.append(
                ForeignKeyDefinition(
                    columns=list(live_fk.columns),
                    references_table=live_fk.references_table,
                    references_columns=list(live_fk.references_columns),
                    on_delete=live_fk.on_delete
                    if live_fk.on_delete in ("CASCADE", "SET NULL", "RESTRICT")
                    else "RESTRICT",
                    name=live_fk.name,
                )
            )

        return RebuildTable(
            table=table.name,
            columns=tuple(table.columns),
            preserved_columns=preserved,
            primary_key=tuple(table.primary_key),
            indexes=tuple(indexes),
            foreign_keys=tuple(foreign_keys),
            projection=tuple(projection),
            reasons=tuple(changes.rebuild_reasons),
            dropped_columns=tuple(sorted(dropped)),
            live_foreign_key_names=tuple(fk.name for fk in live_table.foreign_keys if fk.name),
        )

    def _new_column_copy(
        self,
        table: TableDefinition,
        live_table: LiveTable,
        column: ColumnDefinition,
    ) -> ColumnCopy:
        """
        Copy expression for a column the live table does not have yet.

        A backfill source that is new itself has no old values; it holds its
        own default (or NULL) after the rebuild, so that is copied instead.
        """
        source = column
        seen = {column.name}
        while source.backfill_from is not None:
            if live_table.get_column(source.backfill_from) is not None:
                return ColumnCopy(column.name, source=source.backfill_from)
            source = table.get_column(source.backfill_from)
            if source is None or source.name in seen:
                break
            seen.add(source.name)

        fallback = source.default if source is not None else None
        if (
            fallback is None
            and column.backfill_from is not None
            and not column.nullable
            and live_table.has_rows
        ):
            raise PlanningError(
                f"Cannot add NOT NULL column '{table.name}.{column.name}': backfill source "
                f"'{column.backfill_from}' is new and has no default, table has "
                f"{live_table.row_count} rows"
            )
        return ColumnCopy(column.name, fallback=fallback)


def order_by_dependencies(tables: list[TableDefinition]) -> list[TableDefinition]:
    """
    Order new tables so that referenced tables are created first.

    Declaration order is kept wherever dependencies allow; tables caught in a
    reference cycle keep their declaration order.
    """
    pending = list(tables)
    names = {t.name for t in pending}
    ordered: list[TableDefinition] = []
    created: set[str] = set()

    while pending:
        for table in pending:
            deps = {
                fk.references_table
                for fk in table.foreign_keys
                if fk.references_table in names and fk.references_table != table.name
            }
            if deps <= created:
                break
        else:
            cycle = ", ".join(t.name for t in pending)
            logger.warning(f"Foreign key cycle between new tables: {cycle}")
            table = pending[0]
        pending.remove(table)
        ordered.append(table)
        created.add(table.name)

    return ordered


def diff(
    declared: SchemaDefinition,
    live: LiveSchemaSnapshot,
    capabilities: DialectCapabilities,
    allow_destructive: bool = False,
) -> MigrationPlan:
    """
    Compute the migration plan that brings ``live`` to ``declared``.

    Args:
        declared: Target schema
        live: Snapshot of the live database
        capabilities: Capabilities of the live database's dialect
        allow_destructive: Plan explicit drop requests instead of withholding them

    Returns:
        MigrationPlan (empty when the database already matches)

    Raises:
        PlanningError: If a required change cannot be expressed safely
    """
    return SchemaDiffer(capabilities, allow_destructive).diff(declared, live)
