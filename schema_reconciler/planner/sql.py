"""
Dialect SQL rendering for migration steps.

Each step renders to one or more statements. Identifiers are always quoted
and literals always single-quoted, so declared names and defaults never
change the shape of a statement.

SQLite:  "identifier", INTEGER / BIGINT / TEXT / VARCHAR(n) / BOOLEAN /
         TIMESTAMP / JSON
MySQL:   `identifier`, INT / BIGINT / TEXT / VARCHAR(n) / TINYINT(1) /
         TIMESTAMP / JSON, tables created ENGINE=InnoDB utf8mb4

Example:
    >>> renderer = get_renderer(Dialect.SQLITE)
    >>> renderer.render(AddColumn("command_usage", ColumnDefinition(name="command", type="TEXT")))
    ['ALTER TABLE "command_usage" ADD COLUMN "command" TEXT']
"""

from ..config.capabilities import Dialect
from ..config.constants import REBUILD_TEMP_SUFFIX
from ..config.schema import (
    ColumnDefinition,
    ColumnType,
    DefaultValue,
    ForeignKeyDefinition,
    IndexDefinition,
    LogicalType,
)
from ..storage.snapshot import LiveColumn
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


class SQLRenderer:
    """Statements shared by both dialects; subclasses fill in the differences."""

    dialect: Dialect
    identifier_quote = '"'
    nullable_keyword = ""
    type_names: dict[LogicalType, str] = {}

    # ------------------------------------------------------------------ atoms

    def quote(self, name: str) -> str:
        q = self.identifier_quote
        return q + name.replace(q, q + q) + q

    def quote_list(self, names) -> str:
        return ", ".join(self.quote(n) for n in names)

    def literal(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def nullability(self, nullable: bool) -> str:
        return self.nullable_keyword if nullable else "NOT NULL"

    def column_type(self, column_type: ColumnType) -> str:
        name = self.type_names[column_type.kind]
        if column_type.length is not None:
            return f"{name}({column_type.length})"
        return name

    def default_expression(self, default: DefaultValue, column_type: ColumnType | None) -> str:
        if default.is_current_timestamp:
            return "CURRENT_TIMESTAMP"
        return self.literal(default.value or "")

    def value_expression(self, default: DefaultValue) -> str:
        """The default as a plain SQL value (for UPDATE and INSERT ... SELECT)."""
        if default.is_current_timestamp:
            return "CURRENT_TIMESTAMP"
        return self.literal(default.value or "")

    def column_definition(self, column: ColumnDefinition, inline_identity: bool = False) -> str:
        parts = [self.quote(column.name), self.column_type(column.type)]
        parts.append(self.nullability(column.nullable))
        if inline_identity:
            parts.append(self.inline_identity_clause())
        elif column.auto_increment:
            parts.append(self.auto_increment_clause())
        if column.default is not None:
            parts.append("DEFAULT " + self.default_expression(column.default, column.type))
        return " ".join(p for p in parts if p)

    def preserved_column_definition(self, column: LiveColumn) -> str:
        """Undeclared live column carried through a rebuild with its raw type."""
        parts = [self.quote(column.name)]
        if column.raw_type:
            parts.append(column.raw_type)
        parts.append(self.nullability(column.nullable))
        if column.default is not None:
            parts.append("DEFAULT " + self.default_expression(column.default, column.logical_type))
        return " ".join(p for p in parts if p)

    def foreign_key_clause(self, table: str, fk: ForeignKeyDefinition) -> str:
        return (
            f"CONSTRAINT {self.quote(fk.constraint_name(table))} "
            f"FOREIGN KEY ({self.quote_list(fk.columns)}) "
            f"REFERENCES {self.quote(fk.references_table)} "
            f"({self.quote_list(fk.references_columns)}) "
            f"ON DELETE {fk.on_delete}"
        )

    def inline_identity_clause(self) -> str:
        raise NotImplementedError

    def auto_increment_clause(self) -> str:
        return ""

    def table_options(self) -> str:
        return ""

    # ------------------------------------------------------------- statements

    def create_table(
        self,
        name: str,
        columns: list[ColumnDefinition],
        primary_key: list[str],
        foreign_keys: list[ForeignKeyDefinition],
        preserved_columns: list[LiveColumn] = (),
    ) -> str:
        identity = self.inline_identity_column(columns, primary_key)
        lines = [
            self.column_definition(c, inline_identity=c.name == identity) for c in columns
        ]
        lines.extend(self.preserved_column_definition(c) for c in preserved_columns)
        if identity is None:
            lines.append(f"PRIMARY KEY ({self.quote_list(primary_key)})")
        lines.extend(self.foreign_key_clause(name, fk) for fk in foreign_keys)
        body = ",\n    ".join(lines)
        return f"CREATE TABLE {self.quote(name)} (\n    {body}\n){self.table_options()}"

    def inline_identity_column(
        self, columns: list[ColumnDefinition], primary_key: list[str]
    ) -> str | None:
        """Column whose PRIMARY KEY is declared inline (None: table-level key)."""
        return None

    def create_index(self, table: str, index: IndexDefinition) -> str:
        unique = "UNIQUE " if index.unique else ""
        return (
            f"CREATE {unique}INDEX {self.quote(index.name)} "
            f"ON {self.quote(table)} ({self.quote_list(index.columns)})"
        )

    def add_column(self, table: str, column: ColumnDefinition) -> str:
        return f"ALTER TABLE {self.quote(table)} ADD COLUMN {self.column_definition(column)}"

    def backfill(self, table: str, column: str, source: str) -> str:
        return (
            f"UPDATE {self.quote(table)} SET {self.quote(column)} = {self.quote(source)} "
            f"WHERE {self.quote(column)} IS NULL"
        )

    def fill_nulls(self, table: str, column: str, value: DefaultValue) -> str:
        return (
            f"UPDATE {self.quote(table)} SET {self.quote(column)} = {self.value_expression(value)} "
            f"WHERE {self.quote(column)} IS NULL"
        )

    def drop_table(self, table: str) -> str:
        return f"DROP TABLE {self.quote(table)}"

    def drop_column(self, table: str, column: str) -> str:
        return f"ALTER TABLE {self.quote(table)} DROP COLUMN {self.quote(column)}"

    def rename_table(self, old: str, new: str) -> str:
        return f"ALTER TABLE {self.quote(old)} RENAME TO {self.quote(new)}"

    def add_foreign_key(self, table: str, fk: ForeignKeyDefinition) -> str:
        return f"ALTER TABLE {self.quote(table)} ADD {self.foreign_key_clause(table, fk)}"

    def modify_column(self, step: ModifyColumn) -> list[str]:
        raise NotImplementedError(f"{self.dialect.value} cannot modify columns inline")

    def copy_expression(self, copy: ColumnCopy) -> str:
        if copy.source is None:
            if copy.fallback is None:
                return "NULL"
            return self.value_expression(copy.fallback)
        if copy.fallback is None:
            return self.quote(copy.source)
        return f"COALESCE({self.quote(copy.source)}, {self.value_expression(copy.fallback)})"

    def rebuild_prologue(self, step: RebuildTable) -> list[str]:
        return []

    def rebuild_epilogue(self, step: RebuildTable) -> list[str]:
        return []

    def rebuild_table(self, step: RebuildTable) -> list[str]:
        """
        rename -> create -> INSERT ... SELECT projection -> drop old -> create indexes.

        The old table is dropped before indexes are created because the
        renamed table still owns the index names.
        """
        temp = step.table + REBUILD_TEMP_SUFFIX
        create = self.create_table(
            step.table,
            list(step.columns),
            list(step.primary_key),
            list(step.foreign_keys),
            list(step.preserved_columns),
        )
        targets = self.quote_list(c.column for c in step.projection)
        values = ", ".join(self.copy_expression(c) for c in step.projection)
        statements = self.rebuild_prologue(step)
        statements.append(self.rename_table(step.table, temp))
        statements.extend(self.release_constraints(temp, step))
        statements.append(create)
        statements.append(
            f"INSERT INTO {self.quote(step.table)} ({targets}) "
            f"SELECT {values} FROM {self.quote(temp)}"
        )
        statements.append(self.drop_table(temp))
        statements.extend(self.create_index(step.table, index) for index in step.indexes)
        statements.extend(self.rebuild_epilogue(step))
        return statements

    def release_constraints(self, temp: str, step: RebuildTable) -> list[str]:
        return []

    # --------------------------------------------------------------- dispatch

    def render(self, step: MigrationStep) -> list[str]:
        """Render one step; RequireBackup renders to nothing."""
        if isinstance(step, RequireBackup):
            return []
        if isinstance(step, CreateTable):
            definition = step.definition
            return [
                self.create_table(
                    definition.name,
                    definition.columns,
                    definition.primary_key,
                    definition.foreign_keys,
                )
            ]
        if isinstance(step, CreateIndex):
            return [self.create_index(step.table, step.index)]
        if isinstance(step, AddColumn):
            return [self.add_column(step.table, step.column)]
        if isinstance(step, BackfillColumn):
            return [self.backfill(step.table, step.column, step.source)]
        if isinstance(step, AddForeignKey):
            return [self.add_foreign_key(step.table, step.foreign_key)]
        if isinstance(step, ModifyColumn):
            return self.modify_column(step)
        if isinstance(step, RebuildTable):
            return self.rebuild_table(step)
        if isinstance(step, DropColumn):
            return [self.drop_column(step.table, step.column)]
        if isinstance(step, DropTable):
            return [self.drop_table(step.table)]
        raise TypeError(f"Unknown migration step: {type(step).__name__}")


class SQLiteRenderer(SQLRenderer):
    dialect = Dialect.SQLITE
    identifier_quote = '"'
    type_names = {
        LogicalType.INTEGER: "INTEGER",
        LogicalType.BIGINT: "BIGINT",
        LogicalType.TEXT: "TEXT",
        LogicalType.VARCHAR: "VARCHAR",
        LogicalType.BOOLEAN: "BOOLEAN",
        LogicalType.TIMESTAMP: "TIMESTAMP",
        LogicalType.JSON: "JSON",
    }

    def inline_identity_column(self, columns, primary_key):
        # AUTOINCREMENT is only legal on an inline INTEGER PRIMARY KEY
        for column in columns:
            if column.auto_increment and list(primary_key) == [column.name]:
                return column.name
        return None

    def inline_identity_clause(self) -> str:
        return "PRIMARY KEY AUTOINCREMENT"

    def column_definition(self, column: ColumnDefinition, inline_identity: bool = False) -> str:
        if inline_identity:
            # rowid alias: the declared type must be exactly INTEGER
            parts = [self.quote(column.name), "INTEGER NOT NULL", self.inline_identity_clause()]
            if column.default is not None:
                parts.append("DEFAULT " + self.default_expression(column.default, column.type))
            return " ".join(parts)
        return super().column_definition(column)

    def rebuild_prologue(self, step: RebuildTable) -> list[str]:
        # Keep other tables' REFERENCES pointing at the name, not the renamed table
        return ["PRAGMA legacy_alter_table = ON"]

    def rebuild_epilogue(self, step: RebuildTable) -> list[str]:
        return ["PRAGMA legacy_alter_table = OFF"]


class MySQLRenderer(SQLRenderer):
    dialect = Dialect.MYSQL
    identifier_quote = "`"
    # Explicit NULL keeps TIMESTAMP columns nullable under legacy sql modes
    nullable_keyword = "NULL"
    type_names = {
        LogicalType.INTEGER: "INT",
        LogicalType.BIGINT: "BIGINT",
        LogicalType.TEXT: "TEXT",
        LogicalType.VARCHAR: "VARCHAR",
        LogicalType.BOOLEAN: "TINYINT(1)",
        LogicalType.TIMESTAMP: "TIMESTAMP",
        LogicalType.JSON: "JSON",
    }

    def literal(self, value: str) -> str:
        return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"

    def default_expression(self, default: DefaultValue, column_type: ColumnType | None) -> str:
        expression = super().default_expression(default, column_type)
        # TEXT and JSON only accept expression defaults (8.0.13+)
        if (
            not default.is_current_timestamp
            and column_type is not None
            and column_type.kind in (LogicalType.TEXT, LogicalType.JSON)
        ):
            return f"({expression})"
        return expression

    def auto_increment_clause(self) -> str:
        return "AUTO_INCREMENT"

    def table_options(self) -> str:
        return " ENGINE=InnoDB DEFAULT CHARSET=utf8mb4"

    def rename_table(self, old: str, new: str) -> str:
        return f"RENAME TABLE {self.quote(old)} TO {self.quote(new)}"

    def modify_column(self, step: ModifyColumn) -> list[str]:
        statements = []
        if step.fill_nulls is not None:
            statements.append(self.fill_nulls(step.table, step.column.name, step.fill_nulls))
        statements.append(
            f"ALTER TABLE {self.quote(step.table)} "
            f"MODIFY COLUMN {self.column_definition(step.column)}"
        )
        return statements

    def release_constraints(self, temp: str, step: RebuildTable) -> list[str]:
        # Constraint names are schema-wide; free them for the new table
        return [
            f"ALTER TABLE {self.quote(temp)} DROP FOREIGN KEY {self.quote(name)}"
            for name in step.live_foreign_key_names
        ]


_RENDERERS: dict[Dialect, SQLRenderer] = {
    Dialect.SQLITE: SQLiteRenderer(),
    Dialect.MYSQL: MySQLRenderer(),
}


def get_renderer(dialect: Dialect | str) -> SQLRenderer:
    return _RENDERERS[Dialect(dialect)]


def render_step(step: MigrationStep, dialect: Dialect | str) -> list[str]:
    """Render one step to its statements for a dialect."""
    return get_renderer(dialect).render(step)


def render_plan(plan: MigrationPlan) -> list[list[str]]:
    """Statements per step, index-aligned with plan.steps."""
    renderer = get_renderer(plan.dialect)
    return [renderer.render(step) for step in plan.steps]
