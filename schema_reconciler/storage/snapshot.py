"""
Live schema snapshot models.

A LiveSchemaSnapshot is the read-only, point-in-time result of introspecting
a database. It is created fresh by every reconcile() call, handed to the
differ, and discarded; it is never persisted.

Every type in a snapshot is already normalized to the logical types used by
declared schemas, so the differ never compares raw dialect spellings.
"""

from dataclasses import dataclass, field
from typing import Any

from ..config.capabilities import Dialect
from ..config.schema import ColumnType, DefaultValue, ForeignKeyDefinition, LogicalType

IDENTITY_TYPE_LABEL = LogicalType.INTEGER.value


@dataclass(frozen=True)
class LiveColumn:
    """
    One live column.

    Attributes:
        name: Column name
        raw_type: Type exactly as the database reports it
        logical_type: Normalized type, None when the spelling is not recognized
        nullable: Whether NULL is allowed
        default: Normalized default, None when the column has no default
        primary_key: Column is part of the table identity
        auto_increment: Column is filled by the database on insert
    """

    name: str
    raw_type: str
    logical_type: ColumnType | None
    nullable: bool
    default: DefaultValue | None = None
    primary_key: bool = False
    auto_increment: bool = False

    @property
    def type_label(self) -> str:
        if self.logical_type is not None:
            return str(self.logical_type)
        return self.raw_type.upper() or "?"

    @property
    def is_integer_identity(self) -> bool:
        return (
            self.auto_increment
            and self.logical_type is not None
            and self.logical_type.is_integer
        )


@dataclass(frozen=True)
class LiveIndex:
    """
    One live index.

    Attributes:
        name: Index name as stored by the database
        columns: Indexed columns, in order
        unique: Whether the index enforces uniqueness
        origin: "index" for indexes created by name, "unique" for indexes the
                database generated for a UNIQUE constraint, "pk" for the
                primary key index, "fk" for MySQL's implicit foreign key index
    """

    name: str
    columns: tuple[str, ...]
    unique: bool
    origin: str = "index"

    @property
    def is_generated(self) -> bool:
        return self.origin != "index"


@dataclass(frozen=True)
class LiveForeignKey:
    """One live foreign key constraint."""

    columns: tuple[str, ...]
    references_table: str
    references_columns: tuple[str, ...]
    on_delete: str = "RESTRICT"
    name: str | None = None

    def matches(self, declared: ForeignKeyDefinition) -> bool:
        """Same local columns pointing at the same target columns."""
        return (
            self.columns == tuple(declared.columns)
            and self.references_table == declared.references_table
            and self.references_columns == tuple(declared.references_columns)
        )


@dataclass(frozen=True)
class LiveTable:
    """
    One live table.

    Attributes:
        name: Table name
        columns: Columns in their physical order
        primary_key: Identity columns (empty if the table has none)
        indexes: All indexes, generated ones included
        foreign_keys: Outgoing foreign keys
        row_count: Number of rows at snapshot time
    """

    name: str
    columns: tuple[LiveColumn, ...]
    primary_key: tuple[str, ...] = ()
    indexes: tuple[LiveIndex, ...] = ()
    foreign_keys: tuple[LiveForeignKey, ...] = ()
    row_count: int = 0

    @property
    def has_rows(self) -> bool:
        return self.row_count > 0

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> LiveColumn | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def get_index(self, name: str) -> LiveIndex | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def has_index(self, name: str) -> bool:
        return self.get_index(name) is not None

    def is_unique_on(self, column: str) -> bool:
        """True if a unique index (or the identity) covers exactly this column."""
        if self.primary_key == (column,):
            return True
        return any(i.unique and i.columns == (column,) for i in self.indexes)

    def has_foreign_key(self, declared: ForeignKeyDefinition) -> bool:
        return any(fk.matches(declared) for fk in self.foreign_keys)


@dataclass(frozen=True)
class LiveSchemaSnapshot:
    """
    Point-in-time introspection result.

    Attributes:
        dialect: Dialect of the inspected database
        identifier: Non-secret database identifier
        tables: Live tables keyed by name
        taken_at: UTC timestamp of the scan
    """

    dialect: Dialect
    identifier: str
    tables: dict[str, LiveTable] = field(default_factory=dict)
    taken_at: str = ""

    def get_table(self, name: str) -> LiveTable | None:
        return self.tables.get(name)

    def has_table(self, name: str) -> bool:
        return name in self.tables

    @property
    def table_names(self) -> list[str]:
        return sorted(self.tables)

    def normalized(self) -> dict[str, Any]:
        """
        Dialect-independent view of the snapshot.

        Contains tables, columns (logical type, nullability, default,
        uniqueness), identities, named indexes and foreign keys. Names the
        database generated on its own (SQLite autoindexes, MySQL PRIMARY and
        implicit foreign key indexes) are left out, so the same declared
        schema applied through different dialects normalizes identically.

        Auto-increment identities are reported as INTEGER whatever their
        width: SQLite only allows AUTOINCREMENT on an INTEGER rowid alias.
        """
        result: dict[str, Any] = {}
        for name in sorted(self.tables):
            table = self.tables[name]
            columns = {}
            for column in table.columns:
                columns[column.name] = {
                    "type": IDENTITY_TYPE_LABEL
                    if column.is_integer_identity
                    else column.type_label,
                    "nullable": column.nullable,
                    "default": (
                        column.default.model_dump() if column.default is not None else None
                    ),
                    "unique": column.name not in table.primary_key
                    and table.is_unique_on(column.name),
                }
            result[name] = {
                "columns": columns,
                "primary_key": list(table.primary_key),
                "indexes": {
                    index.name: {"columns": list(index.columns), "unique": index.unique}
                    for index in sorted(table.indexes, key=lambda i: i.name)
                    if not index.is_generated
                },
                "foreign_keys": sorted(
                    [
                        {
                            "columns": list(fk.columns),
                            "references_table": fk.references_table,
                            "references_columns": list(fk.references_columns),
                            "on_delete": fk.on_delete,
                        }
                        for fk in table.foreign_keys
                    ],
                    key=lambda fk: (fk["columns"], fk["references_table"]),
                ),
            }
        return result

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dump including dialect, identifier and row counts."""
        tables = self.normalized()
        for name, table in tables.items():
            table["row_count"] = self.tables[name].row_count
        return {
            "dialect": self.dialect.value,
            "identifier": self.identifier,
            "taken_at": self.taken_at,
            "tables": tables,
        }
