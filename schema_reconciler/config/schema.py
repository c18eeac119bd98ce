"""
Declared schema models for Schema Reconciler.

This module defines Pydantic models for validating and parsing a declared
schema source (usually a YAML file, see config.loader). The validated
SchemaDefinition is the immutable target the engine reconciles a live
database against. All models use Pydantic v2 field and model validators.

Models:
    LogicalType: Dialect-neutral column type enum
    ColumnType: LogicalType plus VARCHAR length, parsed from "VARCHAR(20)"
    DefaultValue: Normalized default expression (literal or CURRENT_TIMESTAMP)
    ColumnDefinition: One declared column (type, nullability, default, backfill)
    IndexDefinition: Named index over an ordered column list
    ForeignKeyDefinition: Reference from local columns to another table
    TableDefinition: Columns, identity, indexes and foreign keys of one table
    DropRequest: Explicit destructive request (drop table or drop column)
    SchemaDefinition: Root model, a named and versioned set of tables
"""

import re
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TYPE_PATTERN = re.compile(r"^\s*([A-Za-z]+)\s*(?:\(\s*(\d+)\s*\))?\s*$")


def validate_identifier(value: str, what: str) -> str:
    """Reject empty or non-identifier names (they are interpolated into DDL)."""
    if not value or value.isspace():
        raise ValueError(f"{what} cannot be empty")
    if not IDENTIFIER_PATTERN.match(value):
        raise ValueError(
            f"{what} '{value}' must start with a letter or underscore and "
            f"contain only letters, digits and underscores"
        )
    return value


class LogicalType(str, Enum):
    """Dialect-neutral column types understood by the engine."""

    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    TEXT = "TEXT"
    VARCHAR = "VARCHAR"
    BOOLEAN = "BOOLEAN"
    TIMESTAMP = "TIMESTAMP"
    JSON = "JSON"


INTEGER_KINDS = frozenset({LogicalType.INTEGER, LogicalType.BIGINT})
TEXTUAL_KINDS = frozenset({LogicalType.TEXT, LogicalType.VARCHAR, LogicalType.JSON})


class ColumnType(BaseModel):
    """
    A logical column type.

    Attributes:
        kind: Logical type family
        length: Maximum length, required for VARCHAR and forbidden otherwise

    Example:
        >>> ColumnType.parse("varchar(20)")
        ColumnType(kind=<LogicalType.VARCHAR: 'VARCHAR'>, length=20)
        >>> str(ColumnType.parse("BIGINT"))
        'BIGINT'
    """

    model_config = ConfigDict(frozen=True)

    kind: LogicalType
    length: int | None = None

    @model_validator(mode="after")
    def validate_length(self) -> "ColumnType":
        """VARCHAR needs a positive length, every other kind rejects one."""
        if self.kind == LogicalType.VARCHAR:
            if self.length is None or self.length <= 0:
                raise ValueError("VARCHAR requires a positive length, e.g. VARCHAR(20)")
        elif self.length is not None:
            raise ValueError(f"{self.kind.value} does not take a length")
        return self

    @classmethod
    def parse(cls, text: str) -> "ColumnType":
        """Parse a declared type spelling such as 'TEXT' or 'VARCHAR(100)'."""
        match = TYPE_PATTERN.match(text or "")
        if not match:
            raise ValueError(f"Invalid column type: {text!r}")

        name, length = match.group(1).upper(), match.group(2)
        try:
            kind = LogicalType(name)
        except ValueError:
            allowed = ", ".join(t.value for t in LogicalType)
            raise ValueError(
                f"Unknown logical type {name!r}, expected one of: {allowed}"
            ) from None

        return cls(kind=kind, length=int(length) if length is not None else None)

    @property
    def is_integer(self) -> bool:
        return self.kind in INTEGER_KINDS

    @property
    def is_textual(self) -> bool:
        return self.kind in TEXTUAL_KINDS

    def __str__(self) -> str:
        if self.length is not None:
            return f"{self.kind.value}({self.length})"
        return self.kind.value


class DefaultValue(BaseModel):
    """
    Normalized default expression shared by declared and live columns.

    Literal values are stored in their canonical text form so a declared
    ``default: false`` and a live SQLite ``dflt_value`` of ``0`` compare equal.

    Attributes:
        kind: "literal" or "current_timestamp"
        value: Canonical text of the literal (None for current_timestamp)
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["literal", "current_timestamp"]
    value: str | None = None

    @classmethod
    def literal(cls, value: Any) -> "DefaultValue":
        """Build a literal default from a Python scalar."""
        if isinstance(value, bool):
            text = "1" if value else "0"
        elif isinstance(value, (int, float)):
            text = str(value)
        elif isinstance(value, str):
            text = value
        else:
            raise ValueError(f"Unsupported default literal: {value!r}")
        return cls(kind="literal", value=text)

    @classmethod
    def current_timestamp(cls) -> "DefaultValue":
        return cls(kind="current_timestamp")

    @property
    def is_current_timestamp(self) -> bool:
        return self.kind == "current_timestamp"

    def __str__(self) -> str:
        if self.is_current_timestamp:
            return "CURRENT_TIMESTAMP"
        return repr(self.value)


def coerce_default(value: Any) -> DefaultValue | None:
    """Turn a raw declared default (YAML scalar, dict or model) into a DefaultValue."""
    if value is None or isinstance(value, DefaultValue):
        return value
    if isinstance(value, dict):
        return DefaultValue.model_validate(value)
    if isinstance(value, str) and value.strip().upper() in (
        "CURRENT_TIMESTAMP",
        "CURRENT_TIMESTAMP()",
        "NOW()",
    ):
        return DefaultValue.current_timestamp()
    return DefaultValue.literal(value)


class ColumnDefinition(BaseModel):
    """
    Declared column.

    Attributes:
        name: Column name (identifier characters only)
        type: Logical column type (parsed from strings like "VARCHAR(20)")
        nullable: Whether NULL is allowed (forced False for identity columns)
        default: Literal or CURRENT_TIMESTAMP default, None for no default
        backfill_from: Existing column whose value populates this column
                       when it is newly added to a populated table
        unique: Realized as a unique index uq_<table>_<column>
        primary_key: Column-level identity shortcut for single-column keys
        auto_increment: Only valid on a single INTEGER/BIGINT primary key
    """

    name: str
    type: ColumnType
    nullable: bool = True
    default: DefaultValue | None = None
    backfill_from: str | None = None
    unique: bool = False
    primary_key: bool = False
    auto_increment: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_identifier(v, "Column name")

    @field_validator("type", mode="before")
    @classmethod
    def parse_type(cls, v: Any) -> Any:
        """Accept 'VARCHAR(20)' strings as well as ColumnType mappings."""
        if isinstance(v, str):
            return ColumnType.parse(v)
        return v

    @field_validator("default", mode="before")
    @classmethod
    def parse_default(cls, v: Any) -> DefaultValue | None:
        return coerce_default(v)

    @field_validator("backfill_from")
    @classmethod
    def validate_backfill_from(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_identifier(v, "backfill_from")

    @model_validator(mode="after")
    def validate_default_sources(self) -> "ColumnDefinition":
        """A column is populated from a default or from a backfill source, not both."""
        if self.backfill_from is not None and self.default is not None:
            raise ValueError(
                f"Column '{self.name}' cannot declare both default and backfill_from"
            )
        if self.backfill_from == self.name:
            raise ValueError(f"Column '{self.name}' cannot backfill from itself")
        if self.default is not None and self.default.is_current_timestamp:
            if self.type.kind != LogicalType.TIMESTAMP:
                raise ValueError(
                    f"Column '{self.name}': CURRENT_TIMESTAMP default requires TIMESTAMP type"
                )
        return self


class IndexDefinition(BaseModel):
    """
    Declared index.

    Attributes:
        name: Index name, used for existence checks
        columns: Ordered list of indexed columns
        unique: Whether the index enforces uniqueness
    """

    name: str
    columns: list[str]
    unique: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_identifier(v, "Index name")

    @field_validator("columns")
    @classmethod
    def validate_columns(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("Index must list at least one column")
        if len(set(v)) != len(v):
            raise ValueError(f"Index columns must be unique, got: {v}")
        for column in v:
            validate_identifier(column, "Index column")
        return v


class ForeignKeyDefinition(BaseModel):
    """
    Declared foreign key.

    Attributes:
        columns: Local source column(s)
        references_table: Referenced table
        references_columns: Referenced column(s), same count as columns
        on_delete: CASCADE, SET NULL or RESTRICT
        name: Optional constraint name (generated as fk_<table>_<cols> when omitted)
    """

    columns: list[str]
    references_table: str
    references_columns: list[str]
    on_delete: Literal["CASCADE", "SET NULL", "RESTRICT"] = "RESTRICT"
    name: str | None = None

    @field_validator("on_delete", mode="before")
    @classmethod
    def normalize_on_delete(cls, v: Any) -> Any:
        if isinstance(v, str):
            return " ".join(v.upper().split())
        return v

    @field_validator("references_table")
    @classmethod
    def validate_references_table(cls, v: str) -> str:
        return validate_identifier(v, "references_table")

    @model_validator(mode="after")
    def validate_column_counts(self) -> "ForeignKeyDefinition":
        if not self.columns:
            raise ValueError("Foreign key must list at least one column")
        if len(self.columns) != len(self.references_columns):
            raise ValueError(
                f"Foreign key columns {self.columns} and references_columns "
                f"{self.references_columns} must have the same length"
            )
        return self

    def constraint_name(self, table: str) -> str:
        """Return the explicit name or the generated fk_<table>_<cols> name."""
        if self.name:
            return self.name
        return f"fk_{table}_{'_'.join(self.columns)}"


class TableDefinition(BaseModel):
    """
    Declared table.

    After validation ``primary_key`` always holds the table identity, whether
    it was declared on the table or via a column-level ``primary_key: true``,
    and identity columns are NOT NULL.

    Attributes:
        name: Table name
        columns: Ordered column definitions
        primary_key: Identity column list
        indexes: Declared indexes
        foreign_keys: Declared foreign keys
    """

    name: str
    columns: list[ColumnDefinition]
    primary_key: list[str] | None = None
    indexes: list[IndexDefinition] = []
    foreign_keys: list[ForeignKeyDefinition] = []

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_identifier(v, "Table name")

    @model_validator(mode="after")
    def validate_table(self) -> "TableDefinition":
        """Check column uniqueness, identity, and every intra-table reference."""
        if not self.columns:
            raise ValueError(f"Table '{self.name}' must declare at least one column")

        names = [c.name for c in self.columns]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(
                f"Table '{self.name}' has duplicate column names: {', '.join(duplicates)}"
            )
        known = set(names)

        column_keys = [c.name for c in self.columns if c.primary_key]
        if self.primary_key and column_keys:
            raise ValueError(
                f"Table '{self.name}' declares its identity both on the table and on columns"
            )
        if len(column_keys) > 1:
            raise ValueError(
                f"Table '{self.name}' has {len(column_keys)} column-level primary keys; "
                f"use a table-level primary_key list for composite keys"
            )
        if column_keys:
            self.primary_key = column_keys
        if not self.primary_key:
            raise ValueError(f"Table '{self.name}' must declare exactly one identity")
        if len(set(self.primary_key)) != len(self.primary_key):
            raise ValueError(f"Table '{self.name}' primary key repeats a column")

        for key in self.primary_key:
            if key not in known:
                raise ValueError(
                    f"Table '{self.name}' primary key references unknown column '{key}'"
                )

        for column in self.columns:
            if column.name in self.primary_key:
                column.nullable = False
            if column.auto_increment:
                if self.primary_key != [column.name] or not column.type.is_integer:
                    raise ValueError(
                        f"Column '{self.name}.{column.name}': auto_increment requires "
                        f"a single-column INTEGER or BIGINT primary key"
                    )
            if column.backfill_from is not None and column.backfill_from not in known:
                raise ValueError(
                    f"Column '{self.name}.{column.name}' backfills from unknown "
                    f"column '{column.backfill_from}'"
                )

        index_names = [i.name for i in self.indexes]
        if len(set(index_names)) != len(index_names):
            raise ValueError(f"Table '{self.name}' has duplicate index names")
        for index in self.indexes:
            for column in index.columns:
                if column not in known:
                    raise ValueError(
                        f"Index '{index.name}' references unknown column "
                        f"'{self.name}.{column}'"
                    )

        for fk in self.foreign_keys:
            for column in fk.columns:
                if column not in known:
                    raise ValueError(
                        f"Foreign key on '{self.name}' references unknown local "
                        f"column '{column}'"
                    )

        return self

    def get_column(self, name: str) -> ColumnDefinition | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def unique_index_name(self, column: str) -> str:
        """Name of the unique index that realizes a column-level unique flag."""
        return f"uq_{self.name}_{column}"

    def all_indexes(self) -> list[IndexDefinition]:
        """Declared indexes plus the unique indexes implied by unique columns."""
        indexes = list(self.indexes)
        declared = {i.name for i in indexes}
        for column in self.columns:
            if column.unique and column.name not in self.primary_key:
                name = self.unique_index_name(column.name)
                if name not in declared:
                    indexes.append(
                        IndexDefinition(name=name, columns=[column.name], unique=True)
                    )
        return indexes


class DropRequest(BaseModel):
    """
    Explicit destructive request.

    Drops are never inferred from a diff; they are only planned when listed
    here AND the caller opts in to destructive steps.

    Attributes:
        table: Table to drop, or the table owning the column to drop
        column: Column to drop; None means drop the whole table
    """

    table: str
    column: str | None = None

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        return validate_identifier(v, "Drop table")

    @field_validator("column")
    @classmethod
    def validate_column(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_identifier(v, "Drop column")

    @property
    def is_column_drop(self) -> bool:
        return self.column is not None

    def describe(self) -> str:
        if self.column:
            return f"{self.table}.{self.column}"
        return self.table


class SchemaDefinition(BaseModel):
    """
    Root declared schema model.

    Attributes:
        name: Schema name (used in logs and stamped on reconciliation results)
        version: Positive schema version number
        tables: Declared tables, in declaration order
        drops: Explicit destructive requests
    """

    name: str
    version: int = 1
    tables: list[TableDefinition]
    drops: list[DropRequest] = []

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("Schema name cannot be empty")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Schema version must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_schema(self) -> "SchemaDefinition":
        """Table names are unique; references and drops are consistent."""
        names = [t.name for t in self.tables]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate table names: {', '.join(duplicates)}")

        tables = {t.name: t for t in self.tables}
        index_owner: dict[str, str] = {}
        for table in self.tables:
            for index in table.all_indexes():
                owner = index_owner.setdefault(index.name, table.name)
                if owner != table.name:
                    raise ValueError(
                        f"Index name '{index.name}' is declared on both "
                        f"'{owner}' and '{table.name}'"
                    )
            for fk in table.foreign_keys:
                target = tables.get(fk.references_table)
                if target is None:
                    continue
                for column in fk.references_columns:
                    if target.get_column(column) is None:
                        raise ValueError(
                            f"Foreign key on '{table.name}' references unknown "
                            f"column '{fk.references_table}.{column}'"
                        )

        for drop in self.drops:
            table = tables.get(drop.table)
            if table is None:
                continue
            if not drop.is_column_drop:
                raise ValueError(
                    f"Cannot drop table '{drop.table}': it is declared in the schema"
                )
            if table.get_column(drop.column) is not None:
                raise ValueError(
                    f"Cannot drop column '{drop.describe()}': it is declared in the schema"
                )

        return self

    def get_table(self, name: str) -> TableDefinition | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    @property
    def table_names(self) -> list[str]:
        return [t.name for t in self.tables]
