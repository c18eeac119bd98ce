"""
Schema Inspector for Schema Reconciler.

Introspects a live connection with dialect-native metadata queries and
produces a LiveSchemaSnapshot whose types and defaults are normalized to the
logical forms used by declared schemas.

SQLite:
    sqlite_master, PRAGMA table_info / index_list / index_info /
    foreign_key_list, COUNT(*) per table
MySQL:
    information_schema TABLES, COLUMNS, STATISTICS, KEY_COLUMN_USAGE +
    REFERENTIAL_CONSTRAINTS, COUNT(*) per table

The inspector is read-only and fails closed: if any metadata query fails
mid-scan an IntrospectionError is raised and no snapshot is returned.
A database without tables, or a MySQL database that does not exist yet, is
a normal result (empty snapshot).
"""

import logging
import re
import sqlite3

import mysql.connector

from ..config.capabilities import Dialect
from ..config.constants import REBUILD_TEMP_SUFFIX
from ..config.schema import ColumnType, DefaultValue, LogicalType
from ..exceptions import DatabaseConnectionError, IntrospectionError
from ..utils.time import utc_timestamp
from .connection import DatabaseConnection
from .snapshot import LiveColumn, LiveForeignKey, LiveIndex, LiveSchemaSnapshot, LiveTable

logger = logging.getLogger(__name__)

# "bigint(20) unsigned", "VARCHAR( 20 )", "character varying(20)", "decimal(10,2)"
_TYPE_SPELLING = re.compile(
    r"^\s*([a-z]+)(?:\s+varying)?\s*(?:\(\s*(\d+)\s*(?:,\s*\d+\s*)?\))?",
    re.IGNORECASE,
)

# MySQL 8 renders expression defaults with a charset introducer: _utf8mb4\'abc\'
_INTRODUCED_LITERAL = re.compile(r"^_[a-z0-9]+\\?'(.*?)\\?'$", re.IGNORECASE | re.DOTALL)

_CURRENT_TIMESTAMP_SPELLINGS = frozenset(
    {
        "CURRENT_TIMESTAMP",
        "CURRENT_TIMESTAMP()",
        "(CURRENT_TIMESTAMP)",
        "NOW()",
        "LOCALTIMESTAMP",
        "LOCALTIMESTAMP()",
    }
)

_BASE_TYPES = {
    "int": LogicalType.INTEGER,
    "integer": LogicalType.INTEGER,
    "smallint": LogicalType.INTEGER,
    "mediumint": LogicalType.INTEGER,
    "tinyint": LogicalType.INTEGER,
    "bigint": LogicalType.BIGINT,
    "text": LogicalType.TEXT,
    "clob": LogicalType.TEXT,
    "tinytext": LogicalType.TEXT,
    "mediumtext": LogicalType.TEXT,
    "longtext": LogicalType.TEXT,
    "varchar": LogicalType.VARCHAR,
    "char": LogicalType.VARCHAR,
    "character": LogicalType.VARCHAR,
    "nvarchar": LogicalType.VARCHAR,
    "nchar": LogicalType.VARCHAR,
    "boolean": LogicalType.BOOLEAN,
    "bool": LogicalType.BOOLEAN,
    "timestamp": LogicalType.TIMESTAMP,
    "datetime": LogicalType.TIMESTAMP,
    "date": LogicalType.TIMESTAMP,
    "json": LogicalType.JSON,
}

# MySQL stores BOOLEAN as tinyint(1); on SQLite the declared spelling survives
_BOOLEAN_TINYINT = {Dialect.SQLITE: False, Dialect.MYSQL: True}

_SQLITE_INDEX_ORIGINS = {"c": "index", "u": "unique", "pk": "pk"}


def normalize_type(dialect: Dialect | str, raw_type: str | None) -> ColumnType | None:
    """
    Map a dialect type spelling onto the logical type enum.

    Args:
        dialect: Dialect that reported the type
        raw_type: Type text as reported (e.g. "int(11)", "BIGINT AUTO_INCREMENT")

    Returns:
        ColumnType, or None when the spelling has no logical equivalent

    Example:
        >>> normalize_type("mysql", "tinyint(1)")
        ColumnType(kind=<LogicalType.BOOLEAN: 'BOOLEAN'>, length=None)
        >>> normalize_type("sqlite", "varchar(20)")
        ColumnType(kind=<LogicalType.VARCHAR: 'VARCHAR'>, length=20)
    """
    match = _TYPE_SPELLING.match(raw_type or "")
    if not match:
        return None

    base = match.group(1).lower()
    length = int(match.group(2)) if match.group(2) is not None else None
    kind = _BASE_TYPES.get(base)
    if kind is None:
        return None

    if base == "tinyint" and length == 1 and _BOOLEAN_TINYINT[Dialect(dialect)]:
        return ColumnType(kind=LogicalType.BOOLEAN)
    if kind == LogicalType.VARCHAR:
        if length is None or length <= 0:
            return ColumnType(kind=LogicalType.TEXT)
        return ColumnType(kind=kind, length=length)
    return ColumnType(kind=kind)


def normalize_default(raw_default: object) -> DefaultValue | None:
    """
    Normalize a live default expression.

    NULL and missing defaults both mean "no default". Every spelling of the
    current time collapses to CURRENT_TIMESTAMP. Quoted literals are
    unquoted so that 'abc', abc and _utf8mb4\\'abc\\' compare equal.
    """
    if raw_default is None:
        return None
    if isinstance(raw_default, bytes):
        raw_default = raw_default.decode("utf-8")

    text = str(raw_default).strip()
    if not text or text.upper() == "NULL":
        return None
    if text.upper() in _CURRENT_TIMESTAMP_SPELLINGS:
        return DefaultValue.current_timestamp()

    # SQLite keeps expression defaults in parentheses: DEFAULT ('x')
    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()

    introduced = _INTRODUCED_LITERAL.match(text)
    if introduced:
        return DefaultValue.literal(introduced.group(1).replace("\\'", "'"))
    if len(text) >= 2 and text[0] == text[-1] == "'":
        return DefaultValue.literal(text[1:-1].replace("''", "'"))
    return DefaultValue.literal(text)


def _text(value: object) -> str:
    """information_schema columns can come back as bytes with some drivers."""
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return "" if value is None else str(value)


def _quote_sqlite(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _is_reconciler_temp(name: str) -> bool:
    return name.endswith(REBUILD_TEMP_SUFFIX)


# ============================================================================
# SQLite
# ============================================================================


def _sqlite_tables(conn: DatabaseConnection) -> list[str]:
    rows = conn.query(
        "SELECT name FROM sqlite_master WHERE type = ? ORDER BY name",
        ("table",),
    )
    return [
        row[0]
        for row in rows
        if not row[0].startswith("sqlite_") and not _is_reconciler_temp(row[0])
    ]


def _sqlite_primary_key(conn: DatabaseConnection, table: str) -> tuple[str, ...]:
    rows = conn.query(f"PRAGMA table_info({_quote_sqlite(table)})")
    keyed = sorted((row[5], row[1]) for row in rows if row[5])
    return tuple(name for _, name in keyed)


def _sqlite_table(conn: DatabaseConnection, table: str) -> LiveTable:
    quoted = _quote_sqlite(table)

    info = conn.query(f"PRAGMA table_info({quoted})")
    primary_key = tuple(name for _, name in sorted((r[5], r[1]) for r in info if r[5]))
    # A single INTEGER PRIMARY KEY is the rowid alias and fills itself on insert
    rowid_alias = len(primary_key) == 1

    columns = []
    for _cid, name, raw_type, notnull, dflt_value, pk in info:
        raw_type = raw_type or ""
        is_pk = bool(pk)
        columns.append(
            LiveColumn(
                name=name,
                raw_type=raw_type,
                logical_type=normalize_type(Dialect.SQLITE, raw_type),
                nullable=not notnull and not is_pk,
                default=normalize_default(dflt_value),
                primary_key=is_pk,
                auto_increment=is_pk and rowid_alias and raw_type.upper() == "INTEGER",
            )
        )

    indexes = []
    for row in conn.query(f"PRAGMA index_list({quoted})"):
        index_name, unique = row[1], bool(row[2])
        if len(row) > 3:
            origin = _SQLITE_INDEX_ORIGINS.get(row[3], "index")
        else:
            origin = "unique" if index_name.startswith("sqlite_autoindex_") else "index"
        index_columns = conn.query(f"PRAGMA index_info({_quote_sqlite(index_name)})")
        indexes.append(
            LiveIndex(
                name=index_name,
                columns=tuple(r[2] for r in sorted(index_columns)),
                unique=unique,
                origin=origin,
            )
        )

    grouped: dict[int, dict] = {}
    for row in conn.query(f"PRAGMA foreign_key_list({quoted})"):
        fk_id, _seq, target, source, to, _on_update, on_delete = row[:7]
        entry = grouped.setdefault(
            fk_id,
            {"target": target, "columns": [], "to": [], "on_delete": on_delete},
        )
        entry["columns"].append(source)
        entry["to"].append(to)

    foreign_keys = []
    for entry in grouped.values():
        references = entry["to"]
        if any(column is None for column in references):
            # REFERENCES t without a column list points at t's primary key
            references = list(_sqlite_primary_key(conn, entry["target"]))
        foreign_keys.append(
            LiveForeignKey(
                columns=tuple(entry["columns"]),
                references_table=entry["target"],
                references_columns=tuple(references),
                on_delete=_normalize_on_delete(entry["on_delete"]),
            )
        )

    row_count = conn.query(f"SELECT COUNT(*) FROM {quoted}")[0][0]

    return LiveTable(
        name=table,
        columns=tuple(columns),
        primary_key=primary_key,
        indexes=tuple(indexes),
        foreign_keys=tuple(foreign_keys),
        row_count=row_count,
    )


# ============================================================================
# MySQL
# ============================================================================


def _mysql_schema_name(conn: DatabaseConnection) -> str:
    if conn.database_name:
        return conn.database_name
    rows = conn.query("SELECT DATABASE()")
    name = _text(rows[0][0]) if rows else ""
    if not name:
        raise IntrospectionError("MySQL connection has no default database selected")
    return name


def _mysql_tables(conn: DatabaseConnection, schema: str) -> list[str]:
    rows = conn.query(
        "SELECT TABLE_NAME FROM information_schema.TABLES "
        "WHERE TABLE_SCHEMA = %s AND TABLE_TYPE = 'BASE TABLE' "
        "ORDER BY TABLE_NAME",
        (schema,),
    )
    names = [_text(row[0]) for row in rows]
    return [name for name in names if not _is_reconciler_temp(name)]


def _mysql_table(conn: DatabaseConnection, schema: str, table: str) -> LiveTable:
    index_rows = conn.query(
        "SELECT INDEX_NAME, NON_UNIQUE, COLUMN_NAME FROM information_schema.STATISTICS "
        "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s "
        "ORDER BY INDEX_NAME, SEQ_IN_INDEX",
        (schema, table),
    )
    index_columns: dict[str, list[str]] = {}
    index_unique: dict[str, bool] = {}
    for index_name, non_unique, column in index_rows:
        index_name = _text(index_name)
        index_columns.setdefault(index_name, []).append(_text(column))
        index_unique[index_name] = not int(non_unique)
    primary_key = tuple(index_columns.get("PRIMARY", ()))

    column_rows = conn.query(
        "SELECT COLUMN_NAME, COLUMN_TYPE, IS_NULLABLE, COLUMN_DEFAULT, EXTRA "
        "FROM information_schema.COLUMNS "
        "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s "
        "ORDER BY ORDINAL_POSITION",
        (schema, table),
    )
    columns = []
    for name, column_type, is_nullable, column_default, extra in column_rows:
        name = _text(name)
        raw_type = _text(column_type)
        extra = _text(extra).lower()
        is_pk = name in primary_key
        columns.append(
            LiveColumn(
                name=name,
                raw_type=raw_type,
                logical_type=normalize_type(Dialect.MYSQL, raw_type),
                nullable=_text(is_nullable).upper() == "YES" and not is_pk,
                default=normalize_default(column_default),
                primary_key=is_pk,
                auto_increment="auto_increment" in extra,
            )
        )

    fk_rows = conn.query(
        "SELECT kcu.CONSTRAINT_NAME, kcu.COLUMN_NAME, kcu.REFERENCED_TABLE_NAME, "
        "kcu.REFERENCED_COLUMN_NAME, rc.DELETE_RULE "
        "FROM information_schema.KEY_COLUMN_USAGE kcu "
        "JOIN information_schema.REFERENTIAL_CONSTRAINTS rc "
        "ON kcu.CONSTRAINT_NAME = rc.CONSTRAINT_NAME "
        "AND kcu.TABLE_SCHEMA = rc.CONSTRAINT_SCHEMA "
        "AND kcu.TABLE_NAME = rc.TABLE_NAME "
        "WHERE kcu.TABLE_SCHEMA = %s AND kcu.TABLE_NAME = %s "
        "AND kcu.REFERENCED_TABLE_NAME IS NOT NULL "
        "ORDER BY kcu.CONSTRAINT_NAME, kcu.ORDINAL_POSITION",
        (schema, table),
    )
    grouped: dict[str, dict] = {}
    for constraint, column, target, target_column, delete_rule in fk_rows:
        entry = grouped.setdefault(
            _text(constraint),
            {"target": _text(target), "columns": [], "to": [], "on_delete": delete_rule},
        )
        entry["columns"].append(_text(column))
        entry["to"].append(_text(target_column))

    foreign_keys = tuple(
        LiveForeignKey(
            columns=tuple(entry["columns"]),
            references_table=entry["target"],
            references_columns=tuple(entry["to"]),
            on_delete=_normalize_on_delete(entry["on_delete"]),
            name=name,
        )
        for name, entry in grouped.items()
    )

    indexes = []
    for index_name, cols in index_columns.items():
        if index_name == "PRIMARY":
            origin = "pk"
        elif index_name in grouped:
            # InnoDB creates an index named after the constraint when none exists
            origin = "fk"
        else:
            origin = "index"
        indexes.append(
            LiveIndex(
                name=index_name,
                columns=tuple(cols),
                unique=index_unique[index_name],
                origin=origin,
            )
        )

    row_count = conn.query(f"SELECT COUNT(*) FROM `{table.replace('`', '``')}`")[0][0]

    return LiveTable(
        name=table,
        columns=tuple(columns),
        primary_key=primary_key,
        indexes=tuple(indexes),
        foreign_keys=foreign_keys,
        row_count=int(row_count),
    )


def _normalize_on_delete(rule: object) -> str:
    text = " ".join(_text(rule).upper().split())
    # NO ACTION is RESTRICT for both engines (checked at statement end)
    if text in ("", "NO ACTION"):
        return "RESTRICT"
    return text


# ============================================================================
# Entry point
# ============================================================================


def inspect(connection: DatabaseConnection) -> LiveSchemaSnapshot:
    """
    Introspect a live database.

    Args:
        connection: Open connection (never closed here)

    Returns:
        LiveSchemaSnapshot with every base table, its columns, identity,
        indexes, foreign keys and row count

    Raises:
        DatabaseConnectionError: If the server connection is lost mid-scan
        IntrospectionError: If any metadata query fails (fail closed)
    """
    dialect = connection.dialect
    tables: dict[str, LiveTable] = {}
    current = "<catalog>"

    if connection.database_missing:
        logger.info(f"{connection.identifier} does not exist yet; live schema is empty")
        return LiveSchemaSnapshot(
            dialect=dialect,
            identifier=connection.identifier,
            tables=tables,
            taken_at=utc_timestamp(),
        )

    try:
        if dialect == Dialect.SQLITE:
            for current in _sqlite_tables(connection):
                tables[current] = _sqlite_table(connection, current)
        else:
            schema = _mysql_schema_name(connection)
            for current in _mysql_tables(connection, schema):
                tables[current] = _mysql_table(connection, schema, current)
    except mysql.connector.errors.InterfaceError as e:
        raise DatabaseConnectionError(
            f"Lost connection to {connection.identifier} while inspecting {current}: {e}"
        ) from e
    except (sqlite3.Error, mysql.connector.Error) as e:
        raise IntrospectionError(
            f"Introspection of {connection.identifier} failed at {current}: {e}"
        ) from e

    unknown = [
        f"{t.name}.{c.name} ({c.raw_type or 'untyped'})"
        for t in tables.values()
        for c in t.columns
        if c.logical_type is None
    ]
    if unknown:
        logger.warning(
            f"Unrecognized column types are kept as-is and never modified: {', '.join(unknown)}"
        )

    logger.info(f"Inspected {connection.identifier}: {len(tables)} tables")
    return LiveSchemaSnapshot(
        dialect=dialect,
        identifier=connection.identifier,
        tables=tables,
        taken_at=utc_timestamp(),
    )


# ============================================================================
# Existence checks (executor re-checks before idempotent steps)
# ============================================================================


def table_exists(conn: DatabaseConnection, table: str) -> bool:
    if conn.dialect == Dialect.SQLITE:
        rows = conn.query(
            "SELECT 1 FROM sqlite_master WHERE type = ? AND name = ?", ("table", table)
        )
    else:
        rows = conn.query(
            "SELECT 1 FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s",
            (_mysql_schema_name(conn), table),
        )
    return bool(rows)


def column_exists(conn: DatabaseConnection, table: str, column: str) -> bool:
    if conn.dialect == Dialect.SQLITE:
        rows = conn.query(f"PRAGMA table_info({_quote_sqlite(table)})")
        return any(row[1] == column for row in rows)
    rows = conn.query(
        "SELECT 1 FROM information_schema.COLUMNS "
        "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND COLUMN_NAME = %s",
        (_mysql_schema_name(conn), table, column),
    )
    return bool(rows)


def index_exists(conn: DatabaseConnection, table: str, index: str) -> bool:
    if conn.dialect == Dialect.SQLITE:
        # Index names are database-wide in SQLite
        rows = conn.query(
            "SELECT 1 FROM sqlite_master WHERE type = ? AND name = ?", ("index", index)
        )
    else:
        rows = conn.query(
            "SELECT 1 FROM information_schema.STATISTICS "
            "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND INDEX_NAME = %s LIMIT 1",
            (_mysql_schema_name(conn), table, index),
        )
    return bool(rows)
