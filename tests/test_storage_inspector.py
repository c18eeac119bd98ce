"""
Tests for storage.inspector module.

SQLite introspection runs against real temporary databases. MySQL
introspection runs against a fake DB-API connection answering the
information_schema queries with canned rows.
"""

import sqlite3

import mysql.connector
import pytest

from schema_reconciler.config.capabilities import Dialect
from schema_reconciler.config.schema import ColumnType, DefaultValue, LogicalType, TableDefinition
from schema_reconciler.exceptions import DatabaseConnectionError, IntrospectionError
from schema_reconciler.planner.sql import render_step
from schema_reconciler.planner.steps import CreateTable
from schema_reconciler.storage.connection import DatabaseConnection, DatabaseURL
from schema_reconciler.storage.inspector import (
    column_exists,
    index_exists,
    inspect,
    normalize_default,
    normalize_type,
    table_exists,
)

BOT_DDL = """
CREATE TABLE market_listings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    seller_id VARCHAR(20) NOT NULL,
    price BIGINT NOT NULL DEFAULT 0,
    active BOOLEAN DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE market_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    listing_id INTEGER NOT NULL REFERENCES market_listings(id) ON DELETE CASCADE,
    buyer_id VARCHAR(20) NOT NULL UNIQUE,
    note TEXT DEFAULT 'n/a'
);
CREATE INDEX idx_market_listings_seller_id ON market_listings(seller_id);
CREATE TABLE users (
    user_id VARCHAR(20),
    guild_id VARCHAR(20),
    username VARCHAR(100) NOT NULL DEFAULT 'unknown',
    PRIMARY KEY (user_id, guild_id)
);
INSERT INTO market_listings (seller_id, price) VALUES ('1', 10), ('2', 20);
"""


@pytest.fixture
def bot_db(tmp_path):
    raw = sqlite3.connect(tmp_path / "bot.sqlite")
    raw.executescript(BOT_DDL)
    raw.commit()
    yield DatabaseConnection.from_sqlite(raw)
    raw.close()


# ============================================================================
# Normalization
# ============================================================================


class TestNormalizeType:
    """Tests for normalize_type."""

    @pytest.mark.parametrize(
        "dialect,raw,expected",
        [
            ("mysql", "int(11)", "INTEGER"),
            ("mysql", "bigint(20) unsigned", "BIGINT"),
            ("mysql", "tinyint(1)", "BOOLEAN"),
            ("mysql", "tinyint(4)", "INTEGER"),
            ("mysql", "longtext", "TEXT"),
            ("mysql", "datetime", "TIMESTAMP"),
            ("mysql", "json", "JSON"),
            ("sqlite", "tinyint(1)", "INTEGER"),
            ("sqlite", "VARCHAR( 20 )", "VARCHAR(20)"),
            ("sqlite", "character varying(36)", "VARCHAR(36)"),
            ("sqlite", "BOOLEAN", "BOOLEAN"),
            ("sqlite", "varchar", "TEXT"),
        ],
    )
    def test_known_spellings(self, dialect, raw, expected):
        assert str(normalize_type(dialect, raw)) == expected

    @pytest.mark.parametrize("raw", ["", None, "decimal(10,2)", "blob", "REAL"])
    def test_unknown_spellings(self, raw):
        assert normalize_type("sqlite", raw) is None


class TestNormalizeDefault:
    """Tests for normalize_default."""

    @pytest.mark.parametrize("raw", [None, "NULL", "null", ""])
    def test_no_default(self, raw):
        assert normalize_default(raw) is None

    @pytest.mark.parametrize(
        "raw", ["CURRENT_TIMESTAMP", "current_timestamp()", "(CURRENT_TIMESTAMP)", "now()"]
    )
    def test_current_timestamp(self, raw):
        assert normalize_default(raw) == DefaultValue.current_timestamp()

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("'unknown'", "unknown"),
            ("'it''s'", "it's"),
            ("('abc')", "abc"),
            ("_utf8mb4\\'abc\\'", "abc"),
            ("0", "0"),
            (b"1", "1"),
            (1, "1"),
        ],
    )
    def test_literals(self, raw, expected):
        assert normalize_default(raw) == DefaultValue.literal(expected)


# ============================================================================
# SQLite
# ============================================================================


class TestInspectSQLite:
    """Tests for inspect() on SQLite."""

    def test_tables_found(self, bot_db):
        snapshot = inspect(bot_db)

        assert snapshot.dialect == Dialect.SQLITE
        assert snapshot.table_names == ["market_listings", "market_transactions", "users"]
        # sqlite_sequence is internal
        assert not snapshot.has_table("sqlite_sequence")
        assert snapshot.taken_at.endswith("Z")

    def test_columns_normalized(self, bot_db):
        listings = inspect(bot_db).get_table("market_listings")

        assert listings.column_names == ["id", "seller_id", "price", "active", "created_at"]
        assert listings.primary_key == ("id",)
        assert listings.row_count == 2

        identity = listings.get_column("id")
        assert identity.auto_increment
        assert not identity.nullable

        price = listings.get_column("price")
        assert price.logical_type == ColumnType(kind=LogicalType.BIGINT)
        assert not price.nullable
        assert price.default == DefaultValue.literal("0")

        created_at = listings.get_column("created_at")
        assert created_at.logical_type.kind == LogicalType.TIMESTAMP
        assert created_at.default.is_current_timestamp

    def test_indexes_and_origins(self, bot_db):
        snapshot = inspect(bot_db)
        listings = snapshot.get_table("market_listings")
        transactions = snapshot.get_table("market_transactions")
        users = snapshot.get_table("users")

        index = listings.get_index("idx_market_listings_seller_id")
        assert index.columns == ("seller_id",)
        assert not index.unique
        assert not index.is_generated

        assert transactions.is_unique_on("buyer_id")
        generated = [i for i in transactions.indexes if i.is_generated]
        assert [i.origin for i in generated] == ["unique"]

        assert users.primary_key == ("user_id", "guild_id")
        assert [i.origin for i in users.indexes] == ["pk"]

    def test_foreign_keys(self, bot_db):
        transactions = inspect(bot_db).get_table("market_transactions")

        (fk,) = transactions.foreign_keys
        assert fk.columns == ("listing_id",)
        assert fk.references_table == "market_listings"
        assert fk.references_columns == ("id",)
        assert fk.on_delete == "CASCADE"

    def test_foreign_key_without_column_list_points_at_identity(self, tmp_path):
        raw = sqlite3.connect(tmp_path / "fk.sqlite")
        raw.executescript(
            "CREATE TABLE parent (id INTEGER PRIMARY KEY);"
            "CREATE TABLE child (id INTEGER PRIMARY KEY, parent_id INTEGER REFERENCES parent);"
        )
        conn = DatabaseConnection.from_sqlite(raw)

        (fk,) = inspect(conn).get_table("child").foreign_keys
        assert fk.references_columns == ("id",)
        assert fk.on_delete == "RESTRICT"
        raw.close()

    def test_empty_database(self, tmp_path):
        raw = sqlite3.connect(tmp_path / "empty.sqlite")
        snapshot = inspect(DatabaseConnection.from_sqlite(raw))
        assert snapshot.tables == {}
        raw.close()

    def test_rebuild_leftovers_ignored(self, bot_db):
        bot_db.raw.execute("CREATE TABLE users__reconcile_old (id INTEGER PRIMARY KEY)")
        assert not inspect(bot_db).has_table("users__reconcile_old")

    def test_unknown_column_type_kept(self, bot_db):
        bot_db.raw.execute("CREATE TABLE blobs (id INTEGER PRIMARY KEY, payload BLOB)")
        payload = inspect(bot_db).get_table("blobs").get_column("payload")
        assert payload.logical_type is None
        assert payload.type_label == "BLOB"

    def test_inspect_is_read_only(self, bot_db):
        inspect(bot_db)
        assert bot_db.statements == []

    def test_metadata_failure_fails_closed(self, bot_db):
        bot_db.raw.close()
        with pytest.raises(IntrospectionError, match="Introspection of"):
            inspect(bot_db)

    def test_existence_checks(self, bot_db):
        assert table_exists(bot_db, "users")
        assert not table_exists(bot_db, "missing")
        assert column_exists(bot_db, "users", "username")
        assert not column_exists(bot_db, "users", "nickname")
        assert index_exists(bot_db, "market_listings", "idx_market_listings_seller_id")
        assert not index_exists(bot_db, "market_listings", "idx_missing")

    def test_normalized_view_hides_generated_names(self, bot_db):
        normalized = inspect(bot_db).normalized()

        transactions = normalized["market_transactions"]
        assert transactions["indexes"] == {}
        assert transactions["columns"]["buyer_id"]["unique"] is True
        assert normalized["market_listings"]["indexes"] == {
            "idx_market_listings_seller_id": {"columns": ["seller_id"], "unique": False}
        }
        assert "row_count" not in normalized["market_listings"]


# ============================================================================
# MySQL (fake DB-API connection)
# ============================================================================


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.rowcount = 0
        self._rows = []

    def execute(self, sql, params=()):
        self.connection.queries.append((sql, params))
        if self.connection.error is not None:
            raise self.connection.error
        for fragment, rows in self.connection.responses.items():
            if fragment in sql:
                self._rows = rows
                return
        self._rows = []

    def fetchall(self):
        return list(self._rows)

    def close(self):
        pass


class FakeMySQLConnection:
    """Answers queries by the first response key found in the SQL text."""

    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.queries = []
        self.autocommit = False

    def cursor(self):
        return FakeCursor(self)


def mysql_connection(raw):
    url = DatabaseURL(Dialect.MYSQL, "jmf_bot", host="db", port=3306, user="bot")
    return DatabaseConnection(raw, Dialect.MYSQL, url.identifier, url)


COMMAND_USAGE_RESPONSES = {
    "information_schema.TABLES": [("command_usage",), ("command_usage__reconcile_old",)],
    "information_schema.STATISTICS": [
        ("PRIMARY", 0, "id"),
        ("idx_command_usage_user_id", 1, "user_id"),
    ],
    "information_schema.COLUMNS": [
        ("id", "int", "NO", None, "auto_increment"),
        ("user_id", "varchar(20)", "NO", None, ""),
        ("command", "text", "YES", None, ""),
        ("timestamp", "timestamp", "YES", "CURRENT_TIMESTAMP", "DEFAULT_GENERATED"),
    ],
    "KEY_COLUMN_USAGE": [],
    "COUNT(*)": [(3,)],
}


class TestInspectMySQL:
    """Tests for inspect() on MySQL via canned information_schema rows."""

    def test_table_parsed(self):
        conn = mysql_connection(FakeMySQLConnection(COMMAND_USAGE_RESPONSES))
        snapshot = inspect(conn)

        assert snapshot.dialect == Dialect.MYSQL
        assert snapshot.identifier == "db:3306/jmf_bot"
        assert snapshot.table_names == ["command_usage"]

        table = snapshot.get_table("command_usage")
        assert table.primary_key == ("id",)
        assert table.row_count == 3
        assert table.get_column("id").auto_increment
        assert table.get_column("user_id").logical_type == ColumnType.parse("VARCHAR(20)")
        assert table.get_column("timestamp").default.is_current_timestamp
        assert table.get_index("PRIMARY").origin == "pk"
        assert table.get_index("idx_command_usage_user_id").origin == "index"

    def test_queries_scoped_to_database(self):
        raw = FakeMySQLConnection(COMMAND_USAGE_RESPONSES)
        inspect(mysql_connection(raw))

        scoped = [params for sql, params in raw.queries if "information_schema" in sql]
        assert scoped
        assert all(params[0] == "jmf_bot" for params in scoped)

    def test_foreign_keys_and_implicit_index(self):
        responses = {
            "information_schema.TABLES": [("market_transactions",)],
            "information_schema.STATISTICS": [
                ("PRIMARY", 0, "id"),
                ("fk_market_transactions_listing_id", 1, "listing_id"),
            ],
            "information_schema.COLUMNS": [
                ("id", "int", "NO", None, "auto_increment"),
                ("listing_id", "int", "NO", None, ""),
            ],
            "KEY_COLUMN_USAGE": [
                (
                    "fk_market_transactions_listing_id",
                    "listing_id",
                    "market_listings",
                    "id",
                    "CASCADE",
                ),
            ],
            "COUNT(*)": [(0,)],
        }
        table = inspect(mysql_connection(FakeMySQLConnection(responses))).get_table(
            "market_transactions"
        )

        (fk,) = table.foreign_keys
        assert fk.name == "fk_market_transactions_listing_id"
        assert fk.on_delete == "CASCADE"
        assert table.get_index("fk_market_transactions_listing_id").origin == "fk"

    def test_lost_connection(self):
        error = mysql.connector.errors.InterfaceError(msg="Lost connection")
        conn = mysql_connection(FakeMySQLConnection(error=error))
        with pytest.raises(DatabaseConnectionError, match="Lost connection to db:3306/jmf_bot"):
            inspect(conn)

    def test_query_failure_fails_closed(self):
        error = mysql.connector.errors.ProgrammingError(msg="SELECT command denied")
        conn = mysql_connection(FakeMySQLConnection(error=error))
        with pytest.raises(IntrospectionError):
            inspect(conn)

    def test_missing_database_is_empty(self):
        raw = FakeMySQLConnection(COMMAND_USAGE_RESPONSES)
        conn = mysql_connection(raw)
        conn.database_missing = True

        snapshot = inspect(conn)

        assert snapshot.tables == {}
        assert snapshot.identifier == "db:3306/jmf_bot"
        assert raw.queries == []


class TestDialectEquivalence:
    """The same declared table normalizes identically on both dialects."""

    def test_sqlite_and_mysql_normalize_the_same(self, tmp_path):
        raw = sqlite3.connect(tmp_path / "bot.sqlite")
        raw.executescript(
            'CREATE TABLE "command_usage" ('
            '"id" INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT, '
            '"user_id" VARCHAR(20) NOT NULL, '
            '"command" TEXT, '
            '"timestamp" TIMESTAMP DEFAULT CURRENT_TIMESTAMP);'
            'CREATE INDEX "idx_command_usage_user_id" ON "command_usage" ("user_id");'
        )
        sqlite_view = inspect(DatabaseConnection.from_sqlite(raw)).normalized()
        raw.close()

        mysql_view = inspect(
            mysql_connection(FakeMySQLConnection(COMMAND_USAGE_RESPONSES))
        ).normalized()

        assert sqlite_view == mysql_view

    def test_rendered_bigint_identity_normalizes_the_same(self, tmp_path):
        """One declared table rendered for each dialect, then inspected."""
        table = TableDefinition.model_validate(
            {
                "name": "market_listings",
                "columns": [
                    {"name": "id", "type": "BIGINT", "primary_key": True, "auto_increment": True},
                    {"name": "seller_id", "type": "VARCHAR(20)", "nullable": False},
                    {"name": "price", "type": "BIGINT", "nullable": False, "default": 0},
                ],
            }
        )

        (sqlite_ddl,) = render_step(CreateTable(table), Dialect.SQLITE)
        raw = sqlite3.connect(tmp_path / "market.sqlite")
        raw.execute(sqlite_ddl)
        sqlite_view = inspect(DatabaseConnection.from_sqlite(raw)).normalized()
        raw.close()

        (mysql_ddl,) = render_step(CreateTable(table), Dialect.MYSQL)
        assert "`id` BIGINT NOT NULL AUTO_INCREMENT" in mysql_ddl
        assert "`price` BIGINT NOT NULL DEFAULT '0'" in mysql_ddl
        responses = {
            "information_schema.TABLES": [("market_listings",)],
            "information_schema.STATISTICS": [("PRIMARY", 0, "id")],
            "information_schema.COLUMNS": [
                ("id", "bigint", "NO", None, "auto_increment"),
                ("seller_id", "varchar(20)", "NO", None, ""),
                ("price", "bigint", "NO", "0", ""),
            ],
            "KEY_COLUMN_USAGE": [],
            "COUNT(*)": [(0,)],
        }
        mysql_view = inspect(mysql_connection(FakeMySQLConnection(responses))).normalized()

        assert sqlite_view == mysql_view
        assert mysql_view["market_listings"]["columns"]["id"]["type"] == "INTEGER"
        assert mysql_view["market_listings"]["columns"]["price"]["type"] == "BIGINT"
