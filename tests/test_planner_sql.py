"""
Tests for planner.sql module.

Checks the exact statements rendered for each step kind in both dialects.
SQLite output is also executed against an in-memory database.
"""

import sqlite3

import pytest

from schema_reconciler.config.capabilities import Dialect
from schema_reconciler.config.schema import (
    ColumnDefinition,
    ColumnType,
    DefaultValue,
    ForeignKeyDefinition,
    IndexDefinition,
    TableDefinition,
)
from schema_reconciler.planner.sql import (
    MySQLRenderer,
    SQLiteRenderer,
    get_renderer,
    render_plan,
    render_step,
)
from schema_reconciler.planner.steps import (
    AddColumn,
    AddForeignKey,
    BackfillColumn,
    ColumnCopy,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropTable,
    MigrationPlan,
    ModifyColumn,
    RebuildTable,
    RequireBackup,
)
from schema_reconciler.storage.snapshot import LiveColumn

COMMAND_USAGE = TableDefinition.model_validate(
    {
        "name": "command_usage",
        "columns": [
            {"name": "id", "type": "INTEGER", "primary_key": True, "auto_increment": True},
            {"name": "user_id", "type": "VARCHAR(20)", "nullable": False},
            {"name": "command", "type": "TEXT"},
            {"name": "timestamp", "type": "TIMESTAMP", "default": "CURRENT_TIMESTAMP"},
        ],
        "indexes": [{"name": "idx_command_usage_user_id", "columns": ["user_id"]}],
    }
)

LISTING_FK = ForeignKeyDefinition(
    columns=["listing_id"],
    references_table="market_listings",
    references_columns=["id"],
    on_delete="CASCADE",
)

COMMAND = ColumnDefinition(name="command", type="TEXT", nullable=False, default="unknown")


@pytest.fixture
def sqlite_db():
    raw = sqlite3.connect(":memory:", isolation_level=None)
    yield raw
    raw.close()


# ============================================================================
# CREATE TABLE / CREATE INDEX
# ============================================================================


class TestCreateTable:
    """Tests for CreateTable rendering."""

    def test_sqlite_inline_identity(self):
        (statement,) = render_step(CreateTable(COMMAND_USAGE), Dialect.SQLITE)
        assert statement == (
            'CREATE TABLE "command_usage" (\n'
            '    "id" INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,\n'
            '    "user_id" VARCHAR(20) NOT NULL,\n'
            '    "command" TEXT,\n'
            '    "timestamp" TIMESTAMP DEFAULT CURRENT_TIMESTAMP\n'
            ")"
        )

    def test_mysql_table_level_key_and_options(self):
        (statement,) = render_step(CreateTable(COMMAND_USAGE), Dialect.MYSQL)
        assert statement == (
            "CREATE TABLE `command_usage` (\n"
            "    `id` INT NOT NULL AUTO_INCREMENT,\n"
            "    `user_id` VARCHAR(20) NOT NULL,\n"
            "    `command` TEXT NULL,\n"
            "    `timestamp` TIMESTAMP NULL DEFAULT CURRENT_TIMESTAMP,\n"
            "    PRIMARY KEY (`id`)\n"
            ") ENGINE=InnoDB DEFAULT CHARSET=utf8mb4"
        )

    def test_composite_key_and_foreign_key(self):
        table = TableDefinition.model_validate(
            {
                "name": "market_transactions",
                "primary_key": ["listing_id", "buyer_id"],
                "columns": [
                    {"name": "listing_id", "type": "INTEGER"},
                    {"name": "buyer_id", "type": "VARCHAR(20)"},
                ],
                "foreign_keys": [LISTING_FK.model_dump()],
            }
        )
        (statement,) = render_step(CreateTable(table), Dialect.SQLITE)

        assert '    PRIMARY KEY ("listing_id", "buyer_id"),\n' in statement
        assert statement.endswith(
            'CONSTRAINT "fk_market_transactions_listing_id" FOREIGN KEY ("listing_id") '
            'REFERENCES "market_listings" ("id") ON DELETE CASCADE\n)'
        )

    def test_sqlite_statements_execute(self, sqlite_db):
        for step in [CreateTable(COMMAND_USAGE)] + [
            CreateIndex("command_usage", i) for i in COMMAND_USAGE.all_indexes()
        ]:
            for statement in render_step(step, Dialect.SQLITE):
                sqlite_db.execute(statement)

        sqlite_db.execute("INSERT INTO command_usage (user_id) VALUES ('42')")
        row = sqlite_db.execute("SELECT id, timestamp FROM command_usage").fetchone()
        assert row[0] == 1
        assert row[1] is not None


class TestCreateIndex:
    """Tests for CreateIndex rendering."""

    def test_plain_index(self):
        step = CreateIndex("command_usage", IndexDefinition(name="idx_cmd", columns=["command"]))
        assert render_step(step, "sqlite") == [
            'CREATE INDEX "idx_cmd" ON "command_usage" ("command")'
        ]

    def test_unique_multi_column_mysql(self):
        index = IndexDefinition(name="uq_user_guild", columns=["user_id", "guild_id"], unique=True)
        assert render_step(CreateIndex("users", index), "mysql") == [
            "CREATE UNIQUE INDEX `uq_user_guild` ON `users` (`user_id`, `guild_id`)"
        ]


# ============================================================================
# Column changes
# ============================================================================


class TestColumnStatements:
    """AddColumn, BackfillColumn, ModifyColumn, DropColumn."""

    def test_add_nullable_column(self):
        step = AddColumn("command_usage", ColumnDefinition(name="guild_id", type="VARCHAR(20)"))
        assert render_step(step, "sqlite") == [
            'ALTER TABLE "command_usage" ADD COLUMN "guild_id" VARCHAR(20)'
        ]
        assert render_step(step, "mysql") == [
            "ALTER TABLE `command_usage` ADD COLUMN `guild_id` VARCHAR(20) NULL"
        ]

    def test_add_column_with_literal_default(self):
        step = AddColumn("command_usage", COMMAND)
        assert render_step(step, "sqlite") == [
            "ALTER TABLE \"command_usage\" ADD COLUMN \"command\" TEXT NOT NULL DEFAULT 'unknown'"
        ]
        # TEXT defaults are expressions on MySQL
        assert render_step(step, "mysql") == [
            "ALTER TABLE `command_usage` ADD COLUMN `command` TEXT NOT NULL DEFAULT ('unknown')"
        ]

    def test_boolean_default(self):
        verified = ColumnDefinition(name="verified", type="BOOLEAN", default=False)
        step = AddColumn("account_links", verified)
        assert render_step(step, "mysql") == [
            "ALTER TABLE `account_links` ADD COLUMN `verified` TINYINT(1) NULL DEFAULT '0'"
        ]
        assert render_step(step, "sqlite") == [
            "ALTER TABLE \"account_links\" ADD COLUMN \"verified\" BOOLEAN DEFAULT '0'"
        ]

    def test_backfill(self):
        step = BackfillColumn("account_links", "discord_id", "user_id")
        assert render_step(step, "sqlite") == [
            'UPDATE "account_links" SET "discord_id" = "user_id" WHERE "discord_id" IS NULL'
        ]

    def test_modify_column_fills_nulls_first(self):
        step = ModifyColumn("command_usage", COMMAND, fill_nulls=DefaultValue.literal("unknown"))
        assert render_step(step, "mysql") == [
            "UPDATE `command_usage` SET `command` = 'unknown' WHERE `command` IS NULL",
            "ALTER TABLE `command_usage` MODIFY COLUMN `command` TEXT NOT NULL DEFAULT ('unknown')",
        ]

    def test_modify_column_without_fill(self):
        step = ModifyColumn("command_usage", ColumnDefinition(name="user_id", type="VARCHAR(64)"))
        assert render_step(step, "mysql") == [
            "ALTER TABLE `command_usage` MODIFY COLUMN `user_id` VARCHAR(64) NULL"
        ]

    def test_sqlite_cannot_modify(self):
        with pytest.raises(NotImplementedError, match="sqlite cannot modify columns inline"):
            render_step(ModifyColumn("command_usage", COMMAND), "sqlite")

    def test_drop_column_and_table(self):
        assert render_step(DropColumn("command_usage", "command_name"), "mysql") == [
            "ALTER TABLE `command_usage` DROP COLUMN `command_name`"
        ]
        assert render_step(DropTable("legacy_command_usage"), "sqlite") == [
            'DROP TABLE "legacy_command_usage"'
        ]

    def test_add_foreign_key(self):
        assert render_step(AddForeignKey("market_transactions", LISTING_FK), "mysql") == [
            "ALTER TABLE `market_transactions` ADD CONSTRAINT "
            "`fk_market_transactions_listing_id` FOREIGN KEY (`listing_id`) "
            "REFERENCES `market_listings` (`id`) ON DELETE CASCADE"
        ]

    def test_require_backup_renders_nothing(self):
        assert render_step(RequireBackup(reason="drop"), "mysql") == []


class TestQuoting:
    """Identifiers and literals never change statement shape."""

    def test_identifier_quotes_doubled(self):
        assert SQLiteRenderer().quote('we"ird') == '"we""ird"'
        assert MySQLRenderer().quote("we`ird") == "`we``ird`"

    def test_literal_quotes_doubled(self):
        assert SQLiteRenderer().literal("it's") == "'it''s'"

    def test_mysql_escapes_backslash(self):
        assert MySQLRenderer().literal("a\\b") == "'a\\\\b'"

    def test_get_renderer(self):
        assert isinstance(get_renderer("mysql"), MySQLRenderer)
        assert isinstance(get_renderer(Dialect.SQLITE), SQLiteRenderer)


# ============================================================================
# Rebuild
# ============================================================================


def _rebuild(**overrides):
    old_columns = [c for c in COMMAND_USAGE.columns if c.name != "timestamp"]
    created_at = ColumnDefinition(name="created_at", type="TIMESTAMP", default="CURRENT_TIMESTAMP")
    values = dict(
        table="command_usage",
        columns=tuple(old_columns) + (created_at,),
        preserved_columns=(),
        primary_key=("id",),
        indexes=tuple(COMMAND_USAGE.indexes),
        foreign_keys=(),
        projection=(
            ColumnCopy("id", source="id"),
            ColumnCopy("user_id", source="user_id"),
            ColumnCopy("command", source="command", fallback=DefaultValue.literal("unknown")),
            ColumnCopy("created_at", fallback=DefaultValue.current_timestamp()),
        ),
        reasons=("add column created_at",),
    )
    values.update(overrides)
    return RebuildTable(**values)


class TestRebuildTable:
    """Tests for the rename / create / copy / drop / reindex sequence."""

    def test_sqlite_sequence(self):
        statements = render_step(_rebuild(), "sqlite")

        assert statements[0] == "PRAGMA legacy_alter_table = ON"
        assert statements[1] == (
            'ALTER TABLE "command_usage" RENAME TO "command_usage__reconcile_old"'
        )
        assert statements[2].startswith('CREATE TABLE "command_usage" (')
        assert statements[3] == (
            'INSERT INTO "command_usage" ("id", "user_id", "command", "created_at") '
            "SELECT \"id\", \"user_id\", COALESCE(\"command\", 'unknown'), CURRENT_TIMESTAMP "
            'FROM "command_usage__reconcile_old"'
        )
        assert statements[4] == 'DROP TABLE "command_usage__reconcile_old"'
        assert statements[5] == (
            'CREATE INDEX "idx_command_usage_user_id" ON "command_usage" ("user_id")'
        )
        assert statements[6] == "PRAGMA legacy_alter_table = OFF"

    def test_sqlite_rebuild_preserves_rows(self, sqlite_db):
        sqlite_db.execute(
            "CREATE TABLE command_usage (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "user_id VARCHAR(20) NOT NULL, command TEXT)"
        )
        sqlite_db.execute("CREATE INDEX idx_command_usage_user_id ON command_usage (user_id)")
        sqlite_db.execute(
            "INSERT INTO command_usage (id, user_id, command) "
            "VALUES (7, '1', 'ping'), (9, '2', NULL)"
        )

        for statement in render_step(_rebuild(), "sqlite"):
            sqlite_db.execute(statement)

        rows = sqlite_db.execute(
            "SELECT id, user_id, command, created_at FROM command_usage ORDER BY id"
        ).fetchall()
        assert [r[:3] for r in rows] == [(7, "1", "ping"), (9, "2", "unknown")]
        assert all(r[3] is not None for r in rows)
        tables = {
            r[0] for r in sqlite_db.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert "command_usage__reconcile_old" not in tables

    def test_preserved_columns_keep_raw_type(self):
        legacy = LiveColumn(
            "legacy_flag",
            "tinyint(1)",
            ColumnType.parse("BOOLEAN"),
            True,
            DefaultValue.literal("0"),
        )
        step = _rebuild(
            preserved_columns=(legacy,),
            projection=_rebuild().projection + (ColumnCopy("legacy_flag", source="legacy_flag"),),
        )

        statements = render_step(step, "sqlite")

        assert "    \"legacy_flag\" tinyint(1) DEFAULT '0'\n" in statements[2]
        assert '"legacy_flag") SELECT' in statements[3]

    def test_mysql_releases_foreign_key_names(self):
        step = _rebuild(
            foreign_keys=(LISTING_FK,),
            live_foreign_key_names=("fk_command_usage_listing_id",),
        )
        statements = render_step(step, "mysql")

        assert statements[0] == "RENAME TABLE `command_usage` TO `command_usage__reconcile_old`"
        assert statements[1] == (
            "ALTER TABLE `command_usage__reconcile_old` "
            "DROP FOREIGN KEY `fk_command_usage_listing_id`"
        )
        assert statements[2].startswith("CREATE TABLE `command_usage`")
        assert "PRAGMA" not in " ".join(statements)

    def test_copy_expression_null(self):
        assert SQLiteRenderer().copy_expression(ColumnCopy("x")) == "NULL"


def test_render_plan_aligns_with_steps():
    plan = MigrationPlan(
        dialect=Dialect.SQLITE,
        schema_name="jmf-bot",
        schema_version=3,
        steps=[
            AddColumn("command_usage", ColumnDefinition(name="guild_id", type="TEXT")),
            RequireBackup(reason="drop"),
            DropTable("legacy_command_usage"),
        ],
    )

    rendered = render_plan(plan)

    assert len(rendered) == 3
    assert rendered[1] == []
    assert rendered[2] == ['DROP TABLE "legacy_command_usage"']


def test_unknown_step_type():
    with pytest.raises(TypeError, match="Unknown migration step"):
        SQLiteRenderer().render(object())
