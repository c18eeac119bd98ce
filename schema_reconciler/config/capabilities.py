"""
Dialect capability table for Schema Reconciler.

Describes, per SQL backend, which schema changes can be applied inline and
which require the rebuild-table pattern. Capabilities are loaded from the
bundled dialect_capabilities.yaml, validated with Pydantic and cached.

The differ consults only this table, never dialect names, so the set of
supported transformations is explicit and testable.

Example:
    >>> caps = get_dialect_capabilities(Dialect.SQLITE)
    >>> caps.transactional_ddl
    True
    >>> caps.can_add_inline(ColumnDefinition(name="command", type="TEXT"), has_rows=True)
    True
"""

import logging
from enum import Enum
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import CapabilityError
from .schema import ColumnDefinition

logger = logging.getLogger(__name__)

CAPABILITIES_PATH = Path(__file__).parent / "dialect_capabilities.yaml"


class Dialect(str, Enum):
    """Supported SQL backends."""

    SQLITE = "sqlite"
    MYSQL = "mysql"


class DialectCapabilities(BaseModel):
    """
    Inline DDL capabilities of one dialect.

    Attributes:
        dialect: Dialect these capabilities describe
        transactional_ddl: DDL participates in transactions (full rollback possible)
        add_column: ALTER TABLE ... ADD COLUMN is available
        add_column_not_null_without_default: NOT NULL column without default can
            be added to a populated table
        add_column_current_timestamp_default: Column with CURRENT_TIMESTAMP
            default can be added inline
        add_column_unique: UNIQUE can be declared in ADD COLUMN
        drop_column: ALTER TABLE ... DROP COLUMN is reliable
        modify_column: Type/nullability/default of an existing column can change inline
        add_foreign_key: Foreign key can be added to an existing table
        backfill_on_add: ADD COLUMN can populate from another column
        rename_table: ALTER TABLE ... RENAME TO is available
    """

    dialect: Dialect
    transactional_ddl: bool
    add_column: bool = True
    add_column_not_null_without_default: bool = False
    add_column_current_timestamp_default: bool = False
    add_column_unique: bool = False
    drop_column: bool = False
    modify_column: bool = False
    add_foreign_key: bool = False
    backfill_on_add: bool = False
    rename_table: bool = Field(default=True, description="Needed by the rebuild pattern")

    def can_add_inline(self, column: ColumnDefinition, has_rows: bool) -> bool:
        """
        Decide whether a missing column can be added with ADD COLUMN.

        A NOT NULL column without a default needs dialect support, and on a
        populated table it additionally needs an inline backfill (none of the
        bundled dialects claim either). Uniqueness is never a reason to
        rebuild because it is realized as a separate unique index.

        Args:
            column: Declared column that is absent from the live table
            has_rows: Whether the live table currently holds rows

        Returns:
            True if an AddColumn step can express the column as declared
        """
        if not self.add_column:
            return False

        if column.primary_key or column.auto_increment:
            return False

        if column.default is not None and column.default.is_current_timestamp:
            if not self.add_column_current_timestamp_default:
                return False

        if not column.nullable and column.default is None:
            if not self.add_column_not_null_without_default:
                return False
            # Added-then-backfilled would leave NULLs in a NOT NULL column
            if has_rows:
                return self.backfill_on_add and column.backfill_from is not None

        return True


class CapabilityTable(BaseModel):
    """Capabilities for every supported dialect, as stored in YAML."""

    sqlite: DialectCapabilities
    mysql: DialectCapabilities

    def for_dialect(self, dialect: Dialect | str) -> DialectCapabilities:
        try:
            key = Dialect(dialect).value
        except ValueError:
            raise CapabilityError(f"No capabilities defined for dialect '{dialect}'") from None
        return getattr(self, key)


def load_capabilities_from_yaml(yaml_path: Path) -> CapabilityTable:
    """
    Load the dialect capability table from a YAML file.

    Args:
        yaml_path: Path to dialect_capabilities.yaml

    Returns:
        CapabilityTable: Validated capabilities

    Raises:
        CapabilityError: If the file is missing, empty, or fails validation
    """
    if not yaml_path.exists():
        raise CapabilityError(f"Capabilities config not found: {yaml_path}")

    logger.debug(f"Loading dialect capabilities from: {yaml_path}")

    try:
        with open(yaml_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise CapabilityError(f"Invalid YAML in capabilities config: {e}") from e

    if not data:
        raise CapabilityError("Capabilities config is empty")

    for name, entry in data.items():
        if isinstance(entry, dict):
            entry.setdefault("dialect", name)

    try:
        return CapabilityTable.model_validate(data)
    except ValidationError as e:
        raise CapabilityError(f"Invalid capabilities config: {e}") from e


@lru_cache(maxsize=1)
def get_capability_table() -> CapabilityTable:
    """Return the cached bundled capability table."""
    return load_capabilities_from_yaml(CAPABILITIES_PATH)


def get_dialect_capabilities(dialect: Dialect | str) -> DialectCapabilities:
    """
    Get capabilities for one dialect from the cached bundled table.

    Args:
        dialect: Dialect enum member or its string value

    Returns:
        DialectCapabilities for the dialect

    Raises:
        CapabilityError: If the dialect is unknown
    """
    return get_capability_table().for_dialect(dialect)
