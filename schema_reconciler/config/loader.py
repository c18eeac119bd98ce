"""
Declared schema loader for Schema Reconciler.

This module loads a declared schema source (YAML), validates it with the
SchemaDefinition Pydantic model and returns the immutable in-memory target
the engine reconciles against. The engine itself only depends on the
SchemaDefinition shape; this loader is one way of producing it.

Functions:
    load_schema: Load and validate a schema YAML file
    parse_schema: Validate an already-parsed mapping (embedded literal, generated)
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..exceptions import SchemaFileNotFoundError, SchemaValidationError
from .schema import SchemaDefinition

logger = logging.getLogger(__name__)


def format_validation_errors(error: ValidationError) -> str:
    """Render Pydantic errors as an indented '  - loc: msg' list."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        msg = item["msg"]
        lines.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")
    return "\n".join(lines)


def parse_schema(raw_schema: Any, source: str = "<memory>") -> SchemaDefinition:
    """
    Validate a raw mapping into a SchemaDefinition.

    Args:
        raw_schema: Mapping with name, version, tables and optional drops
        source: Label used in error messages (file path or "<memory>")

    Returns:
        Validated SchemaDefinition

    Raises:
        SchemaValidationError: If the mapping is empty or fails validation
    """
    if raw_schema is None:
        raise SchemaValidationError(f"Schema source is empty: {source}")
    if not isinstance(raw_schema, dict):
        raise SchemaValidationError(
            f"Schema source {source} must be a mapping, got {type(raw_schema).__name__}"
        )

    try:
        schema = SchemaDefinition.model_validate(raw_schema)
    except ValidationError as e:
        raise SchemaValidationError(
            f"Schema validation failed in {source}:\n" + format_validation_errors(e)
        ) from e

    logger.debug(
        f"Validated schema '{schema.name}' v{schema.version} "
        f"({len(schema.tables)} tables, {len(schema.drops)} drop requests)"
    )
    return schema


def load_schema(schema_path: str | Path) -> SchemaDefinition:
    """
    Load a declared schema YAML file.

    Args:
        schema_path: Path to the schema file (relative or absolute)

    Returns:
        Validated SchemaDefinition

    Raises:
        SchemaFileNotFoundError: If the file doesn't exist
        SchemaValidationError: If YAML is invalid or validation fails

    Example:
        >>> schema = load_schema("examples/bot.schema.yaml")
        >>> schema.table_names[:2]
        ['users', 'account_links']

    Security:
        Uses yaml.safe_load() so schema files cannot construct Python objects.
    """
    schema_path = Path(schema_path)

    if not schema_path.exists():
        raise SchemaFileNotFoundError(f"Schema file not found: {schema_path}")

    try:
        with schema_path.open(encoding="utf-8") as f:
            raw_schema = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SchemaValidationError(f"Invalid YAML syntax in {schema_path}: {e}") from e
    except OSError as e:
        raise SchemaValidationError(f"Failed to read schema file {schema_path}: {e}") from e

    schema = parse_schema(raw_schema, source=str(schema_path))
    logger.info(f"Loaded schema '{schema.name}' v{schema.version} from {schema_path}")
    return schema
