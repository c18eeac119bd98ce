"""
File writing utilities for Schema Reconciler.

This module handles the JSON artifacts the engine leaves on disk: plan and
result files written by the CLI (--output), and the backups.json manifest
maintained next to file backups.

Key features:
- UTF-8 encoding for all files
- Pretty-printed JSON (indent=2)
- Parent directories created on demand
- OSError/TypeError re-raised with actionable messages

Example:
    >>> write_json("./reports/plan.json", plan.to_dict())
    >>> read_json_list("./data/backups/backups.json")
    [{'filename': 'bot.sqlite.backup.20261018T083045Z', ...}]
"""

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def write_json(filepath: str | Path, data: dict | list) -> None:
    """
    Write data to JSON file with UTF-8 encoding.

    Args:
        filepath: Full path to JSON file to write
        data: Dictionary or list to serialize

    Raises:
        OSError: If file cannot be written (permissions, disk full)
        TypeError: If data is not JSON-serializable
    """
    path = Path(filepath)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            # Add newline at end of file for POSIX compliance
            f.write("\n")
        logger.debug(f"Wrote JSON file: {path}")
    except TypeError as e:
        logger.error(f"Cannot serialize data to JSON: {e}", exc_info=True)
        raise TypeError(
            f"Cannot write JSON to '{path}': Data is not JSON-serializable. {e}"
        ) from e
    except OSError as e:
        logger.error(f"Failed to write JSON file: {path}", exc_info=True)
        raise OSError(
            f"Cannot write JSON file '{path}': {e}. Check disk space and permissions."
        ) from e


def read_json_list(filepath: str | Path) -> list[dict[str, Any]]:
    """
    Read a JSON array file, returning [] when the file does not exist.

    Raises:
        OSError: If the file exists but cannot be read
        ValueError: If the file is not a JSON array
    """
    path = Path(filepath)
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Corrupt JSON file '{path}': {e}") from e
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array in '{path}', got {type(data).__name__}")
    return data


def write_plan(filepath: str | Path, plan_data: dict) -> None:
    """Write a dry-run plan (MigrationPlan.to_dict() plus rendered SQL)."""
    write_json(filepath, plan_data)
    logger.info(f"Wrote migration plan: {filepath}")


def write_result(filepath: str | Path, result_data: dict) -> None:
    """Write a reconciliation result (ReconciliationResult.to_dict())."""
    write_json(filepath, result_data)
    logger.info(f"Wrote reconciliation result: {filepath}")
