"""
Configuration constants for Schema Reconciler.

This module contains global constants used across the engine to avoid
tight coupling between modules.
"""

# Suffix appended to a table renamed out of the way during a rebuild.
# The inspector ignores tables carrying it, so a crashed rebuild never
# makes the differ plan against a half-built temporary table.
REBUILD_TEMP_SUFFIX = "__reconcile_old"

# Backup retention for file-based backups (original tooling kept the last 10)
DEFAULT_MAX_BACKUPS = 10

# Manifest written next to file backups
BACKUP_MANIFEST_FILENAME = "backups.json"

# Connection attempts before giving up with DatabaseConnectionError
CONNECT_MAX_ATTEMPTS = 3
CONNECT_MIN_WAIT_SECONDS = 1
CONNECT_MAX_WAIT_SECONDS = 8

DEFAULT_MYSQL_PORT = 3306
