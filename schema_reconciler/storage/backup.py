"""
Backup providers for Schema Reconciler.

The executor calls ``create_backup(database_identifier)`` once, before the
first mutating statement of any plan that contains a destructive step. A
provider either returns a BackupHandle, which guarantees a restorable
point-in-time copy exists, or raises BackupError and nothing is applied.

Providers:
    SQLiteFileBackupProvider: SQLite online backup API into
        <db>.backup.<YYYYmmddTHHMMSSZ>, verified with PRAGMA integrity_check
    MySQLDumpBackupProvider: mysqldump --single-transaction logical dump

Both keep a backups.json manifest in the backup directory and prune old
artifacts to ``max_backups``.

Security:
    - The MySQL password reaches mysqldump through MYSQL_PWD, never argv
    - Manifest entries and log lines carry file names and sizes only
"""

import logging
import os
import sqlite3
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol

from ..config.constants import BACKUP_MANIFEST_FILENAME, DEFAULT_MAX_BACKUPS
from ..exceptions import BackupError
from ..utils.time import backup_suffix_from_timestamp, utc_timestamp
from .connection import DatabaseURL
from .writer import read_json_list, write_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupHandle:
    """
    Proof that a restorable copy exists.

    Attributes:
        identifier: Database identifier the backup was taken from
        location: Path of the backup artifact
        created_at: UTC ISO 8601 timestamp
        size_bytes: Size of the artifact on disk
    """

    identifier: str
    location: str
    created_at: str
    size_bytes: int

    def to_dict(self) -> dict:
        return asdict(self)


class BackupProvider(Protocol):
    """Interface consumed by the executor."""

    def create_backup(self, database_identifier: str) -> BackupHandle: ...


# ============================================================================
# Manifest, listing and pruning
# ============================================================================


def _manifest_path(directory: Path) -> Path:
    return directory / BACKUP_MANIFEST_FILENAME


def _append_manifest(directory: Path, handle: BackupHandle) -> None:
    manifest = _manifest_path(directory)
    try:
        entries = read_json_list(manifest)
    except ValueError as e:
        logger.warning(f"Ignoring unreadable backup manifest {manifest}: {e}")
        entries = []
    entries.append(
        {
            "filename": Path(handle.location).name,
            "created_at": handle.created_at,
            "size": handle.size_bytes,
            "source": handle.identifier,
        }
    )
    write_json(manifest, entries)


def list_backups(directory: str | Path, prefix: str | None = None) -> list[BackupHandle]:
    """
    List backups recorded in a directory's manifest, newest first.

    Entries whose file was removed by hand are skipped.

    Args:
        directory: Backup directory
        prefix: Only return files whose name starts with this prefix

    Returns:
        BackupHandles sorted by created_at, newest first
    """
    directory = Path(directory)
    try:
        entries = read_json_list(_manifest_path(directory))
    except ValueError as e:
        raise BackupError(str(e), location=str(directory)) from e

    handles = []
    for entry in entries:
        filename = entry.get("filename", "")
        if prefix and not filename.startswith(prefix):
            continue
        path = directory / filename
        if not filename or not path.exists():
            continue
        handles.append(
            BackupHandle(
                identifier=entry.get("source", ""),
                location=str(path),
                created_at=entry.get("created_at", ""),
                size_bytes=int(entry.get("size", path.stat().st_size)),
            )
        )

    handles.sort(key=lambda h: (h.created_at, h.location), reverse=True)
    return handles


def prune_backups(directory: str | Path, keep: int, prefix: str | None = None) -> list[str]:
    """
    Delete all but the ``keep`` newest backups and rewrite the manifest.

    Args:
        directory: Backup directory
        keep: Number of backups to keep (must be >= 1)
        prefix: Only prune files whose name starts with this prefix

    Returns:
        Locations of the deleted backups
    """
    if keep < 1:
        raise ValueError(f"keep must be at least 1, got: {keep}")

    directory = Path(directory)
    doomed = list_backups(directory, prefix)[keep:]
    removed = []
    for handle in doomed:
        try:
            Path(handle.location).unlink()
            removed.append(handle.location)
            logger.info(f"Pruned backup: {Path(handle.location).name}")
        except OSError as e:
            logger.warning(f"Failed to prune {handle.location}: {e}")

    if removed:
        names = {Path(location).name for location in removed}
        manifest = _manifest_path(directory)
        entries = [e for e in read_json_list(manifest) if e.get("filename") not in names]
        write_json(manifest, entries)

    return removed


def _unique_target(directory: Path, stem: str, extension: str = "") -> Path:
    """Timestamped path that never overwrites an earlier backup in the same second."""
    suffix = backup_suffix_from_timestamp()
    target = directory / f"{stem}{suffix}{extension}"
    counter = 1
    while target.exists():
        target = directory / f"{stem}{suffix}-{counter}{extension}"
        counter += 1
    return target


def _record_backup(directory: Path, handle: BackupHandle, keep: int, prefix: str) -> None:
    """Manifest and retention bookkeeping; the backup itself already exists."""
    try:
        _append_manifest(directory, handle)
        prune_backups(directory, keep, prefix=prefix)
    except (OSError, ValueError, BackupError) as e:
        logger.warning(f"Backup {handle.location} created but manifest update failed: {e}")


# ============================================================================
# SQLite
# ============================================================================


class SQLiteFileBackupProvider:
    """
    File backup of a SQLite database using the online backup API.

    The copy is consistent even while other connections hold the file open,
    and is integrity-checked before the handle is returned.

    Args:
        backup_dir: Directory for backups (default: next to the database)
        max_backups: Backups of the same database to keep after each run
    """

    def __init__(
        self,
        backup_dir: str | Path | None = None,
        max_backups: int = DEFAULT_MAX_BACKUPS,
    ):
        self.backup_dir = Path(backup_dir) if backup_dir is not None else None
        self.max_backups = max_backups

    def create_backup(self, database_identifier: str) -> BackupHandle:
        if not database_identifier or database_identifier == ":memory:":
            raise BackupError("In-memory SQLite databases cannot be backed up")

        source = Path(database_identifier)
        if not source.is_file():
            raise BackupError(f"Source database does not exist: {source}")

        directory = self.backup_dir or source.parent
        prefix = f"{source.name}.backup."
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(f"Cannot create backup directory: {e}", str(directory)) from e

        target = _unique_target(directory, prefix)
        logger.info(f"Backing up {source} to {target}")

        try:
            src = sqlite3.connect(f"{source.resolve().as_uri()}?mode=ro", uri=True)
            try:
                dst = sqlite3.connect(target)
                try:
                    src.backup(dst)
                    check = dst.execute("PRAGMA integrity_check").fetchone()
                finally:
                    dst.close()
            finally:
                src.close()
        except sqlite3.Error as e:
            target.unlink(missing_ok=True)
            raise BackupError(f"SQLite backup failed: {e}", str(target)) from e

        if not check or check[0] != "ok":
            target.unlink(missing_ok=True)
            raise BackupError(f"Backup failed integrity check: {check}", str(target))

        handle = BackupHandle(
            identifier=database_identifier,
            location=str(target),
            created_at=utc_timestamp(),
            size_bytes=target.stat().st_size,
        )
        _record_backup(directory, handle, self.max_backups, prefix)

        logger.info(f"Backup created: {target.name} ({handle.size_bytes} bytes)")
        return handle


def restore_sqlite_backup(
    backup: BackupHandle | str | Path,
    target: str | Path,
) -> Path:
    """
    Restore a SQLite backup over a database file.

    The backup is copied with the online backup API, so the target can be a
    database other connections have open; it is replaced page by page.

    Args:
        backup: BackupHandle or path to the backup file
        target: Database file to overwrite

    Returns:
        Path of the restored database

    Raises:
        BackupError: If the backup is missing or the copy fails
    """
    source = Path(backup.location if isinstance(backup, BackupHandle) else backup)
    if not source.is_file():
        raise BackupError(f"Backup file does not exist: {source}", str(source))

    target = Path(target)
    try:
        src = sqlite3.connect(f"{source.resolve().as_uri()}?mode=ro", uri=True)
        try:
            dst = sqlite3.connect(target)
            try:
                src.backup(dst)
            finally:
                dst.close()
        finally:
            src.close()
    except sqlite3.Error as e:
        raise BackupError(f"Restore from {source.name} failed: {e}", str(source)) from e

    logger.info(f"Restored {target} from backup {source.name}")
    return target


# ============================================================================
# MySQL
# ============================================================================


class MySQLDumpBackupProvider:
    """
    Logical backup of a MySQL database with mysqldump.

    Args:
        url: Connection target (credentials are needed to run the dump)
        backup_dir: Directory for <database>-<timestamp>.sql files
        mysqldump_path: mysqldump executable
        max_backups: Dumps of the same database to keep after each run
    """

    def __init__(
        self,
        url: DatabaseURL,
        backup_dir: str | Path,
        mysqldump_path: str = "mysqldump",
        max_backups: int = DEFAULT_MAX_BACKUPS,
    ):
        self.url = url
        self.backup_dir = Path(backup_dir)
        self.mysqldump_path = mysqldump_path
        self.max_backups = max_backups

    def build_command(self, result_file: Path) -> list[str]:
        command = [
            self.mysqldump_path,
            "--single-transaction",
            "--routines",
            "--triggers",
            f"--host={self.url.host}",
            f"--port={self.url.port}",
            f"--result-file={result_file}",
        ]
        if self.url.user:
            command.append(f"--user={self.url.user}")
        command.append(self.url.database)
        return command

    def create_backup(self, database_identifier: str) -> BackupHandle:
        if database_identifier != self.url.identifier:
            raise BackupError(
                f"Provider is configured for {self.url.identifier}, "
                f"asked to back up {database_identifier}"
            )

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(
                f"Cannot create backup directory: {e}", str(self.backup_dir)
            ) from e

        prefix = f"{self.url.database}-"
        target = _unique_target(self.backup_dir, prefix, ".sql")
        env = dict(os.environ)
        if self.url.password:
            env["MYSQL_PWD"] = self.url.password

        logger.info(f"Dumping {self.url.redacted()} to {target}")
        try:
            completed = subprocess.run(
                self.build_command(target),
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise BackupError(f"Cannot run {self.mysqldump_path}: {e}", str(target)) from e

        if completed.returncode != 0:
            target.unlink(missing_ok=True)
            detail = (completed.stderr or "").strip() or "no error output"
            raise BackupError(
                f"mysqldump exited with status {completed.returncode}: {detail}",
                str(target),
            )

        if not target.exists() or target.stat().st_size == 0:
            target.unlink(missing_ok=True)
            raise BackupError("mysqldump produced an empty dump", str(target))

        handle = BackupHandle(
            identifier=database_identifier,
            location=str(target),
            created_at=utc_timestamp(),
            size_bytes=target.stat().st_size,
        )
        _record_backup(self.backup_dir, handle, self.max_backups, prefix)

        logger.info(f"Backup created: {target.name} ({handle.size_bytes} bytes)")
        return handle
