"""
Local SQLite store access for the sync core.

The surrounding application keeps its ledger in a single SQLite database file. This module
wraps that file behind :class:`LocalStore` so the sync core can checkpoint, fingerprint,
back up and replace it without knowing anything about the ledger schema.
"""
import abc
import datetime
import hashlib
import logging
import os
import pathlib
import shutil
import sqlite3
import tempfile
from typing import List, Optional

from .signals import signals
from ..settings import lib
from ..status import status

#: Suffixes of the files SQLite keeps next to the main database file
SIDE_FILE_SUFFIXES = ('-wal', '-shm', '-journal')

#: Every SQLite 3 database file starts with this header
SQLITE_HEADER = b'SQLite format 3\x00'

BACKUP_TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S%fZ'


def is_sqlite_data(data: bytes) -> bool:
    """Check whether the given bytes look like an SQLite 3 database file."""
    return data[:len(SQLITE_HEADER)] == SQLITE_HEADER


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalStore(abc.ABC):
    """Interface of the local data store the sync core operates on."""

    @property
    @abc.abstractmethod
    def path(self) -> pathlib.Path:
        ...

    def exists(self) -> bool:
        return self.path.exists()

    @abc.abstractmethod
    def read_bytes(self) -> bytes:
        """Return the complete store file contents."""
        ...

    @abc.abstractmethod
    def checkpoint(self) -> None:
        """Flush pending write-ahead-log pages into the main store file."""
        ...

    @abc.abstractmethod
    def replace(self, data: bytes) -> None:
        """Replace the store file with the given contents."""
        ...

    @abc.abstractmethod
    def side_files(self) -> List[pathlib.Path]:
        """Return the auxiliary files that belong to the store file."""
        ...

    @abc.abstractmethod
    def close(self) -> None:
        """Close every open handle to the store."""
        ...

    @abc.abstractmethod
    def backup(self, prefix: str) -> Optional[pathlib.Path]:
        """Write a timestamped safety copy of the store and return its path."""
        ...

    @abc.abstractmethod
    def restore(self, backup_path: pathlib.Path) -> None:
        """Put a safety copy back in place of the store file."""
        ...


class SQLiteStore(LocalStore):
    """:class:`LocalStore` backed by a SQLite database file.

    Connections handed out by :meth:`connection` are tracked so they can all be closed before
    the database file is replaced by a pull.

    Args:
        path (str or pathlib.Path, optional): The database file. Defaults to ``lib.settings.db_path``.
        backups_dir (str or pathlib.Path, optional): Where safety copies are written.
            Defaults to ``lib.settings.backups_dir``.
    """

    def __init__(self, path=None, backups_dir=None) -> None:
        self._path = pathlib.Path(path) if path else None
        self._backups_dir = pathlib.Path(backups_dir) if backups_dir else None
        self._connections: List[sqlite3.Connection] = []

    @property
    def path(self) -> pathlib.Path:
        return self._path if self._path else lib.settings.db_path

    @property
    def backups_dir(self) -> pathlib.Path:
        return self._backups_dir if self._backups_dir else lib.settings.backups_dir

    def connection(self) -> sqlite3.Connection:
        """Return a new, tracked connection to the database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        self._connections.append(conn)
        return conn

    def close(self) -> None:
        if not self._connections:
            return
        logging.debug(f'Closing {len(self._connections)} open connection(s) to {self.path.name}')
        while self._connections:
            conn = self._connections.pop()
            try:
                conn.close()
            except sqlite3.Error as e:
                logging.warning(f'Error closing database connection: {e}')

    def read_bytes(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as ex:
            raise status.LocalStoreUnavailableException(f'Could not read {self.path}: {ex}') from ex

    def checkpoint(self) -> None:
        """Run ``PRAGMA wal_checkpoint(TRUNCATE)`` on the database.

        A database not in WAL mode is left untouched by the pragma. The pragma returns
        ``(busy, log_frames, checkpointed_frames)``; ``log_frames`` is -1 outside WAL mode.

        Raises:
            status.LocalStoreUnavailableException: If the database is missing or cannot be opened,
                or if committed pages are left in the write-ahead log.
        """
        if not self.path.exists():
            raise status.LocalStoreUnavailableException(f'Database not found: {self.path}')

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = sqlite3.connect(str(self.path), timeout=2.0)
            row = conn.execute('PRAGMA wal_checkpoint(TRUNCATE)').fetchone()
        except sqlite3.Error as ex:
            raise status.LocalStoreUnavailableException(f'WAL checkpoint failed: {ex}') from ex
        finally:
            if conn:
                conn.close()

        logging.debug(f'WAL checkpoint on {self.path.name}: {row}')
        if row and (row[0] != 0 or (row[1] >= 0 and row[1] != row[2])):
            # The main file does not hold every committed page yet
            raise status.LocalStoreUnavailableException(
                f'WAL checkpoint on {self.path.name} is incomplete, the database is in use: {tuple(row)}'
            )

    def side_files(self) -> List[pathlib.Path]:
        return [self.path.with_name(self.path.name + suffix) for suffix in SIDE_FILE_SUFFIXES]

    def _remove_side_files(self) -> None:
        for side_file in self.side_files():
            if not side_file.exists():
                continue
            logging.debug(f'Removing {side_file.name}')
            side_file.unlink()

    def _write_in_place(self, write_temp) -> None:
        """Write a temporary file next to the database and move it over the database file."""
        fd, tmp = tempfile.mkstemp(prefix=f'.{self.path.stem}-', suffix='.tmp', dir=str(self.path.parent))
        os.close(fd)
        try:
            write_temp(tmp)
            os.replace(tmp, self.path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def replace(self, data: bytes) -> None:
        """Replace the database with the given contents.

        Open handles are closed first. Stale ``-wal``, ``-shm`` and ``-journal`` files are
        removed once the new file is in place so SQLite does not replay them over it.

        Raises:
            status.LocalStoreUnavailableException: If the file cannot be written.
        """
        logging.debug(f'Replacing {self.path} ({len(data)} bytes)')
        signals.localStoreAboutToBeReplaced.emit()
        self.close()

        def _write(tmp):
            with open(tmp, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write_in_place(_write)
            self._remove_side_files()
        except OSError as ex:
            raise status.LocalStoreUnavailableException(f'Could not replace {self.path}: {ex}') from ex

        signals.localStoreReplaced.emit()

    def backup(self, prefix: str) -> Optional[pathlib.Path]:
        """Copy the database into the backups directory using the SQLite online backup API.

        Only the newest :data:`lib.BACKUP_RETENTION` copies per prefix are kept.

        Args:
            prefix (str): The backup kind, e.g. 'pre-push' or 'pre-pull'.

        Returns:
            pathlib.Path or None: The new backup file, or None if there is no database to back up.

        Raises:
            status.LocalStoreUnavailableException: If the copy fails.
        """
        if not self.path.exists():
            logging.debug(f'No database at {self.path}, skipping {prefix} backup.')
            return None

        self.backups_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.datetime.now(datetime.timezone.utc).strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = self.backups_dir / f'{self.path.stem}-{prefix}-{timestamp}{self.path.suffix}'

        src: Optional[sqlite3.Connection] = None
        dst: Optional[sqlite3.Connection] = None
        try:
            src = sqlite3.connect(str(self.path), timeout=2.0)
            dst = sqlite3.connect(str(backup_path))
            src.backup(dst)
        except sqlite3.Error as ex:
            raise status.LocalStoreUnavailableException(f'Backup to {backup_path} failed: {ex}') from ex
        finally:
            if dst:
                dst.close()
            if src:
                src.close()

        logging.info(f'Created {prefix} backup: {backup_path}')
        self._prune_backups(prefix)
        return backup_path

    def _prune_backups(self, prefix: str) -> None:
        pattern = f'{self.path.stem}-{prefix}-*{self.path.suffix}'
        backups = sorted(self.backups_dir.glob(pattern), reverse=True)
        for old in backups[lib.BACKUP_RETENTION:]:
            logging.debug(f'Removing old backup: {old.name}')
            try:
                old.unlink()
            except OSError as e:
                logging.warning(f'Could not remove old backup {old}: {e}')

    def list_backups(self, prefix: Optional[str] = None) -> List[pathlib.Path]:
        """Return the existing backups, newest first."""
        if not self.backups_dir.exists():
            return []
        pattern = f'{self.path.stem}-{prefix}-*{self.path.suffix}' if prefix else f'{self.path.stem}-*'
        return sorted(self.backups_dir.glob(pattern), reverse=True)

    def restore(self, backup_path: pathlib.Path) -> None:
        logging.warning(f'Restoring {self.path} from {backup_path}')
        self.close()
        try:
            self._write_in_place(lambda tmp: shutil.copyfile(backup_path, tmp))
            self._remove_side_files()
        except OSError as ex:
            raise status.LocalStoreUnavailableException(f'Could not restore {backup_path}: {ex}') from ex
        signals.localStoreReplaced.emit()


def fingerprint(store: LocalStore) -> str:
    """Return the SHA-256 hex digest of the store contents after a WAL checkpoint.

    Args:
        store (LocalStore): The store to fingerprint.

    Returns:
        str: 64 lowercase hexadecimal characters.

    Raises:
        status.LocalStoreUnavailableException: If the store is missing or unreadable.
    """
    store.checkpoint()
    return sha256_hex(store.read_bytes())
