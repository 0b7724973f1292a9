"""Unittest base class for creating a clean test environment."""
import datetime
import hashlib
import logging
import os
import shutil
import sqlite3
import tempfile
import unittest
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Optional
from unittest.mock import patch

from PySide6 import QtCore

from LedgerSync.core import auth
from LedgerSync.core import drive
from LedgerSync.core import session
from LedgerSync.core import store
from LedgerSync.core.signals import signals
from LedgerSync.settings import lib
from LedgerSync.status import status

CLIENT_ID = '1234567890-abcdef.apps.googleusercontent.com'
CLIENT_SECRET = 'GOCSPX-test-secret'
FOLDER_ID = 'folder123'


@contextmanager
def mute_signals():
    blocker = QtCore.QSignalBlocker(signals)  # blocks every signal in `signals`
    try:
        yield
    finally:
        del blocker


def make_database_bytes(*values: str) -> bytes:
    """Create a small SQLite database in a temporary file and return its bytes."""
    tmp_dir = tempfile.mkdtemp(prefix='ledgersync_db_')
    path = os.path.join(tmp_dir, 'remote.db')
    try:
        conn = sqlite3.connect(path)
        conn.execute('CREATE TABLE entries (id INTEGER PRIMARY KEY, label TEXT)')
        conn.executemany('INSERT INTO entries (label) VALUES (?)', [(v,) for v in values])
        conn.commit()
        conn.close()
        with open(path, 'rb') as f:
            return f.read()
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


class FakeDrive(drive.DriveService):
    """In-memory Drive used in place of the real API client.

    Acts as its own factory: ``SyncAPI(drive_factory=fake)`` calls it with the access token.
    """

    def __init__(self) -> None:
        self.files: Dict[str, Dict[str, Any]] = {}
        self.access_tokens = []
        self.calls = []
        self.fail_with: Optional[Exception] = None
        self.on_transfer = None
        self._next_id = 1

    def __call__(self, access_token: str) -> 'FakeDrive':
        self.access_tokens.append(access_token)
        return self

    def put(self, data: bytes, file_id: Optional[str] = None, folder_id: str = FOLDER_ID,
            modified_at: Optional[datetime.datetime] = None, content_hash: Any = 'auto') -> str:
        """Place a backup file on the fake remote."""
        if file_id is None:
            file_id = f'file{self._next_id}'
            self._next_id += 1
        if content_hash == 'auto':
            content_hash = hashlib.sha256(data).hexdigest()
        modified_at = modified_at or datetime.datetime.now(datetime.timezone.utc)
        self.files[file_id] = {
            'id': file_id,
            'name': drive.BACKUP_FILENAME,
            'parents': [folder_id],
            'modifiedTime': modified_at.isoformat().replace('+00:00', 'Z'),
            'appProperties': {drive.HASH_PROPERTY: content_hash} if content_hash else {},
            'data': data,
        }
        return file_id

    @staticmethod
    def _meta(f: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in f.items() if k != 'data'}

    def _transfer(self) -> None:
        if self.on_transfer:
            self.on_transfer()
        if self.fail_with:
            raise self.fail_with

    def get_file_metadata(self, file_id, exc_type=status.ProbeException):
        self.calls.append(('get', file_id))
        f = self.files.get(file_id)
        return self._meta(f) if f else None

    def find_backup_file(self, folder_id, exc_type=status.ProbeException):
        self.calls.append(('list', folder_id))
        matches = [f for f in self.files.values() if folder_id in f['parents']]
        matches.sort(key=lambda f: f['modifiedTime'], reverse=True)
        return self._meta(matches[0]) if matches else None

    def update_file(self, file_id, data, content_hash):
        self.calls.append(('update', file_id))
        self._transfer()
        f = self.files[file_id]
        self.put(data, file_id=file_id, folder_id=f['parents'][0], content_hash=content_hash)
        return self._meta(self.files[file_id])

    def create_file(self, folder_id, data, content_hash, name=drive.BACKUP_FILENAME):
        self.calls.append(('create', folder_id))
        self._transfer()
        file_id = self.put(data, folder_id=folder_id, content_hash=content_hash)
        return self._meta(self.files[file_id])

    def download_file(self, file_id):
        self.calls.append(('download', file_id))
        self._transfer()
        if file_id not in self.files:
            raise status.RemoteBackupNotFoundException(f'File "{file_id}" was not found.')
        return self.files[file_id]['data']

    def validate_folder(self, folder_id):
        self.calls.append(('validate', folder_id))
        return drive.FolderValidation(True, folder_id=folder_id, folder_name='Ledger')


class BaseTestCase(unittest.TestCase):
    """Base test case that points the settings at a fresh temporary data directory."""

    data_dir: str

    def setUp(self) -> None:
        """Set up a clean data directory and reinitialize the settings API."""
        # Ensure headless Qt
        if 'QT_QPA_PLATFORM' not in os.environ:
            os.environ['QT_QPA_PLATFORM'] = 'offscreen'

        # Ensure a QCoreApplication is available
        if not QtCore.QCoreApplication.instance():
            QtCore.QCoreApplication([])  # type: ignore
            logging.debug('QtCore.QCoreApplication initialized for tests.')

        self.data_dir = tempfile.mkdtemp(prefix='ledgersync_test_')

        # Reinitialize settings API
        lib.settings = lib.SettingsAPI(root=self.data_dir)
        logging.debug(f'SettingsAPI reinitialized in {self.data_dir}.')

        # Every test runs as a fresh process session
        session.session_tracker.session_id = str(uuid.uuid4())
        session.session_tracker._recorded = False

        self.store = store.SQLiteStore()

    def tearDown(self) -> None:
        patch.stopall()
        self.store.close()
        shutil.rmtree(self.data_dir, ignore_errors=True)

    def create_database(self, *values: str) -> bytes:
        """Write a ledger database to the configured database path and return its bytes."""
        data = make_database_bytes(*(values or ('coffee',)))
        lib.settings.db_path.write_bytes(data)
        return data

    def save_credentials(self) -> lib.Credentials:
        credentials = lib.Credentials(client_id=CLIENT_ID, client_secret=CLIENT_SECRET)
        lib.settings.set_credentials(credentials)
        return credentials

    def save_tokens(self, expires_in_ms: int = 3_600_000, access_token: str = 'access-token',
                    refresh_token: Optional[str] = 'refresh-token',
                    granted_scope: str = auth.SCOPE_APP_FILES) -> lib.TokenSet:
        tokens = lib.TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_epoch_ms=lib.now_ms() + expires_in_ms,
            granted_scope=granted_scope,
        )
        lib.settings.set_tokens(tokens)
        return tokens

    def configure(self, remote_location_id: str = FOLDER_ID, is_file_based_mode: bool = False,
                  **kwargs: Any) -> lib.SyncConfiguration:
        config = lib.SyncConfiguration(
            remote_location_id=remote_location_id,
            remote_location_name='Ledger',
            is_file_based_mode=is_file_based_mode,
            **kwargs
        )
        lib.settings.set_sync_config(config)
        return config

    def mark_synced(self, fingerprint: str, synced_at: Optional[datetime.datetime] = None,
                    **kwargs: Any) -> lib.SyncConfiguration:
        """Configure the remote location as if an exchange just completed."""
        return self.configure(
            synced_fingerprint=fingerprint,
            last_synced_at=synced_at or datetime.datetime.now(datetime.timezone.utc),
            **kwargs
        )
