import hashlib
import sqlite3
from unittest.mock import patch

from LedgerSync.core import store
from LedgerSync.core.signals import signals
from LedgerSync.settings import lib
from LedgerSync.status import status
from tests.base import BaseTestCase, make_database_bytes


class FingerprintTests(BaseTestCase):

    def test_fingerprint_is_sha256_of_file(self):
        data = self.create_database('coffee', 'rent')
        fp = store.fingerprint(self.store)
        self.assertEqual(fp, hashlib.sha256(lib.settings.db_path.read_bytes()).hexdigest())
        self.assertEqual(len(fp), 64)
        self.assertEqual(lib.settings.db_path.read_bytes(), data)

    def test_fingerprint_is_deterministic(self):
        self.create_database('coffee')
        self.assertEqual(store.fingerprint(self.store), store.fingerprint(self.store))

    def test_fingerprint_changes_with_content(self):
        self.create_database('coffee')
        before = store.fingerprint(self.store)

        conn = self.store.connection()
        conn.execute("INSERT INTO entries (label) VALUES ('rent')")
        conn.commit()

        self.assertNotEqual(before, store.fingerprint(self.store))

    def test_fingerprint_includes_wal_content(self):
        self.create_database('coffee')
        conn = self.store.connection()
        conn.execute('PRAGMA journal_mode=WAL')
        conn.execute("INSERT INTO entries (label) VALUES ('rent')")
        conn.commit()

        wal = lib.settings.db_path.with_name(lib.settings.db_path.name + '-wal')
        self.assertTrue(wal.exists())

        fp = store.fingerprint(self.store)
        self.assertEqual(wal.stat().st_size, 0)
        self.assertEqual(fp, hashlib.sha256(lib.settings.db_path.read_bytes()).hexdigest())

    def test_incomplete_checkpoint_raises(self):
        self.create_database('coffee')
        writer = self.store.connection()
        writer.execute('PRAGMA journal_mode=WAL')

        # An open read transaction pins the pages the writer is about to replace
        reader = self.store.connection()
        reader.execute('BEGIN')
        reader.execute('SELECT label FROM entries').fetchall()

        writer.execute("INSERT INTO entries (label) VALUES ('rent')")
        writer.commit()

        with self.assertRaises(status.LocalStoreUnavailableException):
            store.fingerprint(self.store)

        reader.rollback()
        fp = store.fingerprint(self.store)
        self.assertEqual(fp, hashlib.sha256(lib.settings.db_path.read_bytes()).hexdigest())

    def test_missing_store_raises(self):
        with self.assertRaises(status.LocalStoreUnavailableException):
            store.fingerprint(self.store)

    def test_read_error_raises(self):
        self.create_database()
        with patch('pathlib.Path.read_bytes', side_effect=PermissionError('denied')):
            with self.assertRaises(status.LocalStoreUnavailableException):
                self.store.read_bytes()


class BackupTests(BaseTestCase):

    def test_backup_copies_database(self):
        self.create_database('coffee')
        backup = self.store.backup('pre-push')
        self.assertTrue(backup.exists())
        self.assertTrue(backup.name.startswith('ledger-pre-push-'))
        self.assertEqual(backup.parent, lib.settings.backups_dir)

        conn = sqlite3.connect(str(backup))
        try:
            rows = conn.execute('SELECT label FROM entries').fetchall()
        finally:
            conn.close()
        self.assertEqual(rows, [('coffee',)])

    def test_backup_without_database_returns_none(self):
        self.assertIsNone(self.store.backup('pre-pull'))
        self.assertEqual(self.store.list_backups(), [])

    def test_backup_retention_per_prefix(self):
        self.create_database()
        for _ in range(lib.BACKUP_RETENTION + 3):
            self.store.backup('pre-push')
        self.store.backup('pre-pull')

        self.assertEqual(len(self.store.list_backups('pre-push')), lib.BACKUP_RETENTION)
        self.assertEqual(len(self.store.list_backups('pre-pull')), 1)

    def test_backups_are_listed_newest_first(self):
        self.create_database()
        first = self.store.backup('pre-push')
        second = self.store.backup('pre-push')
        self.assertEqual(self.store.list_backups('pre-push'), [second, first])


class ReplaceTests(BaseTestCase):

    def test_replace_writes_new_content_and_removes_side_files(self):
        self.create_database('old')
        for side_file in self.store.side_files():
            side_file.write_bytes(b'stale')

        new_data = make_database_bytes('new')
        self.store.replace(new_data)

        self.assertEqual(lib.settings.db_path.read_bytes(), new_data)
        for side_file in self.store.side_files():
            self.assertFalse(side_file.exists(), side_file)

    def test_side_files_are_named_after_the_database(self):
        names = [p.name for p in self.store.side_files()]
        self.assertEqual(names, ['ledger.db-wal', 'ledger.db-shm', 'ledger.db-journal'])

    def test_replace_closes_open_connections(self):
        self.create_database('old')
        conn = self.store.connection()
        self.store.replace(make_database_bytes('new'))

        with self.assertRaises(sqlite3.ProgrammingError):
            conn.execute('SELECT 1')

    def test_replace_emits_signals_in_order(self):
        self.create_database('old')
        received = []

        def _about() -> None:
            received.append('about')

        def _done() -> None:
            received.append('done')

        signals.localStoreAboutToBeReplaced.connect(_about)
        signals.localStoreReplaced.connect(_done)
        try:
            self.store.replace(make_database_bytes('new'))
        finally:
            signals.localStoreAboutToBeReplaced.disconnect(_about)
            signals.localStoreReplaced.disconnect(_done)
        self.assertEqual(received, ['about', 'done'])

    def test_replace_failure_keeps_original(self):
        original = self.create_database('old')
        with patch('os.replace', side_effect=OSError('disk full')):
            with self.assertRaises(status.LocalStoreUnavailableException):
                self.store.replace(make_database_bytes('new'))

        self.assertEqual(lib.settings.db_path.read_bytes(), original)
        leftovers = [p for p in lib.settings.data_dir.iterdir() if p.suffix == '.tmp']
        self.assertEqual(leftovers, [])

    def test_restore_puts_backup_back(self):
        self.create_database('old')
        backup = self.store.backup('pre-pull')
        self.store.replace(make_database_bytes('new'))

        self.store.restore(backup)
        conn = self.store.connection()
        rows = conn.execute('SELECT label FROM entries').fetchall()
        self.assertEqual(rows, [('old',)])


class HelperTests(BaseTestCase):

    def test_is_sqlite_data(self):
        self.assertTrue(store.is_sqlite_data(make_database_bytes('x')))
        self.assertFalse(store.is_sqlite_data(b'<html>quota exceeded</html>'))
        self.assertFalse(store.is_sqlite_data(b''))
