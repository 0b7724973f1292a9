import datetime
import json
import os

from LedgerSync.core.signals import signals
from LedgerSync.settings import lib
from LedgerSync.status import status
from tests.base import BaseTestCase, mute_signals, CLIENT_ID, CLIENT_SECRET


class ConfigPathsTests(BaseTestCase):

    def test_directories_are_created(self):
        self.assertTrue(lib.settings.config_dir.is_dir())
        self.assertTrue(lib.settings.auth_dir.is_dir())
        self.assertTrue(lib.settings.backups_dir.is_dir())

    def test_paths_live_under_data_dir(self):
        for path in (
                lib.settings.db_path,
                lib.settings.sync_config_path,
                lib.settings.session_path,
                lib.settings.client_secret_path,
                lib.settings.creds_path,
        ):
            self.assertTrue(str(path).startswith(self.data_dir), path)
        self.assertEqual(lib.settings.db_path.name, lib.DB_FILENAME)

    def test_environment_variable_sets_data_dir(self):
        paths = lib.ConfigPaths()
        self.assertEqual(str(paths.data_dir), os.environ[lib.DATA_DIR_ENV])

    def test_unknown_record_raises(self):
        with self.assertRaises(KeyError):
            lib.settings.record_path('ledger')


class SyncConfigurationTests(BaseTestCase):

    def test_missing_record_reads_as_unconfigured(self):
        config = lib.settings.get_sync_config()
        self.assertFalse(config.is_configured)
        self.assertIsNone(config.last_synced_at)

    def test_round_trip_keeps_aware_timestamp(self):
        synced_at = datetime.datetime(2024, 5, 1, 10, 30, tzinfo=datetime.timezone.utc)
        lib.settings.set_sync_config(lib.SyncConfiguration(
            remote_location_id='abc',
            last_synced_at=synced_at,
            synced_fingerprint='f' * 64,
        ))

        config = lib.settings.get_sync_config()
        self.assertTrue(config.is_configured)
        self.assertEqual(config.last_synced_at, synced_at)
        self.assertEqual(config.synced_fingerprint, 'f' * 64)

    def test_is_configured_is_never_stored(self):
        lib.settings.set_sync_config(lib.SyncConfiguration(remote_location_id='abc'))
        with lib.settings.sync_config_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
        self.assertNotIn('is_configured', data)

    def test_wrong_type_raises_sync_config_invalid(self):
        lib.settings.sync_config_path.write_text(
            json.dumps({'remote_location_id': 42}), encoding='utf-8'
        )
        with self.assertRaises(status.SyncConfigInvalidException):
            lib.settings.get_sync_config()

    def test_malformed_json_raises_sync_config_invalid(self):
        lib.settings.sync_config_path.write_text('{not json', encoding='utf-8')
        with self.assertRaises(status.SyncConfigInvalidException):
            lib.settings.get_sync_config()

    def test_bad_timestamp_raises_sync_config_invalid(self):
        lib.settings.sync_config_path.write_text(
            json.dumps({'remote_location_id': 'abc', 'last_synced_at': 'yesterday'}), encoding='utf-8'
        )
        with self.assertRaises(status.SyncConfigInvalidException):
            lib.settings.get_sync_config()

    def test_write_leaves_no_temporary_files(self):
        for i in range(3):
            lib.settings.set_sync_config(lib.SyncConfiguration(remote_location_id=f'id{i}'))
        leftovers = [p for p in lib.settings.config_dir.iterdir() if p.suffix == '.tmp']
        self.assertEqual(leftovers, [])
        self.assertEqual(lib.settings.get_sync_config().remote_location_id, 'id2')

    def test_set_emits_config_changed(self):
        received = []

        def _slot(record: str) -> None:
            received.append(record)

        signals.configChanged.connect(_slot)
        try:
            lib.settings.set_sync_config(lib.SyncConfiguration(remote_location_id='abc'))
            with mute_signals():
                lib.settings.clear_sync_config()
            lib.settings.block_signals(True)
            lib.settings.set_sync_config(lib.SyncConfiguration(remote_location_id='abc'))
            lib.settings.block_signals(False)
        finally:
            signals.configChanged.disconnect(_slot)
        self.assertEqual(received, ['sync_config'])


class CredentialRecordTests(BaseTestCase):

    def test_clearing_credentials_clears_tokens(self):
        self.save_credentials()
        self.save_tokens()
        self.assertIsNotNone(lib.settings.get_tokens())

        lib.settings.clear_credentials()
        self.assertIsNone(lib.settings.get_credentials())
        self.assertIsNone(lib.settings.get_tokens())

    def test_credentials_round_trip(self):
        lib.settings.set_credentials(lib.Credentials(CLIENT_ID, CLIENT_SECRET, api_key='key'))
        credentials = lib.settings.get_credentials()
        self.assertEqual(credentials.client_id, CLIENT_ID)
        self.assertEqual(credentials.api_key, 'key')

    def test_credentials_missing_field_raises(self):
        lib.settings.client_secret_path.write_text(json.dumps({'client_id': CLIENT_ID}), encoding='utf-8')
        with self.assertRaises(status.ClientSecretInvalidException):
            lib.settings.get_credentials()

    def test_corrupt_tokens_raise_creds_invalid(self):
        lib.settings.creds_path.write_text('not a json', encoding='utf-8')
        with self.assertRaises(status.CredsInvalidException):
            lib.settings.get_tokens()

    def test_token_expiry_must_be_an_integer(self):
        lib.settings.creds_path.write_text(json.dumps({
            'access_token': 'a',
            'expires_at_epoch_ms': True,
        }), encoding='utf-8')
        with self.assertRaises(status.CredsInvalidException):
            lib.settings.get_tokens()


class TokenSetTests(BaseTestCase):

    def _tokens(self, expires_in_ms):
        now = 1_700_000_000_000
        return now, lib.TokenSet('a', 'r', now + expires_in_ms)

    def test_expired_one_second_ago(self):
        now, tokens = self._tokens(-1_000)
        self.assertTrue(tokens.is_expired(now))
        self.assertTrue(tokens.needs_refresh(now))

    def test_valid_for_one_hour(self):
        now, tokens = self._tokens(3_600_000)
        self.assertFalse(tokens.is_expired(now))
        self.assertFalse(tokens.needs_refresh(now))

    def test_thirty_seconds_left_needs_refresh(self):
        now, tokens = self._tokens(30_000)
        self.assertFalse(tokens.is_expired(now))
        self.assertTrue(tokens.needs_refresh(now))

    def test_refresh_boundary(self):
        now, tokens = self._tokens(lib.REFRESH_SKEW_MS)
        self.assertFalse(tokens.needs_refresh(now))
        now, tokens = self._tokens(lib.REFRESH_SKEW_MS - 1)
        self.assertTrue(tokens.needs_refresh(now))


class TimestampTests(BaseTestCase):

    def test_parse_zulu_timestamp(self):
        dt = lib.parse_timestamp('2024-05-01T10:00:00.123Z')
        self.assertEqual(dt.tzinfo, datetime.timezone.utc)
        self.assertEqual(dt.microsecond, 123000)

    def test_naive_values_are_utc(self):
        naive = datetime.datetime(2024, 1, 1)
        aware = naive.replace(tzinfo=datetime.timezone.utc)
        self.assertEqual(lib.to_epoch_ms(naive), lib.to_epoch_ms(aware))

    def test_empty_timestamp(self):
        self.assertIsNone(lib.parse_timestamp(None))
        self.assertIsNone(lib.format_timestamp(None))
