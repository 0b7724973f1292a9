"""Sync manager for exchanging the local ledger database with its Google Drive backup.

A push uploads the local store and a pull replaces it with the remote copy. Both follow the
same skeleton:

1. Require a configured remote location and a valid access token.
2. Write a timestamped safety copy of the local store to the backups directory.
3. Checkpoint the write-ahead log.
4. Transfer the store, then record the fingerprint, sync time and remote file id in a single
   write of the sync configuration.
5. Clear the session marker.

A failed exchange leaves the sync configuration untouched and keeps the safety copy on disk.

Only one exchange runs at a time. Status checks may overlap each other but wait for a running
exchange; a second exchange is rejected instead of queued, and so is a mutation recorded while
an exchange runs.
"""
import contextlib
import dataclasses
import datetime
import logging
import pathlib
import threading
from typing import Any, Callable, Dict, Optional

from PySide6 import QtCore

from . import store as store_module
from .auth import auth_manager, ScopeLevel, classify_scope
from .drive import DriveService, FolderValidation, FolderErrorCode, extract_drive_id
from .evaluator import SyncStateEvaluator, SyncCheckResult
from .session import session_tracker
from .signals import signals
from ..settings import lib
from ..status import status

#: SyncConfiguration fields callers may change through :meth:`SyncAPI.update_config`
UPDATABLE_KEYS = ('remote_location_id', 'remote_location_name', 'is_file_based_mode', 'account_email')

#: Fields only written by a successful exchange
BOOKKEEPING_KEYS = ('last_synced_at', 'synced_fingerprint', 'backup_file_id')


@dataclasses.dataclass
class ExchangeResult:
    """Outcome of a successful push or pull."""
    direction: str
    fingerprint: str
    synced_at: datetime.datetime
    file_id: Optional[str]
    backup_path: Optional[pathlib.Path]


class ExchangeGate:
    """Shared/exclusive gate serializing exchanges against status checks."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @property
    def is_exclusive(self) -> bool:
        with self._cond:
            return self._writer

    @contextlib.contextmanager
    def shared(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @contextlib.contextmanager
    def exclusive(self):
        """Hold the gate exclusively.

        Raises:
            status.ExchangeInProgressException: If the gate is already held exclusively.
        """
        with self._cond:
            if self._writer:
                raise status.ExchangeInProgressException
            self._writer = True
            while self._readers:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SyncAPI(QtCore.QObject):
    """Entry point of the sync core for the surrounding application.

    Args:
        store (LocalStore, optional): The local store. Defaults to the configured SQLite database.
        drive_factory (callable, optional): Returns a :class:`DriveService` for an access token.
        parent (QtCore.QObject, optional): Qt parent object.
    """

    def __init__(
            self,
            store: Optional[store_module.LocalStore] = None,
            drive_factory: Optional[Callable[[str], DriveService]] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)
        self.store = store if store is not None else store_module.SQLiteStore()
        self.drive_factory = drive_factory if drive_factory is not None else DriveService
        self.evaluator = SyncStateEvaluator(self.store, self.drive_factory)
        self._gate = ExchangeGate()

    @property
    def is_exchange_running(self) -> bool:
        return self._gate.is_exclusive

    def check_status(self) -> SyncCheckResult:
        """Evaluate the current sync state. Never raises.

        Returns:
            SyncCheckResult: The verdict, including whether the store may be edited.
        """
        with self._gate.shared():
            result = self.evaluator.evaluate()
        logging.debug(f'Sync status: {result.reason} (can_edit={result.can_edit})')
        signals.syncStatusChanged.emit(result)
        return result

    def _require_config(self) -> lib.SyncConfiguration:
        config = lib.settings.get_sync_config()
        if not config.is_configured:
            raise status.NotConfiguredException
        return config

    def _run_exchange(self, direction: str, func: Callable[[], ExchangeResult]) -> ExchangeResult:
        started = False
        success = False
        try:
            with self._gate.exclusive():
                started = True
                logging.info(f'Starting {direction}...')
                signals.syncStarted.emit(direction)
                result = func()
                success = True
        except status.NotAuthenticatedException:
            # Notify the application that interactive sign-in is required
            signals.authenticationRequested.emit()
            raise
        finally:
            # Emitted after the gate is released
            if started:
                signals.syncFinished.emit(direction, success)

        logging.info(f'{direction.capitalize()} finished, fingerprint {result.fingerprint[:12]}')
        return result

    def push(self) -> ExchangeResult:
        """Upload the local store to the remote location.

        Raises:
            status.NotConfiguredException: If no remote location is configured.
            status.NotAuthenticatedException: If no valid access token can be obtained.
            status.LocalStoreUnavailableException: If the local store cannot be read.
            status.ExchangeException: If the upload fails.
            status.ExchangeInProgressException: If another exchange is running.
        """
        return self._run_exchange('push', self._push)

    def _push(self) -> ExchangeResult:
        config = self._require_config()
        access_token = auth_manager.get_valid_access_token()

        if not self.store.exists():
            raise status.LocalStoreUnavailableException(f'Local database not found: {self.store.path}')

        backup_path = self.store.backup('pre-push')
        self.store.checkpoint()
        data = self.store.read_bytes()
        content_hash = store_module.sha256_hex(data)

        drive = self.drive_factory(access_token)
        if config.is_file_based_mode:
            target_id = config.remote_location_id
        else:
            existing = drive.find_backup_file(config.remote_location_id, exc_type=status.ExchangeException)
            target_id = existing['id'] if existing else None

        if target_id:
            meta = drive.update_file(target_id, data, content_hash)
        else:
            meta = drive.create_file(config.remote_location_id, data, content_hash)
        file_id = (meta or {}).get('id') or target_id

        synced_at = datetime.datetime.now(datetime.timezone.utc)
        config.synced_fingerprint = content_hash
        config.last_synced_at = synced_at
        config.backup_file_id = file_id
        lib.settings.set_sync_config(config)

        session_tracker.clear()
        return ExchangeResult('push', content_hash, synced_at, file_id, backup_path)

    def pull(self) -> ExchangeResult:
        """Replace the local store with the remote backup.

        If the replacement itself fails the pre-pull safety copy is put back.

        Raises:
            status.NotConfiguredException: If no remote location is configured.
            status.NotAuthenticatedException: If no valid access token can be obtained.
            status.RemoteBackupNotFoundException: If there is no remote backup.
            status.LocalStoreUnavailableException: If the local store cannot be replaced.
            status.ExchangeException: If the download fails.
            status.ExchangeInProgressException: If another exchange is running.
        """
        return self._run_exchange('pull', self._pull)

    def _pull(self) -> ExchangeResult:
        config = self._require_config()
        access_token = auth_manager.get_valid_access_token()

        drive = self.drive_factory(access_token)
        if config.is_file_based_mode:
            file_id = config.remote_location_id
        else:
            existing = drive.find_backup_file(config.remote_location_id, exc_type=status.ExchangeException)
            if not existing:
                raise status.RemoteBackupNotFoundException(
                    f'No "{config.remote_location_name or config.remote_location_id}" backup found.'
                )
            file_id = existing['id']

        backup_path = self.store.backup('pre-pull')
        if self.store.exists():
            self.store.checkpoint()

        data = drive.download_file(file_id)
        if not store_module.is_sqlite_data(data):
            raise status.ExchangeException('The downloaded file is not a ledger database.')

        try:
            self.store.replace(data)
        except status.LocalStoreUnavailableException:
            if backup_path:
                self.store.restore(backup_path)
            raise

        content_hash = store_module.fingerprint(self.store)

        synced_at = datetime.datetime.now(datetime.timezone.utc)
        config.synced_fingerprint = content_hash
        config.last_synced_at = synced_at
        config.backup_file_id = file_id
        lib.settings.set_sync_config(config)

        session_tracker.clear()
        return ExchangeResult('pull', content_hash, synced_at, file_id, backup_path)

    def get_config(self) -> lib.SyncConfiguration:
        return lib.settings.get_sync_config()

    def update_config(self, **partial: Any) -> lib.SyncConfiguration:
        """Update the user-editable parts of the sync configuration.

        ``remote_location_id`` accepts a Drive share URL or a raw id. Changing the remote
        location or mode discards the bookkeeping of the previous location.

        Raises:
            status.ValidationException: On unknown, derived or exchange-managed keys, or
                malformed values.
            status.ExchangeInProgressException: If an exchange is running.
        """
        for key in partial:
            if key == 'is_configured':
                raise status.ValidationException('"is_configured" is derived from the remote location.')
            if key in BOOKKEEPING_KEYS:
                raise status.ValidationException(f'"{key}" is only updated by a push or pull.')
            if key not in UPDATABLE_KEYS:
                raise status.ValidationException(f'Unknown sync configuration key: "{key}".')

        if 'is_file_based_mode' in partial and not isinstance(partial['is_file_based_mode'], bool):
            raise status.ValidationException('"is_file_based_mode" must be a boolean.')
        for key in ('remote_location_name', 'account_email'):
            if partial.get(key) is not None and not isinstance(partial[key], str):
                raise status.ValidationException(f'"{key}" must be a string.')

        if 'remote_location_id' in partial and partial['remote_location_id']:
            drive_id = extract_drive_id(str(partial['remote_location_id']))
            if not drive_id:
                raise status.ValidationException(
                    f'"{partial["remote_location_id"]}" is not a Google Drive folder or file link.'
                )
            partial['remote_location_id'] = drive_id
        elif 'remote_location_id' in partial:
            partial['remote_location_id'] = None

        with self._gate.exclusive():
            config = lib.settings.get_sync_config()
            previous = (config.remote_location_id, config.is_file_based_mode)

            for key, value in partial.items():
                setattr(config, key, value)

            if (config.remote_location_id, config.is_file_based_mode) != previous:
                logging.info('Remote location changed, resetting sync bookkeeping.')
                config.last_synced_at = None
                config.synced_fingerprint = None
                config.backup_file_id = None

            lib.settings.set_sync_config(config)
        return config

    def save_credentials(self, client_id: str, client_secret: str, api_key: Optional[str] = None) -> None:
        auth_manager.save_credentials(client_id, client_secret, api_key=api_key)

    def clear_credentials(self) -> None:
        auth_manager.clear_credentials()

    def disconnect(self) -> None:
        """Revoke the tokens and forget the remote location.

        The client credentials are kept so the user can sign in again.
        """
        with self._gate.exclusive():
            auth_manager.revoke()
            auth_manager.sign_out()
            lib.settings.clear_sync_config()
            session_tracker.clear()
        logging.info('Sync disconnected.')

    def record_mutation(self) -> None:
        """Must be called by the application whenever it modifies the local store.

        Raises:
            status.ExchangeInProgressException: If an exchange is running.
        """
        if self.is_exchange_running:
            raise status.ExchangeInProgressException('The local store cannot be modified during a sync.')
        with self._gate.shared():
            session_tracker.record_mutation()

    def authorization_url(self, redirect_uri: str, scope_level: ScopeLevel = ScopeLevel.Standard,
                          custom_state: Optional[str] = None):
        return auth_manager.authorization_url(redirect_uri, scope_level=scope_level, custom_state=custom_state)

    def exchange_authorization_code(self, code: str, redirect_uri: str, state: Optional[str] = None) -> ScopeLevel:
        return auth_manager.exchange_authorization_code(code, redirect_uri, state=state)

    def get_auth_status(self) -> Dict[str, Any]:
        """Summarize the authentication state for display."""
        tokens = auth_manager.get_tokens()
        config = lib.settings.get_sync_config()
        return {
            'has_credentials': auth_manager.has_credentials(),
            'is_authenticated': auth_manager.is_authenticated(),
            'scope_level': str(classify_scope(tokens.granted_scope)) if tokens else None,
            'account_email': config.account_email,
        }

    def validate_folder(self, url_or_id: str) -> FolderValidation:
        """Check that a Drive folder can hold the backup file."""
        folder_id = extract_drive_id(url_or_id)
        if not folder_id:
            return FolderValidation(
                False,
                error='That does not look like a Google Drive folder link.',
                error_code=FolderErrorCode.NotFound,
            )

        try:
            access_token = auth_manager.get_valid_access_token()
        except status.NotAuthenticatedException as ex:
            return FolderValidation(False, error=str(ex), error_code=FolderErrorCode.AuthRequired)

        return self.drive_factory(access_token).validate_folder(folder_id)
