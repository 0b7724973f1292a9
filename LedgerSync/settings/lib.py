"""Settings library for the sync configuration and authentication records.

Provides:
    - ConfigPaths: resolves and prepares the data, config, auth and backup directories.
    - Typed records: SyncConfiguration, Credentials, TokenSet and SessionMarker.
    - RECORD_SCHEMA: type constraints enforced whenever a record is loaded.
    - SettingsAPI: get/set/clear access to each record, persisted as individual JSON files.

Every record write goes through a temporary file and ``os.replace`` so a single record update
is all or nothing.
"""
import dataclasses
import datetime
import json
import logging
import os
import pathlib
import tempfile
from typing import Dict, Any, Optional, Type

from PySide6 import QtCore

from ..core.signals import signals
from ..status import status

app_name: str = 'LedgerSync'

#: Environment variable overriding the application data directory
DATA_DIR_ENV: str = 'LEDGERSYNC_DATA_DIR'

#: Access tokens expiring within this window are refreshed before use
REFRESH_SKEW_MS: int = 60_000

#: Number of pre-exchange safety copies kept per prefix
BACKUP_RETENTION: int = 5

DB_FILENAME: str = 'ledger.db'

_optional_str = (str, type(None))

RECORD_SCHEMA: Dict[str, Dict[str, Any]] = {
    'sync_config': {
        'remote_location_id': {'type': _optional_str, 'required': False},
        'remote_location_name': {'type': _optional_str, 'required': False},
        'is_file_based_mode': {'type': bool, 'required': False},
        'last_synced_at': {'type': _optional_str, 'required': False, 'format': 'datetime'},
        'synced_fingerprint': {'type': _optional_str, 'required': False},
        'account_email': {'type': _optional_str, 'required': False},
        'backup_file_id': {'type': _optional_str, 'required': False},
    },
    'credentials': {
        'client_id': {'type': str, 'required': True},
        'client_secret': {'type': str, 'required': True},
        'api_key': {'type': _optional_str, 'required': False},
    },
    'tokens': {
        'access_token': {'type': str, 'required': True},
        'refresh_token': {'type': _optional_str, 'required': False},
        'expires_at_epoch_ms': {'type': int, 'required': True},
        'token_type': {'type': str, 'required': False},
        'granted_scope': {'type': str, 'required': False},
    },
    'session': {
        'last_modify_session_id': {'type': _optional_str, 'required': False},
    },
}

RECORD_EXCEPTIONS: Dict[str, Type[status.BaseStatusException]] = {
    'sync_config': status.SyncConfigInvalidException,
    'credentials': status.ClientSecretInvalidException,
    'tokens': status.CredsInvalidException,
    'session': status.SyncConfigInvalidException,
}


def now_ms() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(datetime.datetime.now(datetime.timezone.utc).timestamp() * 1000)


def to_epoch_ms(value: datetime.datetime) -> int:
    """Convert a datetime to epoch milliseconds. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return int(value.timestamp() * 1000)


def parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 / RFC 3339 timestamp into an aware UTC datetime.

    Args:
        value (str, optional): The timestamp string, e.g. '2024-05-01T10:00:00.000Z'.

    Returns:
        datetime.datetime or None: The parsed timestamp, or None when value is empty.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    dt = datetime.datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def format_timestamp(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).isoformat()


@dataclasses.dataclass
class SyncConfiguration:
    """Where the remote backup lives and what was last exchanged with it."""
    remote_location_id: Optional[str] = None
    remote_location_name: Optional[str] = None
    is_file_based_mode: bool = False
    last_synced_at: Optional[datetime.datetime] = None
    synced_fingerprint: Optional[str] = None
    account_email: Optional[str] = None
    backup_file_id: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.remote_location_id)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data['last_synced_at'] = format_timestamp(self.last_synced_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConfiguration':
        kwargs = {f.name: data[f.name] for f in dataclasses.fields(cls) if f.name in data}
        kwargs['last_synced_at'] = parse_timestamp(data.get('last_synced_at'))
        kwargs['is_file_based_mode'] = bool(data.get('is_file_based_mode', False))
        return cls(**kwargs)


@dataclasses.dataclass
class Credentials:
    """Google OAuth client credentials entered by the user."""
    client_id: str
    client_secret: str
    api_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credentials':
        return cls(
            client_id=data['client_id'],
            client_secret=data['client_secret'],
            api_key=data.get('api_key'),
        )


@dataclasses.dataclass
class TokenSet:
    """OAuth2 tokens issued for the stored client credentials.

    The ``refresh_token`` is long-lived and is carried over verbatim whenever the access token
    is refreshed.
    """
    access_token: str
    refresh_token: Optional[str]
    expires_at_epoch_ms: int
    token_type: str = 'Bearer'
    granted_scope: str = ''

    def needs_refresh(self, now: Optional[int] = None) -> bool:
        """Return True when the access token expires within :data:`REFRESH_SKEW_MS`."""
        now = now_ms() if now is None else now
        return self.expires_at_epoch_ms < now + REFRESH_SKEW_MS

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = now_ms() if now is None else now
        return self.expires_at_epoch_ms <= now

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenSet':
        return cls(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token'),
            expires_at_epoch_ms=data['expires_at_epoch_ms'],
            token_type=data.get('token_type') or 'Bearer',
            granted_scope=data.get('granted_scope') or '',
        )


@dataclasses.dataclass
class SessionMarker:
    """Identifies the process session that last modified the local store."""
    last_modify_session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionMarker':
        return cls(last_modify_session_id=data.get('last_modify_session_id'))


def validate_record(record: str, data: Any) -> None:
    """Validate a raw record dictionary against :data:`RECORD_SCHEMA`.

    Args:
        record (str): The record name, one of the RECORD_SCHEMA keys.
        data (Any): The decoded JSON payload.

    Raises:
        KeyError: If record is unknown.
        status.BaseStatusException: The record's invalid-data exception, see RECORD_EXCEPTIONS.
    """
    if record not in RECORD_SCHEMA:
        raise KeyError(f'Unknown record: {record}, must be one of {list(RECORD_SCHEMA)}')

    exc = RECORD_EXCEPTIONS[record]
    if not isinstance(data, dict):
        raise exc(f'"{record}" must be a JSON object, got {type(data).__name__}.')

    logging.debug(f'Validating "{record}" record.')
    for field, specs in RECORD_SCHEMA[record].items():
        if field not in data:
            if specs['required']:
                raise exc(f'"{record}" is missing the required field "{field}".')
            continue

        value = data[field]
        # bool is a subclass of int
        if specs['type'] is int and isinstance(value, bool):
            raise exc(f'"{record}" field "{field}" must be int, got bool.')
        if not isinstance(value, specs['type']):
            raise exc(f'"{record}" field "{field}" has the wrong type: {type(value).__name__}.')

        if specs.get('format') == 'datetime' and value:
            try:
                parse_timestamp(value)
            except ValueError as ex:
                raise exc(f'"{record}" field "{field}" is not a valid timestamp: "{value}".') from ex


class ConfigPaths:
    """Resolve the application data directory and ensure its sub-directories exist.

    The data directory is taken from the ``LEDGERSYNC_DATA_DIR`` environment variable when set,
    otherwise from Qt's writable application data location.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        if root:
            data_dir = pathlib.Path(root)
        elif os.environ.get(DATA_DIR_ENV):
            data_dir = pathlib.Path(os.environ[DATA_DIR_ENV])
        else:
            QtCore.QCoreApplication.setApplicationName(app_name)
            QtCore.QCoreApplication.setOrganizationName('')
            logging.debug(f'Setting application name: {app_name}')

            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            data_dir = pathlib.Path(p)

        logging.debug(f'Using app data directory: {data_dir}')

        self.data_dir: pathlib.Path = data_dir
        self.config_dir: pathlib.Path = data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.backups_dir: pathlib.Path = data_dir / 'backups'

        self.db_path: pathlib.Path = data_dir / DB_FILENAME

        # Records
        self.sync_config_path: pathlib.Path = self.config_dir / 'sync.json'
        self.session_path: pathlib.Path = self.config_dir / 'session.json'
        self.client_secret_path: pathlib.Path = self.auth_dir / 'client_secret.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create the config, auth and backup directories if missing."""
        for path in (self.data_dir, self.config_dir, self.auth_dir, self.backups_dir):
            if path.exists():
                continue
            logging.debug(f'Creating directory: {path}')
            path.mkdir(parents=True, exist_ok=True)

    def record_path(self, record: str) -> pathlib.Path:
        """Return the JSON file backing the given record."""
        paths = {
            'sync_config': self.sync_config_path,
            'credentials': self.client_secret_path,
            'tokens': self.creds_path,
            'session': self.session_path,
        }
        if record not in paths:
            raise KeyError(f'Unknown record: {record}, must be one of {list(paths)}')
        return paths[record]


class SettingsAPI(ConfigPaths):
    """
    Typed repository for the persisted sync records.

    Each record has a get, set and clear method. Loading validates the stored JSON against
    RECORD_SCHEMA; a missing file reads as "not set".
    """

    def __init__(self, root: Optional[str] = None) -> None:
        super().__init__(root=root)
        self._signals_blocked: bool = False

    def block_signals(self, v: bool) -> None:
        """Enable or disable emission of configChanged.

        Args:
            v: True to block signals, False to allow signals to emit.
        """
        self._signals_blocked = v

    def _emit_changed(self, record: str) -> None:
        if self._signals_blocked:
            return
        signals.configChanged.emit(record)

    def load_record(self, record: str) -> Optional[Dict[str, Any]]:
        """Load and validate a record from disk.

        Returns:
            dict or None: The record data, or None if the record was never written.

        Raises:
            status.BaseStatusException: The record's invalid-data exception on malformed JSON or
                schema violations.
        """
        path = self.record_path(record)
        if not path.exists():
            return None

        logging.debug(f'Loading "{record}" from "{path}"')
        try:
            with path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as ex:
            raise RECORD_EXCEPTIONS[record](f'Could not read "{path.name}": {ex}') from ex

        validate_record(record, data)
        return data

    def save_record(self, record: str, data: Dict[str, Any]) -> None:
        """Validate and atomically write a record to disk.

        The data is written to a temporary file in the same directory and moved over the
        existing file with ``os.replace``.
        """
        validate_record(record, data)
        path = self.record_path(record)
        path.parent.mkdir(parents=True, exist_ok=True)

        logging.debug(f'Saving "{record}" to "{path}"')
        fd, tmp = tempfile.mkstemp(prefix=f'.{path.stem}-', suffix='.tmp', dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=4, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except Exception as e:
            logging.error(f'Error saving "{record}": {e}')
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

        self._emit_changed(record)

    def remove_record(self, record: str) -> None:
        path = self.record_path(record)
        if not path.exists():
            return
        logging.debug(f'Removing "{record}" at "{path}"')
        path.unlink()
        self._emit_changed(record)

    # Sync configuration

    def get_sync_config(self) -> SyncConfiguration:
        data = self.load_record('sync_config')
        if data is None:
            return SyncConfiguration()
        return SyncConfiguration.from_dict(data)

    def set_sync_config(self, config: SyncConfiguration) -> None:
        self.save_record('sync_config', config.to_dict())

    def clear_sync_config(self) -> None:
        self.remove_record('sync_config')

    # Client credentials

    def get_credentials(self) -> Optional[Credentials]:
        data = self.load_record('credentials')
        if data is None:
            return None
        return Credentials.from_dict(data)

    def set_credentials(self, credentials: Credentials) -> None:
        self.save_record('credentials', credentials.to_dict())

    def clear_credentials(self) -> None:
        """Remove the client credentials together with any tokens issued for them."""
        self.remove_record('credentials')
        self.clear_tokens()

    # Tokens

    def get_tokens(self) -> Optional[TokenSet]:
        data = self.load_record('tokens')
        if data is None:
            return None
        return TokenSet.from_dict(data)

    def set_tokens(self, tokens: TokenSet) -> None:
        self.save_record('tokens', tokens.to_dict())

    def clear_tokens(self) -> None:
        self.remove_record('tokens')

    # Session marker

    def get_session(self) -> SessionMarker:
        data = self.load_record('session')
        if data is None:
            return SessionMarker()
        return SessionMarker.from_dict(data)

    def set_session(self, marker: SessionMarker) -> None:
        self.save_record('session', marker.to_dict())

    def clear_session(self) -> None:
        self.remove_record('session')


settings: SettingsAPI = SettingsAPI()
