"""
Sync state evaluation.

Decides, on every call, whether the local store may be edited and whether a push or pull is
needed. The result is never cached.

Evaluation order:
    1. No remote location configured: editing is allowed.
    2. A different session changed the store without syncing: editing is blocked. This is
       decided from local state only, before any network call.
    3. Remote probe. Nothing remote: editing is allowed, a push is needed.
    4. Remote exists but this installation never synced: editing is blocked.
    5. Local and remote change detection decide between in_sync, local_only, cloud_only and
       conflict.

Any failure while checking fails open: editing stays allowed and a warning is attached.
"""
import dataclasses
import datetime
import enum
import logging
from typing import Callable, Dict, Optional

from . import store as store_module
from .auth import auth_manager
from .drive import DriveService, RemoteInfo
from .session import session_tracker
from ..settings import lib

#: Clock tolerance when the remote hash could also be compared
HASH_BUFFER_MS: int = 5_000

#: Clock tolerance when the remote file carries no hash metadata
NO_HASH_BUFFER_MS: int = 60_000


class Reason(enum.StrEnum):
    """Why the sync state evaluated the way it did."""
    NotConfigured = 'not_configured'
    PriorSessionChanges = 'prior_session_changes'
    NoCloudBackup = 'no_cloud_backup'
    NeverSynced = 'never_synced'
    InSync = 'in_sync'
    LocalOnly = 'local_only'
    CloudOnly = 'cloud_only'
    Conflict = 'conflict'
    CheckFailed = 'check_failed'


CAN_EDIT: Dict[Reason, bool] = {
    Reason.NotConfigured: True,
    Reason.PriorSessionChanges: False,
    Reason.NoCloudBackup: True,
    Reason.NeverSynced: False,
    Reason.InSync: True,
    Reason.LocalOnly: True,
    Reason.CloudOnly: False,
    Reason.Conflict: False,
    Reason.CheckFailed: True,
}

REASON_MESSAGE: Dict[Reason, str] = {
    Reason.NotConfigured: 'Sync is not configured.',
    Reason.PriorSessionChanges: 'Changes from a previous session have not been synced. Push or pull first.',
    Reason.NoCloudBackup: 'No cloud backup exists yet. Push to create one.',
    Reason.NeverSynced: 'A cloud backup exists but this device has never synced. Push or pull first.',
    Reason.InSync: 'Local data and the cloud backup are in sync.',
    Reason.LocalOnly: 'Local changes have not been pushed yet.',
    Reason.CloudOnly: 'The cloud backup has newer changes. Pull before editing.',
    Reason.Conflict: 'Both local data and the cloud backup have changed. Choose which copy to keep.',
    Reason.CheckFailed: 'Could not check the sync status.',
}

_RESOLUTION_REASONS = (
    Reason.NeverSynced,
    Reason.CloudOnly,
    Reason.Conflict,
    Reason.PriorSessionChanges,
)


@dataclasses.dataclass
class SyncCheckResult:
    """Outcome of a sync state evaluation."""
    reason: Reason
    can_edit: bool
    sync_required: bool = False
    has_local_changes: bool = False
    has_cloud_changes: bool = False
    last_synced_at: Optional[datetime.datetime] = None
    cloud_modified_at: Optional[datetime.datetime] = None
    warning: Optional[str] = None
    message: str = ''

    @property
    def needs_resolution(self) -> bool:
        """True when the user has to push or pull before editing."""
        return not self.can_edit and self.reason in _RESOLUTION_REASONS

    def to_dict(self) -> Dict:
        return {
            'reason': str(self.reason),
            'can_edit': self.can_edit,
            'sync_required': self.sync_required,
            'has_local_changes': self.has_local_changes,
            'has_cloud_changes': self.has_cloud_changes,
            'last_synced_at': lib.format_timestamp(self.last_synced_at),
            'cloud_modified_at': lib.format_timestamp(self.cloud_modified_at),
            'warning': self.warning,
            'message': self.message,
            'needs_resolution': self.needs_resolution,
        }


def make_result(reason: Reason, **kwargs) -> SyncCheckResult:
    kwargs.setdefault('message', REASON_MESSAGE[reason])
    return SyncCheckResult(reason=reason, can_edit=CAN_EDIT[reason], **kwargs)


def has_local_changes(current_fingerprint: str, synced_fingerprint: Optional[str]) -> bool:
    """The local store changed if its fingerprint differs from the last exchanged one."""
    if not synced_fingerprint:
        return True
    return current_fingerprint != synced_fingerprint


def has_cloud_changes(remote: RemoteInfo, config: lib.SyncConfiguration) -> bool:
    """Decide whether the remote backup changed since the last exchange.

    Two independent tiers, either one is enough:
        1. Both hashes are known and differ.
        2. The remote modification time is later than the last sync plus a buffer. The
           buffer is :data:`HASH_BUFFER_MS` when hashes were available, otherwise the wider
           :data:`NO_HASH_BUFFER_MS`.
    """
    hashes_available = bool(remote.remote_hash and config.synced_fingerprint)
    if hashes_available and remote.remote_hash != config.synced_fingerprint:
        logging.debug('Remote hash differs from the synced fingerprint.')
        return True

    if remote.modified_at is None or config.last_synced_at is None:
        return False

    buffer_ms = HASH_BUFFER_MS if hashes_available else NO_HASH_BUFFER_MS
    modified_ms = lib.to_epoch_ms(remote.modified_at)
    synced_ms = lib.to_epoch_ms(config.last_synced_at)
    if modified_ms > synced_ms + buffer_ms:
        logging.debug(f'Remote modified {modified_ms - synced_ms} ms after the last sync (buffer {buffer_ms} ms).')
        return True
    return False


def classify(local_changed: bool, cloud_changed: bool) -> Reason:
    if local_changed and cloud_changed:
        return Reason.Conflict
    if cloud_changed:
        return Reason.CloudOnly
    if local_changed:
        return Reason.LocalOnly
    return Reason.InSync


class SyncStateEvaluator:
    """Evaluates the sync state of the local store against the remote backup.

    Args:
        store (LocalStore): The local store to fingerprint.
        drive_factory (callable): Returns a :class:`DriveService` for an access token.
    """

    def __init__(self, store: store_module.LocalStore,
                 drive_factory: Callable[[str], DriveService] = DriveService) -> None:
        self.store = store
        self.drive_factory = drive_factory

    def evaluate(self) -> SyncCheckResult:
        config: Optional[lib.SyncConfiguration] = None
        try:
            config = lib.settings.get_sync_config()
            if not config.is_configured:
                return make_result(Reason.NotConfigured)

            if session_tracker.has_unsynced_prior_session_changes():
                logging.debug('Unsynced changes from a previous session found.')
                return make_result(
                    Reason.PriorSessionChanges,
                    sync_required=True,
                    has_local_changes=True,
                    last_synced_at=config.last_synced_at,
                )

            access_token = auth_manager.get_valid_access_token()
            remote = self.drive_factory(access_token).probe(config)

            if not remote.exists:
                return make_result(
                    Reason.NoCloudBackup,
                    sync_required=True,
                    has_local_changes=True,
                    last_synced_at=config.last_synced_at,
                )

            if config.last_synced_at is None:
                return make_result(
                    Reason.NeverSynced,
                    sync_required=True,
                    has_cloud_changes=True,
                    cloud_modified_at=remote.modified_at,
                )

            local_changed = has_local_changes(store_module.fingerprint(self.store), config.synced_fingerprint)
            cloud_changed = has_cloud_changes(remote, config)
            reason = classify(local_changed, cloud_changed)

            return make_result(
                reason,
                sync_required=reason != Reason.InSync,
                has_local_changes=local_changed,
                has_cloud_changes=cloud_changed,
                last_synced_at=config.last_synced_at,
                cloud_modified_at=remote.modified_at,
            )

        except Exception as ex:
            logging.warning(f'Sync status check failed: {ex}', exc_info=True)
            return make_result(
                Reason.CheckFailed,
                last_synced_at=config.last_synced_at if config else None,
                warning=f'Could not check the cloud backup: {ex}',
            )
