"""
Session edit-lock tracking.

Every process gets its own session id. The first local mutation of a session is recorded in
the persisted session marker, and a successful push or pull clears it. A marker written by a
different session means an earlier run changed the store and exited without syncing.
"""
import logging
import uuid

from .signals import signals
from ..settings import lib


class SessionTracker:
    """Records which process session last modified the local store."""

    def __init__(self) -> None:
        self.session_id: str = str(uuid.uuid4())
        self._recorded: bool = False
        logging.debug(f'Sync session id: {self.session_id}')

    def record_mutation(self) -> None:
        """Mark the local store as modified by this session.

        Writes the marker once per session. Repeated calls are no-ops.
        """
        if self._recorded:
            marker = lib.settings.get_session()
            if marker.last_modify_session_id == self.session_id:
                return

        logging.debug(f'Recording local change for session {self.session_id}')
        lib.settings.set_session(lib.SessionMarker(last_modify_session_id=self.session_id))
        self._recorded = True
        signals.localStoreMutated.emit()

    def clear(self) -> None:
        """Forget the recorded mutation after the store has been exchanged."""
        logging.debug('Clearing session marker.')
        lib.settings.clear_session()
        self._recorded = False

    def has_unsynced_prior_session_changes(self) -> bool:
        """Return True if a different session changed the store and never synced it."""
        marker = lib.settings.get_session()
        if not marker.last_modify_session_id:
            return False
        return marker.last_modify_session_id != self.session_id


session_tracker: SessionTracker = SessionTracker()
