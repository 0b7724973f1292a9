"""Periodic sync status re-check for the surrounding UI."""
import logging
from typing import Optional

from PySide6 import QtCore

from .signals import signals

DEFAULT_INTERVAL_MS = 60_000


class SyncStatusWatcher(QtCore.QObject):
    """Re-evaluates the sync status on a timer and after exchanges or configuration changes.

    Signals:
        statusChanged (object): Emitted with the new SyncCheckResult when the reason or the
            edit verdict changes.
    """
    statusChanged = QtCore.Signal(object)

    def __init__(self, api, interval_ms: int = DEFAULT_INTERVAL_MS, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.api = api
        self.last_result = None
        self._checking = False
        self._connected = False

        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self.recheck)

        self._connect_signals()

    def _connect_signals(self) -> None:
        signals.syncFinished.connect(self.on_sync_finished)
        signals.localStoreReplaced.connect(self.recheck)
        signals.configChanged.connect(self.on_config_changed)
        self._connected = True

    def close(self) -> None:
        """Stop the timer and detach from the application signals."""
        self._timer.stop()
        if not self._connected:
            return
        self._connected = False
        signals.syncFinished.disconnect(self.on_sync_finished)
        signals.localStoreReplaced.disconnect(self.recheck)
        signals.configChanged.disconnect(self.on_config_changed)

    def start(self) -> None:
        logging.debug(f'Starting sync status watcher ({self._timer.interval()} ms).')
        self._timer.start()
        self.recheck()

    def stop(self) -> None:
        self._timer.stop()

    def is_active(self) -> bool:
        return self._timer.isActive()

    @QtCore.Slot(str, bool)
    def on_sync_finished(self, direction: str, success: bool) -> None:
        self.recheck()

    @QtCore.Slot(str)
    def on_config_changed(self, record: str) -> None:
        if record == 'sync_config':
            self.recheck()

    @QtCore.Slot()
    def recheck(self) -> None:
        # Exchanges and nested checks write records that trigger this slot again
        if self._checking or self.api.is_exchange_running:
            return

        self._checking = True
        try:
            result = self.api.check_status()
        finally:
            self._checking = False

        previous = self.last_result
        self.last_result = result

        if previous and (previous.reason, previous.can_edit) == (result.reason, result.can_edit):
            return
        self.statusChanged.emit(result)
