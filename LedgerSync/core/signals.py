"""Application-wide Qt signals for LedgerSync.

The surrounding application connects to these to refresh its sync indicator,
drop open database handles before a pull replaces the store, prompt for
sign-in, or surface errors.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for sync, authentication and local store events."""
    authenticationRequested = QtCore.Signal()

    configChanged = QtCore.Signal(str)  # Record name

    syncStarted = QtCore.Signal(str)  # 'push' or 'pull'
    syncFinished = QtCore.Signal(str, bool)  # Direction, success
    syncStatusChanged = QtCore.Signal(object)  # SyncCheckResult

    localStoreMutated = QtCore.Signal()
    localStoreAboutToBeReplaced = QtCore.Signal()
    localStoreReplaced = QtCore.Signal()

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)


signals = Signals()
