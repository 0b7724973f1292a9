"""
LedgerSync: Google Drive sync and conflict-resolution core for a local ledger database.

This package provides:

- :mod:`LedgerSync.core` – Fingerprinting, token lifecycle, remote probe, sync state evaluation and push/pull exchanges.
- :mod:`LedgerSync.settings` – Persisted sync records and application paths.
- :mod:`LedgerSync.status` – Status codes and the exceptions raised by the sync core.
- :mod:`LedgerSync.log` – Logging setup with an in-memory log tank.

Use :class:`LedgerSync.core.sync.SyncAPI` as the entry point.
"""
import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('LedgerSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__description__ = 'LedgerSync: Google Drive sync and conflict-resolution core for a local ledger database.'

from .log import log

log.setup_logging()
