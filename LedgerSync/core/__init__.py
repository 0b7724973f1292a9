"""
Core package for LedgerSync providing the sync machinery.

This package includes:

- :mod:`LedgerSync.core.signals` – Application-wide Qt signals.
- :mod:`LedgerSync.core.store` – Local SQLite store access and content fingerprinting.
- :mod:`LedgerSync.core.session` – Session edit-lock tracking.
- :mod:`LedgerSync.core.auth` – Google OAuth2 client credentials and token lifecycle.
- :mod:`LedgerSync.core.drive` – Google Drive metadata probe, upload and download.
- :mod:`LedgerSync.core.evaluator` – Sync state evaluation and edit permission.
- :mod:`LedgerSync.core.sync` – Push and pull exchanges and the SyncAPI entry point.
- :mod:`LedgerSync.core.watcher` – Timer-driven status re-checks.
"""
