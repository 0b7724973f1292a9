"""
Logging subsystem for LedgerSync.

Modules:

- :mod:`LedgerSync.log.log` – Handler setup integrating Python logging, an in-memory log tank and Qt messages.
"""
