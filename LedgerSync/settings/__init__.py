"""
Settings package: application paths and persisted sync records.

- :mod:`LedgerSync.settings.lib` – Record schema validation, typed records and the settings API.
"""
