"""Status definitions and exceptions for LedgerSync.

This module provides:
    - Status: enumeration of possible sync and authentication states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions grouped by recovery path: configure, re-authenticate,
      retry, or correct the input
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Configuration status
    NotConfigured = enum.auto()
    SyncConfigInvalid = enum.auto()

    # Authentication status
    NotAuthenticated = enum.auto()
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    TokenRefreshFailed = enum.auto()

    # Input validation
    ValidationFailed = enum.auto()

    # Transient remote failures
    ProbeFailed = enum.auto()
    ExchangeFailed = enum.auto()
    ExchangeInProgress = enum.auto()
    RemoteBackupNotFound = enum.auto()

    # Local data store
    LocalStoreUnavailable = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the sync settings.',
    Status.Okay: 'Everything is okay.',

    Status.NotConfigured: 'Sync is not configured. Choose a Google Drive folder or backup file first.',
    Status.SyncConfigInvalid: 'The sync configuration seems to be incomplete, or contains invalid values.',

    Status.NotAuthenticated: 'Authentication error. Try signing in again to your Google account.',
    Status.ClientSecretNotFound: 'Could not find the Google client credentials. Have you entered a client ID and secret?',
    Status.ClientSecretInvalid: 'The Google client credentials are invalid.',
    Status.CredsNotFound: 'Not signed in. Please sign in to your Google account.',
    Status.CredsInvalid: 'Could not read the stored credentials. Please sign in again to your Google account.',
    Status.TokenRefreshFailed: 'Could not refresh the access token. Please sign in again to your Google account.',

    Status.ValidationFailed: 'The provided value is invalid.',

    Status.ProbeFailed: 'Could not check the cloud backup. Please check your connection.',
    Status.ExchangeFailed: 'The sync operation failed. Your local data was backed up before the attempt.',
    Status.ExchangeInProgress: 'Another sync operation is already running.',
    Status.RemoteBackupNotFound: 'No backup was found in the cloud.',

    Status.LocalStoreUnavailable: 'The local database could not be read.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in LedgerSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..core.signals import signals
        signals.error.emit(message or self.status_message)


class NotConfiguredException(BaseStatusException):
    """Raised when no remote location has been configured."""
    status = Status.NotConfigured


class ValidationException(BaseStatusException):
    """Raised when user input or a stored record fails validation."""
    status = Status.ValidationFailed


class SyncConfigInvalidException(ValidationException):
    """Raised when the persisted sync configuration is malformed."""
    status = Status.SyncConfigInvalid


class ClientSecretInvalidException(ValidationException):
    """Raised when the Google OAuth client id or secret is malformed."""
    status = Status.ClientSecretInvalid


class NotAuthenticatedException(BaseStatusException):
    """Raised when a remote operation needs a (re-)authorization by the user."""
    status = Status.NotAuthenticated


class ClientSecretNotFoundException(NotAuthenticatedException):
    """Raised when no Google OAuth client credentials have been saved."""
    status = Status.ClientSecretNotFound


class CredsNotFoundException(NotAuthenticatedException):
    """Raised when no stored token set exists."""
    status = Status.CredsNotFound


class CredsInvalidException(NotAuthenticatedException):
    """Raised when the stored token set cannot be read."""
    status = Status.CredsInvalid


class TokenRefreshFailedException(NotAuthenticatedException):
    """Raised when the token endpoint rejects a refresh request."""
    status = Status.TokenRefreshFailed


class ProbeException(BaseStatusException):
    """Raised when the remote metadata could not be retrieved."""
    status = Status.ProbeFailed


class ExchangeException(BaseStatusException):
    """Raised when a push or pull could not be completed."""
    status = Status.ExchangeFailed


class ExchangeInProgressException(ExchangeException):
    """Raised when a push or pull is requested while another one is running."""
    status = Status.ExchangeInProgress


class RemoteBackupNotFoundException(ExchangeException):
    """Raised when a pull finds no backup file in the configured folder."""
    status = Status.RemoteBackupNotFound


class LocalStoreUnavailableException(BaseStatusException):
    """Raised when the local database file cannot be read, copied or replaced."""
    status = Status.LocalStoreUnavailable
