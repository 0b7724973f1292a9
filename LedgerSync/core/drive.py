"""Google Drive API integration for the remote backup file.

Provides the remote metadata probe and the upload, download and folder validation calls used
by the push and pull exchanges. HTTP failures are translated into the status exceptions the
rest of the package handles.
"""
import dataclasses
import datetime
import enum
import io
import json
import logging
import re
import socket
import ssl
import urllib.parse
import uuid
from typing import Any, Dict, Optional, Tuple, Type

import google.auth.exceptions
import google.oauth2.credentials
import google_auth_httplib2
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest, MediaIoBaseDownload, MediaIoBaseUpload

from ..settings import lib
from ..status import status

TOTAL_TIMEOUT: int = 60
MAX_RETRIES: int = 3

BACKUP_FILENAME = 'ledger-backup.db'
VALIDATION_FILENAME = '.ledger-validation-test'
MIME_TYPE = 'application/x-sqlite3'
FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'

#: appProperties key holding the SHA-256 of the uploaded store
HASH_PROPERTY = 'contentSha256'

FILE_FIELDS = 'id,name,mimeType,modifiedTime,appProperties,trashed'

UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files'

DRIVE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
DRIVE_URL_PATTERNS = (
    re.compile(r'drive\.google\.com/drive(?:/u/\d+)?/folders/([a-zA-Z0-9_-]+)'),
    re.compile(r'drive\.google\.com/file/d/([a-zA-Z0-9_-]+)'),
    re.compile(r'[?&]id=([a-zA-Z0-9_-]+)'),
)


class FolderErrorCode(enum.StrEnum):
    NotFound = 'NOT_FOUND'
    NoAccess = 'NO_ACCESS'
    ReadOnly = 'READ_ONLY'
    AuthRequired = 'AUTH_REQUIRED'


@dataclasses.dataclass
class RemoteInfo:
    """Result of probing the remote backup location."""
    exists: bool
    file_id: Optional[str] = None
    modified_at: Optional[datetime.datetime] = None
    remote_hash: Optional[str] = None


@dataclasses.dataclass
class FolderValidation:
    """Result of checking a Drive folder for use as the sync location."""
    success: bool
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[FolderErrorCode] = None


def sanitize_drive_id(drive_id: str) -> str:
    """Strip every character that cannot appear in a Drive id."""
    return re.sub(r'[^a-zA-Z0-9_-]', '', drive_id or '')


def build_folder_query(folder_id: str, filename: str = BACKUP_FILENAME) -> str:
    """Build a ``files.list`` query matching a non-trashed file by name in a folder."""
    safe_id = sanitize_drive_id(folder_id)
    safe_name = filename.replace('\\', '\\\\').replace("'", "\\'")
    return f"'{safe_id}' in parents and name='{safe_name}' and trashed=false"


def extract_drive_id(url_or_id: str) -> Optional[str]:
    """
    Extract a Google Drive folder or file id from a share URL or a raw id.

    Supports formats:
        - https://drive.google.com/drive/folders/FOLDER_ID?usp=sharing
        - https://drive.google.com/drive/u/0/folders/FOLDER_ID
        - https://drive.google.com/file/d/FILE_ID/view
        - https://drive.google.com/open?id=ID
        - A raw id

    Returns:
        str or None: The id, or None if the input contains none.
    """
    url_or_id = (url_or_id or '').strip()
    if not url_or_id:
        return None

    for pattern in DRIVE_URL_PATTERNS:
        match = pattern.search(url_or_id)
        if match:
            return match.group(1)

    if DRIVE_ID_PATTERN.fullmatch(url_or_id):
        return url_or_id
    return None


def _new_boundary() -> str:
    return f'ledgersync-{uuid.uuid4().hex}'


def build_multipart_body(
        metadata: Dict[str, Any],
        data: bytes,
        mimetype: str = MIME_TYPE,
        boundary: Optional[str] = None
) -> Tuple[bytes, str]:
    """Encode a ``multipart/related`` upload body for the Drive upload endpoint.

    The first part carries the JSON metadata, the second the raw file bytes.

    Args:
        metadata (dict): The file resource, e.g. name, parents and appProperties.
        data (bytes): The file contents.
        mimetype (str): The media type of the file part.
        boundary (str, optional): A fixed boundary. Generated when omitted.

    Returns:
        tuple: The encoded body and the matching Content-Type header value.

    Raises:
        ValueError: If a given boundary occurs in the payload.
    """
    meta = json.dumps(metadata).encode('utf-8')

    if boundary is None:
        boundary = _new_boundary()
        while boundary.encode('ascii') in data or boundary.encode('ascii') in meta:
            boundary = _new_boundary()
    elif boundary.encode('ascii') in data or boundary.encode('ascii') in meta:
        raise ValueError(f'Boundary "{boundary}" occurs in the payload.')

    delimiter = f'--{boundary}\r\n'.encode('ascii')
    body = b''.join((
        delimiter,
        b'Content-Type: application/json; charset=UTF-8\r\n\r\n',
        meta,
        b'\r\n',
        delimiter,
        f'Content-Type: {mimetype}\r\n\r\n'.encode('ascii'),
        data,
        f'\r\n--{boundary}--\r\n'.encode('ascii'),
    ))
    return body, f'multipart/related; boundary={boundary}'


def _json_postproc(resp, content) -> Dict[str, Any]:
    if not content:
        return {}
    if isinstance(content, bytes):
        content = content.decode('utf-8')
    return json.loads(content)


def _http_status(ex: HttpError) -> Optional[int]:
    return ex.resp.status if ex.resp else None


class DriveService:
    """Thin wrapper around the Drive v3 API client.

    Args:
        access_token (str): A valid OAuth access token.
        timeout (int): Socket timeout in seconds.
        service: An existing Drive API resource. Built from ``http`` when omitted.
        http: The HTTP transport. Defaults to an authorized ``httplib2.Http``.
    """

    def __init__(self, access_token: Optional[str] = None, timeout: int = TOTAL_TIMEOUT, service: Any = None,
                 http: Any = None) -> None:
        if http is None:
            creds = google.oauth2.credentials.Credentials(token=access_token)
            http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))

        self._http = http
        self._service = service if service is not None else build('drive', 'v3', http=http, cache_discovery=False)
        self.num_retries: int = MAX_RETRIES

    def _execute(self, request: Any, exc_type: Type[status.BaseStatusException], action: str,
                 not_found_ok: bool = False) -> Any:
        """Execute an API request and translate failures into ``exc_type``.

        Returns None for HTTP 404 when ``not_found_ok`` is set.
        """
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as ex:
            stat = _http_status(ex)
            if stat == 404 and not_found_ok:
                logging.debug(f'{action}: not found (HTTP 404).')
                return None
            if stat == 403:
                raise exc_type(f'Access denied (HTTP 403) while trying to {action}.') from ex
            raise exc_type(f'Failed to {action} (HTTP {stat}): {ex}') from ex
        except google.auth.exceptions.GoogleAuthError as ex:
            raise status.NotAuthenticatedException(f'Authorization failed while trying to {action}: {ex}') from ex
        except socket.timeout as ex:
            raise exc_type(f'Timeout error while trying to {action}: {ex}') from ex
        except ssl.SSLError as ex:
            raise exc_type(f'SSL error while trying to {action}: {ex}') from ex
        except (OSError, httplib2.HttpLib2Error) as ex:
            raise exc_type(f'Network error while trying to {action}: {ex}') from ex

    def get_file_metadata(self, file_id: str, exc_type=status.ProbeException) -> Optional[Dict[str, Any]]:
        """Return the file resource, or None if it does not exist or is trashed."""
        request = self._service.files().get(
            fileId=sanitize_drive_id(file_id),
            fields=FILE_FIELDS,
            supportsAllDrives=True,
        )
        meta = self._execute(request, exc_type, f'get file "{file_id}"', not_found_ok=True)
        if not meta or meta.get('trashed'):
            return None
        return meta

    def find_backup_file(self, folder_id: str, exc_type=status.ProbeException) -> Optional[Dict[str, Any]]:
        """Return the most recently modified backup file in a folder, or None."""
        request = self._service.files().list(
            q=build_folder_query(folder_id),
            fields=f'files({FILE_FIELDS})',
            orderBy='modifiedTime desc',
            pageSize=10,
            spaces='drive',
            supportsAllDrives=True,
            includeItemsFromAllDrives=True,
        )
        result = self._execute(request, exc_type, f'list folder "{folder_id}"', not_found_ok=True)
        files = (result or {}).get('files', [])
        if not files:
            logging.debug(f'No "{BACKUP_FILENAME}" found in folder "{folder_id}".')
            return None
        if len(files) > 1:
            logging.warning(f'Found {len(files)} backup files in folder "{folder_id}", using the newest.')
        return files[0]

    def probe(self, config: lib.SyncConfiguration) -> RemoteInfo:
        """
        Fetch the metadata of the remote backup.

        In file mode the configured id is the backup file itself. In folder mode the folder is
        searched for :data:`BACKUP_FILENAME`.

        Returns:
            RemoteInfo: ``exists`` is False when nothing was found (including HTTP 404).

        Raises:
            status.ProbeException: On any other HTTP, timeout, SSL or socket failure.
        """
        if config.is_file_based_mode:
            meta = self.get_file_metadata(config.remote_location_id)
        else:
            meta = self.find_backup_file(config.remote_location_id)

        if not meta:
            return RemoteInfo(exists=False)

        modified_at = None
        if meta.get('modifiedTime'):
            try:
                modified_at = lib.parse_timestamp(meta['modifiedTime'])
            except ValueError:
                logging.warning(f'Could not parse modifiedTime "{meta["modifiedTime"]}"')

        return RemoteInfo(
            exists=True,
            file_id=meta.get('id'),
            modified_at=modified_at,
            remote_hash=(meta.get('appProperties') or {}).get(HASH_PROPERTY),
        )

    def update_file(self, file_id: str, data: bytes, content_hash: str) -> Dict[str, Any]:
        """Upload new contents to an existing file and record the content hash."""
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=MIME_TYPE, resumable=False)
        request = self._service.files().update(
            fileId=sanitize_drive_id(file_id),
            body={'appProperties': {HASH_PROPERTY: content_hash}},
            media_body=media,
            fields=FILE_FIELDS,
            supportsAllDrives=True,
        )
        logging.debug(f'Updating remote file "{file_id}" ({len(data)} bytes)')
        return self._execute(request, status.ExchangeException, f'update file "{file_id}"')

    def create_file(self, folder_id: str, data: bytes, content_hash: str,
                    name: str = BACKUP_FILENAME) -> Dict[str, Any]:
        """Create the backup file in a folder with a single multipart upload."""
        metadata = {
            'name': name,
            'parents': [sanitize_drive_id(folder_id)],
            'mimeType': MIME_TYPE,
            'appProperties': {HASH_PROPERTY: content_hash},
        }
        body, content_type = build_multipart_body(metadata, data)
        query = urllib.parse.urlencode({
            'uploadType': 'multipart',
            'fields': FILE_FIELDS,
            'supportsAllDrives': 'true',
        })
        request = HttpRequest(
            self._http,
            _json_postproc,
            f'{UPLOAD_URL}?{query}',
            method='POST',
            body=body,
            headers={'content-type': content_type},
            methodId='drive.files.create',
        )
        logging.debug(f'Creating "{name}" in folder "{folder_id}" ({len(data)} bytes)')
        return self._execute(request, status.ExchangeException, f'create "{name}"')

    def download_file(self, file_id: str) -> bytes:
        """Download the contents of a file.

        Raises:
            status.RemoteBackupNotFoundException: If the file no longer exists.
            status.ExchangeException: On any other failure.
        """
        request = self._service.files().get_media(fileId=sanitize_drive_id(file_id), supportsAllDrives=True)
        buf = io.BytesIO()
        downloader = MediaIoBaseDownload(buf, request)

        logging.debug(f'Downloading remote file "{file_id}"')
        done = False
        while not done:
            chunk = _ChunkRequest(downloader)
            progress = self._execute(chunk, status.ExchangeException, f'download file "{file_id}"',
                                     not_found_ok=True)
            if progress is None:
                raise status.RemoteBackupNotFoundException(f'File "{file_id}" was not found.')
            _, done = progress
        return buf.getvalue()

    def validate_folder(self, folder_id: str) -> FolderValidation:
        """Check that a folder exists, is a folder, and accepts new files.

        Write access is verified by creating and deleting a small probe file.
        """
        folder_id = sanitize_drive_id(folder_id)
        try:
            meta = self._service.files().get(
                fileId=folder_id,
                fields='id,name,mimeType,capabilities',
                supportsAllDrives=True,
            ).execute(num_retries=self.num_retries)

            if meta.get('mimeType') != FOLDER_MIME_TYPE:
                return FolderValidation(
                    False, error='The provided ID is not a folder.', error_code=FolderErrorCode.NotFound
                )
            if (meta.get('capabilities') or {}).get('canAddChildren') is False:
                return FolderValidation(
                    False,
                    error='You only have read-only access to this folder. '
                          'Please request edit access from the folder owner.',
                    error_code=FolderErrorCode.ReadOnly,
                )

            test_file = self._service.files().create(
                body={'name': VALIDATION_FILENAME, 'parents': [folder_id]},
                fields='id',
                supportsAllDrives=True,
            ).execute(num_retries=self.num_retries)
            if test_file.get('id'):
                self._service.files().delete(
                    fileId=test_file['id'], supportsAllDrives=True
                ).execute(num_retries=self.num_retries)

        except HttpError as ex:
            stat = _http_status(ex)
            logging.error(f'Folder validation error: {ex}')
            if stat == 404:
                return FolderValidation(
                    False,
                    error='Folder not found. Please check the URL and try again.',
                    error_code=FolderErrorCode.NotFound,
                )
            if stat == 401:
                return FolderValidation(
                    False, error='Not authenticated with Google.', error_code=FolderErrorCode.AuthRequired
                )
            if stat == 403:
                if 'write' in str(ex).lower() or 'insufficient' in str(ex).lower():
                    return FolderValidation(
                        False,
                        error='You only have read-only access to this folder. '
                              'Please request edit access from the folder owner.',
                        error_code=FolderErrorCode.ReadOnly,
                    )
                return FolderValidation(
                    False,
                    error="You don't have access to this folder. Please check the sharing settings.",
                    error_code=FolderErrorCode.NoAccess,
                )
            return FolderValidation(False, error=f'Failed to validate folder access: {ex}')
        except google.auth.exceptions.GoogleAuthError as ex:
            return FolderValidation(False, error=str(ex), error_code=FolderErrorCode.AuthRequired)
        except (OSError, httplib2.HttpLib2Error) as ex:
            logging.error(f'Folder validation error: {ex}')
            return FolderValidation(False, error=f'Failed to validate folder access: {ex}')

        return FolderValidation(True, folder_id=meta.get('id'), folder_name=meta.get('name'))


class _ChunkRequest:
    """Adapts ``MediaIoBaseDownload.next_chunk`` to the ``execute`` interface."""

    def __init__(self, downloader: MediaIoBaseDownload) -> None:
        self._downloader = downloader

    def execute(self, num_retries: int = 0):
        return self._downloader.next_chunk(num_retries=num_retries)
