"""
Google OAuth2 authentication and token lifecycle management.

Provides the :class:`AuthManager` that owns the stored client credentials and token set:
it validates client credentials, exchanges authorization codes, refreshes access tokens
shortly before they expire and revokes them on disconnect.

Importing the module sets ``OAUTHLIB_RELAX_TOKEN_SCOPE`` for the process unless it is already set.

Token state is only ever read and written through the manager.
"""
import base64
import dataclasses
import enum
import json
import logging
import os
import re
import threading
from typing import Dict, List, Optional, Tuple, Union, Iterable

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
import requests
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..settings import lib
from ..status import status

AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
TOKEN_URI = 'https://oauth2.googleapis.com/token'
REVOKE_URI = 'https://oauth2.googleapis.com/revoke'

SCOPE_APP_FILES = 'https://www.googleapis.com/auth/drive.file'
SCOPE_FULL_DRIVE = 'https://www.googleapis.com/auth/drive'
SCOPE_EMAIL = 'https://www.googleapis.com/auth/userinfo.email'

CLIENT_ID_PATTERN = re.compile(r'^\S+\.apps\.googleusercontent\.com$')

#: Lifetime assumed when the token endpoint does not report one
DEFAULT_EXPIRES_IN_MS = 3_600_000

REVOKE_TIMEOUT = 10

# Users may untick scopes on the consent screen, so oauthlib must accept a narrower grant
os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')


class ScopeLevel(enum.StrEnum):
    """Drive access requested from the user.

    ``standard`` only grants access to files this application created; ``extended`` grants
    access to every file, which is needed to sync a backup shared by another account.
    """
    Standard = 'standard'
    Extended = 'extended'


def get_scopes(scope_level: ScopeLevel = ScopeLevel.Standard) -> List[str]:
    """Return the OAuth scopes requested for the given scope level."""
    if scope_level == ScopeLevel.Extended:
        return [SCOPE_FULL_DRIVE, SCOPE_EMAIL]
    return [SCOPE_APP_FILES, SCOPE_EMAIL]


def scope_tokens(granted: Union[str, Iterable[str], None]) -> List[str]:
    """Split a granted scope value into individual scope tokens.

    The token endpoint reports scopes as a space separated string, oauthlib as a list.
    """
    if not granted:
        return []
    if isinstance(granted, str):
        return granted.split()
    return [str(s) for s in granted]


def classify_scope(granted: Union[str, Iterable[str], None]) -> ScopeLevel:
    """Classify a granted scope by exact token match.

    ``drive.file`` contains ``drive`` as a substring, so substring checks would misreport
    a standard grant as extended.
    """
    if SCOPE_FULL_DRIVE in scope_tokens(granted):
        return ScopeLevel.Extended
    return ScopeLevel.Standard


def encode_state(scope_level: ScopeLevel, custom: Optional[str] = None) -> str:
    """Encode the OAuth ``state`` parameter as base64url JSON."""
    payload = json.dumps({'scopeLevel': str(scope_level), 'custom': custom}, separators=(',', ':'))
    return base64.urlsafe_b64encode(payload.encode('utf-8')).decode('ascii').rstrip('=')


def decode_state(state: Optional[str]) -> Tuple[ScopeLevel, Optional[str]]:
    """Decode an OAuth ``state`` parameter.

    Malformed or missing state falls back to the standard scope level.

    Returns:
        tuple: The requested scope level and the custom state value.
    """
    if not state:
        return ScopeLevel.Standard, None
    try:
        padded = state + '=' * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode('ascii')).decode('utf-8'))
        level = ScopeLevel(data.get('scopeLevel', ScopeLevel.Standard))
        return level, data.get('custom')
    except (ValueError, AttributeError, TypeError) as ex:
        logging.debug(f'Could not decode OAuth state, using standard scope: {ex}')
        return ScopeLevel.Standard, None


def is_valid_client_id(client_id: str) -> bool:
    return bool(CLIENT_ID_PATTERN.fullmatch(client_id or ''))


def client_config(credentials: lib.Credentials, redirect_uri: Optional[str] = None) -> Dict:
    """Build the client configuration dictionary the google_auth_oauthlib flows expect."""
    config = {
        'client_id': credentials.client_id,
        'client_secret': credentials.client_secret,
        'auth_uri': AUTH_URI,
        'token_uri': TOKEN_URI,
    }
    if redirect_uri:
        config['redirect_uris'] = [redirect_uri]
    return {'installed': config}


class AuthManager:
    """Manages OAuth2 client credentials and tokens with thread-safe refresh."""

    def __init__(self):
        self._lock = threading.Lock()

    def save_credentials(self, client_id: str, client_secret: str, api_key: Optional[str] = None) -> lib.Credentials:
        """Validate and store the OAuth client credentials.

        Tokens issued for a different client id are discarded.

        Raises:
            status.ClientSecretInvalidException: If a field is empty or the client id is malformed.
        """
        client_id = (client_id or '').strip()
        client_secret = (client_secret or '').strip()
        api_key = (api_key or '').strip() or None

        if not client_id or not client_secret:
            raise status.ClientSecretInvalidException('Both a client ID and a client secret are required.')
        if not is_valid_client_id(client_id):
            raise status.ClientSecretInvalidException(
                'The client ID should end with ".apps.googleusercontent.com".'
            )

        credentials = lib.Credentials(client_id=client_id, client_secret=client_secret, api_key=api_key)
        with self._lock:
            previous = lib.settings.get_credentials()
            if previous and previous.client_id != client_id:
                logging.debug('Client ID changed, discarding stored tokens.')
                lib.settings.clear_tokens()
            lib.settings.set_credentials(credentials)

        logging.info('Google client credentials saved.')
        return credentials

    def clear_credentials(self) -> None:
        with self._lock:
            lib.settings.clear_credentials()

    def get_credentials(self) -> lib.Credentials:
        credentials = lib.settings.get_credentials()
        if credentials is None:
            raise status.ClientSecretNotFoundException
        return credentials

    def has_credentials(self) -> bool:
        return lib.settings.get_credentials() is not None

    def get_tokens(self) -> Optional[lib.TokenSet]:
        return lib.settings.get_tokens()

    def is_authenticated(self) -> bool:
        """Return True if a token set exists that is usable now or can be refreshed."""
        tokens = self.get_tokens()
        if tokens is None:
            return False
        return bool(tokens.refresh_token) or not tokens.is_expired()

    def has_extended_scope(self) -> bool:
        tokens = self.get_tokens()
        if tokens is None:
            return False
        return classify_scope(tokens.granted_scope) == ScopeLevel.Extended

    def get_valid_access_token(self) -> str:
        """
        Return an access token that stays valid for at least :data:`lib.REFRESH_SKEW_MS`.

        Refreshes the token through the token endpoint when it is about to expire. The stored
        refresh token is kept as is.

        Raises:
            status.CredsNotFoundException: If no token set is stored.
            status.CredsInvalidException: If the stored token set is corrupt.
            status.TokenRefreshFailedException: If the refresh is rejected or cannot be sent.
        """
        with self._lock:
            tokens = lib.settings.get_tokens()
            if tokens is None:
                raise status.CredsNotFoundException

            if not tokens.needs_refresh():
                return tokens.access_token

            logging.debug('Access token expires soon, refreshing.')
            return self._refresh(tokens).access_token

    def _refresh(self, tokens: lib.TokenSet) -> lib.TokenSet:
        if not tokens.refresh_token:
            raise status.TokenRefreshFailedException('No refresh token is stored.')

        credentials = lib.settings.get_credentials()
        if credentials is None:
            raise status.ClientSecretNotFoundException

        creds = google.oauth2.credentials.Credentials(
            token=None,
            refresh_token=tokens.refresh_token,
            token_uri=TOKEN_URI,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
        )
        try:
            creds.refresh(google.auth.transport.requests.Request())
        except (google.auth.exceptions.RefreshError, google.auth.exceptions.TransportError) as ex:
            raise status.TokenRefreshFailedException(str(ex)) from ex

        if creds.expiry:
            expires_at = lib.to_epoch_ms(creds.expiry)
        else:
            expires_at = lib.now_ms() + DEFAULT_EXPIRES_IN_MS

        refreshed = dataclasses.replace(tokens, access_token=creds.token, expires_at_epoch_ms=expires_at)
        lib.settings.set_tokens(refreshed)
        logging.debug('Access token refreshed.')
        return refreshed

    def authorization_url(
            self,
            redirect_uri: str,
            scope_level: ScopeLevel = ScopeLevel.Standard,
            custom_state: Optional[str] = None
    ) -> Tuple[str, str]:
        """Build the Google consent URL.

        Offline access and the consent prompt are always requested so Google issues a
        refresh token on every authorization.

        Returns:
            tuple: The authorization URL and the encoded state.

        Raises:
            status.ClientSecretNotFoundException: If no client credentials are stored.
        """
        credentials = self.get_credentials()
        flow = google_auth_oauthlib.flow.Flow.from_client_config(
            client_config(credentials, redirect_uri),
            scopes=get_scopes(scope_level),
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=False,
        )
        url, state = flow.authorization_url(
            access_type='offline',
            prompt='consent',
            state=encode_state(scope_level, custom_state),
        )
        logging.debug(f'Authorization URL created for {scope_level} scope.')
        return url, state

    def exchange_authorization_code(self, code: str, redirect_uri: str, state: Optional[str] = None) -> ScopeLevel:
        """Exchange an authorization code for tokens and store them.

        Args:
            code (str): The code returned to the redirect URI.
            redirect_uri (str): The redirect URI used to request the code.
            state (str, optional): The returned state, see :func:`encode_state`.

        Returns:
            ScopeLevel: The scope level actually granted by the user.

        Raises:
            status.ClientSecretNotFoundException: If no client credentials are stored.
            status.NotAuthenticatedException: If the exchange fails or no refresh token is issued.
        """
        if not code:
            raise status.NotAuthenticatedException('No authorization code was provided.')

        scope_level, _ = decode_state(state)
        credentials = self.get_credentials()

        flow = google_auth_oauthlib.flow.Flow.from_client_config(
            client_config(credentials, redirect_uri),
            scopes=get_scopes(scope_level),
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=False,
        )
        try:
            token = flow.fetch_token(code=code)
        except Exception as ex:
            logging.error(f'Authorization code exchange failed: {ex}')
            raise status.NotAuthenticatedException(f'Authorization code exchange failed: {ex}') from ex

        if not token.get('refresh_token'):
            raise status.NotAuthenticatedException(
                'Google did not issue a refresh token. Remove the app from your Google account '
                'permissions and sign in again.'
            )

        granted = ' '.join(scope_tokens(token.get('scope'))) or ' '.join(get_scopes(scope_level))
        if token.get('expires_at'):
            expires_at = int(float(token['expires_at']) * 1000)
        else:
            expires_at = lib.now_ms() + int(token.get('expires_in', DEFAULT_EXPIRES_IN_MS // 1000)) * 1000

        tokens = lib.TokenSet(
            access_token=token['access_token'],
            refresh_token=token['refresh_token'],
            expires_at_epoch_ms=expires_at,
            token_type=token.get('token_type') or 'Bearer',
            granted_scope=granted,
        )
        with self._lock:
            lib.settings.set_tokens(tokens)

        granted_level = classify_scope(granted)
        logging.info(f'Signed in to Google Drive with {granted_level} access.')

        self._update_account_email(tokens.access_token)
        return granted_level

    def authenticate_interactive(self, scope_level: ScopeLevel = ScopeLevel.Standard, port: int = 0) -> ScopeLevel:
        """Run the desktop OAuth flow with a local redirect server and store the tokens.

        Blocks until the browser flow completes.

        Raises:
            status.ClientSecretNotFoundException: If no client credentials are stored.
            status.NotAuthenticatedException: If the flow fails or is cancelled.
        """
        credentials = self.get_credentials()
        flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(
            client_config(credentials), scopes=get_scopes(scope_level)
        )
        try:
            creds = flow.run_local_server(port=port, access_type='offline', prompt='consent')
        except Exception as ex:
            logging.error(f'OAuth flow error: {ex}')
            raise status.NotAuthenticatedException(f'OAuth flow failed: {ex}') from ex

        if not creds or not creds.token or not creds.refresh_token:
            raise status.NotAuthenticatedException('Authentication was cancelled or no credentials obtained.')

        granted = ' '.join(scope_tokens(getattr(creds, 'granted_scopes', None) or creds.scopes))
        tokens = lib.TokenSet(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at_epoch_ms=(
                lib.to_epoch_ms(creds.expiry) if creds.expiry else lib.now_ms() + DEFAULT_EXPIRES_IN_MS
            ),
            granted_scope=granted,
        )
        with self._lock:
            lib.settings.set_tokens(tokens)

        self._update_account_email(tokens.access_token)
        return classify_scope(granted)

    def fetch_account_email(self, access_token: str) -> Optional[str]:
        """Look up the signed-in account's email address."""
        creds = google.oauth2.credentials.Credentials(token=access_token)
        service = build('oauth2', 'v2', credentials=creds, cache_discovery=False)
        info = service.userinfo().get().execute()
        return info.get('email')

    def _update_account_email(self, access_token: str) -> None:
        try:
            email = self.fetch_account_email(access_token)
        except (HttpError, google.auth.exceptions.GoogleAuthError, OSError) as ex:
            logging.warning(f'Could not look up the account email: {ex}')
            return
        if not email:
            return

        config = lib.settings.get_sync_config()
        config.account_email = email
        lib.settings.set_sync_config(config)

    def revoke(self) -> bool:
        """Revoke the stored token at Google. Failures are logged and ignored.

        Returns:
            bool: True if Google confirmed the revocation.
        """
        tokens = self.get_tokens()
        if tokens is None:
            return False

        token = tokens.refresh_token or tokens.access_token
        try:
            response = requests.post(
                REVOKE_URI,
                params={'token': token},
                headers={'content-type': 'application/x-www-form-urlencoded'},
                timeout=REVOKE_TIMEOUT,
            )
        except requests.RequestException as ex:
            logging.warning(f'Token revocation failed: {ex}')
            return False

        if response.status_code != 200:
            logging.warning(f'Token revocation returned HTTP {response.status_code}')
            return False

        logging.debug('Token revoked.')
        return True

    def sign_out(self) -> None:
        """Delete the stored tokens."""
        with self._lock:
            lib.settings.clear_tokens()
        logging.debug('Successfully signed out.')


auth_manager = AuthManager()
