"""
Google OAuth2 authorization and token management for Drive sync

This module implements the OAuth2 authorization code flow with PKCE and a
loopback redirect, which is what Google requires for installed desktop
applications, together with access token caching and refresh.

Key features:
- PKCE verifier/challenge generation (S256)
- One-shot loopback HTTP callback server on an ephemeral port
- Exactly-once resolution of the authorization attempt (callback, error,
  user cancellation or timeout, whichever comes first)
- Access token cache with expiry margin and refresh-token based renewal
- Tokens persisted through Settings.update_sync_state (owner-only file)

The authorization flow:
1. Generate PKCE pair and start the loopback listener
2. Ask the user to confirm, then open the consent page externally
3. Receive the authorization code on /oauth2callback
4. Exchange the code (plus verifier) for access and refresh tokens
5. Persist tokens, enable cloud sync and notify the host

If Google does not return a refresh token (typically because the user had
already granted access without `prompt=consent` being honoured) the flow is a
degraded success: the access token works for this session only.
"""

import os
import hashlib
import threading
import urllib.parse
import webbrowser
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

import click
import requests

from ..exceptions import AuthError, ConfigError, TransportError
from ..utils.helpers import base64url_encode, now_ms, truncate_string
from ..utils.logger import get_logger
from .settings import Settings

logger = get_logger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.appdata"
CALLBACK_PATH = "/oauth2callback"

DEFAULT_AUTH_TIMEOUT = 300
DEFAULT_EXPIRES_IN = 3600
# Stored expiry is shortened by this much ...
EXPIRY_SAFETY_MS = 60_000
# ... and a token must stay valid at least this long to be reused
FRESHNESS_MARGIN_MS = 60_000

NO_REFRESH_TOKEN_ERROR = (
    "No refresh token returned. You will need to re-login after restart. "
    "Revoke access and re-consent to fix."
)
CALLBACK_PAGE = b"<h3>You can close this window now.</h3>"

ExternalOpener = Callable[[str], Any]
UserPrompt = Callable[[str], bool]


class TokenState(Enum):
    """Lifecycle state of the cached access token"""
    NO_TOKEN = "no_token"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    FAILED = "failed"


class AuthFlowState(Enum):
    """States of one interactive authorization attempt"""
    IDLE = "idle"
    AWAITING_CONSENT = "awaiting_consent"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass
class AuthResult:
    """
    Outcome reported to the user

    `degraded` is set when Google returned no refresh token: the session is
    usable but `ok` stays False because re-login will be needed.
    """
    ok: bool
    message: str
    degraded: bool = False


def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate a PKCE code verifier and its S256 challenge

    Returns:
        Tuple of (verifier, challenge), both URL-safe base64 without padding
    """
    verifier = base64url_encode(os.urandom(32))
    challenge = base64url_encode(hashlib.sha256(verifier.encode('ascii')).digest())
    return verifier, challenge


def build_authorization_url(client_id: str, redirect_uri: str, code_challenge: str) -> str:
    """Build the Google consent page URL for an offline, PKCE-protected request"""
    params = {
        'client_id': client_id,
        'redirect_uri': redirect_uri,
        'response_type': 'code',
        'scope': DRIVE_SCOPE,
        'code_challenge': code_challenge,
        'code_challenge_method': 'S256',
        'access_type': 'offline',
        'prompt': 'consent',
    }
    return f"{AUTH_URL}?{urllib.parse.urlencode(params)}"


def default_prompt(message: str) -> bool:
    return click.confirm(message, default=True)


class CallbackServer(HTTPServer):
    """
    Loopback server for a single authorization attempt

    `on_callback(code, error)` is invoked from the server thread for each
    request on the callback path.
    """

    def __init__(self, on_callback: Callable[[Optional[str], Optional[str]], None]):
        super().__init__(('127.0.0.1', 0), CallbackHandler)
        self.on_callback = on_callback

    @property
    def port(self) -> int:
        return self.server_address[1]


class CallbackHandler(BaseHTTPRequestHandler):
    """
    HTTP request handler for the OAuth2 redirect

    Only /oauth2callback is served; everything else (favicon requests and the
    like) gets a 404 so it cannot resolve the attempt.
    """

    def do_GET(self):
        parsed_url = urllib.parse.urlparse(self.path)
        if parsed_url.path != CALLBACK_PATH:
            self.send_response(404)
            self.end_headers()
            return

        query_params = urllib.parse.parse_qs(parsed_url.query)
        code = query_params.get('code', [None])[0]
        error = query_params.get('error', [None])[0]

        self.send_response(200)
        self.send_header('Content-Type', 'text/html')
        self.end_headers()
        self.wfile.write(CALLBACK_PAGE)

        self.server.on_callback(code, error)

    def log_message(self, format, *args):
        # Keep request lines out of the console
        logger.debug(f"OAuth callback server: {format % args}")


class CredentialManager:
    """
    Google credentials for the Drive sync

    Holds a session-scoped token cache in addition to the persisted one, so a
    degraded login (no refresh token) still works until the process exits.

    Attributes:
        settings: Settings owning the persisted sync state
        flow_state: State of the most recent interactive authorization
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        opener: Optional[ExternalOpener] = None,
        prompt: Optional[UserPrompt] = None,
        clock: Callable[[], int] = now_ms,
        on_connected: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            settings: Application settings (cloud_sync section is read and written)
            session: HTTP client used for token requests
            opener: Opens the consent URL externally, defaults to webbrowser.open
            prompt: Asks the user to confirm opening the browser
            clock: Current time in epoch milliseconds
            on_connected: Called after a successful authorization (starts periodic sync)
        """
        self.settings = settings
        self.session = session or requests.Session()
        self._opener = opener or webbrowser.open
        self._prompt = prompt or default_prompt
        self._clock = clock
        self.on_connected = on_connected

        self._session_access_token: Optional[str] = None
        self._session_access_token_expiry = 0
        self._session_refresh_token: Optional[str] = None
        self._refresh_failed = False
        # Guards the token cache only; never held across a token request
        self._lock = threading.Lock()
        self._generation = 0

        self.flow_state = AuthFlowState.IDLE

    # Token cache

    def _is_fresh(self, expiry: int) -> bool:
        return bool(expiry) and expiry > self._clock() + FRESHNESS_MARGIN_MS

    def _expiry_from(self, token_json: Dict[str, Any]) -> int:
        expires_in = token_json.get('expires_in')
        if expires_in is None:
            expires_in = DEFAULT_EXPIRES_IN
        return self._clock() + int(expires_in) * 1000 - EXPIRY_SAFETY_MS

    def has_credentials(self) -> bool:
        """Whether any token exists that could authorize a sync"""
        state = self.settings.cloud_sync
        return bool(
            state.refresh_token
            or state.access_token
            or self._session_access_token
            or self._session_refresh_token
        )

    def token_state(self) -> TokenState:
        state = self.settings.cloud_sync
        if self._refresh_failed:
            return TokenState.FAILED

        access_token = state.access_token or self._session_access_token
        expiry = state.access_token_expiry if state.access_token else self._session_access_token_expiry
        if not access_token:
            return TokenState.NO_TOKEN
        if self._is_fresh(expiry):
            return TokenState.VALID
        if expiry and expiry > self._clock():
            return TokenState.EXPIRING_SOON
        return TokenState.EXPIRED

    def ensure_access_token(self) -> str:
        """
        Get an access token valid for at least another minute

        Order: persisted token, session token, then a refresh.

        Returns:
            Bearer access token

        Raises:
            ConfigError: If there is no client id or no refresh token
            AuthError: If the token endpoint rejects the refresh
            TransportError: If the token endpoint cannot be reached
        """
        with self._lock:
            state = self.settings.cloud_sync
            if state.access_token and self._is_fresh(state.access_token_expiry):
                return state.access_token

            if self._session_access_token and self._is_fresh(self._session_access_token_expiry):
                return self._session_access_token

            refresh_token = state.refresh_token or self._session_refresh_token
            if not state.client_id or not refresh_token:
                raise ConfigError("Missing refresh token. Reconnect Google Drive.")
            generation = self._generation

        return self._refresh(refresh_token, generation)

    def _refresh(self, refresh_token: str, generation: int) -> str:
        """
        Exchange the refresh token for a new access token

        The token request runs without the lock. A refresh that completes
        after disconnect() is discarded instead of restoring tokens.
        """
        state = self.settings.cloud_sync
        data = {
            'client_id': state.client_id,
            'client_secret': state.client_secret or '',
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token',
        }
        logger.debug("Refreshing Google access token")
        token_json = self._post_token(data, "Failed to refresh Google token.")

        access_token = token_json.get('access_token')
        if not access_token:
            self._refresh_failed = True
            raise AuthError("Missing access token.")

        expiry = self._expiry_from(token_json)
        with self._lock:
            if generation != self._generation:
                raise AuthError("Google Drive was disconnected during token refresh.")

            self._session_access_token = access_token
            self._session_access_token_expiry = expiry
            self._refresh_failed = False

            changes = {'access_token': access_token, 'access_token_expiry': expiry, 'last_error': ''}
            if token_json.get('refresh_token'):
                changes['refresh_token'] = token_json['refresh_token']
            self.settings.update_sync_state(**changes)
        logger.info("Google access token refreshed")
        return access_token

    def _post_token(self, data: Dict[str, str], failure_prefix: str) -> Dict[str, Any]:
        """
        POST a form to the token endpoint

        Raises:
            AuthError: On non-2xx status, with the response body truncated to 300 chars
            TransportError: On network failure
        """
        try:
            response = self.session.post(
                TOKEN_URL,
                data=data,
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.settings.network.request_timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{failure_prefix} {e}", details={'original_error': str(e)})

        if not response.ok:
            self._refresh_failed = data.get('grant_type') == 'refresh_token'
            body = truncate_string(response.text or '', 300, suffix='')
            raise AuthError(
                f"{failure_prefix} {body}".strip(),
                details={'status_code': response.status_code},
            )

        try:
            token_json = response.json()
        except ValueError as e:
            token_json = None
            logger.debug(f"Token endpoint returned non-JSON body: {e}")
        if not isinstance(token_json, dict):
            self._refresh_failed = data.get('grant_type') == 'refresh_token'
            raise AuthError(
                f"{failure_prefix} Malformed token response.",
                details={'status_code': response.status_code},
            )
        return token_json

    # Interactive authorization

    def start_auth(self, timeout: Optional[float] = None) -> AuthResult:
        """
        Run the interactive authorization flow

        Blocks until the attempt resolves. The loopback listener is closed
        before returning on every path.

        Args:
            timeout: Seconds to wait for the callback, defaults to cloud_sync.auth_timeout

        Returns:
            AuthResult describing the outcome
        """
        client_id = self.settings.cloud_sync.client_id
        if not client_id:
            self.flow_state = AuthFlowState.FAILED
            return AuthResult(False, "Missing Google OAuth Client ID.")

        if timeout is None:
            timeout = self.settings.cloud_sync.auth_timeout or DEFAULT_AUTH_TIMEOUT

        verifier, challenge = generate_pkce_pair()
        outcome: Future = Future()
        outcome_lock = threading.Lock()

        def resolve(kind: str, code: Optional[str] = None, error: Optional[str] = None) -> None:
            # First resolution wins
            with outcome_lock:
                if not outcome.done():
                    outcome.set_result((kind, code, error))

        server = CallbackServer(lambda code, error: resolve('callback', code, error))
        server_thread = threading.Thread(target=server.serve_forever, name='oauth-callback', daemon=True)
        server_thread.start()
        closed = False

        def close_listener() -> None:
            nonlocal closed
            if closed:
                return
            closed = True
            server.shutdown()
            server.server_close()
            logger.debug("OAuth callback server closed")

        try:
            redirect_uri = f"http://127.0.0.1:{server.port}{CALLBACK_PATH}"
            authorization_url = build_authorization_url(client_id, redirect_uri, challenge)

            self.flow_state = AuthFlowState.AWAITING_CONSENT
            if not self._prompt("A browser window will open to sign in to Google. Continue?"):
                resolve('cancelled')
            else:
                self.flow_state = AuthFlowState.AWAITING_CALLBACK
                logger.console_info(f"If the browser does not open, visit: {authorization_url}")
                self._opener(authorization_url)
                try:
                    outcome.result(timeout=timeout)
                except FutureTimeoutError:
                    resolve('timeout')

            kind, code, error = outcome.result()
            close_listener()

            if kind == 'cancelled':
                self.flow_state = AuthFlowState.CANCELLED
                return self._fail("Google authorization cancelled.")
            if kind == 'timeout':
                self.flow_state = AuthFlowState.TIMED_OUT
                return self._fail("Google authorization timed out.")
            if error or not code:
                self.flow_state = AuthFlowState.FAILED
                logger.warning(f"Google authorization callback returned error: {error}")
                return AuthResult(False, "Google authorization was cancelled or failed.")

            return self._exchange_code(code, verifier, redirect_uri)
        finally:
            close_listener()

    def _fail(self, message: str) -> AuthResult:
        self.settings.update_sync_state(last_error=message)
        return AuthResult(False, message)

    def _exchange_code(self, code: str, verifier: str, redirect_uri: str) -> AuthResult:
        self.flow_state = AuthFlowState.EXCHANGING
        state = self.settings.cloud_sync
        data = {
            'client_id': state.client_id,
            'client_secret': state.client_secret or '',
            'grant_type': 'authorization_code',
            'code': code,
            'code_verifier': verifier,
            'redirect_uri': redirect_uri,
        }
        try:
            token_json = self._post_token(data, "Failed to exchange token.")
        except AuthError as e:
            self.flow_state = AuthFlowState.FAILED
            return self._fail(e.message)
        except TransportError as e:
            self.flow_state = AuthFlowState.FAILED
            return self._fail(f"Google authorization failed. {e.details.get('original_error', '')}".strip())

        access_token = token_json.get('access_token') or ''
        refresh_token = token_json.get('refresh_token')
        expiry = self._expiry_from(token_json)

        self._session_access_token = access_token or None
        self._session_access_token_expiry = expiry
        self._session_refresh_token = refresh_token or None
        self._refresh_failed = False

        if not refresh_token:
            self.flow_state = AuthFlowState.DEGRADED
            self.settings.update_sync_state(
                enabled=True,
                access_token=access_token,
                access_token_expiry=expiry,
                last_error=NO_REFRESH_TOKEN_ERROR,
            )
            logger.warning("Google returned no refresh token; login will not survive a restart")
            return AuthResult(
                False,
                "Logged in without refresh token. You will need to re-login after restart.",
                degraded=True,
            )

        self.settings.update_sync_state(
            enabled=True,
            refresh_token=refresh_token,
            access_token=access_token,
            access_token_expiry=expiry,
            last_error='',
        )
        self.flow_state = AuthFlowState.CONNECTED
        logger.info("Google Drive connected")
        if self.on_connected:
            self.on_connected()
        return AuthResult(True, "Google Drive connected.")

    # Status and teardown

    def status(self) -> Dict[str, Any]:
        state = self.settings.cloud_sync
        return {
            'enabled': bool(state.enabled),
            'connected': bool(state.refresh_token),
            'lastSyncTime': state.last_sync_time or None,
            'lastError': state.last_error or None,
        }

    def disconnect(self) -> AuthResult:
        """Forget all tokens and sync bookkeeping and disable cloud sync"""
        with self._lock:
            self._generation += 1
            self._session_access_token = None
            self._session_access_token_expiry = 0
            self._session_refresh_token = None
            self._refresh_failed = False
            self.settings.update_sync_state(
                enabled=False,
                refresh_token='',
                access_token='',
                access_token_expiry=0,
                file_id='',
                last_hash='',
                last_sync_time='',
                last_error='',
            )
        self.flow_state = AuthFlowState.IDLE
        logger.info("Google Drive disconnected")
        return AuthResult(True, "Google Drive disconnected.")
