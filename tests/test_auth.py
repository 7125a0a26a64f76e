"""Test Google authorization and token management"""

import hashlib
import http.client
import socket
import threading
import urllib.parse

import pytest
import requests

from conftest import CLIENT_ID, FakeResponse, FakeSession
from musicstats.config.auth import (
    AuthFlowState,
    CredentialManager,
    NO_REFRESH_TOKEN_ERROR,
    TokenState,
    build_authorization_url,
    generate_pkce_pair,
)
from musicstats.exceptions import AuthError, ConfigError, TransportError
from musicstats.utils.helpers import base64url_encode


NOW = 1_700_000_000_000


def fixed_clock():
    return NOW


def token_response(access_token='access-2', refresh_token='refresh-2', expires_in=3600):
    data = {'access_token': access_token, 'expires_in': expires_in, 'token_type': 'Bearer'}
    if refresh_token:
        data['refresh_token'] = refresh_token
    return FakeResponse(200, data)


def loopback_get(authorization_url, query, path='/oauth2callback'):
    """Follow the consent redirect the way a browser would"""
    params = urllib.parse.parse_qs(urllib.parse.urlparse(authorization_url).query)
    redirect = urllib.parse.urlparse(params['redirect_uri'][0])
    connection = http.client.HTTPConnection(redirect.hostname, redirect.port, timeout=5)
    try:
        connection.request('GET', f"{path}?{query}" if query else path)
        response = connection.getresponse()
        response.read()
        return response.status
    finally:
        connection.close()


class Browser:
    """Opener that records the consent URL and hits the loopback server"""

    def __init__(self, *requests_to_send):
        self.requests_to_send = requests_to_send
        self.urls = []
        self.statuses = []

    def __call__(self, url):
        self.urls.append(url)
        for path, query in self.requests_to_send:
            self.statuses.append(loopback_get(url, query, path))


class SlowTokenSession(FakeSession):
    """Token endpoint that holds the request until released"""

    def __init__(self, response):
        super().__init__([response])
        self.started = threading.Event()
        self.release = threading.Event()

    def post(self, url, **kwargs):
        self.started.set()
        self.release.wait(5)
        return super().post(url, **kwargs)


class TestPkce:
    """Test PKCE helpers"""

    def test_challenge_matches_verifier(self):
        verifier, challenge = generate_pkce_pair()

        assert len(verifier) == 43
        assert '=' not in verifier and '=' not in challenge
        assert challenge == base64url_encode(hashlib.sha256(verifier.encode('ascii')).digest())

    def test_pairs_are_random(self):
        assert generate_pkce_pair()[0] != generate_pkce_pair()[0]

    def test_authorization_url(self):
        url = build_authorization_url(CLIENT_ID, 'http://127.0.0.1:5555/oauth2callback', 'challenge')
        params = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)

        assert url.startswith('https://accounts.google.com/o/oauth2/v2/auth?')
        assert params['client_id'] == [CLIENT_ID]
        assert params['scope'] == ['https://www.googleapis.com/auth/drive.appdata']
        assert params['code_challenge_method'] == ['S256']
        assert params['access_type'] == ['offline']
        assert params['prompt'] == ['consent']
        assert params['response_type'] == ['code']


class TestAccessToken:
    """Test the access token cache and refresh"""

    def test_fresh_persisted_token_reused(self, sync_settings):
        sync_settings.update_sync_state(access_token='cached', access_token_expiry=NOW + 10 * 60_000)
        session = FakeSession()
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)

        assert manager.ensure_access_token() == 'cached'
        assert session.calls == []
        assert manager.token_state() == TokenState.VALID

    def test_expired_token_refreshed_once(self, sync_settings):
        """Test exactly one refresh call for an expired token"""
        sync_settings.update_sync_state(access_token='old', access_token_expiry=NOW - 1)
        session = FakeSession([token_response(refresh_token=None)])
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)

        assert manager.token_state() == TokenState.EXPIRED
        assert manager.ensure_access_token() == 'access-2'
        assert manager.ensure_access_token() == 'access-2'

        assert len(session.calls) == 1
        method, url, kwargs = session.calls[0]
        assert url == 'https://oauth2.googleapis.com/token'
        assert kwargs['data']['grant_type'] == 'refresh_token'
        assert kwargs['data']['refresh_token'] == 'refresh-1'
        assert sync_settings.cloud_sync.access_token == 'access-2'
        assert sync_settings.cloud_sync.access_token_expiry == NOW + 3600 * 1000 - 60_000
        assert sync_settings.cloud_sync.refresh_token == 'refresh-1'

    def test_token_inside_margin_refreshed(self, sync_settings):
        sync_settings.update_sync_state(access_token='old', access_token_expiry=NOW + 30_000)
        session = FakeSession([token_response()])
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)

        assert manager.token_state() == TokenState.EXPIRING_SOON
        assert manager.ensure_access_token() == 'access-2'
        assert sync_settings.cloud_sync.refresh_token == 'refresh-2'

    def test_missing_refresh_token(self, settings):
        settings.update_sync_state(client_id=CLIENT_ID)
        manager = CredentialManager(settings, session=FakeSession(), clock=fixed_clock)

        with pytest.raises(ConfigError) as exc_info:
            manager.ensure_access_token()
        assert exc_info.value.message == "Missing refresh token. Reconnect Google Drive."

    def test_refresh_rejected(self, sync_settings):
        session = FakeSession([FakeResponse(400, text='{"error": "invalid_grant"}')])
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)

        with pytest.raises(AuthError) as exc_info:
            manager.ensure_access_token()

        assert exc_info.value.message.startswith("Failed to refresh Google token.")
        assert 'invalid_grant' in exc_info.value.message
        assert manager.token_state() == TokenState.FAILED

    def test_refresh_without_access_token(self, sync_settings):
        session = FakeSession([FakeResponse(200, {'expires_in': 3600})])
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)

        with pytest.raises(AuthError) as exc_info:
            manager.ensure_access_token()
        assert exc_info.value.message == "Missing access token."

    @pytest.mark.parametrize('response', [
        FakeResponse(200, text='<html>not json</html>'),
        FakeResponse(200, ['access_token']),
    ])
    def test_refresh_malformed_response(self, sync_settings, response):
        manager = CredentialManager(sync_settings, session=FakeSession([response]), clock=fixed_clock)

        with pytest.raises(AuthError) as exc_info:
            manager.ensure_access_token()

        assert exc_info.value.message == "Failed to refresh Google token. Malformed token response."
        assert manager.token_state() == TokenState.FAILED

    def test_disconnect_not_blocked_by_refresh(self, sync_settings):
        """Test that disconnect completes while a refresh request is pending"""
        session = SlowTokenSession(token_response())
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)
        errors = []

        def refresh():
            try:
                manager.ensure_access_token()
            except AuthError as e:
                errors.append(e.message)

        refresher = threading.Thread(target=refresh)
        refresher.start()
        assert session.started.wait(5)

        disconnecting = threading.Thread(target=manager.disconnect)
        disconnecting.start()
        disconnecting.join(2)
        finished_while_pending = not disconnecting.is_alive()
        session.release.set()
        refresher.join(5)
        disconnecting.join(5)

        assert finished_while_pending
        assert errors == ["Google Drive was disconnected during token refresh."]
        assert sync_settings.cloud_sync.access_token == ''
        assert sync_settings.cloud_sync.refresh_token == ''
        assert not manager.has_credentials()

    def test_refresh_network_error(self, sync_settings):
        session = FakeSession([requests.ConnectionError('offline')])
        manager = CredentialManager(sync_settings, session=session, clock=fixed_clock)

        with pytest.raises(TransportError):
            manager.ensure_access_token()

    def test_has_credentials(self, sync_settings):
        assert CredentialManager(sync_settings, session=FakeSession()).has_credentials()

    def test_status_and_disconnect(self, sync_settings):
        sync_settings.update_sync_state(file_id='f1', last_hash='h', last_sync_time='2024-05-01T10:00:00')
        manager = CredentialManager(sync_settings, session=FakeSession(), clock=fixed_clock)

        assert manager.status() == {
            'enabled': True,
            'connected': True,
            'lastSyncTime': '2024-05-01T10:00:00',
            'lastError': None,
        }

        result = manager.disconnect()
        assert result.ok
        state = sync_settings.cloud_sync
        assert (state.enabled, state.refresh_token, state.file_id, state.last_hash) == (False, '', '', '')
        assert not manager.has_credentials()


class TestAuthorizationFlow:
    """Test the interactive loopback authorization"""

    @pytest.fixture
    def client_settings(self, settings):
        settings.update_sync_state(client_id=CLIENT_ID)
        return settings

    def test_successful_authorization(self, client_settings):
        browser = Browser(('/oauth2callback', 'code=auth-code'))
        session = FakeSession([token_response()])
        connected = []
        manager = CredentialManager(
            client_settings,
            session=session,
            opener=browser,
            prompt=lambda message: True,
            clock=fixed_clock,
            on_connected=lambda: connected.append(True),
        )

        result = manager.start_auth(timeout=5)

        assert result.ok
        assert result.message == "Google Drive connected."
        assert browser.statuses == [200]
        assert connected == [True]
        assert manager.flow_state == AuthFlowState.CONNECTED

        form = session.calls[0][2]['data']
        assert form['grant_type'] == 'authorization_code'
        assert form['code'] == 'auth-code'
        assert form['redirect_uri'].startswith('http://127.0.0.1:')
        challenge = urllib.parse.parse_qs(urllib.parse.urlparse(browser.urls[0]).query)['code_challenge'][0]
        assert challenge == base64url_encode(hashlib.sha256(form['code_verifier'].encode('ascii')).digest())

        state = client_settings.cloud_sync
        assert state.enabled is True
        assert state.refresh_token == 'refresh-2'
        assert state.access_token == 'access-2'
        assert state.last_error == ''

    def test_listener_closed_after_attempt(self, client_settings):
        browser = Browser(('/oauth2callback', 'code=auth-code'))
        manager = CredentialManager(
            client_settings,
            session=FakeSession([token_response()]),
            opener=browser,
            prompt=lambda message: True,
        )
        manager.start_auth(timeout=5)

        port = urllib.parse.urlparse(
            urllib.parse.parse_qs(urllib.parse.urlparse(browser.urls[0]).query)['redirect_uri'][0]
        ).port
        with pytest.raises(OSError):
            socket.create_connection(('127.0.0.1', port), timeout=1).close()

    def test_other_paths_ignored(self, client_settings):
        browser = Browser(('/favicon.ico', ''), ('/oauth2callback', 'code=auth-code'))
        manager = CredentialManager(
            client_settings,
            session=FakeSession([token_response()]),
            opener=browser,
            prompt=lambda message: True,
        )

        assert manager.start_auth(timeout=5).ok
        assert browser.statuses == [404, 200]

    def test_consent_denied(self, client_settings):
        browser = Browser(('/oauth2callback', 'error=access_denied'))
        session = FakeSession()
        manager = CredentialManager(client_settings, session=session, opener=browser, prompt=lambda message: True)

        result = manager.start_auth(timeout=5)

        assert not result.ok
        assert result.message == "Google authorization was cancelled or failed."
        assert session.calls == []

    def test_user_cancels_prompt(self, client_settings):
        browser = Browser()
        manager = CredentialManager(client_settings, session=FakeSession(), opener=browser, prompt=lambda message: False)

        result = manager.start_auth(timeout=5)

        assert not result.ok
        assert result.message == "Google authorization cancelled."
        assert browser.urls == []
        assert client_settings.cloud_sync.last_error == "Google authorization cancelled."
        assert manager.flow_state == AuthFlowState.CANCELLED

    def test_timeout(self, client_settings):
        manager = CredentialManager(client_settings, session=FakeSession(), opener=Browser(), prompt=lambda message: True)

        result = manager.start_auth(timeout=0.2)

        assert not result.ok
        assert result.message == "Google authorization timed out."
        assert client_settings.cloud_sync.last_error == "Google authorization timed out."

    def test_missing_client_id(self, settings):
        manager = CredentialManager(settings, session=FakeSession(), opener=Browser(), prompt=lambda message: True)

        result = manager.start_auth(timeout=1)
        assert result.message == "Missing Google OAuth Client ID."

    def test_exchange_rejected(self, client_settings):
        browser = Browser(('/oauth2callback', 'code=bad'))
        session = FakeSession([FakeResponse(400, text='invalid_grant')])
        manager = CredentialManager(client_settings, session=session, opener=browser, prompt=lambda message: True)

        result = manager.start_auth(timeout=5)

        assert not result.ok
        assert result.message == "Failed to exchange token. invalid_grant"
        assert client_settings.cloud_sync.last_error == result.message

    def test_exchange_malformed_response(self, client_settings):
        browser = Browser(('/oauth2callback', 'code=auth-code'))
        session = FakeSession([FakeResponse(200, text='<html>not json</html>')])
        manager = CredentialManager(client_settings, session=session, opener=browser, prompt=lambda message: True)

        result = manager.start_auth(timeout=5)

        assert not result.ok
        assert result.message == "Failed to exchange token. Malformed token response."
        assert client_settings.cloud_sync.last_error == result.message
        assert manager.flow_state == AuthFlowState.FAILED
        assert client_settings.cloud_sync.refresh_token == ''

    def test_degraded_login_without_refresh_token(self, client_settings):
        """Test that a login without refresh token works for this session only"""
        browser = Browser(('/oauth2callback', 'code=auth-code'))
        session = FakeSession([token_response(refresh_token=None)])
        connected = []
        manager = CredentialManager(
            client_settings,
            session=session,
            opener=browser,
            prompt=lambda message: True,
            clock=fixed_clock,
            on_connected=lambda: connected.append(True),
        )

        result = manager.start_auth(timeout=5)

        assert not result.ok
        assert result.degraded
        assert result.message == "Logged in without refresh token. You will need to re-login after restart."
        assert connected == []
        state = client_settings.cloud_sync
        assert state.enabled is True
        assert state.refresh_token == ''
        assert state.last_error == NO_REFRESH_TOKEN_ERROR

        assert manager.has_credentials()
        assert manager.ensure_access_token() == 'access-2'
        assert len(session.calls) == 1

    def test_first_resolution_wins(self, client_settings):
        """Test that a second callback after the first is ignored"""
        browser = Browser(('/oauth2callback', 'code=first'), ('/oauth2callback', 'code=second'))
        session = FakeSession([token_response()])
        manager = CredentialManager(client_settings, session=session, opener=browser, prompt=lambda message: True)

        assert manager.start_auth(timeout=5).ok
        assert browser.statuses == [200, 200]
        assert len(session.calls) == 1
        assert session.calls[0][2]['data']['code'] == 'first'
