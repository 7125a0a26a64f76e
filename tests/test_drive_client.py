"""Test the Google Drive REST client"""

import json

import pytest
import requests

from conftest import FakeResponse, FakeSession
from musicstats.exceptions import TransportError
from musicstats.sync.drive import DriveClient, build_multipart_body


class TestMultipartBody:
    """Test the multipart/related upload layout"""

    def test_layout(self):
        boundary, payload = build_multipart_body(
            {'name': 'music-stats.json', 'parents': ['appDataFolder']},
            '{"version":1}',
            boundary='ytm-abc',
        )

        assert boundary == 'ytm-abc'
        assert payload == (
            '--ytm-abc\r\n'
            'Content-Type: application/json; charset=UTF-8\r\n\r\n'
            '{"name":"music-stats.json","parents":["appDataFolder"]}\r\n'
            '--ytm-abc\r\n'
            'Content-Type: application/json\r\n\r\n'
            '{"version":1}\r\n'
            '--ytm-abc--'
        )

    def test_default_boundary(self):
        boundary, payload = build_multipart_body({}, '{}')

        assert boundary.startswith('ytm-')
        int(boundary[4:], 16)
        assert payload.endswith(f'--{boundary}--')


class TestDriveClient:
    """Test Drive requests and error mapping"""

    def test_find_file(self):
        session = FakeSession([FakeResponse(200, {'files': [{'id': 'f1', 'name': 'music-stats.json'}]})])
        found = DriveClient(session=session).find_file('token')

        assert found['id'] == 'f1'
        method, url, kwargs = session.calls[0]
        assert method == 'GET'
        assert 'spaces=appDataFolder' in url
        assert "q=name%3D'music-stats.json'%20and%20trashed%3Dfalse" in url
        assert kwargs['headers']['Authorization'] == 'Bearer token'

    def test_find_file_absent_or_refused(self):
        session = FakeSession([FakeResponse(200, {'files': []}), FakeResponse(403, text='denied')])
        client = DriveClient(session=session)

        assert client.find_file('token') is None
        assert client.find_file('token') is None

    def test_download(self):
        session = FakeSession([FakeResponse(200, text='{"version":1}')])
        assert DriveClient(session=session).download_file('token', 'f1') == '{"version":1}'
        assert session.calls[0][1].endswith('/files/f1?alt=media')

    def test_download_failure_returns_none(self):
        session = FakeSession([
            FakeResponse(500, text='boom'),
            requests.ConnectionError('offline'),
        ])
        client = DriveClient(session=session)

        assert client.download_file('token', 'f1') is None
        assert client.download_file('token', 'f1') is None

    def test_create_file(self):
        session = FakeSession([FakeResponse(200, {'id': 'new-id'})])
        created = DriveClient(session=session).create_file('token', '{"version":1}')

        assert created['id'] == 'new-id'
        method, url, kwargs = session.calls[0]
        assert method == 'POST'
        assert url.endswith('/upload/drive/v3/files?uploadType=multipart')
        content_type = kwargs['headers']['Content-Type']
        assert content_type.startswith('multipart/related; boundary=ytm-')
        body = kwargs['data'].decode('utf-8')
        assert '"parents":["appDataFolder"]' in body
        assert '{"version":1}' in body

    def test_create_file_error(self):
        session = FakeSession([FakeResponse(403, text='x' * 500)])

        with pytest.raises(TransportError) as exc_info:
            DriveClient(session=session).create_file('token', '{}')

        assert exc_info.value.message == "Failed to create Drive file."
        assert exc_info.value.details['status_code'] == 403
        assert len(exc_info.value.details['body']) == 300

    def test_update_file(self):
        session = FakeSession([FakeResponse(200, {'id': 'f1'})])
        DriveClient(session=session).update_file('token', 'f1', '{}')

        method, url, kwargs = session.calls[0]
        assert method == 'PATCH'
        assert '/files/f1?uploadType=multipart' in url
        metadata = kwargs['data'].decode('utf-8').split('\r\n')[3]
        assert json.loads(metadata) == {'name': 'music-stats.json'}

    def test_update_file_not_found(self):
        session = FakeSession([FakeResponse(404, text='not found')])

        with pytest.raises(TransportError) as exc_info:
            DriveClient(session=session).update_file('token', 'gone', '{}')

        assert exc_info.value.message == "Failed to upload Drive file."
        assert exc_info.value.details['status_code'] == 404

    def test_network_error(self):
        session = FakeSession([requests.ConnectionError('offline')])

        with pytest.raises(TransportError):
            DriveClient(session=session).create_file('token', '{}')
