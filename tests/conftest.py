"""Test configuration and fixtures"""

import json
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from musicstats.config.settings import Settings
from musicstats.exceptions import TransportError
from musicstats.stats.models import PlayRecord
from musicstats.store.event_store import EventStore


CLIENT_ID = "1234567890-abcdef.apps.googleusercontent.com"


def ms(when: datetime) -> int:
    """Epoch milliseconds of a naive local datetime"""
    return int(when.timestamp() * 1000)


def make_record(
    song_id="dQw4w9WgXcQ",
    title="Test Song",
    artist_id="artist_1",
    artist="Test Artist",
    when=datetime(2024, 5, 1, 14, 0),
    duration=180,
    total=200,
    skipped=False,
    **kwargs
) -> PlayRecord:
    """Build a PlayRecord played at a local time"""
    return PlayRecord(
        song_id=song_id,
        song_title=title,
        artist_id=artist_id,
        artist_name=artist,
        timestamp=ms(when),
        duration_listened=duration,
        total_duration=total,
        skipped=skipped,
        completed=kwargs.pop('completed', not skipped and duration >= total * 0.95),
        **kwargs
    )


class FakeResponse:
    """Minimal stand-in for requests.Response"""

    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ''
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class FakeSession:
    """Records HTTP calls and answers them from a queue of responses"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.headers = {}

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self.request('POST', url, **kwargs)


class FakeDrive:
    """In-memory replacement for DriveClient holding a single file"""

    def __init__(self):
        self.files = {}
        self.find_calls = 0
        self.create_calls = 0
        self.update_calls = 0
        self.fail_download = False

    @property
    def content(self):
        return next(iter(self.files.values()), None)

    def find_file(self, access_token):
        self.find_calls += 1
        if not self.files:
            return None
        file_id = next(iter(self.files))
        return {'id': file_id, 'name': 'music-stats.json'}

    def download_file(self, access_token, file_id):
        if self.fail_download:
            return None
        return self.files.get(file_id)

    def create_file(self, access_token, content):
        self.create_calls += 1
        file_id = f"file-{self.create_calls}"
        self.files[file_id] = content
        return {'id': file_id, 'name': 'music-stats.json'}

    def update_file(self, access_token, file_id, content):
        if file_id not in self.files:
            raise TransportError("Failed to upload Drive file.", details={'status_code': 404, 'body': ''})
        self.update_calls += 1
        self.files[file_id] = content


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def settings(temp_dir):
    """Settings isolated in a temporary config directory"""
    settings = Settings(config_dir=str(temp_dir / "config"), load_env=False)
    settings.logging.file = ""
    settings.logging.console_output = False
    return settings


@pytest.fixture
def sync_settings(settings):
    """Settings with cloud sync enabled and a stored refresh token"""
    settings.update_sync_state(enabled=True, client_id=CLIENT_ID, refresh_token="refresh-1")
    return settings


@pytest.fixture
def store(temp_dir):
    """Opened event store without a background flush thread"""
    store = EventStore(temp_dir / "stats.json")
    store.open(start_flush_timer=False)
    yield store
    store.close()


@pytest.fixture
def fake_drive():
    return FakeDrive()
