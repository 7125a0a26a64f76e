"""Test cloud reconciliation"""

import threading
from datetime import datetime
from unittest.mock import Mock

import pytest

from conftest import make_record
from musicstats.exceptions import AuthError, ConfigError
from musicstats.stats.models import Streak
from musicstats.sync.merge import content_hash, parse_export, serialize_export
from musicstats.sync.synchronizer import SyncAction, SyncEngine


@pytest.fixture
def credentials():
    credentials = Mock()
    credentials.has_credentials.return_value = True
    credentials.ensure_access_token.return_value = 'access-token'
    return credentials


@pytest.fixture
def engine(sync_settings, store, credentials, fake_drive):
    return SyncEngine(sync_settings, store, credentials, drive=fake_drive)


def add_plays(store, count, start_hour=8):
    for i in range(count):
        store.append(make_record(song_id=f"song-{start_hour + i}", when=datetime(2024, 5, 1, start_hour + i, 0)))


def edit_remote(drive, *records):
    """Simulate another machine adding plays to the Drive copy"""
    bundle = parse_export(drive.content)
    bundle.play_records.extend(records)
    bundle.export_date += 1000
    file_id = next(iter(drive.files))
    drive.files[file_id] = serialize_export(bundle)


class TestPreconditions:
    """Test passes that never reach Drive"""

    def test_disabled(self, settings, store, credentials, fake_drive):
        engine = SyncEngine(settings, store, credentials, drive=fake_drive)
        result = engine.run()

        assert not result.ok
        assert result.message == "Cloud sync is disabled."
        assert fake_drive.find_calls == 0

    def test_not_connected(self, engine, credentials, fake_drive):
        credentials.has_credentials.return_value = False
        result = engine.run()

        assert result.message == "Connect Google Drive first."
        assert fake_drive.find_calls == 0

    def test_missing_client_id(self, engine, sync_settings):
        sync_settings.update_sync_state(client_id='')
        assert engine.run().message == "Connect Google Drive first."

    def test_reentrant_call_rejected(self, engine, fake_drive):
        """Test that a pass started while another runs returns immediately"""
        entered = threading.Event()
        release = threading.Event()
        original_find = fake_drive.find_file

        def slow_find(token):
            entered.set()
            release.wait(5)
            return original_find(token)

        fake_drive.find_file = slow_find
        worker = threading.Thread(target=engine.run)
        worker.start()
        try:
            assert entered.wait(5)
            assert engine.is_running
            result = engine.run()
            assert not result.ok
            assert result.message == "Sync already in progress."
        finally:
            release.set()
            worker.join(5)

        assert fake_drive.create_calls == 1
        assert not engine.is_running


class TestReconciliation:
    """Test the reconciliation decisions"""

    def test_initialize_remote(self, engine, store, sync_settings, fake_drive):
        add_plays(store, 3)
        result = engine.run()

        assert result.ok
        assert result.action == SyncAction.INITIALIZED
        assert result.message == "Cloud sync initialized."
        assert fake_drive.create_calls == 1
        assert len(parse_export(fake_drive.content).play_records) == 3

        state = sync_settings.cloud_sync
        assert state.file_id == 'file-1'
        assert state.last_hash == content_hash(store.export())
        assert state.last_sync_time
        assert state.last_error == ''

    def test_no_changes_is_noop(self, engine, store, fake_drive):
        add_plays(store, 3)
        engine.run()
        result = engine.run()

        assert result.action == SyncAction.UP_TO_DATE
        assert result.message == "Cloud sync up to date."
        assert fake_drive.create_calls == 1
        assert fake_drive.update_calls == 0

    def test_push_local_changes(self, engine, store, fake_drive):
        add_plays(store, 3)
        engine.run()
        add_plays(store, 1, start_hour=20)

        result = engine.run()

        assert result.action == SyncAction.PUSHED
        assert result.message == "Cloud sync pushed updates."
        assert fake_drive.update_calls == 1
        assert len(parse_export(fake_drive.content).play_records) == 4

    def test_pull_remote_changes(self, engine, store, sync_settings, fake_drive):
        add_plays(store, 3)
        engine.run()
        edit_remote(fake_drive, make_record(song_id='remote-only', when=datetime(2024, 5, 2, 9, 0)))

        result = engine.run()

        assert result.action == SyncAction.PULLED
        assert result.message == "Cloud sync pulled updates."
        assert fake_drive.update_calls == 0
        assert store.record_count == 4
        assert sync_settings.cloud_sync.last_hash == content_hash(fake_drive.content)

    def test_merge_divergent_changes(self, engine, store, sync_settings, fake_drive):
        """Test that both sides' new plays survive a merge"""
        add_plays(store, 3)
        engine.run()
        add_plays(store, 1, start_hour=20)
        edit_remote(fake_drive, make_record(song_id='remote-only', when=datetime(2024, 5, 2, 9, 0)))

        result = engine.run()

        assert result.action == SyncAction.MERGED
        assert result.message == "Cloud sync merged changes."
        assert store.record_count == 5
        assert len(parse_export(fake_drive.content).play_records) == 5
        assert sync_settings.cloud_sync.last_hash == content_hash(fake_drive.content)

        assert engine.run().action == SyncAction.UP_TO_DATE

    def test_merge_keeps_later_streak(self, engine, store, fake_drive):
        store.update_streak('2024-05-01', 1)
        add_plays(store, 1)
        engine.run()
        add_plays(store, 1, start_hour=20)

        bundle = parse_export(fake_drive.content)
        bundle.streak = Streak('2024-05-04', 3)
        fake_drive.files['file-1'] = serialize_export(bundle)

        assert engine.run().action == SyncAction.MERGED
        assert store.get_streak() == Streak('2024-05-04', 3)

    def test_download_failure_overwrites_remote(self, engine, store, fake_drive):
        add_plays(store, 2)
        engine.run()
        fake_drive.fail_download = True

        result = engine.run()

        assert result.action == SyncAction.UPDATED
        assert result.message == "Cloud sync updated."
        assert fake_drive.update_calls == 1

    def test_existing_remote_found_by_name(self, engine, store, sync_settings, fake_drive):
        """Test a fresh install adopting the Drive copy of another machine"""
        fake_drive.create_file('token', store.export())
        edit_remote(fake_drive, make_record(song_id='from-laptop'))
        fake_drive.create_calls = 0

        result = engine.run()

        assert result.action == SyncAction.PULLED
        assert fake_drive.create_calls == 0
        assert sync_settings.cloud_sync.file_id == 'file-1'
        assert [r.song_id for r in store.query()] == ['from-laptop']


class TestFailures:
    """Test error recording"""

    def test_missing_token_recorded(self, engine, credentials, sync_settings):
        credentials.ensure_access_token.side_effect = ConfigError("Missing refresh token. Reconnect Google Drive.")
        result = engine.run()

        assert not result.ok
        assert result.action == SyncAction.FAILED
        assert result.message == "Cloud sync failed."
        assert result.error_message == "Missing refresh token. Reconnect Google Drive."
        assert sync_settings.cloud_sync.last_error == "Missing refresh token. Reconnect Google Drive."

    def test_auth_error_recorded(self, engine, credentials, sync_settings):
        credentials.ensure_access_token.side_effect = AuthError("Failed to refresh Google token. invalid_grant")
        engine.run()

        assert sync_settings.cloud_sync.last_error == "Failed to refresh Google token. invalid_grant"

    def test_deleted_remote_file_forgotten(self, engine, store, sync_settings, fake_drive):
        """Test that a 404 on upload clears the remembered file id"""
        add_plays(store, 1)
        engine.run()
        fake_drive.files.clear()

        result = engine.run()

        assert not result.ok
        assert sync_settings.cloud_sync.file_id == ''
        assert sync_settings.cloud_sync.last_error == "Failed to upload Drive file."

        result = engine.run()
        assert result.action == SyncAction.INITIALIZED
        assert sync_settings.cloud_sync.file_id == 'file-2'

    def test_success_clears_last_error(self, engine, store, sync_settings):
        sync_settings.update_sync_state(last_error='old failure')
        add_plays(store, 1)

        assert engine.run().ok
        assert sync_settings.cloud_sync.last_error == ''
