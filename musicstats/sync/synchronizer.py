"""
Cloud reconciliation between the local event store and Google Drive

One call to SyncEngine.run() performs a single reconciliation pass:

1. Check preconditions (sync enabled, client id, some credential)
2. Get an access token and export the local document
3. Find the remote file; create it if there is none
4. Download it; if that fails, overwrite it with the local export
5. Compare content hashes; equal means nothing to do
6. Classify against the hash recorded at the last successful sync:
   - both sides changed: merge, import locally, upload
   - only the remote changed: pull
   - otherwise: push

Any failure is recorded into the persisted last_error and reported as a
failed SyncResult; the next periodic tick simply tries again. Passes never
overlap: a run() that finds another one in progress returns immediately.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..config.auth import CredentialManager
from ..config.settings import Settings
from ..exceptions import MusicStatsError, TransportError
from ..store.event_store import EventStore
from ..utils.logger import get_logger, log_performance
from .drive import DriveClient
from .merge import content_hash, merge_exports, parse_export, serialize_export

logger = get_logger(__name__)


class SyncAction(Enum):
    """What a reconciliation pass did"""
    SKIPPED = "skipped"
    INITIALIZED = "initialized"
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    MERGED = "merged"
    PULLED = "pulled"
    PUSHED = "pushed"
    FAILED = "failed"


@dataclass
class SyncResult:
    """
    Result of one reconciliation pass

    Attributes:
        ok: Whether the pass completed
        message: User-facing outcome message
        action: What the pass did
        error_message: Underlying error for failed passes
    """
    ok: bool
    message: str
    action: SyncAction = SyncAction.SKIPPED
    error_message: Optional[str] = None

    @property
    def summary(self) -> str:
        if self.error_message:
            return f"{self.message} ({self.error_message})"
        return self.message


class SyncEngine:
    """
    Reconciles the local document with the Drive copy

    Attributes:
        settings: Settings owning cloud sync state
        store: Local event store
        credentials: Token provider
        drive: Drive REST client
    """

    def __init__(
        self,
        settings: Settings,
        store: EventStore,
        credentials: CredentialManager,
        drive: Optional[DriveClient] = None,
    ):
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.drive = drive or DriveClient(
            session=credentials.session,
            file_name=settings.cloud_sync.file_name,
            timeout=settings.network.request_timeout,
        )
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def run(self) -> SyncResult:
        """
        Perform one reconciliation pass

        Returns:
            SyncResult; never raises for sync failures
        """
        if not self._running.acquire(blocking=False):
            return SyncResult(False, "Sync already in progress.")
        try:
            return self._run_pass()
        finally:
            self._running.release()

    def _preconditions(self) -> Optional[SyncResult]:
        state = self.settings.cloud_sync
        if not state.enabled:
            return SyncResult(False, "Cloud sync is disabled.")
        if not state.client_id or not self.credentials.has_credentials():
            return SyncResult(False, "Connect Google Drive first.")
        return None

    @log_performance
    def _run_pass(self) -> SyncResult:
        blocked = self._preconditions()
        if blocked:
            logger.debug(f"Sync skipped: {blocked.message}")
            return blocked

        try:
            result = self._reconcile()
        except MusicStatsError as e:
            return self._failed(e.message)
        except Exception as e:
            logger.error("Unexpected error during cloud sync", exc_info=True)
            return self._failed(str(e) or 'Unknown sync error')

        logger.info(f"Cloud sync finished: {result.action.value}")
        return result

    def _failed(self, message: str) -> SyncResult:
        logger.warning(f"Cloud sync failed: {message}")
        self.settings.update_sync_state(last_error=message)
        return SyncResult(False, "Cloud sync failed.", SyncAction.FAILED, error_message=message)

    def _record_success(self, new_hash: str, **extra) -> None:
        self.settings.update_sync_state(
            last_sync_time=datetime.now().isoformat(),
            last_hash=new_hash,
            last_error='',
            **extra,
        )

    def _reconcile(self) -> SyncResult:
        access_token = self.credentials.ensure_access_token()
        local_json = self.store.export()
        local_hash = content_hash(local_json)
        local_bundle = parse_export(local_json)

        file_id = self.settings.cloud_sync.file_id
        if not file_id:
            found = self.drive.find_file(access_token)
            file_id = (found or {}).get('id', '')

        if not file_id:
            created = self.drive.create_file(access_token, local_json)
            self._record_success(local_hash, file_id=created.get('id', ''))
            return SyncResult(True, "Cloud sync initialized.", SyncAction.INITIALIZED)

        remote_json = self.drive.download_file(access_token, file_id)
        if remote_json is None:
            self._upload(access_token, file_id, local_json)
            self._record_success(local_hash, file_id=file_id)
            return SyncResult(True, "Cloud sync updated.", SyncAction.UPDATED)

        remote_hash = content_hash(remote_json)
        if remote_hash == local_hash:
            self._record_success(local_hash, file_id=file_id)
            return SyncResult(True, "Cloud sync up to date.", SyncAction.UP_TO_DATE)

        remote_bundle = parse_export(remote_json)
        last_hash = self.settings.cloud_sync.last_hash
        local_changed = bool(last_hash) and local_hash != last_hash
        remote_changed = bool(last_hash) and remote_hash != last_hash

        if local_changed and remote_changed:
            merged = merge_exports(local_bundle, remote_bundle)
            self.store.import_bundle(merged)
            merged_json = serialize_export(merged)
            self._upload(access_token, file_id, merged_json)
            self._record_success(content_hash(merged_json), file_id=file_id)
            return SyncResult(True, "Cloud sync merged changes.", SyncAction.MERGED)

        # Without a recorded hash a fresh, empty install takes the remote copy
        first_sync_pull = not last_hash and (
            remote_bundle.export_date > local_bundle.export_date
            or not local_bundle.play_records
        )
        if remote_changed or first_sync_pull:
            self.store.import_bundle(remote_bundle)
            self._record_success(remote_hash, file_id=file_id)
            return SyncResult(True, "Cloud sync pulled updates.", SyncAction.PULLED)

        self._upload(access_token, file_id, local_json)
        self._record_success(local_hash, file_id=file_id)
        return SyncResult(True, "Cloud sync pushed updates.", SyncAction.PUSHED)

    def _upload(self, access_token: str, file_id: str, content: str) -> None:
        try:
            self.drive.update_file(access_token, file_id, content)
        except TransportError as e:
            if e.details.get('status_code') == 404:
                # Remote file was deleted; rediscover or recreate next pass
                self.settings.update_sync_state(file_id='')
            raise
