"""
Stats session: the object that owns every Music-Stats component

A StatsSession is created once per process by the host (the CLI, or any
embedding application) and passed around explicitly. It owns:

- the EventStore and its flush thread
- the StreakTracker
- the CredentialManager and the SyncEngine
- the hourly aggregation timer and the periodic Drive sync timer

Host-facing operations are plain methods: submit_play_event, get_stats,
export_snapshot / import_snapshot, aggregate_now, connect_drive, sync_now,
drive_status, disconnect_drive, on_config_change and shutdown.
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Optional, Union

import requests

from .config.auth import AuthResult, CredentialManager, ExternalOpener, UserPrompt
from .config.settings import Settings
from .exceptions import ConfigError
from .stats.engine import aggregate_day, aggregate_month, compute_snapshot
from .stats.models import ExportBundle, PlayRecord, StatsSnapshot
from .stats.playback import PlaybackTracker
from .stats.streak import StreakTracker
from .store.event_store import EventStore
from .sync.drive import DriveClient
from .sync.synchronizer import SyncEngine, SyncResult
from .utils.helpers import format_duration, now_ms
from .utils.logger import get_logger
from .utils.scheduler import IntervalTimer
from .utils.validation import validate_client_id, validate_play_record

logger = get_logger(__name__)


def _local_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def day_bounds(day: date) -> tuple:
    """Inclusive epoch-ms bounds of a local calendar day"""
    start = datetime.combine(day, time.min)
    end = datetime.combine(day + timedelta(days=1), time.min)
    return _local_ms(start), _local_ms(end) - 1


def month_bounds(day: date) -> tuple:
    """Inclusive epoch-ms bounds of the local calendar month containing `day`"""
    start = datetime.combine(day.replace(day=1), time.min)
    if day.month == 12:
        next_month = date(day.year + 1, 1, 1)
    else:
        next_month = date(day.year, day.month + 1, 1)
    return _local_ms(start), _local_ms(datetime.combine(next_month, time.min)) - 1


class StatsSession:
    """
    Explicit context object wiring storage, statistics and cloud sync

    Attributes:
        settings: Application settings
        store: Event store
        streak: Streak tracker
        credentials: Google credential manager
        sync_engine: Drive reconciliation engine
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[requests.Session] = None,
        opener: Optional[ExternalOpener] = None,
        prompt: Optional[UserPrompt] = None,
        drive: Optional[DriveClient] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Args:
            settings: Application settings
            http: HTTP client shared by the token and Drive calls
            opener: Opens the Google consent page
            prompt: Asks the user to confirm opening the browser
            drive: Drive client override (tests pass a fake)
            clock: Current time in epoch milliseconds
        """
        self.settings = settings
        self.http = http or requests.Session()
        self._clock = clock
        self.http.headers.setdefault('User-Agent', settings.network.user_agent)

        self.store = EventStore(settings.get_database_path(), flush_interval=settings.stats.flush_interval)
        self.streak = StreakTracker(self.store)
        self.credentials = CredentialManager(
            settings,
            session=self.http,
            opener=opener,
            prompt=prompt,
            clock=clock,
            on_connected=self.start_sync_timer,
        )
        self.sync_engine = SyncEngine(settings, self.store, self.credentials, drive=drive)

        self._aggregation_timer = IntervalTimer(
            'stats-aggregation',
            settings.stats.aggregation_interval,
            self.aggregate_now,
            run_immediately=True,
        )
        self._sync_timer: Optional[IntervalTimer] = None
        self._started = False
        self._background = False

    # Lifecycle

    def start(self, background: bool = True) -> 'StatsSession':
        """
        Open the store and start background work

        Args:
            background: Start the flush, aggregation and sync timers. When
                False only the store is opened (one-shot CLI commands).
        """
        self.store.open(start_flush_timer=background)
        self._background = background
        if background:
            self._aggregation_timer.start()
            self.on_config_change()
        self._started = True
        logger.debug(f"Stats session started (background={background})")
        return self

    def shutdown(self) -> None:
        """Stop timers and flush the store"""
        self._aggregation_timer.stop()
        self.stop_sync_timer()
        if self._started:
            self.store.close()
            self._started = False
            self._background = False
        logger.debug("Stats session shut down")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    # Play events and statistics

    def submit_play_event(self, event: Union[PlayRecord, Dict[str, Any]]) -> Optional[PlayRecord]:
        """
        Append a finished play to the log and update the streak

        Args:
            event: PlayRecord, or its camelCase dictionary form

        Returns:
            Stored record with its local id, or None when tracking is disabled

        Raises:
            ValueError: If the event is malformed
        """
        if isinstance(event, PlayRecord):
            record = event
            is_valid, error = validate_play_record(record.to_dict())
        else:
            is_valid, error = validate_play_record(event)
            record = PlayRecord.from_dict(event) if is_valid else None
        if not is_valid:
            raise ValueError(f"Invalid play event: {error}")

        if not self.settings.stats.enabled:
            logger.debug("Stats tracking disabled; play event ignored")
            return None

        stored = self.store.append(record)
        self.streak.update(stored.timestamp)
        listened = format_duration(stored.duration_listened)
        logger.debug(f"Play recorded: {stored.artist_name} - {stored.song_title} ({listened})")
        return stored

    def get_stats(self, now: Optional[datetime] = None) -> StatsSnapshot:
        return compute_snapshot(self.store.query(), self.store.get_streak(), now=now)

    def aggregate_now(self, now: Optional[datetime] = None) -> None:
        """
        Recompute today's daily aggregate and this month's monthly aggregate

        Empty periods are skipped so an existing aggregate is never replaced
        by an empty one.
        """
        now = now or datetime.now()
        today = now.date()

        start, end = day_bounds(today)
        daily = aggregate_day(self.store.query(start, end), today.isoformat())
        if daily:
            self.store.save_daily_aggregate(daily.date, daily)

        start, end = month_bounds(today)
        monthly = aggregate_month(self.store.query(start, end), today.strftime('%Y-%m'))
        if monthly:
            self.store.save_monthly_aggregate(monthly.year_month, monthly)

        logger.debug(f"Aggregation tick for {today.isoformat()}: daily={'yes' if daily else 'no'}")

    def create_playback_tracker(self) -> PlaybackTracker:
        """Tracker that turns player observations into submitted play events"""
        return PlaybackTracker(self.submit_play_event, clock=self._clock)

    def export_snapshot(self) -> str:
        return self.store.export()

    def import_snapshot(self, json_text: str) -> ExportBundle:
        """Replace the local document with an export (malformed input imports nothing)"""
        return self.store.import_json(json_text)

    # Cloud sync

    def connect_drive(self) -> AuthResult:
        return self.credentials.start_auth()

    def sync_now(self) -> SyncResult:
        return self.sync_engine.run()

    def drive_status(self) -> Dict[str, Any]:
        return self.credentials.status()

    def disconnect_drive(self) -> AuthResult:
        result = self.credentials.disconnect()
        self.stop_sync_timer()
        return result

    def set_cloud_sync_enabled(self, enabled: bool) -> None:
        self.settings.update_sync_state(enabled=enabled)
        self.on_config_change()

    def set_client_credentials(self, client_id: str, client_secret: Optional[str] = None) -> None:
        """
        Store the Google OAuth client used for authorization

        Raises:
            ConfigError: If the client id is malformed
        """
        is_valid, error = validate_client_id(client_id)
        if not is_valid:
            raise ConfigError(error, details={'client_id': client_id})

        changes = {'client_id': client_id.strip()}
        if client_secret is not None:
            changes['client_secret'] = client_secret
        self.settings.update_sync_state(**changes)

    def on_config_change(self) -> None:
        """Start or stop the periodic sync to match cloud_sync.enabled"""
        if self.settings.cloud_sync.enabled:
            self.start_sync_timer()
        else:
            self.stop_sync_timer()

    def start_sync_timer(self) -> None:
        # One-shot sessions never run periodic work
        if not self._background:
            return
        if self._sync_timer and self._sync_timer.is_running:
            return
        self._sync_timer = IntervalTimer('drive-sync', self.settings.cloud_sync.sync_interval, self._sync_tick)
        self._sync_timer.start()

    def stop_sync_timer(self) -> None:
        if self._sync_timer:
            self._sync_timer.stop()
            self._sync_timer = None

    @property
    def sync_timer_running(self) -> bool:
        return bool(self._sync_timer and self._sync_timer.is_running)

    def _sync_tick(self) -> None:
        result = self.sync_now()
        if not result.ok:
            logger.debug(f"Periodic sync: {result.summary}")
