"""
Persistent play log and derived aggregates

The EventStore keeps the whole document in memory and mirrors it to a JSON
snapshot file:

    {
      "playRecords": [...],
      "dailyAggregates": {"YYYY-MM-DD": {...}},
      "monthlyAggregates": {"YYYY-MM": {...}},
      "streak": {"lastListenDate": "...", "currentStreak": n} | null
    }

Writes only mark the document dirty; a background timer writes the file at
most once per flush interval, and close() writes any remaining changes. An
import replaces the document wholesale and is written immediately.

Thread Safety:
    All public methods take an internal RLock. File writes are serialized by
    a separate write lock so the newest snapshot is always the one on disk.
    Neither lock is held while waiting on the network; the sync engine only
    calls export() and import_bundle(), each a short critical section.
"""

import copy
import json
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..exceptions import PersistenceError
from ..stats.models import (
    DailyAggregate,
    EXPORT_VERSION,
    ExportBundle,
    MonthlyAggregate,
    PlayRecord,
    Streak,
)
from ..utils.helpers import ensure_directory, now_ms
from ..utils.logger import get_logger
from ..utils.scheduler import IntervalTimer

logger = get_logger(__name__)

DEFAULT_FLUSH_INTERVAL = 30.0


class EventStore:
    """
    In-memory document with buffered persistence to a JSON file

    Attributes:
        path: Location of the snapshot file
        flush_interval: Seconds between background flush attempts
    """

    def __init__(self, path: Union[str, Path], flush_interval: float = DEFAULT_FLUSH_INTERVAL):
        self.path = Path(path).expanduser()
        self.flush_interval = flush_interval

        self._lock = threading.RLock()
        # Held from snapshot to rename so an older snapshot never lands last
        self._write_lock = threading.Lock()
        self._dirty = False
        self._records: List[PlayRecord] = []
        self._daily: Dict[str, DailyAggregate] = {}
        self._monthly: Dict[str, MonthlyAggregate] = {}
        self._streak: Optional[Streak] = None
        self._flush_timer: Optional[IntervalTimer] = None

    # Lifecycle

    def open(self, start_flush_timer: bool = True) -> 'EventStore':
        """
        Load the snapshot file and start the background flush

        A missing or unreadable file starts an empty document; the broken file
        is left in place until the next flush overwrites it.

        Args:
            start_flush_timer: Whether to start the periodic flush thread

        Returns:
            self, for chaining
        """
        with self._lock:
            bundle = ExportBundle()
            if self.path.exists():
                try:
                    with open(self.path, 'r', encoding='utf-8') as f:
                        bundle = ExportBundle.from_dict(json.load(f) or {})
                except (OSError, ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Could not read stats database {self.path}, starting empty: {e}")
                    bundle = ExportBundle()
            self._apply_bundle(bundle)
            self._dirty = False
            logger.info(f"Stats database loaded: {len(self._records)} play records from {self.path}")

        if start_flush_timer and self._flush_timer is None:
            self._flush_timer = IntervalTimer('stats-flush', self.flush_interval, self.flush)
            self._flush_timer.start()
        return self

    def close(self) -> None:
        """Stop the background flush and write pending changes"""
        if self._flush_timer:
            self._flush_timer.stop()
            self._flush_timer = None
        self.flush()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def record_count(self) -> int:
        with self._lock:
            return len(self._records)

    # Play records

    def append(self, record: PlayRecord) -> PlayRecord:
        """
        Append a play record, assigning the next local id

        The id is one more than the largest id present, so it never collides
        with ids carried in by an import.

        Returns:
            The stored record (a copy of the input with `id` set)
        """
        with self._lock:
            next_id = max((r.id or 0 for r in self._records), default=0) + 1
            stored = replace(record, id=next_id)
            self._records.append(stored)
            self._dirty = True
            return stored

    def query(self, start: Optional[int] = None, end: Optional[int] = None) -> List[PlayRecord]:
        """
        Get play records within an inclusive timestamp window

        Args:
            start: Earliest timestamp (epoch ms), or None for no lower bound
            end: Latest timestamp (epoch ms), or None for no upper bound

        Returns:
            Matching records, newest first
        """
        with self._lock:
            records = [
                r for r in self._records
                if (start is None or r.timestamp >= start) and (end is None or r.timestamp <= end)
            ]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    # Aggregates and streak

    def save_daily_aggregate(self, date: str, aggregate: DailyAggregate) -> None:
        with self._lock:
            self._daily[date] = aggregate
            self._dirty = True

    def get_daily_aggregate(self, date: str) -> Optional[DailyAggregate]:
        with self._lock:
            return self._daily.get(date)

    def save_monthly_aggregate(self, year_month: str, aggregate: MonthlyAggregate) -> None:
        with self._lock:
            self._monthly[year_month] = aggregate
            self._dirty = True

    def get_monthly_aggregate(self, year_month: str) -> Optional[MonthlyAggregate]:
        with self._lock:
            return self._monthly.get(year_month)

    def get_monthly_aggregates(self) -> List[MonthlyAggregate]:
        """Monthly aggregates, newest month first"""
        with self._lock:
            items = sorted(self._monthly.items(), key=lambda item: item[0], reverse=True)
        return [replace(aggregate, year_month=key) for key, aggregate in items]

    def get_streak(self) -> Optional[Streak]:
        with self._lock:
            return copy.copy(self._streak)

    def update_streak(self, date: str, count: int) -> None:
        with self._lock:
            self._streak = Streak(last_listen_date=date, current_streak=count)
            self._dirty = True

    # Export / import

    def to_bundle(self, export_date: Optional[int] = None) -> ExportBundle:
        """Deep copy of the document as an ExportBundle"""
        with self._lock:
            return ExportBundle(
                version=EXPORT_VERSION,
                export_date=export_date if export_date is not None else now_ms(),
                play_records=copy.deepcopy(self._records),
                daily_aggregates=copy.deepcopy(self._daily),
                monthly_aggregates=copy.deepcopy(self._monthly),
                streak=copy.copy(self._streak),
            )

    def export(self, export_date: Optional[int] = None) -> str:
        """
        Serialize the document for backup or upload

        Args:
            export_date: Epoch ms stamped into the export, defaults to now

        Returns:
            JSON text with version and exportDate added
        """
        return json.dumps(self.to_bundle(export_date).to_dict(), indent=2, ensure_ascii=False)

    def import_bundle(self, bundle: ExportBundle) -> None:
        """
        Replace the whole document and write it to disk immediately

        Args:
            bundle: Parsed export; missing sections become empty
        """
        with self._lock:
            self._apply_bundle(copy.deepcopy(bundle))
            self._dirty = True
            logger.info(f"Stats database replaced by import: {len(self._records)} play records")
        self.flush()

    def import_json(self, text: str) -> ExportBundle:
        """
        Parse an export document and import it

        Malformed input imports the empty document, matching parse_export.

        Returns:
            The bundle that was imported
        """
        from ..sync.merge import parse_export

        bundle = parse_export(text)
        self.import_bundle(bundle)
        return bundle

    # Persistence

    def flush(self) -> bool:
        """
        Write the document to disk if it changed since the last write

        Writes are serialized: a flush that starts while another is writing
        waits for it, then snapshots the current document. The document lock
        is not held during file I/O, so readers and writers are not blocked.
        Failures are logged and leave the document dirty for the next attempt.

        Returns:
            True if the file is up to date, False if the write failed
        """
        with self._write_lock:
            with self._lock:
                if not self._dirty:
                    return True
                payload = json.dumps(self._snapshot_dict(), indent=2, ensure_ascii=False)
                self._dirty = False

            try:
                self._write(payload)
            except PersistenceError as e:
                with self._lock:
                    self._dirty = True
                logger.error(f"{e.message}: {e.details.get('original_error')}")
                return False

        logger.debug(f"Stats database flushed to {self.path}")
        return True

    def _write(self, payload: str) -> None:
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        try:
            ensure_directory(self.path.parent)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(
                f"Failed to write stats database {self.path}",
                details={'path': str(self.path), 'original_error': str(e)},
            )

    def _snapshot_dict(self) -> dict:
        return {
            'playRecords': [r.to_dict() for r in self._records],
            'dailyAggregates': {k: v.to_dict() for k, v in self._daily.items()},
            'monthlyAggregates': {k: v.to_dict() for k, v in self._monthly.items()},
            'streak': self._streak.to_dict() if self._streak else None,
        }

    def _apply_bundle(self, bundle: ExportBundle) -> None:
        self._records = list(bundle.play_records)
        self._daily = dict(bundle.daily_aggregates)
        self._monthly = dict(bundle.monthly_aggregates)
        self._streak = bundle.streak
