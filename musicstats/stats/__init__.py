"""
Statistics package

Data models for the play log, pure aggregation functions, streak tracking and
playback progress tracking.
"""

from .models import (
    PlayRecord,
    DailyAggregate,
    MonthlyAggregate,
    Streak,
    ExportBundle,
    StatsSnapshot,
)
from .engine import compute_snapshot, aggregate_day, aggregate_month
from .streak import StreakTracker, next_streak
from .playback import PlaybackTracker, SongInfo

__all__ = [
    'PlayRecord',
    'DailyAggregate',
    'MonthlyAggregate',
    'Streak',
    'ExportBundle',
    'StatsSnapshot',
    'compute_snapshot',
    'aggregate_day',
    'aggregate_month',
    'StreakTracker',
    'next_streak',
    'PlaybackTracker',
    'SongInfo',
]
