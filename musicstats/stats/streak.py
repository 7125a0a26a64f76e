"""
Listening streak tracking

A streak counts consecutive local calendar days with at least one play.
"""

from typing import Optional

from .models import Streak
from ..utils.helpers import days_between, local_date_key
from ..utils.logger import get_logger

logger = get_logger(__name__)


def next_streak(current: Optional[Streak], date_key: str) -> Optional[Streak]:
    """
    Compute the streak after a play on `date_key`

    Args:
        current: Existing streak record, or None before the first play
        date_key: Local date of the play (YYYY-MM-DD)

    Returns:
        The replacement Streak, or None when the stored streak must not change
        (same day, or a play dated before the last listen date)
    """
    if current is None:
        return Streak(last_listen_date=date_key, current_streak=1)

    diff = days_between(current.last_listen_date, date_key)
    if diff == 1:
        return Streak(last_listen_date=date_key, current_streak=current.current_streak + 1)
    if diff > 1:
        return Streak(last_listen_date=date_key, current_streak=1)
    return None


class StreakTracker:
    """Applies streak updates to the event store as plays arrive"""

    def __init__(self, store):
        """
        Args:
            store: EventStore holding the singleton streak record
        """
        self.store = store

    def update(self, timestamp_ms: int) -> Optional[Streak]:
        """
        Register a play at `timestamp_ms`

        Returns:
            The new streak when it changed, None otherwise
        """
        date_key = local_date_key(timestamp_ms)
        updated = next_streak(self.store.get_streak(), date_key)
        if updated is None:
            return None

        self.store.update_streak(updated.last_listen_date, updated.current_streak)
        logger.debug(f"Streak updated: {updated.current_streak} day(s) as of {date_key}")
        return updated
