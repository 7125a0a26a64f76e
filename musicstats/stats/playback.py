"""
Playback progress tracking

Turns "what is playing now" observations from a media player into finished
PlayRecord objects. The host polls the player, calls observe() with the song
currently shown and tick() about once per second, and calls request_skip()
when the user presses the next-track control. Finished plays are handed to
the sink callable (normally StatsSession.submit_play_event).

Rules for a finished play:
- fewer than 30 seconds heard: discarded
- 95% of the nominal length heard: saved immediately as completed
- skipped: the user asked to skip, the play did not complete, and less than
  65% of a known length was heard
"""

import math
from dataclasses import dataclass
from typing import Callable, Optional

from .models import PlayRecord, QUALIFIED_PLAY_SECONDS
from ..utils.helpers import now_ms
from ..utils.logger import get_logger

logger = get_logger(__name__)

COMPLETION_RATIO = 0.95
SKIP_RATIO = 0.65


@dataclass
class SongInfo:
    """Song currently shown by the player"""
    song_id: str
    song_title: str
    artist_id: str
    artist_name: str
    total_duration: float
    artist_image_url: Optional[str] = None
    album_name: Optional[str] = None
    thumbnail_url: Optional[str] = None


@dataclass
class CurrentPlayback:
    """Playback being accumulated"""
    song: SongInfo
    start_time: int
    last_update_time: int
    accumulated_time: float = 0.0


class PlaybackTracker:
    """Accumulates listening time per song and emits play records"""

    def __init__(
        self,
        sink: Callable[[PlayRecord], None],
        clock: Callable[[], int] = now_ms,
    ):
        """
        Args:
            sink: Receives each finished PlayRecord
            clock: Returns the current time in epoch milliseconds
        """
        self._sink = sink
        self._clock = clock
        self.current: Optional[CurrentPlayback] = None
        self.user_skip_requested = False

    def observe(self, song: SongInfo) -> None:
        """
        Report the song the player currently shows

        A different song id or title finishes the previous playback first.
        """
        if self.current and (
            self.current.song.song_id != song.song_id
            or self.current.song.song_title != song.song_title
        ):
            self.flush()

        if self.current is None or self.current.song.song_id != song.song_id:
            now = self._clock()
            self.user_skip_requested = False
            self.current = CurrentPlayback(song=song, start_time=now, last_update_time=now)
            logger.debug(f"Tracking playback: {song.artist_name} - {song.song_title}")

    def tick(self, is_playing: bool) -> Optional[PlayRecord]:
        """
        Advance the playback clock

        Args:
            is_playing: False while the player is paused; paused time is not counted

        Returns:
            The completed record if this tick crossed the completion threshold
        """
        if self.current is None:
            return None

        now = self._clock()
        if is_playing:
            self.current.accumulated_time += (now - self.current.last_update_time) / 1000
        self.current.last_update_time = now

        total = self.current.song.total_duration
        if total > 0 and self.current.accumulated_time >= total * COMPLETION_RATIO:
            return self.flush(completed=True)
        return None

    def request_skip(self) -> None:
        self.user_skip_requested = True

    def flush(self, completed: bool = False) -> Optional[PlayRecord]:
        """
        Finish the current playback and emit it when long enough

        Returns:
            The emitted record, or None when nothing was saved
        """
        playback = self.current
        skip_requested = self.user_skip_requested
        self.current = None
        self.user_skip_requested = False

        if playback is None or playback.accumulated_time < QUALIFIED_PLAY_SECONDS:
            return None

        song = playback.song
        skipped = (
            skip_requested
            and not completed
            and song.total_duration > 0
            and playback.accumulated_time < song.total_duration * SKIP_RATIO
        )

        record = PlayRecord(
            song_id=song.song_id,
            song_title=song.song_title,
            artist_id=song.artist_id,
            artist_name=song.artist_name,
            timestamp=playback.start_time,
            duration_listened=math.floor(playback.accumulated_time),
            total_duration=song.total_duration,
            skipped=skipped,
            completed=completed,
            artist_image_url=song.artist_image_url,
            album_name=song.album_name,
            thumbnail_url=song.thumbnail_url,
        )
        self._sink(record)
        return record

    def reset(self) -> None:
        """Drop the current playback without saving it"""
        self.current = None
        self.user_skip_requested = False
