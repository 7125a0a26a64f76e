"""
Data models for the play log and the statistics derived from it

This module defines the structured types exchanged between the event store,
the aggregation functions, the reconciliation engine and the CLI:

- PlayRecord: one listening event, as produced by the playback tracker
- DailyAggregate / MonthlyAggregate: derived rollups keyed by day / month
- Streak: the singleton consecutive-day listening counter
- ExportBundle: the whole document, the unit uploaded to and merged with Drive
- StatsSnapshot and its entry types: the dashboard result of compute_snapshot

Every persisted model converts to and from the camelCase JSON layout used on
disk and in the Drive copy. Optional fields that are unset are omitted from the
JSON instead of being written as null, so a document read and re-written
without changes is byte-for-byte stable.
"""

import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple


EXPORT_VERSION = 1
QUALIFIED_PLAY_SECONDS = 30

_CAMEL_BOUNDARY = re.compile(r'_([a-z])')


def _camel(name: str) -> str:
    """Convert a snake_case attribute name to its camelCase JSON key"""
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


def _to_json_dict(obj) -> Dict[str, Any]:
    """
    Serialize a flat dataclass to a camelCase dictionary, dropping None values

    Nested dataclasses are serialized through their own to_dict().
    """
    result = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        if hasattr(value, 'to_dict'):
            value = value.to_dict()
        result[_camel(f.name)] = value
    return result


@dataclass
class PlayRecord:
    """
    One listening event

    `timestamp` is the epoch-millisecond start of the playback. Durations are
    in seconds. `id` is assigned locally by the event store and is not stable
    across machines; deduplication uses `identity` instead.
    """
    song_id: str
    song_title: str
    artist_id: str
    artist_name: str
    timestamp: int
    duration_listened: float
    total_duration: float
    skipped: bool = False
    completed: bool = False
    artist_image_url: Optional[str] = None
    album_name: Optional[str] = None
    thumbnail_url: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlayRecord':
        """
        Create PlayRecord from its JSON representation

        Args:
            data: camelCase dictionary as stored in the snapshot file

        Returns:
            PlayRecord instance
        """
        return cls(
            song_id=str(data.get('songId', '')),
            song_title=data.get('songTitle', ''),
            artist_id=str(data.get('artistId', '')),
            artist_name=data.get('artistName', ''),
            timestamp=data.get('timestamp', 0),
            duration_listened=data.get('durationListened', 0),
            total_duration=data.get('totalDuration', 0),
            skipped=bool(data.get('skipped', False)),
            completed=bool(data.get('completed', False)),
            artist_image_url=data.get('artistImageUrl'),
            album_name=data.get('albumName'),
            thumbnail_url=data.get('thumbnailUrl'),
            id=data.get('id'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)

    @property
    def identity(self) -> Tuple[str, str, int, float, float]:
        """Key used to deduplicate records coming from different machines"""
        return (
            self.song_id,
            self.artist_id,
            self.timestamp,
            self.duration_listened,
            self.total_duration,
        )

    @property
    def minutes(self) -> float:
        return self.duration_listened / 60

    @property
    def is_qualified(self) -> bool:
        """Whether the play counts towards play tallies"""
        return self.duration_listened >= QUALIFIED_PLAY_SECONDS


@dataclass
class DailyAggregate:
    """
    Rollup of one local calendar day

    topSongs entries are {id, title, plays}; topArtists entries are
    {id, name, plays}. hourlyBreakdown holds 24 play counts.
    """
    date: str
    total_minutes: float = 0.0
    songs_played: int = 0
    unique_songs: int = 0
    unique_artists: int = 0
    top_songs: List[Dict[str, Any]] = field(default_factory=list)
    top_artists: List[Dict[str, Any]] = field(default_factory=list)
    genre_breakdown: Dict[str, float] = field(default_factory=dict)
    hourly_breakdown: List[int] = field(default_factory=lambda: [0] * 24)
    skip_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DailyAggregate':
        return cls(
            date=data.get('date', ''),
            total_minutes=data.get('totalMinutes', 0),
            songs_played=data.get('songsPlayed', 0),
            unique_songs=data.get('uniqueSongs', 0),
            unique_artists=data.get('uniqueArtists', 0),
            top_songs=list(data.get('topSongs', [])),
            top_artists=list(data.get('topArtists', [])),
            genre_breakdown=dict(data.get('genreBreakdown', {})),
            hourly_breakdown=list(data.get('hourlyBreakdown', [0] * 24)),
            skip_count=data.get('skipCount', 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class MonthlyAggregate:
    """
    Rollup of one local calendar month

    topSongs entries are {id, title, artist, plays}; topArtists entries are
    {id, name, minutes}.
    """
    year_month: str
    total_minutes: float = 0.0
    top_songs: List[Dict[str, Any]] = field(default_factory=list)
    top_artists: List[Dict[str, Any]] = field(default_factory=list)
    genre_breakdown: Dict[str, float] = field(default_factory=dict)
    days_active: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MonthlyAggregate':
        return cls(
            year_month=data.get('yearMonth', ''),
            total_minutes=data.get('totalMinutes', 0),
            top_songs=list(data.get('topSongs', [])),
            top_artists=list(data.get('topArtists', [])),
            genre_breakdown=dict(data.get('genreBreakdown', {})),
            days_active=data.get('daysActive', 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class Streak:
    """Consecutive local calendar days with at least one play"""
    last_listen_date: str
    current_streak: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Streak':
        return cls(
            last_listen_date=data.get('lastListenDate', ''),
            current_streak=data.get('currentStreak', 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class ExportBundle:
    """
    Complete document exchanged with Google Drive

    `export_date` is epoch milliseconds; 0 means unknown (for instance a
    document that could not be parsed).
    """
    version: int = EXPORT_VERSION
    export_date: int = 0
    play_records: List[PlayRecord] = field(default_factory=list)
    daily_aggregates: Dict[str, DailyAggregate] = field(default_factory=dict)
    monthly_aggregates: Dict[str, MonthlyAggregate] = field(default_factory=dict)
    streak: Optional[Streak] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExportBundle':
        """
        Build a bundle from decoded JSON, tolerating missing sections

        Args:
            data: Decoded export document

        Returns:
            ExportBundle with empty defaults for absent sections
        """
        streak_data = data.get('streak')
        return cls(
            version=data.get('version', EXPORT_VERSION),
            export_date=data.get('exportDate') or 0,
            play_records=[PlayRecord.from_dict(r) for r in data.get('playRecords') or []],
            daily_aggregates={
                key: DailyAggregate.from_dict(value)
                for key, value in (data.get('dailyAggregates') or {}).items()
            },
            monthly_aggregates={
                key: MonthlyAggregate.from_dict(value)
                for key, value in (data.get('monthlyAggregates') or {}).items()
            },
            streak=Streak.from_dict(streak_data) if isinstance(streak_data, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'exportDate': self.export_date,
            'playRecords': [r.to_dict() for r in self.play_records],
            'dailyAggregates': {k: v.to_dict() for k, v in self.daily_aggregates.items()},
            'monthlyAggregates': {k: v.to_dict() for k, v in self.monthly_aggregates.items()},
            'streak': self.streak.to_dict() if self.streak else None,
        }


# Snapshot entry types


@dataclass
class TopSong:
    id: str
    title: str
    artist: str
    plays: int
    minutes: int
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class TopArtist:
    id: str
    name: str
    plays: int
    minutes: int
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class Anthem:
    id: str
    title: str
    artist: str
    plays: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class PeakDay:
    date: str
    minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class FirstSong:
    title: str
    artist: str
    date: str

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class MonthlyObsession:
    year_month: str
    artist: str
    minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class SkipStat:
    song_id: str
    title: str
    artist: str
    skips: int
    plays: int
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _to_json_dict(self)


@dataclass
class StatsSnapshot:
    """
    Dashboard statistics computed from the full play log

    Produced by stats.engine.compute_snapshot; never persisted.
    """
    total_minutes: int = 0
    total_songs: int = 0
    top_songs: List[TopSong] = field(default_factory=list)
    top_artists: List[TopArtist] = field(default_factory=list)
    anthem: Optional[Anthem] = None
    peak_listening_day: Optional[PeakDay] = None
    listening_clock: List[int] = field(default_factory=lambda: [0] * 24)
    current_streak: int = 0
    first_song_ever: Optional[FirstSong] = None
    first_song_this_year: Optional[FirstSong] = None
    first_song_this_month: Optional[FirstSong] = None
    monthly_obsessions: List[MonthlyObsession] = field(default_factory=list)
    skip_stats: List[SkipStat] = field(default_factory=list)
    skip_rate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = _to_json_dict(self)
        for key in ('topSongs', 'topArtists', 'monthlyObsessions', 'skipStats'):
            result[key] = [entry.to_dict() for entry in result[key]]
        return result
