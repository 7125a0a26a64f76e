"""
Statistics aggregation for the play log

Pure functions only: they read a list of PlayRecord objects and return new
objects, never touching the event store. Because of that they can run on any
thread and are safe to call repeatedly with the same input.

- compute_snapshot: dashboard statistics over the full log
- aggregate_day: daily rollup written by the hourly aggregation tick
- aggregate_month: monthly rollup written by the same tick

Play tallies only count qualified plays (at least 30 seconds heard); minutes
always include every play. Rankings use Python's stable sort so equal entries
keep the order in which they were first encountered in the input.
"""

import re
from datetime import datetime
from typing import Dict, List, Optional

from .models import (
    Anthem,
    DailyAggregate,
    FirstSong,
    MonthlyAggregate,
    MonthlyObsession,
    PeakDay,
    PlayRecord,
    SkipStat,
    StatsSnapshot,
    Streak,
    TopArtist,
    TopSong,
)
from ..utils.helpers import local_date_key, round_half_up, to_local_datetime, year_month_key


SNAPSHOT_TOP_LIMIT = 5
AGGREGATE_TOP_LIMIT = 10
SKIP_STATS_LIMIT = 10

VIDEO_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{11}$')
THUMBNAIL_URL_TEMPLATE = "https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"


def cover_url(song_id: str, image_url: Optional[str] = None) -> Optional[str]:
    """
    Resolve the cover image for a song

    Args:
        song_id: Song id, usually an 11-character video id
        image_url: Explicit thumbnail, if one was recorded

    Returns:
        The explicit URL, a synthesized thumbnail URL for video ids, or None
    """
    if image_url:
        return image_url
    if VIDEO_ID_PATTERN.match(song_id or ''):
        return THUMBNAIL_URL_TEMPLATE.format(video_id=song_id)
    return None


def _first_song(record: Optional[PlayRecord]) -> Optional[FirstSong]:
    if record is None:
        return None
    return FirstSong(
        title=record.song_title,
        artist=record.artist_name,
        date=local_date_key(record.timestamp),
    )


def compute_snapshot(
    records: List[PlayRecord],
    streak: Optional[Streak],
    now: Optional[datetime] = None,
) -> StatsSnapshot:
    """
    Compute dashboard statistics over the full play log

    Args:
        records: Every persisted play record, in store order
        streak: Current streak record, if any
        now: Reference time for "this year" / "this month", defaults to now

    Returns:
        StatsSnapshot instance
    """
    now = now or datetime.now()

    songs: Dict[str, dict] = {}
    artists: Dict[str, dict] = {}
    skips: Dict[str, dict] = {}
    artist_names: Dict[str, str] = {}
    clock = [0.0] * 24
    daily_minutes: Dict[str, float] = {}
    monthly_artists: Dict[str, Dict[str, float]] = {}

    for record in records:
        qualified = 1 if record.is_qualified else 0
        minutes = record.minutes

        song = songs.get(record.song_id)
        if song is None:
            songs[record.song_id] = {
                'title': record.song_title,
                'artist': record.artist_name,
                'plays': qualified,
                'minutes': minutes,
                'image_url': record.thumbnail_url,
            }
        else:
            song['plays'] += qualified
            song['minutes'] += minutes
            if not song['image_url'] and record.thumbnail_url:
                song['image_url'] = record.thumbnail_url

        artist = artists.get(record.artist_id)
        if artist is None:
            artists[record.artist_id] = {
                'name': record.artist_name,
                'plays': qualified,
                'minutes': minutes,
                'image_url': record.artist_image_url,
            }
        else:
            artist['plays'] += qualified
            artist['minutes'] += minutes
            if not artist['image_url'] and record.artist_image_url:
                artist['image_url'] = record.artist_image_url

        artist_names.setdefault(record.artist_id, record.artist_name)

        played_at = to_local_datetime(record.timestamp)
        clock[played_at.hour] += minutes

        day = played_at.strftime('%Y-%m-%d')
        daily_minutes[day] = daily_minutes.get(day, 0.0) + minutes

        month_map = monthly_artists.setdefault(played_at.strftime('%Y-%m'), {})
        month_map[record.artist_id] = month_map.get(record.artist_id, 0.0) + minutes

        skip = skips.get(record.song_id)
        if skip is None:
            skips[record.song_id] = {
                'title': record.song_title,
                'artist': record.artist_name,
                'skips': 1 if record.skipped else 0,
                'plays': qualified,
                'image_url': record.thumbnail_url,
            }
        else:
            skip['plays'] += qualified
            if record.skipped:
                skip['skips'] += 1
            if not skip['image_url'] and record.thumbnail_url:
                skip['image_url'] = record.thumbnail_url

    top_songs = [
        TopSong(
            id=song_id,
            title=data['title'],
            artist=data['artist'],
            plays=data['plays'],
            minutes=round_half_up(data['minutes']),
            image_url=cover_url(song_id, data['image_url']),
        )
        for song_id, data in sorted(songs.items(), key=lambda item: -item[1]['plays'])[:SNAPSHOT_TOP_LIMIT]
    ]

    top_artists = [
        TopArtist(
            id=artist_id,
            name=data['name'],
            plays=data['plays'],
            minutes=round_half_up(data['minutes']),
            image_url=data['image_url'] or None,
        )
        for artist_id, data in sorted(artists.items(), key=lambda item: -item[1]['minutes'])[:SNAPSHOT_TOP_LIMIT]
    ]

    # Strictly greater keeps the first encountered maximum on ties
    peak_day = None
    max_minutes = 0.0
    for day, minutes in daily_minutes.items():
        if minutes > max_minutes:
            max_minutes = minutes
            peak_day = PeakDay(date=day, minutes=round_half_up(minutes))

    monthly_obsessions = []
    for month in sorted(monthly_artists):
        top_artist_id, top_minutes = sorted(
            monthly_artists[month].items(), key=lambda item: -item[1]
        )[0]
        monthly_obsessions.append(MonthlyObsession(
            year_month=month,
            artist=artist_names.get(top_artist_id) or 'Unknown',
            minutes=round_half_up(top_minutes),
        ))

    skip_stats = [
        SkipStat(
            song_id=song_id,
            title=data['title'],
            artist=data['artist'],
            skips=data['skips'],
            plays=data['plays'],
            image_url=data['image_url'] or None,
        )
        for song_id, data in sorted(
            ((k, v) for k, v in skips.items() if v['skips'] > 0),
            key=lambda item: -item[1]['skips'],
        )[:SKIP_STATS_LIMIT]
    ]

    chronological = sorted(records, key=lambda r: r.timestamp)
    first_this_year = next(
        (r for r in chronological if to_local_datetime(r.timestamp).year == now.year), None
    )
    first_this_month = next(
        (
            r for r in chronological
            if year_month_key(r.timestamp) == now.strftime('%Y-%m')
        ),
        None,
    )

    total_skips = sum(1 for r in records if r.skipped)
    skip_rate = round_half_up(total_skips / max(1, len(records)) * 100)

    anthem = None
    if top_songs:
        anthem = Anthem(
            id=top_songs[0].id,
            title=top_songs[0].title,
            artist=top_songs[0].artist,
            plays=top_songs[0].plays,
        )

    return StatsSnapshot(
        total_minutes=round_half_up(sum(r.minutes for r in records)),
        total_songs=sum(1 for r in records if r.is_qualified),
        top_songs=top_songs,
        top_artists=top_artists,
        anthem=anthem,
        peak_listening_day=peak_day,
        listening_clock=[round_half_up(m) for m in clock],
        current_streak=streak.current_streak if streak else 0,
        first_song_ever=_first_song(chronological[0] if chronological else None),
        first_song_this_year=_first_song(first_this_year),
        first_song_this_month=_first_song(first_this_month),
        monthly_obsessions=monthly_obsessions,
        skip_stats=skip_stats,
        skip_rate=max(0, min(100, skip_rate)),
    )


def aggregate_day(records: List[PlayRecord], date: str) -> Optional[DailyAggregate]:
    """
    Build the rollup for one local calendar day

    Args:
        records: Records whose timestamp falls on `date`
        date: Date key (YYYY-MM-DD)

    Returns:
        DailyAggregate, or None when there are no records so the caller
        leaves any existing aggregate untouched
    """
    if not records:
        return None

    song_plays: Dict[str, int] = {}
    artist_plays: Dict[str, int] = {}
    song_titles: Dict[str, str] = {}
    artist_names: Dict[str, str] = {}
    hourly = [0] * 24
    skip_count = 0

    for record in records:
        song_plays[record.song_id] = song_plays.get(record.song_id, 0) + 1
        artist_plays[record.artist_id] = artist_plays.get(record.artist_id, 0) + 1
        song_titles.setdefault(record.song_id, record.song_title)
        artist_names.setdefault(record.artist_id, record.artist_name)
        hourly[to_local_datetime(record.timestamp).hour] += 1
        if record.skipped:
            skip_count += 1

    top_songs = [
        {'id': song_id, 'title': song_titles[song_id], 'plays': plays}
        for song_id, plays in sorted(song_plays.items(), key=lambda item: -item[1])[:AGGREGATE_TOP_LIMIT]
    ]
    top_artists = [
        {'id': artist_id, 'name': artist_names[artist_id], 'plays': plays}
        for artist_id, plays in sorted(artist_plays.items(), key=lambda item: -item[1])[:AGGREGATE_TOP_LIMIT]
    ]

    return DailyAggregate(
        date=date,
        total_minutes=round_half_up(sum(r.minutes for r in records), 1),
        songs_played=len(records),
        unique_songs=len(song_plays),
        unique_artists=len(artist_plays),
        top_songs=top_songs,
        top_artists=top_artists,
        genre_breakdown={},
        hourly_breakdown=hourly,
        skip_count=skip_count,
    )


def aggregate_month(records: List[PlayRecord], year_month: str) -> Optional[MonthlyAggregate]:
    """
    Build the rollup for one local calendar month

    Songs are ranked by qualified plays, artists by minutes listened.

    Args:
        records: Records whose timestamp falls in `year_month`
        year_month: Month key (YYYY-MM)

    Returns:
        MonthlyAggregate, or None when there are no records
    """
    if not records:
        return None

    songs: Dict[str, dict] = {}
    artists: Dict[str, dict] = {}
    days = set()

    for record in records:
        song = songs.setdefault(record.song_id, {
            'title': record.song_title, 'artist': record.artist_name, 'plays': 0,
        })
        if record.is_qualified:
            song['plays'] += 1
        artist = artists.setdefault(record.artist_id, {'name': record.artist_name, 'minutes': 0.0})
        artist['minutes'] += record.minutes
        days.add(local_date_key(record.timestamp))

    top_songs = [
        {'id': song_id, 'title': data['title'], 'artist': data['artist'], 'plays': data['plays']}
        for song_id, data in sorted(songs.items(), key=lambda item: -item[1]['plays'])[:AGGREGATE_TOP_LIMIT]
    ]
    top_artists = [
        {'id': artist_id, 'name': data['name'], 'minutes': round_half_up(data['minutes'])}
        for artist_id, data in sorted(artists.items(), key=lambda item: -item[1]['minutes'])[:AGGREGATE_TOP_LIMIT]
    ]

    return MonthlyAggregate(
        year_month=year_month,
        total_minutes=round_half_up(sum(r.minutes for r in records), 1),
        top_songs=top_songs,
        top_artists=top_artists,
        genre_breakdown={},
        days_active=len(days),
    )
