"""Test play log data models"""

from musicstats.stats.models import (
    DailyAggregate,
    ExportBundle,
    PlayRecord,
    StatsSnapshot,
    Streak,
    TopSong,
)


class TestPlayRecord:
    """Test PlayRecord JSON conversion"""

    def test_from_dict(self):
        """Test creating a record from camelCase JSON"""
        record = PlayRecord.from_dict({
            'id': 7,
            'songId': 'abc',
            'songTitle': 'Song',
            'artistId': 'art',
            'artistName': 'Artist',
            'timestamp': 1700000000000,
            'durationListened': 120,
            'totalDuration': 200,
            'skipped': True,
            'albumName': 'Album',
        })

        assert record.id == 7
        assert record.song_title == 'Song'
        assert record.duration_listened == 120
        assert record.skipped is True
        assert record.completed is False
        assert record.album_name == 'Album'
        assert record.thumbnail_url is None

    def test_to_dict_omits_unset_optionals(self):
        """Test that None fields are not written"""
        record = PlayRecord('abc', 'Song', 'art', 'Artist', 1000, 60, 100)
        data = record.to_dict()

        assert data['songId'] == 'abc'
        assert data['durationListened'] == 60
        assert 'thumbnailUrl' not in data
        assert 'id' not in data

    def test_identity_ignores_local_id(self):
        """Test that the dedupe key does not depend on the local id"""
        first = PlayRecord('abc', 'Song', 'art', 'Artist', 1000, 60, 100, id=1)
        second = PlayRecord('abc', 'Other title', 'art', 'Artist', 1000, 60, 100, id=9)

        assert first.identity == second.identity

    def test_qualified_threshold(self):
        """Test the 30 second qualified play boundary"""
        assert not PlayRecord('a', 't', 'b', 'n', 0, 29, 100).is_qualified
        assert PlayRecord('a', 't', 'b', 'n', 0, 30, 100).is_qualified


class TestExportBundle:
    """Test the export document model"""

    def test_missing_sections(self):
        """Test that absent sections become empty defaults"""
        bundle = ExportBundle.from_dict({'version': 1})

        assert bundle.export_date == 0
        assert bundle.play_records == []
        assert bundle.daily_aggregates == {}
        assert bundle.streak is None

    def test_to_dict_layout(self):
        """Test the top-level keys of an export"""
        bundle = ExportBundle(
            export_date=123,
            daily_aggregates={'2024-05-01': DailyAggregate(date='2024-05-01', total_minutes=3.5)},
            streak=Streak('2024-05-01', 4),
        )
        data = bundle.to_dict()

        assert data['version'] == 1
        assert data['exportDate'] == 123
        assert data['playRecords'] == []
        assert data['dailyAggregates']['2024-05-01']['totalMinutes'] == 3.5
        assert data['streak'] == {'lastListenDate': '2024-05-01', 'currentStreak': 4}

    def test_null_streak_is_written(self):
        """Test that an absent streak is serialized as null"""
        assert ExportBundle().to_dict()['streak'] is None


class TestStatsSnapshot:
    """Test snapshot serialization"""

    def test_to_dict_camel_case(self):
        snapshot = StatsSnapshot(
            total_minutes=10,
            top_songs=[TopSong(id='a', title='t', artist='n', plays=2, minutes=5)],
        )
        data = snapshot.to_dict()

        assert data['totalMinutes'] == 10
        assert data['topSongs'] == [{'id': 'a', 'title': 't', 'artist': 'n', 'plays': 2, 'minutes': 5}]
        assert data['listeningClock'] == [0] * 24
        assert 'anthem' not in data
