"""
競合解決エンジンのテスト
"""

from datetime import datetime, timedelta, timezone

import pytest

from clinic_calendar_sync.core.models import ExternalEvent, LocalEvent, SyncDirection, SyncMapping
from clinic_calendar_sync.layers.sync_layer.conflict_resolver import (
    ConflictResolver, ConflictStrategy, ConflictType, Winner
)

SYNCED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
START = datetime(2025, 3, 3, 15, 0, tzinfo=timezone.utc)


def _local(title="Intake session", notes=""):
    return LocalEvent(id="appt-1", clinician_id="clin-1", start=START, end=START + timedelta(hours=1),
                      title=title, notes=notes)


def _remote(last_modified, title="Intake session (moved)", start=START):
    return ExternalEvent(external_id="evt-1", start=start, end=start + timedelta(hours=1),
                         title=title, last_modified=last_modified)


def _mapping(updated_at=SYNCED_AT):
    return SyncMapping(local_event_id="appt-1", external_event_id="evt-1", connection_id="conn-1",
                       direction=SyncDirection.OUTBOUND, updated_at=updated_at)


class TestLatestWins:
    """既定戦略: 前回同期以降のリモート更新を優先"""

    def setup_method(self):
        self.resolver = ConflictResolver()

    def test_default_strategy(self):
        assert self.resolver.strategy == ConflictStrategy.LATEST_WINS

    def test_remote_newer_wins(self):
        remote = _remote(SYNCED_AT + timedelta(seconds=1))
        assert self.resolver.resolve(_local(), remote, _mapping()) == Winner.REMOTE

    def test_remote_equal_timestamp_loses(self):
        """更新時刻が同一なら厳密に新しくはないのでLOCAL"""
        assert self.resolver.resolve(_local(), _remote(SYNCED_AT), _mapping()) == Winner.LOCAL

    def test_remote_older_loses(self):
        remote = _remote(SYNCED_AT - timedelta(minutes=5))
        assert self.resolver.resolve(_local(), remote, _mapping()) == Winner.LOCAL

    def test_missing_remote_timestamp_wins(self):
        assert self.resolver.resolve(_local(), _remote(None), _mapping()) == Winner.REMOTE

    def test_missing_mapping_timestamp_lets_remote_win(self):
        remote = _remote(SYNCED_AT - timedelta(days=1))
        assert self.resolver.resolve(_local(), remote, _mapping(updated_at=None)) == Winner.REMOTE

    def test_no_mapping_is_not_a_conflict(self):
        assert self.resolver.resolve(_local(), _remote(SYNCED_AT), None) is None
        assert self.resolver.conflicts_detected == 0

    def test_compares_across_offsets(self):
        """オフセットの異なる時刻も絶対時刻で比較する"""
        remote = _remote(datetime(2025, 3, 1, 6, 0, 1, tzinfo=timezone(timedelta(hours=-6))))
        assert self.resolver.resolve(_local(), remote, _mapping()) == Winner.REMOTE


class TestFixedStrategies:
    """固定戦略"""

    @pytest.mark.parametrize("strategy, expected", [
        ("local_wins", Winner.LOCAL),
        ("remote_wins", Winner.REMOTE),
    ])
    def test_fixed_strategy_ignores_timestamps(self, strategy, expected):
        resolver = ConflictResolver({'strategy': strategy})
        for last_modified in (None, SYNCED_AT - timedelta(days=1), SYNCED_AT + timedelta(days=1)):
            assert resolver.resolve(_local(), _remote(last_modified), _mapping()) == expected

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValueError):
            ConflictResolver({'strategy': 'coin_flip'})


class TestConflictDetails:
    """差分・統計"""

    def test_compare_lists_field_differences(self):
        resolver = ConflictResolver()
        remote = _remote(None, title="Follow-up", start=START + timedelta(minutes=30))

        conflicts = resolver.compare(_local(notes="bring forms"), remote)
        fields = {item.field_name: item.conflict_type for item in conflicts}

        assert fields == {
            'title': ConflictType.TITLE_CONFLICT,
            'start': ConflictType.TIME_CONFLICT,
            'end': ConflictType.TIME_CONFLICT,
            'description': ConflictType.DESCRIPTION_CONFLICT,
        }

    def test_whitespace_only_differences_ignored(self):
        resolver = ConflictResolver()
        remote = _remote(None, title="  Intake session ")
        assert resolver.compare(_local(), remote) == []

    def test_statistics_and_history(self):
        resolver = ConflictResolver(history_size=2)
        resolver.resolve(_local(), _remote(None), _mapping())
        resolver.resolve(_local(), _remote(SYNCED_AT), _mapping())
        resolver.resolve(_local(), _remote(None), _mapping())

        stats = resolver.get_statistics()
        assert stats['conflicts_detected'] == 3
        assert stats['remote_wins'] == 2
        assert stats['local_wins'] == 1
        assert stats['strategy_used'] == "latest_wins"
        assert len(resolver.history) == 2
        assert resolver.history[-1].winner == Winner.REMOTE
