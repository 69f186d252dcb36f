from datetime import datetime, timedelta, timezone

import pytest

from statcrawl.crawling.domain.priority import Tier, classify, is_due, select_stale
from statcrawl.crawling.domain.stale_entity import StaleEntity, TaskKind

NOW = datetime(2026, 7, 31, 12, 0, tzinfo=timezone.utc)


class TestClassify:
    def test_not_ended_is_active(self):
        assert classify(False, NOW - timedelta(days=400), NOW) is Tier.ACTIVE

    def test_ended_without_marker_is_active(self):
        assert classify(True, None, NOW) is Tier.ACTIVE

    @pytest.mark.parametrize(
        "end_marker, expected",
        [
            (datetime(2026, 6, 30, 12, 0, 1, tzinfo=timezone.utc), Tier.RECENT),
            (datetime(2026, 6, 30, 12, 0, tzinfo=timezone.utc), Tier.MEDIUM),
            (datetime(2026, 1, 31, 12, 0, 1, tzinfo=timezone.utc), Tier.MEDIUM),
            (datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc), Tier.OLD),
            (datetime(2025, 7, 31, 12, 0, 1, tzinfo=timezone.utc), Tier.OLD),
            (datetime(2025, 7, 31, 12, 0, tzinfo=timezone.utc), Tier.ARCHIVE),
            (datetime(2020, 1, 1, tzinfo=timezone.utc), Tier.ARCHIVE),
        ],
    )
    def test_boundaries(self, end_marker, expected):
        # 31 July minus one calendar month clamps to 30 June
        assert classify(True, end_marker, NOW) is expected

    def test_deterministic(self):
        marker = NOW - timedelta(days=90)
        assert {classify(True, marker, NOW) for _ in range(100)} == {Tier.MEDIUM}


class TestIntervals:
    @pytest.mark.parametrize(
        "tier, interval, rank",
        [
            (Tier.ACTIVE, timedelta(hours=4), 1),
            (Tier.RECENT, timedelta(days=1), 2),
            (Tier.MEDIUM, timedelta(days=14), 3),
            (Tier.OLD, timedelta(days=30), 4),
            (Tier.ARCHIVE, timedelta(days=180), 5),
        ],
    )
    def test_table(self, tier, interval, rank):
        assert tier.rescan_interval == interval
        assert tier.rank == rank

    def test_never_processed_is_due(self):
        assert is_due(Tier.ARCHIVE, None, NOW)

    def test_due_only_after_interval(self):
        assert not is_due(Tier.ACTIVE, NOW - timedelta(hours=4), NOW)
        assert is_due(Tier.ACTIVE, NOW - timedelta(hours=4, seconds=1), NOW)


def _entity(id, *, ended=True, end=None, players=None):
    return StaleEntity(
        id=id, source="junior", is_ended=ended, end_date=end, last_players_parsed_at=players
    )


class TestSelectStale:
    def _select(self, entities, limit=None):
        kind = TaskKind.PLAYERS
        return [
            e.id
            for e in select_stale(
                entities,
                now=NOW,
                ended_of=lambda e: e.is_ended,
                end_marker_of=lambda e: e.end_date,
                last_processed_of=lambda e: e.last_processed_at(kind),
                limit=limit,
            )
        ]

    def test_orders_by_tier_then_nulls_first_then_oldest(self):
        entities = [
            _entity("archive-never", end=NOW - timedelta(days=800)),
            _entity("active-old", ended=False, players=NOW - timedelta(hours=10)),
            _entity("active-never", ended=False),
            _entity("active-older", ended=False, players=NOW - timedelta(hours=20)),
            _entity("recent-stale", end=NOW - timedelta(days=3), players=NOW - timedelta(days=2)),
            _entity("recent-fresh", end=NOW - timedelta(days=3), players=NOW - timedelta(hours=2)),
            _entity("medium-never", end=NOW - timedelta(days=90)),
        ]

        assert self._select(entities) == [
            "active-never",
            "active-older",
            "active-old",
            "recent-stale",
            "medium-never",
            "archive-never",
        ]

    def test_cap_truncates_lower_priority(self):
        entities = [
            _entity("archive", end=NOW - timedelta(days=800)),
            _entity("active", ended=False),
            _entity("old", end=NOW - timedelta(days=250)),
        ]

        assert self._select(entities, limit=2) == ["active", "old"]


class TestStaleEntity:
    def test_task_kind_columns(self):
        assert TaskKind.PLAYERS.column == "last_players_parsed_at"
        assert TaskKind.STATS.column == "last_stats_parsed_at"

    def test_due_per_kind(self):
        entity = StaleEntity(
            id="t1",
            source="junior",
            is_ended=False,
            last_players_parsed_at=NOW - timedelta(hours=1),
            last_stats_parsed_at=None,
        )

        assert entity.tier(NOW) is Tier.ACTIVE
        assert not entity.is_due(TaskKind.PLAYERS, NOW)
        assert entity.is_due(TaskKind.STATS, NOW)
