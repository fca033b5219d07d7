"""
Unit tests for shared data classes and helpers.
"""
from stationdb.models import (BatchStats, FetchOutcome, LineupRecord, Market, country_from_lineup,
                              is_blank, normalize_station, utc_timestamp)


class TestHelpers:
    """Tests for module-level helpers."""

    def test_country_from_lineup(self):
        assert country_from_lineup("CAN-0005993-X") == "CAN"
        assert country_from_lineup("can-0005993-X") is None
        assert country_from_lineup("CA-1") is None
        assert country_from_lineup(None) is None

    def test_is_blank(self):
        assert all(is_blank(v) for v in (None, "", {}, []))
        assert not any(is_blank(v) for v in ("x", 0, False))

    def test_normalize_prefers_current_key(self):
        record = normalize_station({"stationId": "1", "lineup_id": "OLD", "lineupId": "NEW"})
        assert record == {"stationId": "1", "lineupId": "NEW"}

    def test_utc_timestamp_format(self):
        assert utc_timestamp().endswith("Z")
        assert "." not in utc_timestamp()


class TestMarket:
    """Tests for Market."""

    def test_create_normalizes(self):
        market = Market.create(" usa ", " 10001 ")
        assert market == Market("USA", "10001")
        assert market.key == "USA/10001"
        assert market.to_dict() == {"country": "USA", "zip": "10001"}

    def test_ordering(self):
        assert sorted([Market("USA", "1"), Market("CAN", "2")])[0].country == "CAN"

    def test_lineup_record_country(self):
        assert LineupRecord("GBR-1-X").country == "GBR"


class TestBatchStats:
    """Tests for BatchStats.record()."""

    def test_counts(self):
        stats = BatchStats()
        stats.record("a", FetchOutcome.SUCCESS)
        stats.record("b", FetchOutcome.EMPTY)
        stats.record("c", FetchOutcome.FAILED, "HTTP 500")
        stats.record("d", FetchOutcome.SKIPPED)

        assert (stats.attempted, stats.succeeded, stats.empty, stats.failed, stats.skipped) == (3, 1, 1, 1, 1)
        assert stats.failures == [("c", "HTTP 500")]

    def test_failure_without_reason(self):
        stats = BatchStats()
        stats.record("x", FetchOutcome.FAILED)
        assert stats.failures == [("x", "unknown error")]
