"""
Unit tests for the processing history logs.
"""
import json

import pytest

from stationdb.exceptions import ValidationError
from stationdb.history import ProcessingHistory, mapping_to_json, parse_mapping
from stationdb.models import LineupRecord, Market, MarketRecord


class TestMapping:
    """Tests for parse_mapping() and mapping_to_json()."""

    def test_single_and_list_values(self):
        mapping = parse_mapping({
            "USA-1": {"country": "usa", "zip": "10001"},
            "USA-2": [{"country": "USA", "zip": "10002"}, {"country": "USA", "zip": "10003"}],
        }, "mapping")
        assert mapping["USA-1"] == [Market("USA", "10001")]
        assert len(mapping["USA-2"]) == 2

    def test_invalid_descriptor(self):
        with pytest.raises(ValidationError):
            parse_mapping({"USA-1": {"country": "USA"}}, "mapping")

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            parse_mapping([], "mapping")

    def test_serialized_sorted_first_market(self):
        data = mapping_to_json({"B": [Market("USA", "2"), Market("USA", "3")], "A": [Market("CAN", "1")]})
        assert list(data) == ["A", "B"]
        assert data["B"] == {"country": "USA", "zip": "2"}


class TestProcessingHistory:
    """Tests for ProcessingHistory."""

    @pytest.fixture
    def history(self, config):
        return ProcessingHistory.from_config(config)

    def test_empty_history(self, history):
        assert history.tracked_markets() == set()
        assert history.tracked_lineups() == set()
        assert history.mapping() == {}

    def test_record_and_read(self, history):
        history.record_markets([MarketRecord("USA", "10001", "2024-01-01T00:00:00Z", 2)])
        history.record_lineups([LineupRecord("USA-1", "2024-01-01T00:00:00Z", 40)])

        assert history.tracked_markets() == {Market("USA", "10001")}
        assert history.tracked_lineups() == {"USA-1"}
        assert history.lineup_records()[0].stations_found == 40

    def test_incomplete_entries(self, history):
        history.cached_markets.parent.mkdir(parents=True)
        history.cached_markets.write_text('{"country": "USA"}\n{"country": "USA", "zip": "1"}\n')
        assert len(history.market_records()) == 1
        with pytest.raises(ValidationError):
            history.market_records(strict=True)

    def test_map_lineups_keeps_existing(self, history):
        assert history.map_lineups({"USA-1": Market("USA", "10001")}) == 1
        assert history.map_lineups({"USA-1": Market("USA", "99999"), "USA-2": Market("USA", "2")}) == 1

        data = json.loads(history.lineup_to_market.read_text())
        assert data["USA-1"] == {"country": "USA", "zip": "10001"}
        assert data["USA-2"] == {"country": "USA", "zip": "2"}

    def test_map_lineups_refuses_invalid_file(self, history):
        history.lineup_to_market.parent.mkdir(parents=True)
        history.lineup_to_market.write_text("not json")
        with pytest.raises(ValidationError):
            history.map_lineups({"USA-1": Market("USA", "1")})
        assert history.lineup_to_market.read_text() == "not json"

    def test_in_directory_suffix(self, tmp_path):
        staged = ProcessingHistory.in_directory(tmp_path, "_manual")
        assert staged.cached_markets == tmp_path / "cached_markets_manual.jsonl"
        assert staged.lineup_to_market == tmp_path / "lineup_to_market_manual.json"

    def test_absorb(self, history, tmp_path):
        history.record_lineups([LineupRecord("USA-1")])
        history.map_lineups({"USA-1": Market("USA", "10001")})

        staged = ProcessingHistory.in_directory(tmp_path / "staged", "_manual")
        staged.record_markets([MarketRecord("CAN", "CAN000", lineups_found=1)])
        staged.record_lineups([LineupRecord("CAN-0005993-X")])
        staged.map_lineups({"CAN-0005993-X": Market("CAN", "CAN000"), "USA-1": Market("USA", "0")})

        counts = history.absorb(staged)

        assert counts == {"markets": 1, "lineups": 1, "mappings": 1}
        assert history.tracked_lineups() == {"USA-1", "CAN-0005993-X"}
        assert history.mapping()["USA-1"] == [Market("USA", "10001")]

    def test_describe(self, history):
        history.record_lineups([LineupRecord("USA-1")])
        assert history.describe() == "0 markets, 1 lineups, 0 lineup mappings"
