"""
Pytest configuration and shared fixtures for stationdb tests.
"""
import json
import sys
from pathlib import Path

import pytest

# Add repository root to Python path
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

from stationdb.config import BuildConfig
from stationdb.exceptions import TransportError


@pytest.fixture
def config(tmp_path):
    """BuildConfig with every file inside a temporary directory."""
    return BuildConfig(
        base_stations=tmp_path / "all_stations_base.json",
        manifest=tmp_path / "all_stations_base_manifest.json",
        markets_csv=tmp_path / "sampled_markets.csv",
        cache_dir=tmp_path / "cache",
        channels_url="http://dvr.test:8089",
        timeout=5,
        max_retries=1,
        workers=2,
    )


@pytest.fixture
def sample_stations():
    """Small base database covering two countries."""
    return [
        {"stationId": "10001", "name": "WABC", "callSign": "WABC", "country": "USA",
         "lineupId": "USA-NY31519-X", "source": "base"},
        {"stationId": "10002", "name": "WCBS", "callSign": "WCBS", "country": "USA",
         "lineupId": "USA-NY31519-X", "source": "base"},
        {"stationId": "20001", "name": "CBC Toronto", "callSign": "CBLT",
         "lineupId": "CAN-0005993-X", "source": "base"},
    ]


def write_json(path: Path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def write_jsonl(path: Path, entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e) + "\n" for e in entries), encoding="utf-8")


@pytest.fixture
def populated(config, sample_stations):
    """Base database, markets CSV and history for a complete manifest build."""
    write_json(config.base_stations, sample_stations)
    config.markets_csv.write_text("Country,ZIP\nUSA,10001\nCAN,M5V\n", encoding="utf-8")
    write_jsonl(config.cached_markets, [
        {"country": "USA", "zip": "10001", "timestamp": "2024-01-01T00:00:00Z", "lineups_found": 1},
        {"country": "CAN", "zip": "M5V", "timestamp": "2024-01-01T00:00:00Z", "lineups_found": 1},
    ])
    write_jsonl(config.cached_lineups, [
        {"lineup_id": "USA-NY31519-X", "timestamp": "2024-01-01T00:00:00Z", "stations_found": 2},
        {"lineup_id": "CAN-0005993-X", "timestamp": "2024-01-01T00:00:00Z", "stations_found": 1},
    ])
    write_json(config.lineup_to_market, {
        "USA-NY31519-X": {"country": "USA", "zip": "10001"},
        "CAN-0005993-X": {"country": "CAN", "zip": "M5V"},
    })
    return config


class FakeFetcher:
    """In-memory stand-in for ChannelsAPIFetcher."""

    def __init__(self, market_lineups=None, lineup_stations=None, station_details=None,
                 failing_markets=(), failing_lineups=(), reachable=True):
        self.market_lineups = market_lineups or {}
        self.lineup_stations = lineup_stations or {}
        self.station_details = station_details or {}
        self.failing_markets = set(failing_markets)
        self.failing_lineups = set(failing_lineups)
        self.reachable = reachable
        self.calls = []

    def check_connection(self):
        return self.reachable

    def fetch_market_lineups(self, country, postal_code):
        key = f"{country}/{postal_code}"
        self.calls.append(("market", key))
        if key in self.failing_markets:
            raise TransportError(key, "HTTP 500", status_code=500)
        return [{"lineupId": lineup_id} for lineup_id in self.market_lineups.get(key, [])]

    def fetch_lineup_stations(self, lineup_id):
        self.calls.append(("lineup", lineup_id))
        if lineup_id in self.failing_lineups:
            raise TransportError(lineup_id, "HTTP 503", status_code=503)
        return [dict(s) for s in self.lineup_stations.get(lineup_id, [])]

    def fetch_station_details(self, station_id, call_sign):
        self.calls.append(("station", station_id))
        details = self.station_details.get(station_id)
        return dict(details) if details else None


@pytest.fixture
def fake_fetcher_factory():
    return FakeFetcher
