"""
Unit tests for manifest building and verification.
"""
import json
from collections import Counter
from unittest.mock import patch

import pytest

from stationdb.exceptions import IntegrityError, LockError, ManifestExistsError, ValidationError
from stationdb.manifest import (ManifestBuilder, build_manifest, derive_country, load_manifest,
                                summary_lines, verify_manifest)
from stationdb.models import Market
from stationdb.storage import FileLock, load_station_database, save_station_database


class TestDeriveCountry:
    """Tests for derive_country()."""

    def test_explicit_country_wins(self):
        assert derive_country({"stationId": "1", "country": "usa", "lineupId": "CAN-1-X"}) == "USA"

    def test_prefix_of_lineup_id(self):
        assert derive_country({"stationId": "1", "lineupId": "CAN-0005993-X"}) == "CAN"

    def test_legacy_lineup_key(self):
        assert derive_country({"stationId": "1", "lineup_id": "GBR-0001-X"}) == "GBR"

    def test_sentinel_when_unknown(self):
        assert derive_country({"stationId": "1"}) == "UNK"
        assert derive_country({"stationId": "1", "lineupId": "bogus"}) == "UNK"


class TestBuildManifest:
    """Tests for build_manifest()."""

    def test_total_matches_grouped_database(self, sample_stations):
        stations = sample_stations + [{"stationId": "99"}]
        manifest = build_manifest(stations, [], [], {}, "all_stations_base.json")

        grouped = Counter(derive_country(s) for s in stations)
        assert sum(grouped.values()) == manifest["stats"]["total_stations"] == len(stations)
        assert {c["country"]: c["station_count"] for c in manifest["countries"]} == dict(grouped)

    def test_sentinel_not_in_countries_covered(self):
        manifest = build_manifest([{"stationId": "1"}, {"stationId": "2", "country": "USA"}],
                                  [], [], {}, "base.json")
        assert manifest["stats"]["countries_covered"] == ["USA"]

    def test_markets_and_lineups_sorted_unique(self):
        markets = [Market.create("USA", "10001"), Market.create("CAN", "M5V"), Market.create("usa", "10001")]
        manifest = build_manifest([], markets, ["USA-2", "CAN-1", "USA-2"], {}, "base.json")

        assert manifest["markets"] == [{"country": "CAN", "zip": "M5V"}, {"country": "USA", "zip": "10001"}]
        assert manifest["lineups"] == [{"lineup_id": "CAN-1"}, {"lineup_id": "USA-2"}]
        assert manifest["stats"]["total_markets"] == 2
        assert manifest["stats"]["total_lineups"] == 2

    def test_lineup_mapping_uses_first_market(self):
        mapping = {"USA-1": [Market.create("USA", "10001"), Market.create("USA", "10002")]}
        manifest = build_manifest([], [], [], mapping, "base.json")
        assert manifest["lineup_to_market"] == {"USA-1": {"country": "USA", "zip": "10001"}}

    def test_explicit_created(self):
        manifest = build_manifest([], [], [], {}, "base.json", created="2024-01-01T00:00:00Z")
        assert manifest["created"] == "2024-01-01T00:00:00Z"


class TestVerifyManifest:
    """Tests for verify_manifest()."""

    def test_consistent_manifest_passes(self, sample_stations):
        manifest = build_manifest(sample_stations, [], [], {}, "base.json")
        verify_manifest(manifest, sample_stations)

    def test_total_mismatch_detected(self, sample_stations):
        manifest = build_manifest(sample_stations, [], [], {}, "base.json")
        with pytest.raises(IntegrityError) as exc:
            verify_manifest(manifest, sample_stations[:-1])
        assert any("total_stations" in p for p in exc.value.problems)

    def test_tampered_counts_detected(self, sample_stations):
        manifest = build_manifest(sample_stations, [], [], {}, "base.json")
        manifest["stats"]["total_markets"] = 42
        with pytest.raises(IntegrityError):
            verify_manifest(manifest, sample_stations)


class TestManifestBuilder:
    """Tests for ManifestBuilder."""

    def test_build_writes_manifest(self, populated):
        manifest = ManifestBuilder(populated).build()

        on_disk = json.loads(populated.manifest.read_text(encoding="utf-8"))
        assert on_disk == manifest
        assert manifest["stats"]["total_stations"] == 3
        assert manifest["stats"]["countries_covered"] == ["CAN", "USA"]
        assert manifest["base_cache_file"] == "all_stations_base.json"
        assert not populated.lock_path.exists()

    def test_markets_union_of_csv_and_history(self, populated):
        populated.markets_csv.write_text("Country,ZIP\nGBR,SW1A\n", encoding="utf-8")
        manifest = ManifestBuilder(populated).build()
        keys = {(m["country"], m["zip"]) for m in manifest["markets"]}
        assert keys == {("GBR", "SW1A"), ("USA", "10001"), ("CAN", "M5V")}

    def test_refuses_overwrite_without_force(self, populated):
        populated.manifest.write_text("{}", encoding="utf-8")
        with pytest.raises(ManifestExistsError):
            ManifestBuilder(populated).build()
        assert populated.manifest.read_text(encoding="utf-8") == "{}"

    def test_force_overwrites(self, populated):
        populated.manifest.write_text("{}", encoding="utf-8")
        ManifestBuilder(populated).build(force=True)
        assert load_manifest(populated.manifest)["stats"]["total_stations"] == 3

    def test_dry_run_writes_nothing(self, populated):
        manifest = ManifestBuilder(populated).build(dry_run=True)
        assert manifest["stats"]["total_stations"] == 3
        assert not populated.manifest.exists()

    @pytest.mark.parametrize("attr", ["base_stations", "markets_csv", "cached_markets", "cached_lineups"])
    def test_missing_input_is_named(self, populated, attr):
        path = getattr(populated, attr)
        path.unlink()
        with pytest.raises(ValidationError) as exc:
            ManifestBuilder(populated).build()
        assert str(path) in str(exc.value)
        assert not populated.manifest.exists()

    def test_empty_input_rejected(self, populated):
        populated.cached_lineups.write_text("", encoding="utf-8")
        with pytest.raises(ValidationError):
            ManifestBuilder(populated).build()

    def test_invalid_mapping_degrades_to_empty(self, populated):
        populated.lineup_to_market.write_text("not json", encoding="utf-8")
        manifest = ManifestBuilder(populated).build()
        assert manifest["lineup_to_market"] == {}

    def test_failed_verification_keeps_previous(self, populated, sample_stations):
        populated.manifest.write_text('{"previous": true}', encoding="utf-8")
        builder = ManifestBuilder(populated)
        manifest = build_manifest(sample_stations, [], [], {}, "base.json")
        manifest["stats"]["total_stations"] = 999

        with pytest.raises(IntegrityError):
            builder.write(manifest, sample_stations)
        assert populated.manifest.read_text(encoding="utf-8") == '{"previous": true}'

    def test_failed_verification_leaves_no_file(self, populated, sample_stations):
        manifest = build_manifest(sample_stations, [], [], {}, "base.json")
        manifest["stats"]["total_stations"] = 0

        with pytest.raises(IntegrityError):
            ManifestBuilder(populated).write(manifest, sample_stations)
        assert not populated.manifest.exists()
        assert not list(populated.manifest.parent.glob("*.tmp"))


class TestLoadManifest:
    """Tests for load_manifest() and summary_lines()."""

    def test_missing_keys_rejected(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text('{"created": "now"}', encoding="utf-8")
        with pytest.raises(ValidationError):
            load_manifest(path)

    def test_summary_lines(self, sample_stations):
        manifest = build_manifest(sample_stations, [], [], {}, "base.json")
        lines = summary_lines(manifest, "manifest.json")
        assert "  Total Stations: 3" in lines
        assert "  Countries: CAN, USA" in lines
        assert lines[-1] == "Manifest File: manifest.json"


class TestBuildLocking:
    """The build lock covers reading the inputs through writing the manifest."""

    def test_database_read_under_lock(self, populated):
        held = []

        def load_while_locked(*args, **kwargs):
            held.append(populated.lock_path.exists())
            return load_station_database(*args, **kwargs)

        with patch("stationdb.manifest.load_station_database", side_effect=load_while_locked):
            ManifestBuilder(populated).build()
        assert held == [True]

    def test_concurrent_writer_blocked_mid_build(self, populated):
        blocked = []

        def build_and_race(*args, **kwargs):
            try:
                with FileLock(populated.lock_path):
                    stations = load_station_database(populated.base_stations)
                    save_station_database(populated.base_stations, stations + [{"stationId": "late"}])
            except LockError:
                blocked.append(True)
            return build_manifest(*args, **kwargs)

        with patch("stationdb.manifest.build_manifest", side_effect=build_and_race):
            manifest = ManifestBuilder(populated).build(force=True)

        assert blocked == [True]
        database = load_station_database(populated.base_stations)
        assert manifest["stats"]["total_stations"] == len(database) == 3

    def test_previous_manifest_visible_until_verified(self, populated):
        populated.manifest.write_text('{"previous": true}', encoding="utf-8")
        seen = []

        def verify_and_peek(manifest, stations):
            seen.append(populated.manifest.read_text(encoding="utf-8"))
            return verify_manifest(manifest, stations)

        with patch("stationdb.manifest.verify_manifest", side_effect=verify_and_peek):
            ManifestBuilder(populated).build(force=True)

        assert seen and all(text == '{"previous": true}' for text in seen)
        assert load_manifest(populated.manifest)["stats"]["total_stations"] == 3

    def test_held_lock_refuses_build(self, populated):
        with FileLock(populated.lock_path):
            with pytest.raises(LockError):
                ManifestBuilder(populated).build()
        assert not populated.manifest.exists()
