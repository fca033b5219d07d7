#!/usr/bin/env python3
"""
Base cache manifest
Derives the coverage summary (markets, lineups, countries, stats) from the
station database and the processing history.

The manifest is always rebuilt from scratch; it is an index over the
database and history, never edited in place.
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import IntegrityError, ManifestExistsError, ValidationError
from .history import ProcessingHistory, mapping_to_json
from .models import UNKNOWN_COUNTRY, Market, country_from_lineup, utc_timestamp
from .storage import (FileLock, atomic_write_json, load_json, load_station_database,
                      read_markets_csv)

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0.0"
MANIFEST_KEYS = ('created', 'base_cache_file', 'manifest_version', 'markets', 'lineups',
                 'countries', 'lineup_to_market', 'stats')

COUNTRY_RULE = (f"Station country is the record's country field, else the 3-letter prefix "
                f"of its lineupId (XXX-...), else {UNKNOWN_COUNTRY}")


def derive_country(record: Dict[str, Any]) -> str:
    """Country attributed to a station record in the manifest"""
    country = record.get('country')
    if isinstance(country, str) and country.strip():
        return country.strip().upper()

    lineup_id = record.get('lineupId') or record.get('lineup_id')
    return country_from_lineup(lineup_id) or UNKNOWN_COUNTRY


def count_countries(stations: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    return dict(Counter(derive_country(record) for record in stations))


def build_manifest(stations: List[Dict[str, Any]], markets: Iterable[Market],
                   lineups: Iterable[str], lineup_to_market: Dict[str, List[Market]],
                   base_cache_file: str, created: Optional[str] = None) -> Dict[str, Any]:
    """Build a complete manifest document"""
    country_counts = count_countries(stations)
    countries = [{'country': country, 'station_count': count}
                 for country, count in sorted(country_counts.items())]
    market_list = [market.to_dict() for market in sorted(set(markets))]
    lineup_list = [{'lineup_id': lineup_id} for lineup_id in sorted(set(lineups))]

    return {
        'created': created or utc_timestamp(),
        'base_cache_file': base_cache_file,
        'manifest_version': MANIFEST_VERSION,
        'description': "Complete base cache manifest with all unique markets and lineups",
        'note': COUNTRY_RULE,
        'markets': market_list,
        'lineups': lineup_list,
        'countries': countries,
        'lineup_to_market': mapping_to_json(lineup_to_market),
        'stats': {
            'total_stations': sum(entry['station_count'] for entry in countries),
            'total_markets': len(market_list),
            'total_lineups': len(lineup_list),
            'countries_covered': [entry['country'] for entry in countries
                                  if entry['country'] != UNKNOWN_COUNTRY],
        },
    }


def verify_manifest(manifest: Dict[str, Any], stations: List[Dict[str, Any]]) -> None:
    """Raise IntegrityError if the manifest disagrees with the station database"""
    problems = []
    stats = manifest.get('stats') or {}

    if stats.get('total_stations') != len(stations):
        problems.append(f"total_stations is {stats.get('total_stations')}, database has {len(stations)}")

    expected = count_countries(stations)
    recorded = {entry.get('country'): entry.get('station_count') for entry in manifest.get('countries', [])}
    if recorded != expected:
        problems.append("per-country station counts do not match the database")

    if stats.get('total_markets') != len(manifest.get('markets', [])):
        problems.append("total_markets does not match the market list")
    if stats.get('total_lineups') != len(manifest.get('lineups', [])):
        problems.append("total_lineups does not match the lineup list")

    covered = sorted(c for c in expected if c != UNKNOWN_COUNTRY)
    if sorted(stats.get('countries_covered', [])) != covered:
        problems.append("countries_covered does not match the database")

    if problems:
        raise IntegrityError(problems)


def load_manifest(path: Path) -> Dict[str, Any]:
    """Read a manifest and check its shape"""
    manifest = load_json(path, artifact=f"manifest {path}")
    if not isinstance(manifest, dict):
        raise ValidationError(str(path), "manifest must be a JSON object")
    missing = [key for key in MANIFEST_KEYS if key not in manifest]
    if missing:
        raise ValidationError(str(path), f"manifest is missing {', '.join(missing)}")
    return manifest


def summary_lines(manifest: Dict[str, Any], path: Optional[Path] = None) -> List[str]:
    """Human readable manifest summary"""
    stats = manifest['stats']
    lines = [
        f"Created: {manifest['created']}",
        f"Base Cache File: {manifest['base_cache_file']}",
        f"Manifest Version: {manifest['manifest_version']}",
        "Statistics:",
        f"  Total Stations: {stats['total_stations']}",
        f"  Total Markets: {stats['total_markets']}",
        f"  Total Lineups: {stats['total_lineups']}",
        f"  Countries: {', '.join(stats['countries_covered'])}",
    ]
    if path is not None:
        lines.append(f"Manifest File: {path}")
    return lines


# ============================================
# MANIFEST BUILDER
# ============================================

class ManifestBuilder:
    """Validates inputs, builds the manifest and writes it atomically"""

    def __init__(self, config):
        self.config = config
        self.history = ProcessingHistory.from_config(config)

    def _require_file(self, path: Path, description: str):
        if not path.exists():
            raise ValidationError(f"{description} {path}", "file not found")
        if path.stat().st_size == 0:
            raise ValidationError(f"{description} {path}", "file is empty")

    def validate_inputs(self) -> Dict[str, Any]:
        """Load every required input, failing on the first missing or malformed one"""
        logger.debug("Validating requirements...")
        self._require_file(self.config.base_stations, "Base cache file")
        self._require_file(self.config.markets_csv, "Markets CSV file")
        self._require_file(self.config.cached_markets, "Cached markets file")
        self._require_file(self.config.cached_lineups, "Cached lineups file")

        stations = load_station_database(self.config.base_stations)
        csv_markets = read_markets_csv(self.config.markets_csv)
        tracked_markets = self.history.tracked_markets(strict=True)
        tracked_lineups = self.history.tracked_lineups(strict=True)
        mapping = self.history.mapping(strict=False)

        logger.info(f"Base cache contains: {len(stations)} stations")
        logger.info(f"Markets CSV contains: {len(csv_markets)} markets")
        logger.info(f"Cached markets: {len(tracked_markets)} unique markets")
        logger.info(f"Cached lineups: {len(tracked_lineups)} unique lineups")
        logger.debug(f"Lineup mappings: {len(mapping)}")

        return {
            'stations': stations,
            'markets': set(csv_markets) | tracked_markets,
            'lineups': tracked_lineups,
            'lineup_to_market': mapping,
        }

    def _assemble(self):
        """Read the inputs and build a verified manifest in memory"""
        inputs = self.validate_inputs()
        manifest = build_manifest(
            stations=inputs['stations'],
            markets=inputs['markets'],
            lineups=inputs['lineups'],
            lineup_to_market=inputs['lineup_to_market'],
            base_cache_file=self.config.base_stations.name,
        )
        verify_manifest(manifest, inputs['stations'])
        return manifest, inputs['stations']

    def _check_existing(self, force: bool, dry_run: bool = False):
        manifest_path = self.config.manifest
        if manifest_path.exists():
            if not force and not dry_run:
                raise ManifestExistsError(str(manifest_path))
            logger.warning(f"Existing manifest will be overwritten: {manifest_path}")

    def build(self, force: bool = False, dry_run: bool = False) -> Dict[str, Any]:
        """
        Build the manifest and write it.

        Inputs are read, and the manifest written, while holding the build lock.

        Args:
            force: overwrite an existing manifest
            dry_run: build in memory only, write nothing

        Returns:
            The manifest document
        """
        if dry_run:
            self._check_existing(force, dry_run=True)
            manifest, _ = self._assemble()
            logger.info(f"DRY RUN: Would create manifest at {self.config.manifest}")
            return manifest

        with FileLock(self.config.lock_path, self.config.lock_stale_seconds):
            self._check_existing(force)
            manifest = self.build_locked()

        logger.info("Manifest created successfully!")
        return manifest

    def build_locked(self) -> Dict[str, Any]:
        """Rebuild and write the manifest; the caller holds the build lock"""
        manifest, stations = self._assemble()
        self.write(manifest, stations)
        return manifest

    def write(self, manifest: Dict[str, Any], stations: List[Dict[str, Any]]) -> None:
        """Write the manifest; the serialized file is verified before it replaces the old one"""
        def check(tmp_path: Path):
            try:
                verify_manifest(load_manifest(tmp_path), stations)
            except (IntegrityError, ValidationError):
                logger.error("Manifest failed verification, previous manifest left in place")
                raise

        atomic_write_json(self.config.manifest, manifest, check=check)

    def summary(self, manifest: Dict[str, Any]) -> List[str]:
        return summary_lines(manifest, self.config.manifest)
