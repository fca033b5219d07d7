#!/usr/bin/env python3
"""
Station database updater

Runs batches of markets or lineups through the pipeline:

    coverage check -> fetch -> deduplicate -> enhance -> merge into base
    -> record history -> regenerate manifest

Units of work are processed one at a time and can be interrupted between
units. Fetched data is committed only after the batch loop ends, and every
file is replaced atomically under the build lock.
"""

import logging
import os
import re
import signal
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event
from typing import Any, Callable, Dict, Iterable, List, Optional

from .coverage import CoverageChecker
from .enhancer import StationEnhancer
from .exceptions import BatchFailedError, FetchError, TransportError, ValidationError
from .fetcher import ChannelsAPIFetcher
from .history import ProcessingHistory
from .manifest import ManifestBuilder, load_manifest
from .merger import deduplicate_stations, merge_station_sets
from .models import (BatchStats, FetchOutcome, LineupRecord, Market, MarketRecord,
                     country_from_lineup, utc_timestamp)
from .storage import (FileLock, atomic_write_json, atomic_write_text, load_station_database,
                      merge_markets_csv, read_markets_csv, save_station_database,
                      write_markets_csv)

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 100

MARKET_SOURCE = "market"
MANUAL_SOURCE = "manual"

STAGED_STATIONS = "all_stations_manual.json"
STAGED_MARKETS_CSV = "sampled_markets_manual.csv"
STAGED_SUFFIX = "_manual"
STAGED_INSTRUCTIONS = "INTEGRATION_INSTRUCTIONS.txt"


def synthetic_market(lineup_id: str, country: str) -> Market:
    """Stand-in market for a lineup processed by ID rather than by postal code"""
    fake_zip = re.sub(r'[^0-9A-Z]', '', lineup_id)[:6] or "MANUAL"
    return Market(country=country, zip=fake_zip)


def safe_filename(lineup_id: str) -> str:
    return re.sub(r'[^a-zA-Z0-9._-]', '_', lineup_id)


def read_lineup_file(path: Path) -> List[str]:
    """One lineup ID per line; blank lines and # comments are ignored"""
    path = Path(path)
    if not path.exists():
        raise ValidationError(str(path), "lineup file not found")

    lineups = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#'):
                lineups.append(line)

    if not lineups:
        raise ValidationError(str(path), "no valid lineup IDs found in file")
    return lineups


@dataclass
class CollectedData:
    """Everything fetched during a batch, waiting to be committed"""
    stations: List[Dict[str, Any]] = field(default_factory=list)
    market_records: List[MarketRecord] = field(default_factory=list)
    lineup_records: List[LineupRecord] = field(default_factory=list)
    lineup_to_market: Dict[str, Market] = field(default_factory=dict)
    markets: List[Market] = field(default_factory=list)


class StationDatabaseUpdater:
    """Incremental builder for the base station database"""

    def __init__(self, config, fetcher: Optional[ChannelsAPIFetcher] = None,
                 enhancer: Optional[StationEnhancer] = None, stop_event: Optional[Event] = None):
        self.config = config
        self.stop_event = stop_event or Event()
        self.fetcher = fetcher or ChannelsAPIFetcher.from_config(config)
        self.enhancer = enhancer or StationEnhancer(self.fetcher, config.workers, self.stop_event)
        self.history = ProcessingHistory.from_config(config)

    # ---------- lifecycle ----------

    def stop(self):
        """Stop after the unit of work in progress"""
        self.stop_event.set()

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle interrupt signals gracefully"""
        if not self.stop_event.is_set():
            logger.info("Received interrupt signal. Finishing current item, then saving completed work...")
            self.stop_event.set()
        else:
            logger.info("Force quitting...")
            os._exit(130)

    def coverage(self, force_refresh: bool = False) -> CoverageChecker:
        """Coverage from the manifest (when present and readable) plus local history"""
        manifest = None
        if self.config.manifest.exists():
            try:
                manifest = load_manifest(self.config.manifest)
            except ValidationError as e:
                logger.warning(f"Ignoring unreadable manifest: {e}")
        return CoverageChecker.from_sources(manifest, self.history, force=force_refresh)

    def require_server(self):
        """Abort before any fetch when the Channels DVR server cannot be reached"""
        logger.info(f"Checking connection to Channels DVR at {self.config.channels_url}...")
        if not self.fetcher.check_connection():
            raise TransportError(self.config.channels_url, "cannot connect to Channels DVR server")
        logger.info("Connection successful")

    # ---------- markets ----------

    def process_markets(self, markets: Iterable[Market], force_refresh: bool = False,
                        skip_enhancement: bool = False, dry_run: bool = False) -> BatchStats:
        """Fetch every lineup of every uncovered market and merge the stations into the base"""
        markets = list(dict.fromkeys(markets))
        coverage = self.coverage(force_refresh)
        stats = BatchStats()
        collected = CollectedData()
        timestamp = utc_timestamp()
        seen_lineups = set()

        self._log_banner("Market Processing", [
            f"Markets: {len(markets)}",
            f"Force refresh: {force_refresh}",
            f"Server: {self.config.channels_url}",
            f"History: {self.history.describe() or 'unavailable'}",
        ])
        if not dry_run:
            self.require_server()

        for index, market in enumerate(markets, 1):
            if self.stop_event.is_set():
                stats.interrupted = True
                break

            if coverage.is_market_covered(market.country, market.zip):
                logger.debug(f"Skipping {market.key}: already covered")
                stats.record(market.key, FetchOutcome.SKIPPED)
                continue

            if dry_run:
                logger.info(f"DRY RUN: would process market {market.key}")
                stats.planned += 1
                continue

            outcome, reason = self._process_market(market, coverage, seen_lineups, collected, stats, timestamp)
            stats.record(market.key, outcome, reason)

            if index % PROGRESS_EVERY == 0:
                logger.info(f"Progress: {index}/{len(markets)} markets ({stats.succeeded} successful)")

        return self._finish(collected, stats, skip_enhancement, dry_run, "Market Processing Summary")

    def _process_market(self, market: Market, coverage: CoverageChecker, seen_lineups: set,
                        collected: CollectedData, stats: BatchStats, timestamp: str):
        try:
            lineups = self.fetcher.fetch_market_lineups(market.country, market.zip)
        except FetchError as e:
            logger.error(f"Market {market.key} failed: {e}")
            return FetchOutcome.FAILED, str(e)

        collected.market_records.append(MarketRecord(market.country, market.zip, timestamp, len(lineups)))
        collected.markets.append(market)

        if not lineups:
            logger.warning(f"Market {market.key}: no lineups found")
            return FetchOutcome.EMPTY, None

        stations_found = 0
        for lineup in lineups:
            lineup_id = lineup['lineupId']
            collected.lineup_to_market.setdefault(lineup_id, market)

            if lineup_id in seen_lineups or coverage.is_lineup_covered(lineup_id):
                stats.lineups_skipped += 1
                continue
            seen_lineups.add(lineup_id)

            try:
                stations = self.fetcher.fetch_lineup_stations(lineup_id)
            except FetchError as e:
                logger.warning(f"Lineup {lineup_id} ({market.key}) failed: {e}")
                stats.lineups_failed += 1
                continue

            collected.lineup_records.append(LineupRecord(lineup_id, timestamp, len(stations)))
            collected.stations.extend(self._annotate(stations, lineup_id, market.country,
                                                     MARKET_SOURCE, timestamp))
            stations_found += len(stations)

        logger.info(f"Completed {market.key}: {len(lineups)} lineups, {stations_found} stations")
        return FetchOutcome.SUCCESS, None

    # ---------- lineups ----------

    def _collect_lineups(self, lineup_ids: Iterable[str], coverage: CoverageChecker, stats: BatchStats,
                         dry_run: bool, on_lineup: Optional[Callable[[str, List[Dict[str, Any]]], None]] = None
                         ) -> CollectedData:
        collected = CollectedData()
        timestamp = utc_timestamp()
        lineup_ids = list(dict.fromkeys(lineup_ids))

        for index, lineup_id in enumerate(lineup_ids, 1):
            if self.stop_event.is_set():
                stats.interrupted = True
                break

            country = country_from_lineup(lineup_id)
            if country is None:
                logger.error(f"Cannot extract country code from lineup ID: {lineup_id} "
                             f"(expected XXX-... where XXX is a 3-letter country code)")
                stats.record(lineup_id, FetchOutcome.FAILED, "invalid lineup ID format")
                continue

            if coverage.is_lineup_covered(lineup_id):
                logger.debug(f"Skipping {lineup_id}: already covered")
                stats.record(lineup_id, FetchOutcome.SKIPPED)
                continue

            if dry_run:
                logger.info(f"DRY RUN: would process lineup {lineup_id} (Country: {country})")
                stats.planned += 1
                continue

            logger.info(f"[{index}/{len(lineup_ids)}] Processing: {lineup_id} (Country: {country})")
            try:
                stations = self.fetcher.fetch_lineup_stations(lineup_id)
            except FetchError as e:
                logger.error(f"Lineup {lineup_id} failed: {e}")
                stats.record(lineup_id, FetchOutcome.FAILED, str(e))
                continue

            if not stations:
                logger.warning(f"Lineup {lineup_id} exists but contains no stations")
                stats.record(lineup_id, FetchOutcome.EMPTY)
                continue

            annotated = self._annotate(stations, lineup_id, country, MANUAL_SOURCE, timestamp)
            if on_lineup is not None:
                on_lineup(lineup_id, annotated)

            market = synthetic_market(lineup_id, country)
            collected.stations.extend(annotated)
            collected.lineup_records.append(LineupRecord(lineup_id, timestamp, len(stations)))
            collected.market_records.append(MarketRecord(market.country, market.zip, timestamp, 1))
            collected.lineup_to_market[lineup_id] = market
            collected.markets.append(market)
            stats.record(lineup_id, FetchOutcome.SUCCESS)
            logger.info(f"Downloaded {len(stations)} stations from {lineup_id}")

        return collected

    def process_lineups(self, lineup_ids: Iterable[str], force_refresh: bool = False,
                        skip_enhancement: bool = False, dry_run: bool = False) -> BatchStats:
        """Fetch explicit lineups and merge their stations into the base"""
        lineup_ids = list(lineup_ids)
        stats = BatchStats()
        self._log_banner("Lineup Processing", [
            f"Lineups: {len(lineup_ids)}",
            f"Force refresh: {force_refresh}",
            f"Server: {self.config.channels_url}",
            f"History: {self.history.describe() or 'unavailable'}",
        ])
        if not dry_run:
            self.require_server()
        collected = self._collect_lineups(lineup_ids, self.coverage(force_refresh), stats, dry_run)
        return self._finish(collected, stats, skip_enhancement, dry_run, "Lineup Processing Summary")

    def stage_lineups(self, lineup_ids: Iterable[str], output_dir: Path, force_refresh: bool = False,
                      skip_enhancement: bool = False) -> BatchStats:
        """
        Process lineups into a staging directory instead of the base database.

        The directory holds everything needed to integrate the lineups later
        with integrate().
        """
        self.require_server()
        output_dir = Path(output_dir)
        station_dir = output_dir / "stations"
        station_dir.mkdir(parents=True, exist_ok=True)
        stats = BatchStats()

        def write_lineup(lineup_id, stations):
            atomic_write_json(station_dir / f"{safe_filename(lineup_id)}.json", stations)

        collected = self._collect_lineups(lineup_ids, self.coverage(force_refresh), stats,
                                          dry_run=False, on_lineup=write_lineup)
        self._check_successes(stats)
        if stats.succeeded == 0:
            self.log_summary(stats, "Lineup Staging Summary")
            return stats

        stations = self._prepare_stations(collected, stats, skip_enhancement)

        staged = ProcessingHistory.in_directory(output_dir, STAGED_SUFFIX)
        atomic_write_json(output_dir / STAGED_STATIONS, stations)
        write_markets_csv(output_dir / STAGED_MARKETS_CSV, collected.markets)
        atomic_write_text(staged.cached_markets, "")
        atomic_write_text(staged.cached_lineups, "")
        staged.record_markets(collected.market_records)
        staged.record_lineups(collected.lineup_records)
        atomic_write_json(staged.lineup_to_market,
                          {lineup_id: market.to_dict() for lineup_id, market in collected.lineup_to_market.items()})
        atomic_write_text(output_dir / STAGED_INSTRUCTIONS, self._instructions(collected, stats, output_dir))

        logger.info(f"Staged {len(stations)} stations in {output_dir}")
        self.log_summary(stats, "Lineup Staging Summary")
        return stats

    # ---------- commit ----------

    def _annotate(self, stations: List[Dict[str, Any]], lineup_id: str, country: str,
                  source: str, timestamp: str) -> List[Dict[str, Any]]:
        return [dict(station, lineupId=lineup_id, source=source, country=country,
                     processedTimestamp=timestamp) for station in stations]

    def _prepare_stations(self, collected: CollectedData, stats: BatchStats,
                          skip_enhancement: bool) -> List[Dict[str, Any]]:
        stats.stations_raw = len(collected.stations)
        stations = deduplicate_stations(collected.stations)
        stats.stations_unique = len(stations)
        logger.info(f"Raw stations: {stats.stations_raw}, unique: {stats.stations_unique}, "
                    f"duplicates removed: {stats.stations_raw - stats.stations_unique}")

        if skip_enhancement:
            logger.info("Skipping enhancement phase as requested")
        elif stats.interrupted:
            logger.info("Skipping enhancement phase after interrupt")
        else:
            stations, stats.enhancement = self.enhancer.enhance(stations)
        return stations

    def _check_successes(self, stats: BatchStats):
        if stats.attempted > 0 and stats.succeeded == 0 and not stats.interrupted:
            self.log_summary(stats, "Batch Summary")
            raise BatchFailedError(stats)

    def _finish(self, collected: CollectedData, stats: BatchStats, skip_enhancement: bool,
                dry_run: bool, title: str) -> BatchStats:
        if dry_run:
            logger.info(f"DRY RUN: {stats.planned} items would be processed, {stats.skipped} already covered")
            return stats

        self._check_successes(stats)

        if not collected.market_records and not collected.lineup_records:
            logger.info("Nothing new to commit")
            self.log_summary(stats, title)
            return stats

        stations = self._prepare_stations(collected, stats, skip_enhancement)
        self.commit(collected, stations, stats)
        self.log_summary(stats, title)
        return stats

    def commit(self, collected: CollectedData, stations: List[Dict[str, Any]], stats: BatchStats):
        """
        Merge stations into the base, append the processing history and
        regenerate the manifest, all under one hold of the build lock.
        """
        with FileLock(self.config.lock_path, self.config.lock_stale_seconds):
            base = load_station_database(self.config.base_stations, required=False)
            result = merge_station_sets(base, stations)
            save_station_database(self.config.base_stations, result.stations)
            stats.stations_added = result.output_count - len(base)

            self.history.record_markets(collected.market_records)
            self.history.record_lineups(collected.lineup_records)
            self.history.map_lineups(collected.lineup_to_market)
            merge_markets_csv(self.config.markets_csv, collected.markets)

            logger.info(f"Base database now has {result.output_count} stations "
                        f"({stats.stations_added} added, {result.replaced} updated)")
            self._refresh_manifest()

    def _refresh_manifest(self) -> Optional[Dict[str, Any]]:
        """Rebuild the manifest when all of its inputs exist; the caller holds the build lock"""
        required = [self.config.base_stations, self.config.markets_csv,
                    self.config.cached_markets, self.config.cached_lineups]
        missing = [str(p) for p in required if not p.exists() or p.stat().st_size == 0]
        if missing:
            logger.warning(f"Manifest not regenerated, missing inputs: {', '.join(missing)}")
            return None

        builder = ManifestBuilder(self.config)
        manifest = builder.build_locked()
        for line in builder.summary(manifest):
            logger.info(line)
        return manifest

    # ---------- integration ----------

    def integrate(self, output_dir: Path) -> Dict[str, int]:
        """Merge a staging directory produced by stage_lineups() into the base"""
        output_dir = Path(output_dir)
        staged_stations = load_station_database(output_dir / STAGED_STATIONS)
        staged_history = ProcessingHistory.in_directory(output_dir, STAGED_SUFFIX)
        staged_csv = output_dir / STAGED_MARKETS_CSV
        staged_markets = read_markets_csv(staged_csv) if staged_csv.exists() else []

        with FileLock(self.config.lock_path, self.config.lock_stale_seconds):
            base = load_station_database(self.config.base_stations, required=False)
            result = merge_station_sets(base, staged_stations)
            save_station_database(self.config.base_stations, result.stations)
            history_counts = self.history.absorb(staged_history)
            markets_added = merge_markets_csv(self.config.markets_csv, staged_markets)
            logger.info(f"Integrated {output_dir}: {len(base)} -> {result.output_count} stations, "
                        f"{markets_added} markets added to {self.config.markets_csv}")
            self._refresh_manifest()

        summary = {
            'stations_before': len(base),
            'stations_after': result.output_count,
            'stations_replaced': result.replaced,
            'markets_added': markets_added,
        }
        summary.update(history_counts)
        return summary

    # ---------- reporting ----------

    def _log_banner(self, title: str, lines: List[str]):
        logger.info("=" * 60)
        logger.info(title)
        for line in lines:
            logger.info(line)
        logger.info("=" * 60)

    def log_summary(self, stats: BatchStats, title: str):
        lines = [
            f"Successful: {stats.succeeded}",
            f"Failed: {stats.failed}",
            f"Empty: {stats.empty}",
            f"Skipped (already covered): {stats.skipped}",
        ]
        if stats.lineups_failed or stats.lineups_skipped:
            lines.append(f"Lineups failed: {stats.lineups_failed}, skipped: {stats.lineups_skipped}")
        lines.extend([
            f"Stations (raw/unique/added): {stats.stations_raw}/{stats.stations_unique}/{stats.stations_added}",
            f"Enhanced from API: {stats.enhancement.enhanced}",
        ])
        if stats.enhancement.errors:
            lines.append(f"API errors (non-fatal): {stats.enhancement.errors}")
        if stats.interrupted:
            lines.append("Interrupted by user: remaining items were not processed")
        for item, reason in stats.failures:
            lines.append(f"  {item}: {reason}")
        self._log_banner(title, lines)

    def _instructions(self, collected: CollectedData, stats: BatchStats, output_dir: Path) -> str:
        countries: Dict[str, int] = {}
        for market in collected.markets:
            countries[market.country] = countries.get(market.country, 0) + 1

        lines = [
            "Manual Lineup Processing Results",
            f"Generated: {utc_timestamp()}",
            "",
            "=== SUMMARY ===",
            f"Successful lineups: {stats.succeeded}",
            f"Failed lineups: {stats.failed}",
            f"Empty lineups: {stats.empty}",
            f"Total stations (raw): {stats.stations_raw}",
            f"Final stations (deduplicated): {stats.stations_unique}",
            f"Duplicates removed: {stats.stations_raw - stats.stations_unique}",
            f"Enhanced from API: {stats.enhancement.enhanced}",
            f"API errors (non-fatal): {stats.enhancement.errors}",
            "",
            "=== COUNTRIES (from lineup ID prefixes) ===",
        ]
        lines.extend(f"{country}: {count} lineups" for country, count in sorted(countries.items()))
        lines.extend([
            "",
            "=== FILES ===",
            f"{STAGED_STATIONS} - stations ready for base cache merge",
            f"{STAGED_MARKETS_CSV} - markets CSV",
            f"cached_markets{STAGED_SUFFIX}.jsonl - market processing state",
            f"cached_lineups{STAGED_SUFFIX}.jsonl - lineup processing state",
            f"lineup_to_market{STAGED_SUFFIX}.json - lineup-to-market mapping",
            "stations/ - individual lineup station files",
            "",
            "=== INTEGRATION ===",
            f"stationdb integrate {output_dir}",
            "",
            "=== LINEUP IDs PROCESSED ===",
        ])
        lines.extend(f"{record.lineup_id} ({record.stations_found} stations, Country: {record.country})"
                     for record in collected.lineup_records)
        return "\n".join(lines) + "\n"


def merge_station_files(inputs: List[Path], output: Path, source: str, lock_path: Path) -> Dict[str, int]:
    """Merge station database files; later files win on duplicate stationIds"""
    if len(inputs) < 1:
        raise ValidationError("merge", "at least one input file is required")

    with FileLock(lock_path):
        collections = [load_station_database(path) for path in inputs]
        result = merge_station_sets(*collections, source=source)
        save_station_database(output, result.stations)

    logger.info(f"Merged {result.input_count} records from {len(inputs)} files into "
                f"{result.output_count} stations ({result.replaced} duplicates replaced) -> {output}")
    return {'input': result.input_count, 'output': result.output_count, 'replaced': result.replaced}


