#!/usr/bin/env python3
"""
Processing history
Append-only logs of processed markets and lineups plus the lineup-to-market mapping
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from .exceptions import ValidationError
from .models import LineupRecord, Market, MarketRecord
from .storage import append_jsonl, atomic_write_json, load_json, read_jsonl

logger = logging.getLogger(__name__)


def parse_mapping(raw: Any, artifact: str) -> Dict[str, List[Market]]:
    """Normalize a lineup_to_market object; values may be one descriptor or a list"""
    if not isinstance(raw, dict):
        raise ValidationError(artifact, "lineup mapping must be a JSON object")

    mapping: Dict[str, List[Market]] = {}
    for lineup_id, value in raw.items():
        descriptors = value if isinstance(value, list) else [value]
        markets = []
        for descriptor in descriptors:
            if not isinstance(descriptor, dict) or not descriptor.get('country') or not descriptor.get('zip'):
                raise ValidationError(artifact, f"invalid market descriptor for lineup {lineup_id}")
            markets.append(Market.create(str(descriptor['country']), str(descriptor['zip'])))
        if markets:
            mapping[lineup_id] = markets
    return mapping


def mapping_to_json(mapping: Dict[str, List[Market]]) -> Dict[str, Dict[str, str]]:
    """Serialize a mapping with the first market of each lineup, sorted by lineup"""
    return {lineup_id: markets[0].to_dict() for lineup_id, markets in sorted(mapping.items()) if markets}


class ProcessingHistory:
    """
    Event log of processed markets and lineups.

    The logs live in the cache directory and are only ever appended to; the
    manifest is derived from them together with the station database.
    """

    def __init__(self, cached_markets: Path, cached_lineups: Path, lineup_to_market: Path):
        self.cached_markets = Path(cached_markets)
        self.cached_lineups = Path(cached_lineups)
        self.lineup_to_market = Path(lineup_to_market)

    @classmethod
    def from_config(cls, config) -> 'ProcessingHistory':
        return cls(config.cached_markets, config.cached_lineups, config.lineup_to_market)

    @classmethod
    def in_directory(cls, directory: Path, suffix: str = "") -> 'ProcessingHistory':
        """History files inside directory, e.g. cached_markets_manual.jsonl for suffix '_manual'"""
        directory = Path(directory)
        return cls(directory / f"cached_markets{suffix}.jsonl",
                   directory / f"cached_lineups{suffix}.jsonl",
                   directory / f"lineup_to_market{suffix}.json")

    # ---------- reading ----------

    def market_records(self, strict: bool = False) -> List[MarketRecord]:
        records = []
        for entry in read_jsonl(self.cached_markets, strict=strict):
            if not entry.get('country') or not entry.get('zip'):
                if strict:
                    raise ValidationError(str(self.cached_markets), f"entry without country/zip: {entry}")
                continue
            records.append(MarketRecord(
                country=str(entry['country']),
                zip=str(entry['zip']),
                timestamp=entry.get('timestamp', ''),
                lineups_found=int(entry.get('lineups_found') or 0),
            ))
        return records

    def lineup_records(self, strict: bool = False) -> List[LineupRecord]:
        records = []
        for entry in read_jsonl(self.cached_lineups, strict=strict):
            if not entry.get('lineup_id'):
                if strict:
                    raise ValidationError(str(self.cached_lineups), f"entry without lineup_id: {entry}")
                continue
            records.append(LineupRecord(
                lineup_id=str(entry['lineup_id']),
                timestamp=entry.get('timestamp', ''),
                stations_found=int(entry.get('stations_found') or 0),
            ))
        return records

    def tracked_markets(self, strict: bool = False) -> Set[Market]:
        return {record.market for record in self.market_records(strict=strict)}

    def tracked_lineups(self, strict: bool = False) -> Set[str]:
        return {record.lineup_id for record in self.lineup_records(strict=strict)}

    def mapping(self, strict: bool = False) -> Dict[str, List[Market]]:
        """
        Load the lineup-to-market mapping.

        A missing file is an empty mapping. An invalid file raises in strict
        mode and is otherwise treated as empty with a warning.
        """
        if not self.lineup_to_market.exists() or self.lineup_to_market.stat().st_size == 0:
            return {}
        try:
            return parse_mapping(load_json(self.lineup_to_market), str(self.lineup_to_market))
        except ValidationError as e:
            if strict:
                raise
            logger.warning(f"Lineup mapping unusable, using empty mapping: {e}")
            return {}

    # ---------- writing ----------

    def record_markets(self, records: Iterable[MarketRecord]) -> int:
        return append_jsonl(self.cached_markets, (r.to_dict() for r in records))

    def record_lineups(self, records: Iterable[LineupRecord]) -> int:
        return append_jsonl(self.cached_lineups, (r.to_dict() for r in records))

    def map_lineups(self, additions: Dict[str, Market]) -> int:
        """Add lineup -> market entries; lineups already mapped keep their market"""
        mapping = self.mapping(strict=True)
        added = 0
        for lineup_id, market in additions.items():
            if lineup_id not in mapping:
                mapping[lineup_id] = [market]
                added += 1
        if added or not self.lineup_to_market.exists():
            atomic_write_json(self.lineup_to_market, mapping_to_json(mapping))
        return added

    def absorb(self, other: 'ProcessingHistory') -> Dict[str, int]:
        """Append another history's logs to this one and merge its mapping"""
        markets = self.record_markets(other.market_records(strict=True))
        lineups = self.record_lineups(other.lineup_records(strict=True))
        mapped = self.map_lineups({lineup_id: market_list[0]
                                   for lineup_id, market_list in other.mapping(strict=True).items()})
        logger.info(f"History merged: {markets} market entries, {lineups} lineup entries, "
                    f"{mapped} new lineup mappings")
        return {'markets': markets, 'lineups': lineups, 'mappings': mapped}

    def describe(self) -> Optional[str]:
        """One-line summary for logs"""
        try:
            return (f"{len(self.tracked_markets())} markets, {len(self.tracked_lineups())} lineups, "
                    f"{len(self.mapping())} lineup mappings")
        except OSError as e:
            logger.debug(f"Could not summarize history: {e}")
            return None
