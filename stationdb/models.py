#!/usr/bin/env python3
"""
Data classes shared by the station database builder
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Canonical source tag for records that are part of the base database
BASE_SOURCE = "base"

# Country attributed to records whose country cannot be derived
UNKNOWN_COUNTRY = "UNK"

# Lineup IDs start with a 3-letter country code, e.g. CAN-0005993-X
LINEUP_COUNTRY_RE = re.compile(r'^([A-Z]{3})-')

# Legacy keys written by older tooling -> current keys
LEGACY_KEYS = {
    'lineup_id': 'lineupId',
    'processed_timestamp': 'processedTimestamp',
}


def utc_timestamp() -> str:
    """ISO-8601 timestamp, second precision"""
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def country_from_lineup(lineup_id: Optional[str]) -> Optional[str]:
    """Country code from a lineup ID prefix, None if the ID has no such prefix"""
    if not lineup_id:
        return None
    match = LINEUP_COUNTRY_RE.match(lineup_id)
    return match.group(1) if match else None


def normalize_station(record: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of a station record with legacy keys renamed"""
    result = dict(record)
    for legacy, current in LEGACY_KEYS.items():
        if legacy in result:
            value = result.pop(legacy)
            result.setdefault(current, value)
    return result


def is_blank(value: Any) -> bool:
    """True for values the pipeline treats as absent"""
    return value is None or value == "" or value == {} or value == []


# ============================================
# DATA CLASSES
# ============================================

class FetchOutcome(Enum):
    """Result of processing one market or lineup"""
    SUCCESS = "success"
    EMPTY = "empty"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, order=True)
class Market:
    """Geographic search unit"""
    country: str
    zip: str

    @classmethod
    def create(cls, country: str, zip_code: str) -> 'Market':
        return cls(country=country.strip().upper(), zip=zip_code.strip())

    @property
    def key(self) -> str:
        return f"{self.country}/{self.zip}"

    def to_dict(self) -> Dict[str, str]:
        return {'country': self.country, 'zip': self.zip}


@dataclass
class MarketRecord:
    """One line of the tracked-markets log"""
    country: str
    zip: str
    timestamp: str = field(default_factory=utc_timestamp)
    lineups_found: int = 0

    @property
    def market(self) -> Market:
        return Market.create(self.country, self.zip)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'country': self.country,
            'zip': self.zip,
            'timestamp': self.timestamp,
            'lineups_found': self.lineups_found,
        }


@dataclass
class LineupRecord:
    """One line of the tracked-lineups log"""
    lineup_id: str
    timestamp: str = field(default_factory=utc_timestamp)
    stations_found: int = 0

    @property
    def country(self) -> Optional[str]:
        return country_from_lineup(self.lineup_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lineup_id': self.lineup_id,
            'timestamp': self.timestamp,
            'stations_found': self.stations_found,
        }


@dataclass
class EnhancementStats:
    """Counters from one enhancement pass"""
    candidates: int = 0
    enhanced: int = 0
    not_found: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass
class BatchStats:
    """Counters from one batch of markets or lineups"""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    empty: int = 0
    skipped: int = 0
    planned: int = 0
    lineups_failed: int = 0
    lineups_skipped: int = 0
    stations_raw: int = 0
    stations_unique: int = 0
    stations_added: int = 0
    interrupted: bool = False
    enhancement: EnhancementStats = field(default_factory=EnhancementStats)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def record(self, item: str, outcome: FetchOutcome, reason: Optional[str] = None):
        """Count the outcome of one unit of work"""
        if outcome == FetchOutcome.SKIPPED:
            self.skipped += 1
            return

        self.attempted += 1
        if outcome == FetchOutcome.SUCCESS:
            self.succeeded += 1
        elif outcome == FetchOutcome.EMPTY:
            self.empty += 1
        elif outcome == FetchOutcome.FAILED:
            self.failed += 1
            self.failures.append((item, reason or "unknown error"))
