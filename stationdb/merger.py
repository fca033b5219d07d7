#!/usr/bin/env python3
"""
Station deduplication and merging

Two policies:
    deduplicate_stations  - collapse one raw fetch batch, preferring named records
    merge_station_sets    - combine whole collections, the later collection wins
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .exceptions import ValidationError
from .models import BASE_SOURCE, normalize_station

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Outcome of merging station collections"""
    stations: List[Dict[str, Any]]
    input_count: int
    replaced: int

    @property
    def output_count(self) -> int:
        return len(self.stations)


def validate_station_records(records: Any, label: str = "stations") -> None:
    """Raise ValidationError unless records is a list of station-shaped objects"""
    if not isinstance(records, list):
        raise ValidationError(label, f"expected a JSON array of stations, got {type(records).__name__}")

    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValidationError(label, f"entry {index} is not an object")
        station_id = record.get('stationId')
        if not isinstance(station_id, str) or not station_id.strip():
            raise ValidationError(label, f"entry {index} has no stationId")


def sort_key(record: Dict[str, Any]):
    return (record.get('name') or "", record['stationId'])


def deduplicate_stations(records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Keep one record per stationId from a raw fetch batch.

    The record with the longest name wins; on equal length the first one seen
    is kept. Result is sorted by name.
    """
    records = list(records)
    validate_station_records(records, label="fetched stations")

    best: Dict[str, Dict[str, Any]] = {}
    for record in records:
        station_id = record['stationId']
        current = best.get(station_id)
        if current is None or len(record.get('name') or "") > len(current.get('name') or ""):
            best[station_id] = record

    return sorted(best.values(), key=sort_key)


def standardize_source(record: Dict[str, Any], source: str = BASE_SOURCE) -> Dict[str, Any]:
    """Set the canonical source tag, keeping the previous tag as originalSource"""
    result = dict(record)
    previous = result.get('source')
    if previous and previous != source and 'originalSource' not in result:
        result['originalSource'] = previous
    result['source'] = source
    return result


def merge_station_sets(*collections: Sequence[Dict[str, Any]], source: str = BASE_SOURCE) -> MergeResult:
    """
    Merge station collections into one set without duplicate stationIds.

    When a stationId appears in several collections the record from the
    later-listed collection replaces the earlier one entirely. Every record's
    source is then standardized and the output sorted by (name, stationId).
    """
    if not collections:
        raise ValidationError("stations", "nothing to merge")

    for index, collection in enumerate(collections):
        validate_station_records(collection, label=f"merge input {index + 1}")

    merged: Dict[str, Dict[str, Any]] = {}
    input_count = 0
    replaced = 0
    for collection in collections:
        for record in collection:
            input_count += 1
            record = normalize_station(record)
            if record['stationId'] in merged:
                replaced += 1
            merged[record['stationId']] = record

    stations = sorted((standardize_source(r, source) for r in merged.values()), key=sort_key)
    logger.debug(f"Merged {input_count} records into {len(stations)} stations ({replaced} replaced)")
    return MergeResult(stations=stations, input_count=input_count, replaced=replaced)
