#!/usr/bin/env python3
"""
Station enhancement
Fills missing station fields (chiefly the display name) from station-detail lookups
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from threading import Event
from typing import Any, Dict, List, Optional, Tuple

from .config import ENHANCEMENT_WORKERS
from .exceptions import FetchError
from .models import EnhancementStats, is_blank

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 500

# Outcomes of a single lookup
ENHANCED = "enhanced"
NOT_FOUND = "not_found"
SKIPPED = "skipped"
ERROR = "error"


def needs_enhancement(record: Dict[str, Any]) -> bool:
    return is_blank(record.get('name'))


def fill_missing_fields(record: Dict[str, Any], details: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of record with absent fields taken from details; present fields never change"""
    result = dict(record)
    for key, value in details.items():
        if is_blank(result.get(key)) and not is_blank(value):
            result[key] = value
    return result


class StationEnhancer:
    """Runs one lookup per nameless station on a bounded worker pool"""

    def __init__(self, fetcher, workers: int = ENHANCEMENT_WORKERS,
                 stop_event: Optional[Event] = None):
        self.fetcher = fetcher
        self.workers = max(1, workers)
        self.stop_event = stop_event or Event()

    def _lookup(self, record: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if self.stop_event.is_set():
            return SKIPPED, record

        call_sign = record.get('callSign')
        if is_blank(call_sign):
            logger.debug(f"No call sign available for station {record['stationId']}")
            return SKIPPED, record

        try:
            details = self.fetcher.fetch_station_details(record['stationId'], call_sign)
        except FetchError as e:
            logger.debug(f"Error enhancing station {record['stationId']}: {e}")
            return ERROR, record

        if not details:
            return NOT_FOUND, record

        enhanced = fill_missing_fields(record, details)
        if needs_enhancement(enhanced):
            return NOT_FOUND, enhanced
        return ENHANCED, enhanced

    def enhance(self, records: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], EnhancementStats]:
        """
        Enhance every record without a name.

        Returns:
            (records in input order, counters)
        """
        stats = EnhancementStats()
        result = list(records)
        pending = [i for i, record in enumerate(records) if needs_enhancement(record)]
        stats.candidates = len(pending)

        if not pending:
            logger.info("All stations already have names, nothing to enhance")
            return result, stats

        logger.info(f"Enhancing {len(pending)} stations with {self.workers} parallel workers...")
        start_time = time.time()

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(self._lookup, records[i]): i for i in pending}

            for completed, future in enumerate(as_completed(futures), 1):
                index = futures[future]
                try:
                    outcome, record = future.result()
                except Exception as e:
                    logger.error(f"Enhancement worker error for {records[index]['stationId']}: {e}")
                    outcome, record = ERROR, records[index]

                result[index] = record
                if outcome == ENHANCED:
                    stats.enhanced += 1
                elif outcome == NOT_FOUND:
                    stats.not_found += 1
                elif outcome == SKIPPED:
                    stats.skipped += 1
                else:
                    stats.errors += 1

                if completed % PROGRESS_EVERY == 0:
                    elapsed = time.time() - start_time
                    rate = completed / elapsed if elapsed > 0 else 0
                    logger.info(f"Enhancement progress: {completed}/{len(pending)} "
                                f"({completed*100/len(pending):.1f}%), Rate: {rate:.1f} stations/sec")

        logger.info(f"Enhanced {stats.enhanced} stations in {(time.time() - start_time)/60:.1f} minutes "
                    f"({stats.errors} API errors, {stats.not_found} not found, {stats.skipped} skipped)")
        return result, stats
