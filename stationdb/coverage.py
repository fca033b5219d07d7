#!/usr/bin/env python3
"""
Coverage checks
Decides whether a market or lineup is already represented and can be skipped
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from .history import ProcessingHistory, parse_mapping
from .models import Market

logger = logging.getLogger(__name__)


class CoverageChecker:
    """Read-only skip-or-process decisions over a manifest (and optionally local history)"""

    def __init__(self, markets: Iterable[Market] = (), lineups: Iterable[str] = (),
                 lineup_to_market: Optional[Dict[str, List[Market]]] = None, force: bool = False):
        self._markets: Set[Market] = set(markets)
        self._lineups: Set[str] = set(lineups)
        self._lineup_to_market = dict(lineup_to_market or {})
        self.force = force

    @classmethod
    def empty(cls, force: bool = False) -> 'CoverageChecker':
        return cls(force=force)

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any], force: bool = False) -> 'CoverageChecker':
        markets = [Market.create(str(m['country']), str(m['zip']))
                   for m in manifest.get('markets', []) if m.get('country') and m.get('zip')]
        lineups = [entry['lineup_id'] for entry in manifest.get('lineups', []) if entry.get('lineup_id')]
        mapping = parse_mapping(manifest.get('lineup_to_market') or {}, "manifest lineup_to_market")
        return cls(markets, lineups, mapping, force=force)

    @classmethod
    def from_sources(cls, manifest: Optional[Dict[str, Any]], history: Optional[ProcessingHistory],
                     force: bool = False) -> 'CoverageChecker':
        """Coverage of the distributed manifest plus the locally tracked history"""
        checker = cls.from_manifest(manifest, force=force) if manifest else cls.empty(force=force)
        if history is not None:
            checker._markets |= history.tracked_markets()
            checker._lineups |= history.tracked_lineups()
            for lineup_id, markets in history.mapping().items():
                checker._lineup_to_market.setdefault(lineup_id, markets)
        logger.debug(f"Coverage: {checker.market_count} markets, {checker.lineup_count} lineups"
                     f"{' (force refresh)' if force else ''}")
        return checker

    @property
    def market_count(self) -> int:
        return len(self._markets)

    @property
    def lineup_count(self) -> int:
        return len(self._lineups)

    def is_market_covered(self, country: str, zip_code: str) -> bool:
        if self.force:
            return False
        return Market.create(country, zip_code) in self._markets

    def is_lineup_covered(self, lineup_id: str) -> bool:
        if self.force:
            return False
        if lineup_id in self._lineups:
            return True
        return any(market in self._markets for market in self._lineup_to_market.get(lineup_id, ()))
