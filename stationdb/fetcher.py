#!/usr/bin/env python3
"""
Channels DVR API client
Fetches lineups, lineup stations and station details from the TMS-backed endpoints
"""

import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests

from .config import DEFAULT_CHANNELS_URL, DEFAULT_RETRIES, DEFAULT_TIMEOUT
from .exceptions import MalformedResponseError, TransportError, ValidationError

logger = logging.getLogger(__name__)

MAX_BACKOFF = 30


def normalize_postal_code(country: str, postal_code: str) -> str:
    """Normalize postal codes based on country"""
    country = country.upper()
    postal_code = postal_code.strip()

    if country == 'USA':
        digits_only = ''.join(c for c in postal_code if c.isdigit())
        return digits_only[:5] if len(digits_only) >= 5 else digits_only.zfill(5)

    elif country == 'CAN':
        cleaned = postal_code.replace(' ', '').replace('-', '').upper()
        return cleaned[:3]

    elif country == 'GBR':
        cleaned = ' '.join(postal_code.upper().split())
        if ' ' in cleaned:
            return cleaned.split()[0]
        # Without a space the inward code is always the last 3 characters
        if len(cleaned) > 4:
            return cleaned[:-3]
        return cleaned

    return postal_code


def _require(value: Optional[str], name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(name, "must be a non-empty string")
    return value.strip()


class ChannelsAPIFetcher:
    """Fetches data from the Channels DVR API with timeouts and bounded retries"""

    def __init__(self, base_url: str = DEFAULT_CHANNELS_URL, timeout: int = DEFAULT_TIMEOUT,
                 max_retries: int = DEFAULT_RETRIES, backoff: float = 1.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> 'ChannelsAPIFetcher':
        return cls(base_url=config.channels_url, timeout=config.timeout,
                   max_retries=config.max_retries)

    def _sleep_before_retry(self, attempt: int):
        if self.backoff <= 0:
            return
        wait = min(MAX_BACKOFF, self.backoff * 2 ** (attempt - 1)) + random.random() * self.backoff
        time.sleep(wait)

    def _get_json_list(self, path: str, target: str) -> List[Any]:
        """GET a path and return its body as a JSON array"""
        url = f"{self.base_url}{path}"

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.get(url, timeout=self.timeout)
            except requests.RequestException as e:
                if attempt == self.max_retries:
                    raise TransportError(target, f"request failed after {attempt} attempts: {e}")
                logger.warning(f"[{target}] Network error: {e}, retry {attempt}/{self.max_retries}")
                self._sleep_before_retry(attempt)
                continue

            if response.status_code == 200:
                break

            retryable = response.status_code == 429 or 500 <= response.status_code < 600
            if not retryable or attempt == self.max_retries:
                raise TransportError(target, f"HTTP {response.status_code}",
                                     status_code=response.status_code)
            logger.warning(f"[{target}] HTTP {response.status_code}, retry {attempt}/{self.max_retries}")
            self._sleep_before_retry(attempt)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(target, f"response is not JSON: {e}")

        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponseError(target, f"expected a JSON array, got {type(data).__name__}")
        return data

    def check_connection(self) -> bool:
        """Quick reachability check of the server root"""
        try:
            self.session.get(self.base_url, timeout=min(5, self.timeout))
            return True
        except requests.RequestException as e:
            logger.error(f"Cannot connect to Channels DVR at {self.base_url}: {e}")
            return False

    def fetch_market_lineups(self, country: str, postal_code: str) -> List[Dict[str, Any]]:
        """Fetch the lineups available in a market"""
        country = _require(country, "country").upper()
        postal_code = _require(postal_code, "postal_code")
        normalized_postal = normalize_postal_code(country, postal_code)

        target = f"{country}/{postal_code}"
        lineups = self._get_json_list(f"/tms/lineups/{country}/{normalized_postal}", target)

        result = []
        for lineup in lineups:
            if not isinstance(lineup, dict):
                raise MalformedResponseError(target, "lineup entry is not an object")
            if not lineup.get('lineupId'):
                logger.debug(f"[{target}] Ignoring lineup without lineupId")
                continue
            result.append(lineup)
        return result

    def fetch_lineup_stations(self, lineup_id: str) -> List[Dict[str, Any]]:
        """Fetch the stations carried by a lineup; an empty list is a valid answer"""
        lineup_id = _require(lineup_id, "lineup_id")
        stations = self._get_json_list(f"/dvr/guide/stations/{lineup_id}", lineup_id)

        result = []
        for station in stations:
            if not isinstance(station, dict):
                raise MalformedResponseError(lineup_id, "station entry is not an object")
            if not station.get('stationId'):
                logger.debug(f"[{lineup_id}] Ignoring station without stationId")
                continue
            result.append(station)
        return result

    def fetch_station_details(self, station_id: str, call_sign: str) -> Optional[Dict[str, Any]]:
        """Look up a station by call sign and return the entry matching station_id"""
        station_id = _require(station_id, "station_id")
        call_sign = _require(call_sign, "call_sign")

        for station in self._get_json_list(f"/tms/stations/{call_sign}", call_sign):
            if isinstance(station, dict) and station.get('stationId') == station_id:
                return station

        logger.debug(f"No matching station_id {station_id} in results for {call_sign}")
        return None
