#!/usr/bin/env python3
"""
Configuration for the station database builder
Paths and upstream settings, resolved once at startup and passed to every component
"""

import os
import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Any, Optional

import dotenv

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

# ============================================
# DEFAULTS
# ============================================

DEFAULT_CHANNELS_URL = "http://localhost:8089"
DEFAULT_BASE_STATIONS = "all_stations_base.json"
DEFAULT_MANIFEST = "all_stations_base_manifest.json"
DEFAULT_MARKETS_CSV = "sampled_markets.csv"
DEFAULT_CACHE_DIR = "cache"

DEFAULT_TIMEOUT = 30
DEFAULT_RETRIES = 3
ENHANCEMENT_WORKERS = 10
MAX_WORKERS = 20

# Environment variable -> config field
ENV_VARS = {
    'CHANNELS_URL': 'channels_url',
    'BASE_STATIONS_JSON': 'base_stations',
    'BASE_CACHE_MANIFEST': 'manifest',
    'MARKETS_CSV': 'markets_csv',
    'CACHE_DIR': 'cache_dir',
    'FETCH_TIMEOUT': 'timeout',
    'FETCH_RETRIES': 'max_retries',
    'ENHANCEMENT_WORKERS': 'workers',
}

PATH_FIELDS = ('base_stations', 'manifest', 'markets_csv', 'cache_dir')
INT_FIELDS = ('timeout', 'max_retries', 'workers')


@dataclass(frozen=True)
class BuildConfig:
    """All file locations and upstream settings for one run"""
    base_stations: Path = Path(DEFAULT_BASE_STATIONS)
    manifest: Path = Path(DEFAULT_MANIFEST)
    markets_csv: Path = Path(DEFAULT_MARKETS_CSV)
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    channels_url: str = DEFAULT_CHANNELS_URL
    timeout: int = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_RETRIES
    workers: int = ENHANCEMENT_WORKERS
    lock_stale_seconds: int = 3600

    @property
    def cached_markets(self) -> Path:
        return self.cache_dir / "cached_markets.jsonl"

    @property
    def cached_lineups(self) -> Path:
        return self.cache_dir / "cached_lineups.jsonl"

    @property
    def lineup_to_market(self) -> Path:
        return self.cache_dir / "lineup_to_market.json"

    @property
    def lock_path(self) -> Path:
        return self.cache_dir / ".stationdb.lock"

    def with_overrides(self, **overrides) -> 'BuildConfig':
        """Return a copy with the non-None overrides applied"""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(values))


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw settings values to the field types"""
    known = {f.name for f in fields(BuildConfig)}
    result = {}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown setting: {key}")
            continue
        if key in PATH_FIELDS:
            value = Path(value)
        elif key in INT_FIELDS or key == 'lock_stale_seconds':
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValidationError(key, f"expected an integer, got {value!r}")
        elif key == 'channels_url':
            value = str(value).rstrip('/')
        result[key] = value

    if 'workers' in result:
        result['workers'] = min(max(1, result['workers']), MAX_WORKERS)
    if 'max_retries' in result:
        result['max_retries'] = max(1, result['max_retries'])
    return result


def _load_settings_file(settings_path: Path) -> Dict[str, Any]:
    """Load settings from a JSON file"""
    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            settings = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(str(settings_path), f"invalid JSON: {e}")

    if not isinstance(settings, dict):
        raise ValidationError(str(settings_path), "settings must be a JSON object")

    logger.info(f"Settings loaded from {settings_path}")
    return settings


def _load_from_env() -> Dict[str, Any]:
    """Load settings from environment variables"""
    settings = {}
    for env_name, field_name in ENV_VARS.items():
        value = os.environ.get(env_name)
        if value:
            settings[field_name] = value
    return settings


def load_config(settings_path: Optional[str] = None, **overrides) -> BuildConfig:
    """
    Resolve the run configuration.

    Precedence: defaults < settings file < environment (.env included) < overrides.

    Args:
        settings_path: JSON settings file (default: $STATIONDB_SETTINGS if set)
        overrides: explicit values, usually from the command line

    Returns:
        BuildConfig
    """
    dotenv.load_dotenv()

    settings: Dict[str, Any] = {}

    settings_path = settings_path or os.environ.get('STATIONDB_SETTINGS')
    if settings_path:
        path = Path(settings_path)
        if not path.exists():
            raise ValidationError(str(path), "settings file not found")
        settings.update(_load_settings_file(path))

    settings.update(_load_from_env())
    settings.update({k: v for k, v in overrides.items() if v is not None})

    return BuildConfig(**_coerce(settings))
