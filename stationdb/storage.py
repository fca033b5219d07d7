#!/usr/bin/env python3
"""
File persistence for the station database builder

Every write goes to a temp file in the target directory and is moved into
place with os.replace, so readers only ever see complete files.
"""

import csv
import io
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .exceptions import LockError, ValidationError
from .merger import validate_station_records
from .models import Market, normalize_station

logger = logging.getLogger(__name__)

MARKETS_CSV_HEADER = ["Country", "ZIP"]


# ============================================
# ATOMIC WRITES
# ============================================

def atomic_write_text(target: Path, text: str,
                      check: Optional[Callable[[Path], None]] = None) -> None:
    """
    Write text to target via temp file + rename.

    When check is given it is called with the temp file before the rename;
    if it raises, the temp file is removed and target is left untouched.
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", newline="\n",
                                     dir=str(target.parent), prefix=f".{target.name}.",
                                     suffix=".tmp") as tf:
        tmp_name = tf.name
        try:
            tf.write(text)
            tf.flush()
            os.fsync(tf.fileno())
        except BaseException:
            tf.close()
            os.unlink(tmp_name)
            raise

    tmp_path = Path(tmp_name)
    if check is not None:
        try:
            check(tmp_path)
        except BaseException:
            tmp_path.unlink()
            raise
    tmp_path.replace(target)


def atomic_write_json(target: Path, data: Any,
                      check: Optional[Callable[[Path], None]] = None) -> None:
    """Serialize data as pretty-printed UTF-8 JSON and write it atomically"""
    atomic_write_text(target, json.dumps(data, indent=2, ensure_ascii=False) + "\n", check=check)


# ============================================
# LOCKING
# ============================================

def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM: the process exists but belongs to someone else
        return True
    return True


class FileLock:
    """Exclusive lock file guarding the database and manifest writers"""

    def __init__(self, lock_path: Path, stale_after: int = 3600):
        self.lock_path = Path(lock_path)
        self.stale_after = stale_after
        self._held = False

    def acquire(self):
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if attempt == 0 and self._is_stale():
                    logger.warning(f"Removing stale lock file {self.lock_path}")
                    self.lock_path.unlink()
                    continue
                raise LockError(f"{self.lock_path} is held by another build")
            with os.fdopen(fd, 'w') as f:
                f.write(f"{os.getpid()} {time.time():.0f}\n")
            self._held = True
            return

    def owner_pid(self) -> Optional[int]:
        """PID recorded in the lock file, None if unreadable"""
        try:
            return int(self.lock_path.read_text().split()[0])
        except (OSError, ValueError, IndexError):
            return None

    def _is_stale(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age > self.stale_after:
            return True

        pid = self.owner_pid()
        if pid is not None and pid != os.getpid() and not pid_alive(pid):
            logger.info(f"Lock owner {pid} is no longer running")
            return True
        return False

    def release(self):
        if self._held:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass
            self._held = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


# ============================================
# JSON / JSONL
# ============================================

def load_json(path: Path, artifact: Optional[str] = None) -> Any:
    """Parse a JSON file, raising ValidationError when missing, empty or invalid"""
    path = Path(path)
    artifact = artifact or str(path)
    if not path.exists():
        raise ValidationError(artifact, "file not found")
    if path.stat().st_size == 0:
        raise ValidationError(artifact, "file is empty")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(artifact, f"invalid JSON: {e}")


def read_jsonl(path: Path, strict: bool = False) -> List[Dict[str, Any]]:
    """
    Read a one-object-per-line log.

    Args:
        path: log file
        strict: raise ValidationError on a malformed line instead of skipping it

    Returns:
        List of parsed objects, in file order
    """
    path = Path(path)
    entries = []
    if not path.exists():
        return entries

    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
                if not isinstance(entry, dict):
                    raise ValueError("not a JSON object")
            except ValueError as e:
                if strict:
                    raise ValidationError(str(path), f"line {line_no} is not a JSON object ({e})")
                logger.warning(f"Skipping malformed line {line_no} in {path}: {e}")
                continue
            entries.append(entry)
    return entries


def append_jsonl(path: Path, entries: Iterable[Dict[str, Any]]) -> int:
    """Append objects to a log, one per line; the file is rewritten atomically"""
    path = Path(path)
    lines = [json.dumps(entry, ensure_ascii=False, separators=(',', ':')) for entry in entries]
    if not lines:
        return 0

    existing = path.read_text(encoding='utf-8') if path.exists() else ""
    if existing and not existing.endswith("\n"):
        existing += "\n"
    atomic_write_text(path, existing + "\n".join(lines) + "\n")
    return len(lines)


# ============================================
# MARKETS CSV
# ============================================

def read_markets_csv(path: Path) -> List[Market]:
    """Read a Country,ZIP markets file (header row required)"""
    path = Path(path)
    if not path.exists():
        raise ValidationError(str(path), "markets CSV not found")

    with open(path, 'r', encoding='utf-8', newline='') as f:
        rows = [row for row in csv.reader(f) if row and any(cell.strip() for cell in row)]

    if not rows:
        raise ValidationError(str(path), "markets CSV is empty")

    header = rows[0]
    if len(header) < 2 or header[0].strip().lower() != 'country':
        raise ValidationError(str(path), f"expected header row 'Country,ZIP', got {','.join(header)!r}")

    markets = []
    for line_no, row in enumerate(rows[1:], 2):
        if len(row) < 2 or not row[0].strip() or not row[1].strip():
            logger.warning(f"Skipping incomplete row {line_no} in {path}: {row}")
            continue
        markets.append(Market.create(row[0], row[1]))
    return markets


def write_markets_csv(path: Path, markets: Iterable[Market]) -> None:
    """Write markets with the standard header"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(MARKETS_CSV_HEADER)
    for market in markets:
        writer.writerow([market.country, market.zip])
    atomic_write_text(path, buffer.getvalue())


def merge_markets_csv(path: Path, new_markets: Iterable[Market]) -> int:
    """Append markets not already listed; creates the file if needed. Returns rows added"""
    path = Path(path)
    existing = read_markets_csv(path) if path.exists() else []
    seen = set(existing)
    added = []
    for market in new_markets:
        if market not in seen:
            seen.add(market)
            added.append(market)
    if added or not path.exists():
        write_markets_csv(path, existing + added)
    return len(added)


# ============================================
# STATION DATABASE
# ============================================

def load_station_database(path: Path, required: bool = True) -> List[Dict[str, Any]]:
    """
    Load a station database (a JSON array of station records).

    Args:
        path: database file
        required: when False a missing file yields an empty database

    Returns:
        List of station records with legacy keys normalized
    """
    path = Path(path)
    if not path.exists() and not required:
        return []

    data = load_json(path, artifact=f"station database {path}")
    validate_station_records(data, label=str(path))
    return [normalize_station(record) for record in data]


def save_station_database(path: Path, stations: List[Dict[str, Any]]) -> None:
    """Validate and atomically write a station database"""
    validate_station_records(stations, label=str(path))
    atomic_write_json(path, stations)
    logger.debug(f"Wrote {len(stations)} stations to {path}")
