from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional


BYTES_PER_GIB = 1024 ** 3
SECONDS_PER_HOUR = 3600.0


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except Exception:
        return default


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return default


def parse_timestamp(value: Any) -> Optional[float]:
    # Accepts epoch seconds, datetimes, ISO-8601 and SQL "YYYY-MM-DD HH:MM:SS" strings
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def hours_since(value: Any, now: Optional[float] = None) -> Optional[float]:
    ts = parse_timestamp(value)
    if ts is None:
        return None
    now = time.time() if now is None else now
    return (now - ts) / SECONDS_PER_HOUR


def hours_until(value: Any, now: Optional[float] = None) -> Optional[float]:
    ts = parse_timestamp(value)
    if ts is None:
        return None
    now = time.time() if now is None else now
    return (ts - now) / SECONDS_PER_HOUR


def bytes_to_gib(value: Any) -> float:
    return to_float(value) / BYTES_PER_GIB


def get_item_id(item: Dict[str, Any]) -> Optional[str]:
    for key in ('id', 'torrent_id', 'queued_id'):
        val = item.get(key)
        if val is not None and val != '':
            return str(val)
    return None


def truncate_name(name: Any, limit: int = 60) -> str:
    text = str(name or '')
    if len(text) <= limit:
        return text
    return text[: limit - 3] + '...'
