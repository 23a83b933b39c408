from __future__ import annotations

from typing import Any, Dict


QUEUED = 'queued'
DOWNLOADING = 'downloading'
SEEDING = 'seeding'
STALLED = 'stalled'
COMPLETED = 'completed'
FAILED = 'failed'
EXPIRED = 'expired'

TERMINAL_STATES = frozenset({COMPLETED, FAILED, EXPIRED})

# TorBox download_state -> internal state
_STATE_MAP: Dict[str, str] = {
    'downloading': DOWNLOADING,
    'uploading': SEEDING,
    'uploading (no peers)': STALLED,
    'completed': COMPLETED,
    'failed': FAILED,
    'expired': EXPIRED,
}


def raw_state(item: Dict[str, Any]) -> str:
    try:
        return str(item.get('download_state') or '')
    except Exception:
        return ''


def is_active(item: Dict[str, Any]) -> bool:
    # Queued items come back from the queued endpoint without a download_state
    return bool(raw_state(item))


def classify(item: Dict[str, Any]) -> str:
    state = raw_state(item)
    if not state:
        return QUEUED
    # Unknown values pass through so new remote states are still recorded
    return _STATE_MAP.get(state, state)


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES
