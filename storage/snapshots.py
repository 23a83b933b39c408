from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.states import classify, is_terminal
from core.utils import get_item_id, to_float, to_int
from storage.database import Database


DEFAULT_RETENTION_DAYS = 30
CLEANUP_BATCH_SIZE = 1000
INSERT_CHUNK_SIZE = 100
# Keeps IN (...) lists under SQLite's bound-parameter limit
_ID_CHUNK_SIZE = 500


@dataclass(frozen=True)
class Snapshot:
    owner_id: int
    item_id: str
    state: str
    captured_at: float
    progress: float = 0.0
    download_rate: float = 0.0
    upload_rate: float = 0.0
    seed_count: int = 0
    peer_count: int = 0
    ratio: float = 0.0
    raw_payload: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Snapshot':
        payload = row.get('snapshot_data')
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                payload = None
        return cls(
            owner_id=to_int(row.get('user_id')),
            item_id=str(row.get('torrent_id')),
            state=str(row.get('state') or ''),
            captured_at=to_float(row.get('created_at')),
            progress=to_float(row.get('progress')),
            download_rate=to_float(row.get('download_speed')),
            upload_rate=to_float(row.get('upload_speed')),
            seed_count=to_int(row.get('seeds')),
            peer_count=to_int(row.get('peers')),
            ratio=to_float(row.get('ratio')),
            raw_payload=payload if isinstance(payload, dict) else None,
        )


def should_sample(item: Dict[str, Any], last_snapshot: Optional[Snapshot]) -> bool:
    if last_snapshot is None:
        return True
    state = classify(item)
    if last_snapshot.state != state:
        return True
    # Terminal items are recorded once per transition to bound storage growth
    if is_terminal(state):
        return False
    return True


def build_snapshot(owner_id: int, item: Dict[str, Any], now: Optional[float] = None) -> Snapshot:
    return Snapshot(
        owner_id=owner_id,
        item_id=get_item_id(item) or '',
        state=classify(item),
        captured_at=time.time() if now is None else now,
        progress=to_float(item.get('progress')),
        download_rate=to_float(item.get('download_speed')),
        upload_rate=to_float(item.get('upload_speed')),
        seed_count=to_int(item.get('seeds')),
        peer_count=to_int(item.get('peers')),
        ratio=to_float(item.get('ratio')),
        raw_payload=dict(item),
    )


def _chunks(values: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


class SnapshotStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_history(self, owner_id: int, item_id: Any) -> List[Snapshot]:
        rows = await self.db.fetch_all(
            """
            SELECT user_id, torrent_id, state, progress, download_speed, upload_speed,
                   seeds, peers, ratio, created_at
            FROM torrent_snapshots
            WHERE user_id = ? AND torrent_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (owner_id, str(item_id)),
        )
        return [Snapshot.from_row(r) for r in rows]

    async def latest_for_items(self, owner_id: int, item_ids: Iterable[Any]) -> Dict[str, Snapshot]:
        ids = sorted({str(i) for i in item_ids if i is not None})
        out: Dict[str, Snapshot] = {}
        for chunk in _chunks(ids, _ID_CHUNK_SIZE):
            placeholders = ','.join('?' for _ in chunk)
            rows = await self.db.fetch_all(
                f"""
                SELECT user_id, torrent_id, state, progress, download_speed, upload_speed,
                       seeds, peers, ratio, created_at
                FROM (
                    SELECT *, ROW_NUMBER() OVER (
                        PARTITION BY torrent_id ORDER BY created_at DESC, id DESC
                    ) AS rn
                    FROM torrent_snapshots
                    WHERE user_id = ? AND torrent_id IN ({placeholders})
                )
                WHERE rn = 1
                """,
                (owner_id, *chunk),
            )
            for r in rows:
                snap = Snapshot.from_row(r)
                out[snap.item_id] = snap
        return out

    async def insert_many(self, snapshots: Sequence[Snapshot]) -> int:
        inserted = 0
        for chunk in _chunks(list(snapshots), INSERT_CHUNK_SIZE):
            inserted += await self.db.execute_many(
                """
                INSERT INTO torrent_snapshots
                    (user_id, torrent_id, state, progress, download_speed, upload_speed,
                     seeds, peers, ratio, snapshot_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    (
                        s.owner_id,
                        s.item_id,
                        s.state,
                        s.progress,
                        s.download_rate,
                        s.upload_rate,
                        s.seed_count,
                        s.peer_count,
                        s.ratio,
                        json.dumps(s.raw_payload, default=str) if s.raw_payload is not None else None,
                        s.captured_at,
                    )
                    for s in chunk
                ),
            )
        return inserted

    async def cleanup(
        self,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        batch_size: int = CLEANUP_BATCH_SIZE,
        now: Optional[float] = None,
    ) -> int:
        now = time.time() if now is None else now
        cutoff = now - float(retention_days) * 86400
        batch_size = max(1, int(batch_size))
        deleted = 0
        # Small deletes committed one at a time keep write locks short
        while True:
            count = await self.db.execute(
                """
                DELETE FROM torrent_snapshots
                WHERE id IN (
                    SELECT id FROM torrent_snapshots WHERE created_at < ? LIMIT ?
                )
                """,
                (cutoff, batch_size),
            )
            deleted += max(0, count)
            if count < batch_size:
                break
        logging.info(f'Cleaned up {deleted} snapshot(s) older than {retention_days} day(s)')
        return deleted

    async def count(self, owner_id: Optional[int] = None) -> int:
        if owner_id is None:
            row = await self.db.fetch_one('SELECT COUNT(*) AS n FROM torrent_snapshots')
        else:
            row = await self.db.fetch_one(
                'SELECT COUNT(*) AS n FROM torrent_snapshots WHERE user_id = ?', (owner_id,)
            )
        return int((row or {}).get('n') or 0)
