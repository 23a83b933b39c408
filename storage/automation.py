from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from storage.database import Database


@dataclass
class ExecutionRecord:
    rule_id: int
    owner_id: int
    items_processed: int
    succeeded: bool
    rule_name: str = ''
    error_message: Optional[str] = None
    recorded_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ExecutionRecord':
        return cls(
            rule_id=int(row['rule_id']),
            owner_id=int(row['user_id']),
            items_processed=int(row.get('items_processed') or 0),
            succeeded=bool(row.get('success')),
            rule_name=row.get('rule_name') or '',
            error_message=row.get('error_message'),
            recorded_at=float(row.get('created_at') or 0.0),
        )


class AutomationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def users_with_enabled_rules(self) -> List[Dict[str, Any]]:
        return await self.db.fetch_all(
            """
            SELECT DISTINCT u.id, u.api_key
            FROM users u
            INNER JOIN automation_rules r ON r.user_id = u.id
            WHERE u.is_active = 1 AND r.enabled = 1
            ORDER BY u.id
            """
        )

    async def active_users(self) -> List[Dict[str, Any]]:
        return await self.db.fetch_all(
            """
            SELECT id, api_key FROM users
            WHERE is_active = 1 AND api_key IS NOT NULL AND api_key != ''
            ORDER BY id
            """
        )

    async def enabled_rules(self, user_id: int) -> List[Dict[str, Any]]:
        # Load order is the execution order
        return await self.db.fetch_all(
            """
            SELECT id, user_id, name, enabled, conditions, logic_operator, action_config
            FROM automation_rules
            WHERE user_id = ? AND enabled = 1
            ORDER BY id ASC
            """,
            (user_id,),
        )

    async def record_execution(self, record: ExecutionRecord) -> Optional[int]:
        return await self.db.insert(
            """
            INSERT INTO rule_execution_log
                (rule_id, user_id, rule_name, execution_type, items_processed, success, error_message, created_at)
            VALUES (?, ?, ?, 'execution', ?, ?, ?, ?)
            """,
            (
                record.rule_id,
                record.owner_id,
                record.rule_name,
                record.items_processed,
                1 if record.succeeded else 0,
                record.error_message,
                record.recorded_at,
            ),
        )

    async def recent_executions(
        self,
        user_id: Optional[int] = None,
        rule_id: Optional[int] = None,
        limit: int = 20,
    ) -> List[ExecutionRecord]:
        clauses = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append('user_id = ?')
            params.append(user_id)
        if rule_id is not None:
            clauses.append('rule_id = ?')
            params.append(rule_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        params.append(max(1, int(limit)))
        rows = await self.db.fetch_all(
            f"""
            SELECT rule_id, user_id, rule_name, items_processed, success, error_message, created_at
            FROM rule_execution_log
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        )
        return [ExecutionRecord.from_row(r) for r in rows]
