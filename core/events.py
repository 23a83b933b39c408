from __future__ import annotations

import json
from typing import Any, Dict, Optional


class EventBus:
    def __init__(
        self,
        *,
        structured_logs: bool,
        dry_run: bool,
        debug_logging: bool,
        logger,
    ) -> None:
        self.structured_logs = structured_logs
        self.dry_run = dry_run
        self.debug_logging = debug_logging
        self.logger = logger

    def log(self, event: str, **fields) -> None:
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))
            else:
                self.logger.info(f"{event}: {fields}")
        except Exception:
            self.logger.info(str(payload))

    def emit(
        self,
        event: str,
        *,
        user_id: Optional[int] = None,
        rule: Optional[Any] = None,
        item: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        **fields,
    ) -> None:
        # Compose common fields if present
        if user_id is not None:
            fields.setdefault('user_id', user_id)
        if rule is not None:
            fields.setdefault('rule_id', getattr(rule, 'id', None))
            fields.setdefault('rule', getattr(rule, 'name', None))
        if item is not None:
            fields.setdefault('id', item.get('id'))
            fields.setdefault('name', item.get('name'))
        if error is not None:
            fields.setdefault('error', str(error) or error.__class__.__name__)
        if self.dry_run:
            fields.setdefault('dry_run', True)
        self.log(event, **fields)
