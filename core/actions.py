from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from core.states import is_active
from core.utils import get_item_id, truncate_name


class ActionKind(str, Enum):
    STOP_SEEDING = 'stop_seeding'
    FORCE_START = 'force_start'
    DELETE = 'delete'
    ARCHIVE = 'archive'


class UnsupportedActionError(Exception):
    pass


@dataclass
class Action:
    kind: Union[ActionKind, str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Action':
        raw = str((data or {}).get('type', (data or {}).get('kind')) or '').strip().lower()
        try:
            return cls(kind=ActionKind(raw))
        except ValueError:
            return cls(kind=raw)


@dataclass
class ActionsDeps:
    event_bus: Any  # expects .log(event, **fields)
    debug_logging: bool
    dry_run: bool


async def delete_item(item: Dict[str, Any], client: Any) -> Dict[str, Any]:
    item_id = get_item_id(item)
    # Queued entries have no download_state and live behind a separate endpoint
    if not is_active(item):
        return await client.control_queued(item_id, 'delete')
    return await client.control_torrent(item_id, 'delete')


async def execute_action(
    action: Action,
    item: Dict[str, Any],
    client: Any,
    deps: Optional[ActionsDeps] = None,
) -> Dict[str, Any]:
    kind = action.kind
    if not isinstance(kind, ActionKind):
        raise UnsupportedActionError(f'Unsupported action: {kind or "<empty>"}')

    item_id = get_item_id(item)
    if deps is not None and deps.dry_run:
        deps.event_bus.log('action_dry_run', action=kind.value, id=item_id, name=item.get('name'))
        return {'dry_run': True}

    if kind is ActionKind.STOP_SEEDING:
        result = await client.control_torrent(item_id, 'stop_seeding')
    elif kind is ActionKind.FORCE_START:
        result = await client.control_queued(item_id, 'force_start')
    elif kind is ActionKind.DELETE:
        result = await delete_item(item, client)
    elif kind is ActionKind.ARCHIVE:
        # Not transactional: a failed delete leaves the archive in place
        await client.control_torrent(item_id, 'archive')
        result = await delete_item(item, client)
    else:
        raise UnsupportedActionError(f'Unsupported action: {kind}')

    if deps is not None and deps.debug_logging:
        logging.info(f'Action {kind.value} applied to id={item_id} name={truncate_name(item.get("name"))}')
    return result
