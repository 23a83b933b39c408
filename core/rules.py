from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from core.actions import Action
from core.metrics import DerivedMetrics
from core.states import raw_state
from core.utils import bytes_to_gib, get_item_id, hours_since, hours_until, to_float


class ConditionKind(str, Enum):
    SEEDING_TIME = 'seeding_time'
    STALLED_TIME = 'stalled_time'
    STUCK_PROGRESS = 'stuck_progress'
    SEEDING_RATIO = 'seeding_ratio'
    SEEDS = 'seeds'
    PEERS = 'peers'
    INACTIVE = 'inactive'
    AGE = 'age'
    DOWNLOAD_SPEED = 'download_speed'
    UPLOAD_SPEED = 'upload_speed'
    FILE_SIZE = 'file_size'
    TRACKER = 'tracker'
    PROGRESS = 'progress'
    TOTAL_UPLOADED = 'total_uploaded'
    TOTAL_DOWNLOADED = 'total_downloaded'
    AVAILABILITY = 'availability'
    ETA = 'eta'
    DOWNLOAD_FINISHED = 'download_finished'
    CACHED = 'cached'
    PRIVATE = 'private'
    LONG_TERM_SEEDING = 'long_term_seeding'
    SEED_TORRENT = 'seed_torrent'
    DOWNLOAD_STATE = 'download_state'
    NAME_CONTAINS = 'name_contains'
    FILE_COUNT = 'file_count'
    EXPIRES_AT = 'expires_at'


class Operator(str, Enum):
    GT = 'gt'
    LT = 'lt'
    GTE = 'gte'
    LTE = 'lte'
    EQ = 'eq'


class Combinator(str, Enum):
    AND = 'and'
    OR = 'or'


# Alternate spellings accepted from stored rules
_KIND_ALIASES = {
    'seeding_hours': ConditionKind.SEEDING_TIME,
    'stalled_hours': ConditionKind.STALLED_TIME,
    'ratio': ConditionKind.SEEDING_RATIO,
    'seed_count': ConditionKind.SEEDS,
    'peer_count': ConditionKind.PEERS,
}

_SEEDING_RAW_STATES = ('uploading',)
_STALLED_RAW_STATES = ('uploading (no peers)', 'downloading')

# Item flags that answer directly; a threshold, when given, is the expected value
_FLAG_FIELDS = {
    ConditionKind.CACHED: 'cached',
    ConditionKind.PRIVATE: 'private',
    ConditionKind.LONG_TERM_SEEDING: 'long_term_seeding',
}


def parse_kind(value: Any) -> Union[ConditionKind, str]:
    text = str(value or '').strip().lower()
    if text in _KIND_ALIASES:
        return _KIND_ALIASES[text]
    try:
        return ConditionKind(text)
    except ValueError:
        return text


def parse_operator(value: Any) -> Optional[Operator]:
    try:
        return Operator(str(value or '').strip().lower())
    except ValueError:
        return None


def parse_combinator(value: Any) -> Combinator:
    try:
        return Combinator(str(value or '').strip().lower())
    except ValueError:
        return Combinator.AND


@dataclass
class Condition:
    kind: Union[ConditionKind, str]
    operator: Optional[Operator] = None
    threshold: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Condition':
        if not isinstance(data, dict):
            return cls(kind='')
        kind = data.get('type', data.get('kind'))
        threshold = data.get('value', data.get('threshold'))
        return cls(kind=parse_kind(kind), operator=parse_operator(data.get('operator')), threshold=threshold)


@dataclass
class Rule:
    id: int
    owner_id: int
    name: str = ''
    enabled: bool = True
    conditions: List[Condition] = field(default_factory=list)
    combinator: Combinator = Combinator.AND
    action: Action = field(default_factory=lambda: Action(kind=''))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Rule':
        raw_conditions = _load_json(row.get('conditions'), [])
        if not isinstance(raw_conditions, list):
            raw_conditions = []
        raw_action = _load_json(row.get('action_config'), {})
        return cls(
            id=int(row['id']),
            owner_id=int(row.get('user_id') or 0),
            name=str(row.get('name') or ''),
            enabled=bool(row.get('enabled', True)),
            conditions=[Condition.from_dict(c) for c in raw_conditions],
            combinator=parse_combinator(row.get('logic_operator')),
            action=Action.from_dict(raw_action if isinstance(raw_action, dict) else {}),
        )


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logging.warning(f'Ignoring malformed rule JSON: {str(value)[:80]}')
        return default


def compare_values(value: float, operator: Optional[Operator], threshold: Any) -> bool:
    try:
        target = float(threshold)
    except (TypeError, ValueError):
        return False
    if operator is Operator.GT:
        return value > target
    if operator is Operator.LT:
        return value < target
    if operator is Operator.GTE:
        return value >= target
    if operator is Operator.LTE:
        return value <= target
    if operator is Operator.EQ:
        return value == target
    return False


def _expected_flag(threshold: Any) -> bool:
    if threshold is None:
        return True
    if isinstance(threshold, str):
        return threshold.strip().lower() in ('1', 'true', 'yes')
    return bool(threshold)


def _live_seeding_hours(item: Dict[str, Any], now: float) -> Optional[float]:
    if raw_state(item) in _SEEDING_RAW_STATES and item.get('active'):
        return hours_since(item.get('cached_at') or item.get('created_at'), now)
    return None


def _live_stalled_hours(item: Dict[str, Any], now: float) -> Optional[float]:
    if raw_state(item) in _STALLED_RAW_STATES and item.get('active'):
        return hours_since(item.get('updated_at') or item.get('created_at'), now)
    return None


def _expires_in_hours(item: Dict[str, Any], now: float) -> float:
    hrs = hours_until(item.get('expires_at'), now)
    return -1.0 if hrs is None else hrs


def _age_hours(item: Dict[str, Any], now: float) -> Optional[float]:
    return hours_since(item.get('created_at'), now)


def _file_count(item: Dict[str, Any]) -> float:
    files = item.get('files')
    return float(len(files)) if isinstance(files, list) else 0.0


# Scalar extractors for numeric kinds that only read the live item
_ITEM_SCALARS: Dict[ConditionKind, Callable[[Dict[str, Any], float], Optional[float]]] = {
    ConditionKind.SEEDING_RATIO: lambda it, now: to_float(it.get('ratio')),
    ConditionKind.SEEDS: lambda it, now: to_float(it.get('seeds')),
    ConditionKind.PEERS: lambda it, now: to_float(it.get('peers')),
    ConditionKind.INACTIVE: lambda it, now: 1.0 if raw_state(it) == 'expired' else 0.0,
    ConditionKind.AGE: _age_hours,
    ConditionKind.DOWNLOAD_SPEED: lambda it, now: to_float(it.get('download_speed')),
    ConditionKind.UPLOAD_SPEED: lambda it, now: to_float(it.get('upload_speed')),
    ConditionKind.FILE_SIZE: lambda it, now: bytes_to_gib(it.get('size')),
    ConditionKind.PROGRESS: lambda it, now: to_float(it.get('progress')),
    ConditionKind.TOTAL_UPLOADED: lambda it, now: bytes_to_gib(it.get('total_uploaded')),
    ConditionKind.TOTAL_DOWNLOADED: lambda it, now: bytes_to_gib(it.get('total_downloaded')),
    ConditionKind.AVAILABILITY: lambda it, now: to_float(it.get('availability')),
    ConditionKind.ETA: lambda it, now: to_float(it.get('eta')),
    ConditionKind.FILE_COUNT: lambda it, now: _file_count(it),
    ConditionKind.DOWNLOAD_FINISHED: lambda it, now: 1.0 if it.get('download_finished') else 0.0,
    ConditionKind.SEED_TORRENT: lambda it, now: 1.0 if it.get('seed_torrent') else 0.0,
    ConditionKind.EXPIRES_AT: _expires_in_hours,
}


def _scalar_for(
    kind: ConditionKind,
    item: Dict[str, Any],
    metrics: Optional[DerivedMetrics],
    now: float,
) -> Optional[float]:
    if kind is ConditionKind.SEEDING_TIME:
        if metrics is not None:
            return metrics.seeding_hours
        return _live_seeding_hours(item, now)
    if kind is ConditionKind.STALLED_TIME:
        if metrics is not None:
            return metrics.stalled_hours
        return _live_stalled_hours(item, now)
    extractor = _ITEM_SCALARS.get(kind)
    if extractor is None:
        return None
    return extractor(item, now)


def evaluate_condition(
    condition: Condition,
    item: Dict[str, Any],
    metrics: Optional[DerivedMetrics] = None,
    now: Optional[float] = None,
) -> bool:
    now = time.time() if now is None else now
    kind = condition.kind
    if not isinstance(kind, ConditionKind):
        return False
    try:
        if kind is ConditionKind.STUCK_PROGRESS:
            return bool(metrics.stuck_progress) if metrics is not None else False
        if kind is ConditionKind.TRACKER:
            tracker = item.get('tracker')
            needle = condition.threshold
            return bool(tracker) and needle is not None and str(needle) in str(tracker)
        if kind is ConditionKind.NAME_CONTAINS:
            name = item.get('name')
            needle = condition.threshold
            return bool(name) and needle is not None and str(needle).lower() in str(name).lower()
        if kind is ConditionKind.DOWNLOAD_STATE:
            return raw_state(item) == str(condition.threshold or '')
        if kind in _FLAG_FIELDS:
            flag = bool(item.get(_FLAG_FIELDS[kind]))
            if condition.operator is None:
                return flag == _expected_flag(condition.threshold)
            threshold = condition.threshold
            if threshold is None or isinstance(threshold, (bool, str)):
                threshold = 1.0 if _expected_flag(threshold) else 0.0
            return compare_values(1.0 if flag else 0.0, condition.operator, threshold)

        value = _scalar_for(kind, item, metrics, now)
        if value is None:
            return False
        return compare_values(value, condition.operator, condition.threshold)
    except Exception as e:
        logging.debug(f'Condition {kind} failed for item {get_item_id(item)}: {e}')
        return False


def matches(
    rule: Rule,
    item: Dict[str, Any],
    metrics: Optional[DerivedMetrics] = None,
    now: Optional[float] = None,
) -> bool:
    results = [evaluate_condition(c, item, metrics, now) for c in rule.conditions]
    if rule.combinator is Combinator.OR:
        return any(results)
    # all([]) is True: a rule without conditions matches everything under AND
    return all(results)


def evaluate_rule(
    rule: Rule,
    items: Iterable[Dict[str, Any]],
    metrics_by_item_id: Optional[Dict[str, Optional[DerivedMetrics]]] = None,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    if not rule.enabled:
        return []
    now = time.time() if now is None else now
    metrics_by_item_id = metrics_by_item_id or {}
    out = []
    for item in items:
        metrics = metrics_by_item_id.get(get_item_id(item) or '')
        if metrics is None:
            metrics = metrics_by_item_id.get(item.get('id'))
        if matches(rule, item, metrics, now):
            out.append(item)
    return out
