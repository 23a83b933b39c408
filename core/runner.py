from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from core.actions import ActionsDeps, execute_action
from core.metrics import DerivedMetrics, reconstruct
from core.rules import Rule, evaluate_rule
from core.utils import get_item_id, truncate_name
from storage.automation import ExecutionRecord
from storage.snapshots import DEFAULT_RETENTION_DAYS, build_snapshot, should_sample


def passthrough_decrypt(api_key: str) -> str:
    return api_key


@dataclass
class RunnerDeps:
    # storage
    automation_store: Any
    snapshot_store: Any

    # api_key -> client exposing get_torrents/get_queued/control_torrent/control_queued
    client_factory: Callable[[str], Any]

    # logging/actions
    event_bus: Any
    actions: ActionsDeps

    decrypt_api_key: Callable[[str], Union[str, Awaitable[str]]] = passthrough_decrypt
    batch_size: int = 5
    metrics_concurrency: int = 10
    retention_days: float = DEFAULT_RETENTION_DAYS
    automation_interval_seconds: float = 300
    cleanup_interval_hours: float = 24
    clock: Callable[[], float] = time.time


@dataclass
class PassMetrics:
    users: int = 0
    users_failed: int = 0
    rules_executed: int = 0
    rules_failed: int = 0
    items_matched: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    snapshots_created: int = 0
    snapshots_deleted: int = 0

    def merge(self, other: 'PassMetrics') -> 'PassMetrics':
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        return self

    def as_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _batches(values: Sequence[Any], size: int) -> List[Sequence[Any]]:
    size = max(1, int(size))
    return [values[i:i + size] for i in range(0, len(values), size)]


async def resolve_client(user: Dict[str, Any], deps: RunnerDeps) -> Any:
    ciphertext = user.get('api_key')
    if not ciphertext:
        raise ValueError(f"User {user.get('id')} has no API key")
    api_key = deps.decrypt_api_key(ciphertext)
    if inspect.isawaitable(api_key):
        api_key = await api_key
    return deps.client_factory(api_key)


async def fetch_items(client: Any) -> List[Dict[str, Any]]:
    # Let both listings settle before surfacing a failure
    results = await asyncio.gather(client.get_torrents(), client.get_queued(), return_exceptions=True)
    for r in results:
        if isinstance(r, BaseException):
            raise r
    torrents, queued = results
    return [*(torrents or []), *(queued or [])]


async def load_metrics(
    owner_id: int,
    items: Sequence[Dict[str, Any]],
    deps: RunnerDeps,
    now: Optional[float] = None,
) -> Dict[str, Optional[DerivedMetrics]]:
    """Reconstruct metrics for each item from its snapshot history.

    Items without history map to ``None`` so rule evaluation falls back to
    live item fields. A failed lookup or unreadable history only affects
    its own item.
    """
    now = deps.clock() if now is None else now
    sem = asyncio.Semaphore(max(1, int(deps.metrics_concurrency)))

    async def _one(item: Dict[str, Any]):
        item_id = get_item_id(item)
        if item_id is None:
            return None, None
        async with sem:
            try:
                history = await deps.snapshot_store.get_history(owner_id, item_id)
                if not history:
                    return item_id, None
                return item_id, reconstruct(history, now)
            except Exception as e:
                logging.warning(f'User {owner_id}: metrics failed for item {item_id}: {e}')
                return item_id, None

    results = await asyncio.gather(*(_one(item) for item in items))
    return {item_id: m for item_id, m in results if item_id is not None}


async def execute_rule(
    rule: Rule,
    items: Sequence[Dict[str, Any]],
    metrics_by_item_id: Dict[str, Optional[DerivedMetrics]],
    client: Any,
    deps: RunnerDeps,
    pass_metrics: PassMetrics,
    now: Optional[float] = None,
) -> ExecutionRecord:
    now = deps.clock() if now is None else now
    matched: List[Dict[str, Any]] = []
    try:
        matched = evaluate_rule(rule, items, metrics_by_item_id, now)
        failures: List[Exception] = []
        for item in matched:
            try:
                await execute_action(rule.action, item, client, deps.actions)
                pass_metrics.actions_succeeded += 1
            except Exception as e:
                failures.append(e)
                pass_metrics.actions_failed += 1
                logging.error(
                    f'Rule {rule.id} ({rule.name}): action {getattr(rule.action.kind, "value", rule.action.kind)} '
                    f'failed for {get_item_id(item)} {truncate_name(item.get("name"))}: {e}'
                )
                deps.event_bus.emit(
                    'action_failed',
                    user_id=rule.owner_id,
                    rule=rule,
                    item=item,
                    action=getattr(rule.action.kind, 'value', rule.action.kind),
                    error=e,
                )
        error_message = None
        if failures:
            error_message = f'{len(failures)} actions failed: {failures[0]}'
        record = ExecutionRecord(
            rule_id=rule.id,
            owner_id=rule.owner_id,
            items_processed=len(matched),
            succeeded=not failures,
            rule_name=rule.name,
            error_message=error_message,
            recorded_at=now,
        )
    except Exception as e:
        logging.error(f'Rule {rule.id} ({rule.name}) failed before completing: {e}')
        matched = []
        record = ExecutionRecord(
            rule_id=rule.id,
            owner_id=rule.owner_id,
            items_processed=0,
            succeeded=False,
            rule_name=rule.name,
            error_message=str(e) or e.__class__.__name__,
            recorded_at=now,
        )

    pass_metrics.rules_executed += 1
    pass_metrics.items_matched += len(matched)
    if not record.succeeded:
        pass_metrics.rules_failed += 1
    deps.event_bus.emit(
        'rule_executed',
        user_id=rule.owner_id,
        rule=rule,
        items_processed=record.items_processed,
        success=record.succeeded,
        error_message=record.error_message,
    )
    try:
        await deps.automation_store.record_execution(record)
    except Exception as e:
        logging.error(f'Rule {rule.id}: failed to record execution: {e}')
    return record


async def process_user(
    user: Dict[str, Any],
    deps: RunnerDeps,
    pass_metrics: PassMetrics,
    now: Optional[float] = None,
) -> None:
    user_id = int(user['id'])
    rows = await deps.automation_store.enabled_rules(user_id)
    rules = [Rule.from_row(r) for r in rows]
    if not rules:
        return
    client = await resolve_client(user, deps)
    items = await fetch_items(client)
    now = deps.clock() if now is None else now
    metrics_by_item_id = await load_metrics(user_id, items, deps, now)
    if deps.actions.debug_logging:
        logging.info(f'User {user_id}: evaluating {len(rules)} rule(s) against {len(items)} item(s)')
    for rule in rules:
        await execute_rule(rule, items, metrics_by_item_id, client, deps, pass_metrics, now)


async def _run_user_batches(
    users: Sequence[Dict[str, Any]],
    worker: Callable[[Dict[str, Any], RunnerDeps, PassMetrics, Optional[float]], Awaitable[None]],
    stage: str,
    deps: RunnerDeps,
    pass_metrics: PassMetrics,
    now: Optional[float],
) -> None:
    for batch in _batches(list(users), deps.batch_size):
        results = await asyncio.gather(
            *(worker(user, deps, pass_metrics, now) for user in batch), return_exceptions=True
        )
        for user, res in zip(batch, results):
            if isinstance(res, Exception):
                pass_metrics.users_failed += 1
                logging.error(f"User {user.get('id')}: {stage} failed: {res}")
                deps.event_bus.emit('user_failed', user_id=user.get('id'), stage=stage, error=res)


async def run_automation_pass(deps: RunnerDeps, now: Optional[float] = None) -> PassMetrics:
    pass_metrics = PassMetrics()
    users = await deps.automation_store.users_with_enabled_rules()
    pass_metrics.users = len(users)
    if not users:
        logging.debug('No users with enabled rules')
        return pass_metrics
    await _run_user_batches(users, process_user, 'automation', deps, pass_metrics, now)
    return pass_metrics


async def sample_user(
    user: Dict[str, Any],
    deps: RunnerDeps,
    pass_metrics: PassMetrics,
    now: Optional[float] = None,
) -> None:
    user_id = int(user['id'])
    client = await resolve_client(user, deps)
    items = await fetch_items(client)
    now = deps.clock() if now is None else now
    ids = [get_item_id(item) for item in items]
    latest = await deps.snapshot_store.latest_for_items(user_id, [i for i in ids if i is not None])
    snapshots = [
        build_snapshot(user_id, item, now)
        for item, item_id in zip(items, ids)
        if item_id is not None and should_sample(item, latest.get(item_id))
    ]
    if not snapshots:
        return
    created = await deps.snapshot_store.insert_many(snapshots)
    pass_metrics.snapshots_created += created
    deps.event_bus.emit('snapshots_created', user_id=user_id, count=created, items=len(items))


async def run_sampling_pass(deps: RunnerDeps, now: Optional[float] = None) -> PassMetrics:
    pass_metrics = PassMetrics()
    users = await deps.automation_store.active_users()
    pass_metrics.users = len(users)
    await _run_user_batches(users, sample_user, 'sampling', deps, pass_metrics, now)
    return pass_metrics


async def run_cleanup(deps: RunnerDeps, now: Optional[float] = None) -> int:
    deleted = await deps.snapshot_store.cleanup(deps.retention_days, now=now)
    deps.event_bus.emit('snapshots_cleaned', deleted=deleted, retention_days=deps.retention_days)
    return deleted


def summarize(metrics: PassMetrics, interval_seconds: float) -> Dict[str, Any]:
    try:
        next_run_ts = time.time() + interval_seconds
        next_run_str = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(next_run_ts))
    except (OverflowError, ValueError):
        next_run_str = 'unknown'
    summary: Dict[str, Any] = metrics.as_dict()
    summary['next_run'] = next_run_str
    return summary


async def run_forever(
    deps: RunnerDeps,
    log_fn: Callable[[str], None] = logging.info,
    max_iterations: Optional[int] = None,
) -> None:
    last_cleanup_at: Optional[float] = None
    iteration = 0
    while True:
        iteration += 1
        metrics = PassMetrics()
        for name, run_pass in (('sampling', run_sampling_pass), ('automation', run_automation_pass)):
            try:
                metrics.merge(await run_pass(deps))
            except Exception as e:
                log_fn(f'Unhandled error in {name} pass: {e}')

        now = deps.clock()
        if last_cleanup_at is None or now - last_cleanup_at >= deps.cleanup_interval_hours * 3600:
            try:
                metrics.snapshots_deleted += await run_cleanup(deps, now=now)
                last_cleanup_at = now
            except Exception as e:
                log_fn(f'Unhandled error in cleanup: {e}')

        summary = summarize(metrics, deps.automation_interval_seconds)
        log_fn('Run summary:')
        log_fn(f"  users={summary['users']} users_failed={summary['users_failed']}")
        log_fn(
            f"  rules: executed={summary['rules_executed']} failed={summary['rules_failed']} items_matched={summary['items_matched']}"
        )
        log_fn(f"  actions: succeeded={summary['actions_succeeded']} failed={summary['actions_failed']}")
        log_fn(f"  snapshots: created={summary['snapshots_created']} deleted={summary['snapshots_deleted']}")

        if max_iterations is not None and iteration >= max_iterations:
            return
        log_fn(f"Next run: {summary['next_run']} (in {deps.automation_interval_seconds}s)")
        await asyncio.sleep(deps.automation_interval_seconds)
