import argparse
import asyncio
import json
import sys
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from core.config import load_settings
from core.metrics import reconstruct
from core.rules import Rule, evaluate_condition, matches
from core.utils import format_timestamp, get_item_id, to_float
from storage.automation import AutomationStore
from storage.database import Database
from storage.snapshots import Snapshot, SnapshotStore


def _load_json_file(path: str) -> Any:
    with open(path, 'r') as f:
        return json.load(f)


def _database_path(args) -> str:
    return getattr(args, 'db', None) or load_settings().database_path


def _history_from_json(raw: List[Dict[str, Any]], item_id: str) -> List[Snapshot]:
    out = []
    for r in raw or []:
        out.append(
            Snapshot(
                owner_id=0,
                item_id=item_id,
                state=str(r.get('state') or ''),
                captured_at=to_float(r.get('captured_at', r.get('created_at'))),
                progress=to_float(r.get('progress')),
            )
        )
    return sorted(out, key=lambda s: s.captured_at)


def cmd_simulate(args):
    rule_data = _load_json_file(args.rule_json)
    item = _load_json_file(args.item_json)
    rule_row = {
        'id': rule_data.get('id', 0),
        'user_id': rule_data.get('user_id', 0),
        'name': rule_data.get('name', 'simulated'),
        'enabled': rule_data.get('enabled', True),
        'conditions': rule_data.get('conditions', []),
        'logic_operator': rule_data.get('logic_operator', 'and'),
        'action_config': rule_data.get('action_config', rule_data.get('action', {})),
    }
    rule = Rule.from_row(rule_row)
    now = getattr(args, 'now', None)
    if now is None:
        now = time.time()
    metrics = None
    history_path = getattr(args, 'history_json', None)
    if history_path:
        history = _history_from_json(_load_json_file(history_path), get_item_id(item) or '')
        metrics = reconstruct(history, now) if history else None
    print(
        json.dumps(
            {
                'rule': rule.name,
                'matched': rule.enabled and matches(rule, item, metrics, now),
                'combinator': rule.combinator.value,
                'conditions': [
                    {
                        'type': getattr(c.kind, 'value', c.kind),
                        'result': evaluate_condition(c, item, metrics, now),
                    }
                    for c in rule.conditions
                ],
                'metrics': asdict(metrics) if metrics is not None else None,
            },
            indent=2,
        )
    )


async def _metrics(db_path: str, user_id: int, item_id: str) -> Dict[str, Any]:
    async with Database(db_path) as db:
        history = await SnapshotStore(db).get_history(user_id, item_id)
    return {
        'user_id': user_id,
        'item_id': item_id,
        'samples': len(history),
        'metrics': asdict(reconstruct(history)) if history else None,
    }


def cmd_metrics(args):
    print(json.dumps(asyncio.run(_metrics(_database_path(args), args.user, args.item)), indent=2))


async def _history(db_path: str, user_id: Optional[int], rule_id: Optional[int], limit: int) -> List[Dict[str, Any]]:
    async with Database(db_path) as db:
        records = await AutomationStore(db).recent_executions(user_id=user_id, rule_id=rule_id, limit=limit)
    out = []
    for r in records:
        entry = asdict(r)
        entry['recorded_at'] = format_timestamp(r.recorded_at)
        out.append(entry)
    return out


def cmd_history(args):
    print(json.dumps(asyncio.run(_history(_database_path(args), args.user, args.rule, args.limit)), indent=2))


async def _cleanup(db_path: str, days: float) -> int:
    async with Database(db_path) as db:
        return await SnapshotStore(db).cleanup(days)


def cmd_cleanup(args):
    days = args.days if args.days is not None else load_settings().snapshot_retention_days
    deleted = asyncio.run(_cleanup(_database_path(args), days))
    print(json.dumps({'deleted': deleted, 'retention_days': days}, indent=2))


async def _status(db_path: str) -> Dict[str, Any]:
    async with Database(db_path) as db:
        store = AutomationStore(db)
        users = await store.users_with_enabled_rules()
        snapshots = await SnapshotStore(db).count()
        recent = await store.recent_executions(limit=50)
    failed = [r for r in recent if not r.succeeded]
    return {
        'database': db_path,
        'users_with_enabled_rules': len(users),
        'snapshots': snapshots,
        'recent_executions': len(recent),
        'recent_failures': len(failed),
        'last_execution': format_timestamp(recent[0].recorded_at) if recent else None,
    }


def cmd_status(args):
    print(json.dumps(asyncio.run(_status(_database_path(args))), indent=2))


def main():
    ap = argparse.ArgumentParser(description="TorBox Automation Worker CLI")
    ap.add_argument('--db', help='SQLite database path (defaults to DATABASE_PATH)')
    sub = ap.add_subparsers(dest='cmd')

    p_sim = sub.add_parser('simulate', help='Evaluate a rule JSON against an item JSON')
    p_sim.add_argument('rule_json', help='Path to rule JSON file')
    p_sim.add_argument('item_json', help='Path to item JSON file')
    p_sim.add_argument('--history-json', dest='history_json', help='Path to a JSON list of snapshots')
    p_sim.add_argument('--now', type=float, help='Evaluation time as epoch seconds')
    p_sim.set_defaults(func=cmd_simulate)

    p_metrics = sub.add_parser('metrics', help='Show derived metrics for one item')
    p_metrics.add_argument('--user', type=int, required=True)
    p_metrics.add_argument('--item', required=True)
    p_metrics.set_defaults(func=cmd_metrics)

    p_hist = sub.add_parser('history', help='Show recent rule executions')
    p_hist.add_argument('--user', type=int)
    p_hist.add_argument('--rule', type=int)
    p_hist.add_argument('--limit', type=int, default=20)
    p_hist.set_defaults(func=cmd_history)

    p_clean = sub.add_parser('cleanup', help='Delete snapshots past retention')
    p_clean.add_argument('--days', type=float)
    p_clean.set_defaults(func=cmd_cleanup)

    p_status = sub.add_parser('status', help='Show store summary')
    p_status.set_defaults(func=cmd_status)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()
