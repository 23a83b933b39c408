import importlib

import pytest

from core.metrics import DerivedMetrics


H = 3600.0
NOW = 1_700_000_000.0


def _rules():
    return importlib.import_module('core.rules')


def _rule(conditions, logic='and', enabled=True, action=None):
    rules = _rules()
    return rules.Rule.from_row({
        'id': 1,
        'user_id': 1,
        'name': 'r',
        'enabled': enabled,
        'conditions': conditions,
        'logic_operator': logic,
        'action_config': action or {'type': 'stop_seeding'},
    })


def test_rule_from_row_parses_json_columns():
    rules = _rules()
    rule = rules.Rule.from_row({
        'id': 4,
        'user_id': 2,
        'name': 'json',
        'enabled': 1,
        'conditions': '[{"type": "seeding_time", "operator": "gt", "value": 48}]',
        'logic_operator': 'OR',
        'action_config': '{"type": "delete"}',
    })
    assert rule.conditions[0].kind is rules.ConditionKind.SEEDING_TIME
    assert rule.conditions[0].operator is rules.Operator.GT
    assert rule.conditions[0].threshold == 48
    assert rule.combinator is rules.Combinator.OR
    assert rule.action.kind.value == 'delete'


def test_rule_from_row_malformed_json_is_empty():
    rules = _rules()
    rule = rules.Rule.from_row({'id': 1, 'user_id': 1, 'conditions': '{not json', 'action_config': 'nope'})
    assert rule.conditions == []
    assert rule.combinator is rules.Combinator.AND
    assert rule.action.kind == ''


def test_seeding_time_uses_derived_metrics():
    rules = _rules()
    cond = rules.Condition.from_dict({'type': 'seeding_time', 'operator': 'gt', 'value': 48})
    item = {'id': 1, 'download_state': 'uploading'}
    assert rules.evaluate_condition(cond, item, DerivedMetrics(seeding_hours=72.0), NOW) is True
    assert rules.evaluate_condition(cond, item, DerivedMetrics(seeding_hours=10.0), NOW) is False


def test_seeding_time_falls_back_to_live_fields():
    rules = _rules()
    cond = rules.Condition.from_dict({'type': 'seeding_time', 'operator': 'gt', 'value': 48})
    item = {'id': 1, 'download_state': 'uploading', 'active': True, 'cached_at': NOW - 72 * H}
    assert rules.evaluate_condition(cond, item, None, NOW) is True
    inactive = dict(item, active=False)
    assert rules.evaluate_condition(cond, inactive, None, NOW) is False


def test_stalled_time_fallback_uses_updated_at():
    rules = _rules()
    cond = rules.Condition.from_dict({'type': 'stalled_time', 'operator': 'gte', 'value': 2})
    item = {
        'id': 1,
        'download_state': 'uploading (no peers)',
        'active': True,
        'updated_at': '2023-11-14T19:13:20Z',
    }
    # updated_at is NOW - 3h
    assert rules.evaluate_condition(cond, item, None, NOW) is True


def test_stuck_progress_requires_metrics():
    rules = _rules()
    cond = rules.Condition.from_dict({'type': 'stuck_progress'})
    item = {'id': 1, 'download_state': 'downloading'}
    assert rules.evaluate_condition(cond, item, DerivedMetrics(stuck_progress=True), NOW) is True
    assert rules.evaluate_condition(cond, item, None, NOW) is False


@pytest.mark.parametrize(
    'kind,item,op,value,expected',
    [
        ('seeding_ratio', {'ratio': 2.5}, 'gte', 2, True),
        ('seeds', {'seeds': 0}, 'eq', 0, True),
        ('peers', {'peers': 3}, 'lt', 3, False),
        ('file_size', {'size': 5 * 1024 ** 3}, 'gt', 4, True),
        ('progress', {'progress': 0.5}, 'lte', 0.5, True),
        ('download_speed', {'download_speed': 100}, 'lt', 1000, True),
        ('file_count', {'files': [{}, {}, {}]}, 'eq', 3, True),
        ('age', {'created_at': NOW - 10 * H}, 'gt', 5, True),
        ('inactive', {'download_state': 'expired'}, 'eq', 1, True),
        ('inactive', {'download_state': 'uploading'}, 'eq', 1, False),
        ('ratio', {'ratio': 1.0}, 'gt', 0.5, True),
        ('download_finished', {'download_finished': True}, 'eq', 1, True),
        ('seed_torrent', {'seed_torrent': False}, 'eq', 1, False),
    ],
)
def test_numeric_conditions(kind, item, op, value, expected):
    rules = _rules()
    cond = rules.Condition.from_dict({'type': kind, 'operator': op, 'value': value})
    assert rules.evaluate_condition(cond, dict(item, id=1), None, NOW) is expected


def test_flag_and_text_conditions():
    rules = _rules()
    item = {'id': 1, 'name': 'Ubuntu ISO', 'tracker': 'udp://tracker.example.org', 'cached': True, 'private': False}
    ev = rules.evaluate_condition
    assert ev(rules.Condition.from_dict({'type': 'cached'}), item, None, NOW) is True
    assert ev(rules.Condition.from_dict({'type': 'private'}), item, None, NOW) is False
    assert ev(rules.Condition.from_dict({'type': 'private', 'value': False}), item, None, NOW) is True
    assert ev(rules.Condition.from_dict({'type': 'name_contains', 'value': 'ubuntu'}), item, None, NOW) is True
    assert ev(rules.Condition.from_dict({'type': 'tracker', 'value': 'example.org'}), item, None, NOW) is True


def test_unknown_kind_and_bad_operator_are_false():
    rules = _rules()
    item = {'id': 1, 'seeds': 100}
    assert rules.evaluate_condition(rules.Condition.from_dict({'type': 'moon_phase', 'operator': 'gt', 'value': 1}), item, None, NOW) is False
    assert rules.evaluate_condition(rules.Condition.from_dict({'type': 'seeds', 'operator': 'between', 'value': 1}), item, None, NOW) is False
    assert rules.evaluate_condition(rules.Condition.from_dict({'type': 'seeds', 'operator': 'gt', 'value': 'abc'}), item, None, NOW) is False


def test_combinator_semantics():
    yes = {'type': 'seeds', 'operator': 'gt', 'value': 0}
    no = {'type': 'seeds', 'operator': 'gt', 'value': 100}
    rules = _rules()
    item = {'id': 1, 'seeds': 5}
    assert rules.matches(_rule([yes, yes]), item, None, NOW) is True
    assert rules.matches(_rule([yes, no]), item, None, NOW) is False
    assert rules.matches(_rule([yes, no], logic='or'), item, None, NOW) is True
    assert rules.matches(_rule([no, no], logic='or'), item, None, NOW) is False


def test_empty_condition_list():
    rules = _rules()
    item = {'id': 1}
    assert rules.matches(_rule([]), item, None, NOW) is True
    assert rules.matches(_rule([], logic='or'), item, None, NOW) is False


def test_evaluate_rule_uses_metrics_by_id_and_skips_disabled():
    rules = _rules()
    cond = {'type': 'seeding_time', 'operator': 'gt', 'value': 48}
    items = [
        {'id': 1, 'download_state': 'uploading'},
        {'id': 2, 'download_state': 'uploading'},
    ]
    metrics = {'1': DerivedMetrics(seeding_hours=72.0), '2': DerivedMetrics(seeding_hours=1.0)}
    matched = rules.evaluate_rule(_rule([cond]), items, metrics, NOW)
    assert [m['id'] for m in matched] == [1]
    assert rules.evaluate_rule(_rule([cond], enabled=False), items, metrics, NOW) == []


def test_flag_conditions_honour_operator():
    rules = _rules()
    cond = rules.Condition.from_dict({'type': 'cached', 'operator': 'gt', 'value': 0})
    assert rules.evaluate_condition(cond, {'id': 1, 'cached': True}, None, NOW) is True
    assert rules.evaluate_condition(cond, {'id': 2, 'cached': False}, None, NOW) is False
    neq = rules.Condition.from_dict({'type': 'private', 'operator': 'lt', 'value': True})
    assert rules.evaluate_condition(neq, {'id': 3, 'private': False}, None, NOW) is True
    assert rules.evaluate_condition(neq, {'id': 4, 'private': True}, None, NOW) is False
