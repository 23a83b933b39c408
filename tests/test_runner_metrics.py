import importlib


def test_runner_summarize_reports_counters_and_next_run():
    runner = importlib.import_module('core.runner')
    m = runner.PassMetrics()
    m.users = 5
    m.actions_failed = 2
    summary = runner.summarize(m, 300)
    assert summary['users'] == 5
    assert summary['actions_failed'] == 2
    assert summary['rules_executed'] == 0
    assert summary['next_run'] != 'unknown'


def test_pass_metrics_merge_adds_fields():
    runner = importlib.import_module('core.runner')
    a = runner.PassMetrics(users=1, snapshots_created=4)
    b = runner.PassMetrics(users=2, actions_succeeded=3)
    merged = a.merge(b)
    assert merged is a
    assert merged.as_dict() == {
        'users': 3,
        'users_failed': 0,
        'rules_executed': 0,
        'rules_failed': 0,
        'items_matched': 0,
        'actions_succeeded': 3,
        'actions_failed': 0,
        'snapshots_created': 4,
        'snapshots_deleted': 0,
    }
