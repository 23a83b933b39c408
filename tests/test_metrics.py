import importlib

import pytest

from storage.snapshots import Snapshot


H = 3600.0


def _snap(state, at, progress=0.0):
    return Snapshot(owner_id=1, item_id='1', state=state, captured_at=at, progress=progress)


def test_empty_history_gives_zeros():
    metrics = importlib.import_module('core.metrics')
    m = metrics.reconstruct([], now=10 * H)
    assert m == metrics.DerivedMetrics()


def test_open_interval_runs_to_now():
    metrics = importlib.import_module('core.metrics')
    t0 = 1000.0
    history = [_snap('seeding', t0), _snap('seeding', t0 + H)]
    m = metrics.reconstruct(history, now=t0 + 5 * H)
    assert m.seeding_hours == pytest.approx(5.0)
    assert m.stalled_hours == 0.0


def test_closed_interval_ends_at_last_sample_in_state():
    metrics = importlib.import_module('core.metrics')
    t0 = 0.0
    history = [_snap('stalled', t0), _snap('stalled', t0 + H), _snap('downloading', t0 + 2 * H)]
    m = metrics.reconstruct(history, now=t0 + 2 * H)
    assert m.stalled_hours == pytest.approx(1.0)


def test_multiple_intervals_are_summed():
    metrics = importlib.import_module('core.metrics')
    history = [
        _snap('stalled', 0.0),
        _snap('stalled', 2 * H),
        _snap('downloading', 3 * H),
        _snap('stalled', 4 * H),
    ]
    m = metrics.reconstruct(history, now=7 * H)
    # 2h closed interval plus 3h open interval
    assert m.stalled_hours == pytest.approx(5.0)


def test_single_sample_in_state_counts_from_sample_to_now():
    metrics = importlib.import_module('core.metrics')
    m = metrics.reconstruct([_snap('seeding', 0.0)], now=2 * H)
    assert m.seeding_hours == pytest.approx(2.0)


def test_stuck_progress_needs_gap_over_two_hours():
    metrics = importlib.import_module('core.metrics')
    stuck = [_snap('downloading', 0.0, 40.0), _snap('downloading', 2 * H + 1, 40.0)]
    assert metrics.reconstruct(stuck, now=3 * H).stuck_progress is True

    exactly_two = [_snap('downloading', 0.0, 40.0), _snap('downloading', 2 * H, 40.0)]
    assert metrics.reconstruct(exactly_two, now=3 * H).stuck_progress is False

    moving = [_snap('downloading', 0.0, 40.0), _snap('downloading', 3 * H, 41.0)]
    assert metrics.reconstruct(moving, now=4 * H).stuck_progress is False


def test_stuck_progress_on_fractional_progress():
    metrics = importlib.import_module('core.metrics')
    three_hours = [_snap('downloading', 0.0, 0.42), _snap('downloading', 3 * H, 0.42)]
    assert metrics.reconstruct(three_hours, now=3 * H).stuck_progress is True

    half_hour = [_snap('downloading', 0.0, 0.42), _snap('downloading', 1800.0, 0.42)]
    assert metrics.reconstruct(half_hour, now=1800.0).stuck_progress is False


def test_queued_samples_are_counted():
    metrics = importlib.import_module('core.metrics')
    history = [_snap('queued', 0.0), _snap('queued', 60.0), _snap('downloading', 120.0)]
    assert metrics.reconstruct(history, now=200.0).queued_sample_count == 2
