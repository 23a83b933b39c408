import importlib

import pytest

from storage.database import Database


pytestmark = pytest.mark.asyncio


def _snapmod():
    return importlib.import_module('storage.snapshots')


async def test_should_sample_first_and_on_state_change():
    snaps = _snapmod()
    item = {'id': 1, 'download_state': 'downloading'}
    assert snaps.should_sample(item, None) is True
    last = snaps.build_snapshot(1, {'id': 1, 'download_state': 'uploading'}, now=10.0)
    assert snaps.should_sample(item, last) is True


async def test_should_sample_non_terminal_repeats_terminal_once():
    snaps = _snapmod()
    seeding = {'id': 1, 'download_state': 'uploading'}
    last = snaps.build_snapshot(1, seeding, now=10.0)
    assert snaps.should_sample(seeding, last) is True

    done = {'id': 1, 'download_state': 'completed'}
    last_done = snaps.build_snapshot(1, done, now=10.0)
    assert snaps.should_sample(done, last_done) is False


async def test_build_snapshot_copies_counters():
    snaps = _snapmod()
    item = {
        'id': 12,
        'download_state': 'uploading (no peers)',
        'progress': 0.5,
        'download_speed': 10,
        'upload_speed': 3,
        'seeds': 4,
        'peers': 2,
        'ratio': 1.25,
    }
    s = snaps.build_snapshot(7, item, now=99.0)
    assert (s.owner_id, s.item_id, s.state, s.captured_at) == (7, '12', 'stalled', 99.0)
    assert (s.progress, s.download_rate, s.upload_rate) == (0.5, 10.0, 3.0)
    assert (s.seed_count, s.peer_count, s.ratio) == (4, 2, 1.25)


async def test_store_history_is_ascending_and_scoped(tmp_path):
    snaps = _snapmod()
    async with Database(str(tmp_path / 'db.sqlite')) as db:
        store = snaps.SnapshotStore(db)
        await store.insert_many([
            snaps.build_snapshot(1, {'id': 5, 'download_state': 'uploading'}, now=300.0),
            snaps.build_snapshot(1, {'id': 5, 'download_state': 'downloading'}, now=100.0),
            snaps.build_snapshot(2, {'id': 5, 'download_state': 'downloading'}, now=200.0),
            snaps.build_snapshot(1, {'id': 6}, now=150.0),
        ])
        history = await store.get_history(1, 5)
        assert [s.captured_at for s in history] == [100.0, 300.0]
        assert [s.state for s in history] == ['downloading', 'seeding']
        assert await store.count() == 4
        assert await store.count(owner_id=1) == 3


async def test_latest_for_items(tmp_path):
    snaps = _snapmod()
    async with Database(str(tmp_path / 'db.sqlite')) as db:
        store = snaps.SnapshotStore(db)
        await store.insert_many([
            snaps.build_snapshot(1, {'id': 5, 'download_state': 'downloading'}, now=100.0),
            snaps.build_snapshot(1, {'id': 5, 'download_state': 'uploading'}, now=200.0),
            snaps.build_snapshot(1, {'id': 6, 'download_state': 'completed'}, now=150.0),
        ])
        latest = await store.latest_for_items(1, [5, '6', 7])
        assert set(latest) == {'5', '6'}
        assert latest['5'].state == 'seeding'
        assert latest['6'].state == 'completed'


async def test_sampling_monotonicity_across_passes(tmp_path):
    snaps = _snapmod()
    item = {'id': 9, 'download_state': 'completed'}
    async with Database(str(tmp_path / 'db.sqlite')) as db:
        store = snaps.SnapshotStore(db)
        for t in (10.0, 20.0, 30.0):
            latest = await store.latest_for_items(1, ['9'])
            if snaps.should_sample(item, latest.get('9')):
                await store.insert_many([snaps.build_snapshot(1, item, now=t)])
        assert await store.count(owner_id=1) == 1


async def test_cleanup_deletes_in_bounded_batches(tmp_path):
    snaps = _snapmod()
    day = 86400.0
    now = 100 * day
    old = [snaps.build_snapshot(1, {'id': i, 'download_state': 'uploading'}, now=now - 40 * day) for i in range(25)]
    fresh = [snaps.build_snapshot(1, {'id': 100, 'download_state': 'uploading'}, now=now - day)]
    async with Database(str(tmp_path / 'db.sqlite')) as db:
        store = snaps.SnapshotStore(db)
        await store.insert_many(old + fresh)

        calls = []
        real_execute = db.execute

        async def counting_execute(sql, params=()):
            count = await real_execute(sql, params)
            calls.append(count)
            return count

        db.execute = counting_execute
        deleted = await store.cleanup(retention_days=30, batch_size=10, now=now)
        assert deleted == 25
        assert calls == [10, 10, 5]
        assert await store.count() == 1


async def test_cleanup_nothing_to_delete(tmp_path):
    snaps = _snapmod()
    async with Database(str(tmp_path / 'db.sqlite')) as db:
        assert await snaps.SnapshotStore(db).cleanup(now=1000.0) == 0
