from datetime import datetime, timedelta, timezone

import batch_db
import jobs
import tranche_db
from models import TrancheState
from ports import AgentRecord, in_memory_collaborators
from runtime import build_runtime
from store import MemoryStore

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def _make_runtime():
    agents = [AgentRecord(id="a1", sponsor_id="operator")]
    return build_runtime(MemoryStore(), in_memory_collaborators(agents), sleep=lambda seconds: None)


def _released_tranche(rt):
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 20)
    batch_db.activate_batch(rt.store, batch.id, now=T0)
    return batch_db.batch_overview(rt.store, batch.id)["tranches"][0]


def test_sweep_moves_only_tranches_past_dwell_time():
    rt = _make_runtime()
    tranche = _released_tranche(rt)

    assert tranche_db.auto_transit_released(rt.store, now=T0 + timedelta(hours=1), dwell_hours=2) == 0
    assert tranche_db.get_tranche(rt.store, tranche.id).state is TrancheState.RELEASED

    assert tranche_db.auto_transit_released(rt.store, now=T0 + timedelta(hours=2), dwell_hours=2) == 1
    moved = tranche_db.get_tranche(rt.store, tranche.id)
    assert moved.state is TrancheState.IN_TRANSIT
    assert moved.in_transit_at == T0 + timedelta(hours=2)

    # second run finds nothing
    assert tranche_db.auto_transit_released(rt.store, now=T0 + timedelta(hours=3), dwell_hours=2) == 0


def test_sweep_skips_tranche_moved_in_between():
    """a manual pickup that lands first is not an error for the sweep."""
    rt = _make_runtime()
    tranche = _released_tranche(rt)
    tranche_db.mark_in_transit(rt.store, tranche.id)

    assert tranche_db.auto_transit_released(rt.store, now=T0 + timedelta(days=1)) == 0


def test_job_wrappers_run_against_runtime():
    rt = _make_runtime()
    _released_tranche(rt)

    # the activation left events behind
    stats = jobs.poll_outbox(rt)
    assert stats["processed"] == stats["fetched"] > 0

    # real clock is long past T0 + dwell
    assert jobs.sweep_tranches(rt) == 1
    assert jobs.purge_outbox(rt) == 0


def test_job_wrapper_logs_instead_of_raising():
    class Broken:
        def process_pending(self):
            raise RuntimeError("db down")

    class FakeRuntime:
        relay = Broken()

    assert jobs.poll_outbox(FakeRuntime()) is None


def test_scheduler_registers_jobs():
    rt = _make_runtime()
    scheduler = jobs.build_scheduler(rt)

    status = jobs.get_job_status(scheduler)
    assert sorted(job["id"] for job in status) == ["poll_outbox", "purge_outbox", "sweep_tranches"]
    assert not scheduler.running
