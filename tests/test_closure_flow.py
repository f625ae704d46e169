from datetime import datetime, timezone
from decimal import Decimal

import pytest

import batch_db
import closure_db
import sale_db
import settlement_db
import tranche_db
from errors import InvalidStateTransition
from models import BatchState, SettlementState, TrancheState
from ports import AgentRecord, in_memory_collaborators
from runtime import build_runtime
from store import MemoryStore

T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _make_runtime():
    agents = [AgentRecord(id="a1", sponsor_id="operator")]
    return build_runtime(MemoryStore(), in_memory_collaborators(agents), sleep=lambda seconds: None)


def _drain(rt, passes=10):
    for _ in range(passes):
        if not rt.relay.process_pending()["fetched"]:
            return


def _sell_out_tranche(rt, batch_id, tranche_id, units, amount):
    tranche_db.mark_in_transit(rt.store, tranche_id)
    tranche_db.confirm_delivery(rt.store, tranche_id)
    return sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, units, Decimal(amount))


def test_batch_runs_to_closure():
    """
    20 units (10/10), 4,000 a unit:
      - tranche #1 sold out -> MIXED settlement 24,000 (no profit yet)
      - tranche #2 sold out -> PROFIT settlement 12,800 (40% of 32,000)
      - closure waits for that settlement, then picks up the residual:
        80,000 collected - 36,800 transferred = 43,200
    """
    rt = _make_runtime()
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 20)
    batch_db.activate_batch(rt.store, batch.id, now=T0)
    overview = batch_db.batch_overview(rt.store, batch.id)
    t1, t2 = overview["tranches"]
    closure_id = overview["closure"].id

    first = _sell_out_tranche(rt, batch.id, t1.id, 10, "40000")
    assert first["settlement"].expected == Decimal("24000.00")
    settlement_db.confirm_settlement(rt.store, first["settlement"].id, Decimal("24000"))
    _drain(rt)

    second = _sell_out_tranche(rt, batch.id, t2.id, 10, "40000")
    assert second["settlement"].expected == Decimal("12800.00")
    # last tranche keeps its state until the closure is confirmed
    assert second["tranche"].state is TrancheState.IN_HAND
    _drain(rt)

    # still a settlement open, closure does not move
    assert closure_db.get_closure(rt.store, closure_id).state is SettlementState.INACTIVE

    settlement_db.confirm_settlement(rt.store, second["settlement"].id, Decimal("12800"))
    _drain(rt)

    closure = closure_db.get_closure(rt.store, closure_id)
    assert closure.state is SettlementState.PENDING
    assert closure.residual == Decimal("43200.00")
    assert "CLOSURE_DUE" in rt.ports.notifier.templates()

    # redelivery is harmless
    assert closure_db.activate_closure(rt.store, batch.id) is None

    confirmed = closure_db.confirm_closure(rt.store, closure_id)
    assert confirmed.state is SettlementState.SUCCEEDED

    final = batch_db.get_batch(rt.store, batch.id)
    assert final.state is BatchState.FINALIZED
    assert final.money_transferred == Decimal("80000.00")
    assert tranche_db.get_tranche(rt.store, t2.id).state is TrancheState.FINALIZED

    with pytest.raises(InvalidStateTransition):
        closure_db.confirm_closure(rt.store, closure_id)


def test_closure_needs_sold_out_batch():
    rt = _make_runtime()
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 20)
    batch_db.activate_batch(rt.store, batch.id, now=T0)

    assert closure_db.activate_closure(rt.store, batch.id) is None

    closure = batch_db.batch_overview(rt.store, batch.id)["closure"]
    with pytest.raises(InvalidStateTransition):
        closure_db.confirm_closure(rt.store, closure.id)
