from datetime import datetime, timezone
from decimal import Decimal

import pytest

import batch_db
import sale_db
import settlement_db
import tranche_db
from errors import BusinessRuleViolation, EntityNotFound, InsufficientStock, InvalidStateTransition
from models import BatchState, CommissionModel, SettlementConcept, SettlementState, TrancheState
from ports import AgentRecord, in_memory_collaborators
from runtime import build_runtime
from store import MemoryStore

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _make_runtime(agents=None):
    """fresh in-memory store + collaborators, relay that never really sleeps."""
    agents = agents or [AgentRecord(id="a1", sponsor_id="operator")]
    return build_runtime(MemoryStore(), in_memory_collaborators(agents), sleep=lambda seconds: None)


def _drain(rt, passes=10):
    """run relay passes until the outbox is empty (handlers enqueue follow-up events)."""
    for _ in range(passes):
        stats = rt.relay.process_pending()
        if not stats["fetched"]:
            return


def _active_batch(rt, quantity, agent_id="a1", model=CommissionModel.SIXTY_FORTY):
    batch = batch_db.create_batch(rt.store, rt.ports.directory, agent_id, quantity, model)
    batch_db.activate_batch(rt.store, batch.id, now=T0)
    return batch_db.batch_overview(rt.store, batch.id)


def _put_in_hand(rt, tranche_id):
    tranche_db.mark_in_transit(rt.store, tranche_id)
    return tranche_db.confirm_delivery(rt.store, tranche_id)


def test_create_batch_lays_out_tranches():
    rt = _make_runtime()
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 51)

    assert batch.state is BatchState.CREATED
    assert batch.total_investment == Decimal("122400.00")
    assert batch.operator_investment == Decimal("61200.00")

    overview = batch_db.batch_overview(rt.store, batch.id)
    assert [t.initial_stock for t in overview["tranches"]] == [17, 17, 17]
    assert all(t.state is TrancheState.INACTIVE for t in overview["tranches"])
    # settlements only show up on activation
    assert overview["settlements"] == []


def test_create_batch_rejects_ineligible_agents():
    rt = _make_runtime([AgentRecord(id="a1", state="SUSPENDED")])

    with pytest.raises(BusinessRuleViolation):
        batch_db.create_batch(rt.store, rt.ports.directory, "a1", 20)
    with pytest.raises(EntityNotFound):
        batch_db.create_batch(rt.store, rt.ports.directory, "nobody", 20)


def test_activation_releases_first_tranche_only():
    rt = _make_runtime()
    overview = _active_batch(rt, 51)

    assert overview["batch"].state is BatchState.ACTIVE
    assert [t.state for t in overview["tranches"]] == [
        TrancheState.RELEASED,
        TrancheState.INACTIVE,
        TrancheState.INACTIVE,
    ]
    assert [s.concept for s in overview["settlements"]] == [
        SettlementConcept.ADMIN_INVESTMENT,
        SettlementConcept.PROFIT,
        SettlementConcept.PROFIT,
    ]
    assert overview["closure"].state is SettlementState.INACTIVE

    # a second active tranche is refused
    with pytest.raises(InvalidStateTransition):
        tranche_db.release_tranche(rt.store, overview["tranches"][1].id)


def test_cancel_only_while_created():
    rt = _make_runtime()
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 20)
    batch_db.cancel_batch(rt.store, batch.id)

    with pytest.raises(EntityNotFound):
        batch_db.get_batch(rt.store, batch.id)

    overview = _active_batch(rt, 20)
    with pytest.raises(InvalidStateTransition):
        batch_db.cancel_batch(rt.store, overview["batch"].id)


def test_sale_needs_tranche_in_hand():
    rt = _make_runtime()
    overview = _active_batch(rt, 51)

    with pytest.raises(InvalidStateTransition):
        sale_db.record_retail_sale(rt.store, rt.ports.directory, overview["batch"].id, 1, Decimal("4000"))


def test_three_tranche_batch_end_to_end():
    """
    51 units, 60/40:
      - tranche #1 sold out for 68,000 -> ADMIN_INVESTMENT settlement of 61,200 due
      - tranche #2 stays put until that settlement is confirmed
      - after confirmation the relay releases tranche #2
      - selling tranche #2 for 68,000 makes a PROFIT settlement of 5,440 due
    """
    rt = _make_runtime()
    overview = _active_batch(rt, 51)
    batch_id = overview["batch"].id
    t1, t2, _ = overview["tranches"]

    _put_in_hand(rt, t1.id)
    result = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 17, Decimal("68000"))

    settlement = result["settlement"]
    assert result["tranche"].state is TrancheState.FINALIZED
    assert settlement.state is SettlementState.PENDING
    assert settlement.expected == Decimal("61200.00")

    _drain(rt)
    assert tranche_db.get_tranche(rt.store, t2.id).state is TrancheState.INACTIVE

    settlement_db.confirm_settlement(rt.store, settlement.id, Decimal("61200"))
    _drain(rt)

    assert tranche_db.get_tranche(rt.store, t2.id).state is TrancheState.RELEASED
    assert batch_db.get_batch(rt.store, batch_id).money_transferred == Decimal("61200.00")

    _put_in_hand(rt, t2.id)
    result = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 17, Decimal("68000"))
    assert result["settlement"].concept is SettlementConcept.PROFIT
    assert result["settlement"].state is SettlementState.PENDING
    assert result["settlement"].expected == Decimal("5440.00")

    _drain(rt)
    # reward fund got 200 per unit on activation, once
    assert rt.ports.reward_fund.balance() == Decimal("10200.00")
    templates = rt.ports.notifier.templates()
    assert "BATCH_ACTIVATED" in templates
    assert "SETTLEMENT_DUE" in templates
    assert "SETTLEMENT_CONFIRMED" in templates


def test_pending_settlement_follows_later_sales():
    """
    20 units (10/10), tranche #1 is MIXED and due at 10% stock.
    9 units for 60,000: profit 12,000, operator 40% -> 24,000 + 4,800 due.
    the last unit for 5,000 pushes the profit to 17,000 -> 30,800 due.
    """
    rt = _make_runtime()
    overview = _active_batch(rt, 20)
    batch_id = overview["batch"].id
    _put_in_hand(rt, overview["tranches"][0].id)

    first = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 9, Decimal("60000"))
    assert first["settlement"].state is SettlementState.PENDING
    assert first["settlement"].expected == Decimal("28800.00")

    second = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 1, Decimal("5000"))
    assert second["settlement"].state is SettlementState.PENDING
    assert second["settlement"].expected == Decimal("30800.00")
    assert second["tranche"].state is TrancheState.FINALIZED


def test_cascade_model_pays_sponsors_before_operator():
    """
    operator -> s2 -> s1 -> a1. 9 of 10 units sold for 60,000: profit 12,000,
    agent 6,000, s1 3,000, s2 1,500, operator 1,500 -> 24,000 + 1,500 due.
    """
    rt = _make_runtime(
        [
            AgentRecord(id="s2", sponsor_id="operator"),
            AgentRecord(id="s1", sponsor_id="s2"),
            AgentRecord(id="a1", sponsor_id="s1"),
        ]
    )
    overview = _active_batch(rt, 20, model=CommissionModel.CASCADE)
    _put_in_hand(rt, overview["tranches"][0].id)

    result = sale_db.record_retail_sale(rt.store, rt.ports.directory, overview["batch"].id, 9, Decimal("60000"))
    assert result["settlement"].expected == Decimal("25500.00")


def test_sale_beyond_stock_changes_nothing():
    rt = _make_runtime()
    overview = _active_batch(rt, 20)
    batch_id = overview["batch"].id
    _put_in_hand(rt, overview["tranches"][0].id)

    with pytest.raises(InsufficientStock):
        sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 11, Decimal("1000"))

    assert batch_db.get_batch(rt.store, batch_id).money_collected == Decimal("0")
    assert tranche_db.get_tranche(rt.store, overview["tranches"][0].id).current_stock == 10


def test_double_confirmation_only_counts_once():
    """
    two writers confirm from the same snapshot. the second one matches 0 rows
    and is a no-op, so the money is only moved once.
    """
    rt = _make_runtime()
    overview = _active_batch(rt, 51)
    batch_id = overview["batch"].id
    _put_in_hand(rt, overview["tranches"][0].id)
    snapshot = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 17, Decimal("68000"))["settlement"]

    with rt.store.transaction() as tx:
        first = settlement_db._confirm_in_tx(tx, snapshot, Decimal("61200"), T0)
    with rt.store.transaction() as tx:
        second = settlement_db._confirm_in_tx(tx, snapshot, Decimal("61200"), T0)

    assert first is not None
    assert second is None
    assert batch_db.get_batch(rt.store, batch_id).money_transferred == Decimal("61200.00")

    with pytest.raises(InvalidStateTransition):
        settlement_db.confirm_settlement(rt.store, snapshot.id, Decimal("61200"))


def test_money_trigger_before_sell_out_keeps_next_tranche_back():
    """
    16 of 17 units sell for 64,000: the ADMIN_INVESTMENT settlement is due and
    gets confirmed while one unit is still in hand. tranche #2 is only released
    once tranche #1 is empty, so a batch never has two tranches out at once.
    """
    rt = _make_runtime()
    overview = _active_batch(rt, 51)
    batch_id = overview["batch"].id
    t1, t2, _ = overview["tranches"]
    _put_in_hand(rt, t1.id)

    result = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 16, Decimal("64000"))
    assert result["settlement"].state is SettlementState.PENDING
    assert result["tranche"].current_stock == 1

    settlement_db.confirm_settlement(rt.store, result["settlement"].id, Decimal("61200"))
    _drain(rt)
    assert tranche_db.get_tranche(rt.store, t1.id).state is TrancheState.IN_HAND
    assert tranche_db.get_tranche(rt.store, t2.id).state is TrancheState.INACTIVE

    last = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, 1, Decimal("4000"))
    assert last["tranche"].state is TrancheState.FINALIZED
    _drain(rt)
    assert tranche_db.get_tranche(rt.store, t2.id).state is TrancheState.RELEASED
