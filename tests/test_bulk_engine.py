from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import batch_engine
import bulk_engine
import tranche_engine
from errors import BusinessRuleViolation
from models import BatchState, CommissionModel, TrancheState

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _active_batch(quantity, activated_at):
    batch = batch_engine.new_batch("a1", quantity, CommissionModel.SIXTY_FORTY, Decimal("2400"), Decimal("50"))
    return replace(batch, state=BatchState.ACTIVE, activated_at=activated_at)


def test_price_tiers():
    assert bulk_engine.unit_price(20, True) == Decimal("4900")
    assert bulk_engine.unit_price(49, True) == Decimal("4900")
    assert bulk_engine.unit_price(50, True) == Decimal("4700")
    assert bulk_engine.unit_price(100, True) == Decimal("4500")
    assert bulk_engine.unit_price(30, False) == Decimal("4800")
    assert bulk_engine.unit_price(75, False) == Decimal("4500")
    assert bulk_engine.unit_price(250, False) == Decimal("4200")

    with pytest.raises(BusinessRuleViolation):
        bulk_engine.unit_price(19, True)


def test_plan_takes_reserved_stock_oldest_batch_first():
    """
    two batches of 51 (17/17/17), tranche #1 of each in hand.
    40 units: 34 reserved from the older batch, then 6 reserved from the newer one.
    """
    old = _active_batch(51, T0)
    new = _active_batch(51, T0 + timedelta(days=1))
    tranches = {}
    for batch in (old, new):
        ts = tranche_engine.build_tranches(batch.id, 51)
        ts[0] = replace(ts[0], state=TrancheState.IN_HAND)
        tranches[batch.id] = ts

    plan = bulk_engine.plan_consumption(40, [new, old], tranches)

    assert plan.forced_units == 0
    assert plan.consumed == 40
    assert plan.involved_batch_ids == (old.id, new.id)
    assert [(s.batch_id, s.number, s.units) for s in plan.sources] == [
        (old.id, 2, 17),
        (old.id, 3, 17),
        (new.id, 2, 6),
    ]


def test_plan_uses_in_hand_stock_then_forces_the_rest():
    batch = _active_batch(20, T0)
    ts = tranche_engine.build_tranches(batch.id, 20)
    ts[0] = replace(ts[0], state=TrancheState.IN_HAND, current_stock=4)

    plan = bulk_engine.plan_consumption(30, [batch], {batch.id: ts})

    assert [(s.number, s.units) for s in plan.sources] == [(2, 10), (1, 4)]
    assert plan.forced_units == 16


def test_forced_batch_only_allocation():
    """
    30 units at 4,900 with no stock at all:
    revenue 147,000, forced investment 36,000 / 36,000, profit 75,000 split 45,000 / 30,000.
    """
    revenue = bulk_engine.gross_revenue(30, bulk_engine.unit_price(30, True))
    forced = bulk_engine.ForcedInvestment(Decimal("36000.00"), Decimal("36000.00"))

    result = bulk_engine.allocate(revenue, [], forced, [], CommissionModel.SIXTY_FORTY)

    assert revenue == Decimal("147000.00")
    assert result.operator_investment_forced == Decimal("36000.00")
    assert result.agent_investment_forced == Decimal("36000.00")
    assert result.net_profit == Decimal("75000.00")
    assert result.agent_profit == Decimal("45000.00")
    assert result.operator_profit == Decimal("30000.00")
    assert result.total_to_operator == Decimal("66000.00")
    assert result.total_to_agent == Decimal("81000.00")


def test_allocation_order_debts_first():
    """
    pool = 100,000 revenue + 10,000 untransferred retail money.
    5,000 equipment debt, then 61,200 operator investment, then what is
    left (43,800) towards the agent's 61,200. nothing left for profit.
    """
    position = bulk_engine.BatchPosition(
        "b1", Decimal("61200"), Decimal("61200"), Decimal("10000"), Decimal("0")
    )
    debts = [bulk_engine.DebtItem("equipment", Decimal("5000"))]

    result = bulk_engine.allocate(Decimal("100000"), [position], None, debts, CommissionModel.SIXTY_FORTY)

    assert result.pool == Decimal("110000.00")
    assert result.debt_cleared == Decimal("5000")
    assert result.operator_investment_existing == Decimal("61200")
    assert result.agent_investment_existing == Decimal("43800.00")
    assert result.net_profit == Decimal("0")
    assert result.total_to_operator + result.total_to_agent == result.pool


def test_allocation_skips_recovered_operator_investment():
    position = bulk_engine.BatchPosition(
        "b1", Decimal("24000"), Decimal("24000"), Decimal("30000"), Decimal("24000")
    )
    result = bulk_engine.allocate(Decimal("50000"), [position], None, [], CommissionModel.CASCADE, ["s1"])

    # pool 56,000: nothing owed to the operator, 24,000 agent, 32,000 profit
    assert result.operator_investment_existing == Decimal("0")
    assert result.agent_investment_existing == Decimal("24000")
    assert result.net_profit == Decimal("32000.00")
    assert result.agent_profit == Decimal("16000.00")
    assert result.total_to_sponsors == Decimal("8000.00")
    assert result.operator_profit == Decimal("8000.00")


def test_allocate_is_pure():
    position = bulk_engine.BatchPosition("b1", Decimal("100"), Decimal("100"), Decimal("50"), Decimal("0"))
    args = (Decimal("1000"), [position], None, [bulk_engine.DebtItem("s1", Decimal("10"))], "60/40")

    assert bulk_engine.allocate(*args) == bulk_engine.allocate(*args)
