from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, NamedTuple, Set

from errors import InvalidStateTransition
from models import Batch, BatchState, CommissionModel, new_id
from money import pct, q, to_decimal

BATCH_TRANSITIONS: Dict[BatchState, Set[BatchState]] = {
    BatchState.CREATED: {BatchState.ACTIVE},
    BatchState.ACTIVE: {BatchState.FINALIZED},
    BatchState.FINALIZED: set(),
}


class Investment(NamedTuple):
    total: Decimal
    operator: Decimal
    agent: Decimal


def compute_investment(quantity: int, unit_cost, operator_pct) -> Investment:
    """
    total = quantity * unit cost, the operator funds operator_pct of it,
    the agent the rest (so operator + agent == total always).
    """
    total = q(to_decimal(quantity) * to_decimal(unit_cost))
    operator = pct(total, operator_pct)
    return Investment(total, operator, total - operator)


def new_batch(agent_id, quantity, model, unit_cost, operator_pct, is_forced=False, bulk_sale_id=None) -> Batch:
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    inv = compute_investment(quantity, unit_cost, operator_pct)
    return Batch(
        id=new_id(),
        agent_id=agent_id,
        quantity=quantity,
        model=CommissionModel(model),
        state=BatchState.CREATED,
        total_investment=inv.total,
        operator_investment=inv.operator,
        agent_investment=inv.agent,
        is_forced=is_forced,
        bulk_sale_id=bulk_sale_id,
    )


def transition(batch: Batch, target: BatchState, now: datetime) -> Batch:
    if target not in BATCH_TRANSITIONS[batch.state]:
        raise InvalidStateTransition("batch", batch.id, batch.state.value, target.value)
    if target is BatchState.ACTIVE:
        return replace(batch, state=target, activated_at=now)
    return replace(batch, state=target, finalized_at=now)


def require_cancellable(batch: Batch):
    if batch.state is not BatchState.CREATED:
        raise InvalidStateTransition(
            "batch", batch.id, batch.state.value, "CANCELLED", f"batch {batch.id} can only be cancelled while CREATED"
        )


def require_regular(batch: Batch, requested: str):
    """forced batches only move through their bulk settlement."""
    if batch.is_forced:
        raise InvalidStateTransition(
            "batch",
            batch.id,
            batch.state.value,
            requested,
            f"batch {batch.id} belongs to bulk sale {batch.bulk_sale_id}, settle or cancel that instead",
        )


def untransferred(batch: Batch) -> Decimal:
    """retail money the agent holds that has not gone to the operator yet."""
    diff = batch.money_collected - batch.money_transferred
    return diff if diff > 0 else Decimal("0.00")


def profit_to_date(batch: Batch) -> Decimal:
    diff = batch.money_collected - batch.total_investment
    return diff if diff > 0 else Decimal("0.00")


def reward_fund_contribution(quantity: int, per_unit) -> Decimal:
    return q(to_decimal(quantity) * to_decimal(per_unit))
