"""
wholesale (bulk) sale arithmetic: price tiers, where the units come from,
and the strict order in which the money pool is spent.

nothing in here touches a store. `allocate` is a pure function over plain
inputs, so running it twice on the same inputs gives the same Allocation.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from cascade_engine import split
from errors import BusinessRuleViolation
from models import AffectedTranche, Batch, SponsorShare, Tranche, TrancheState
from money import ZERO, floor_zero, q, take, to_decimal

# (min units, unit price), highest tier first
PRICE_TIERS_WITH_LIQUOR: Tuple[Tuple[int, Decimal], ...] = (
    (100, Decimal("4500")),
    (50, Decimal("4700")),
    (20, Decimal("4900")),
)
PRICE_TIERS_WITHOUT_LIQUOR: Tuple[Tuple[int, Decimal], ...] = (
    (100, Decimal("4200")),
    (50, Decimal("4500")),
    (20, Decimal("4800")),
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def unit_price(quantity: int, with_liquor: bool, min_quantity: int = 20) -> Decimal:
    if quantity < min_quantity:
        raise BusinessRuleViolation(
            "bulk_min_quantity",
            f"bulk sales need at least {min_quantity} units, got {quantity}",
            quantity=quantity,
            minimum=min_quantity,
        )
    tiers = PRICE_TIERS_WITH_LIQUOR if with_liquor else PRICE_TIERS_WITHOUT_LIQUOR
    for threshold, price in tiers:
        if quantity >= threshold:
            return price
    # below every tier but above min_quantity (only if min_quantity < 20)
    return tiers[-1][1]


def gross_revenue(quantity: int, price) -> Decimal:
    return q(to_decimal(quantity) * to_decimal(price))


class StockPlan(NamedTuple):
    sources: Tuple[AffectedTranche, ...]
    involved_batch_ids: Tuple[str, ...]
    forced_units: int

    @property
    def consumed(self) -> int:
        return sum(s.units for s in self.sources)


def plan_consumption(quantity: int, batches: Sequence[Batch], tranches_by_batch: Dict[str, Sequence[Tranche]]) -> StockPlan:
    """
    decide which tranches a bulk sale drains:
      1) reserved stock (INACTIVE tranches) of every ACTIVE batch, oldest activation first
      2) then stock already IN_HAND, same batch order
      3) whatever is still missing becomes the forced batch
    """
    ordered = sorted(
        (b for b in batches if b.state.value == "ACTIVE" and not b.is_forced),
        key=lambda b: b.activated_at or _EPOCH,
    )
    remaining = quantity
    sources: List[AffectedTranche] = []
    involved: List[str] = []

    for wanted_state in (TrancheState.INACTIVE, TrancheState.IN_HAND):
        for batch in ordered:
            if remaining == 0:
                break
            for tranche in sorted(tranches_by_batch.get(batch.id, ()), key=lambda t: t.number):
                if remaining == 0:
                    break
                if tranche.state is not wanted_state or tranche.current_stock <= 0:
                    continue
                units = min(remaining, tranche.current_stock)
                sources.append(AffectedTranche(tranche.id, batch.id, tranche.number, units))
                if batch.id not in involved:
                    involved.append(batch.id)
                remaining -= units

    return StockPlan(tuple(sources), tuple(involved), remaining)


class BatchPosition(NamedTuple):
    batch_id: str
    operator_investment: Decimal
    agent_investment: Decimal
    money_collected: Decimal
    money_transferred: Decimal


class DebtItem(NamedTuple):
    key: str  # settlement id, or "equipment"
    amount: Decimal


class ForcedInvestment(NamedTuple):
    operator: Decimal
    agent: Decimal


class Allocation(NamedTuple):
    pool: Decimal
    debt_cleared: Decimal
    debt_paid: Tuple[Tuple[str, Decimal], ...]
    operator_investment_existing: Decimal
    operator_investment_by_batch: Tuple[Tuple[str, Decimal], ...]
    operator_investment_forced: Decimal
    agent_investment_existing: Decimal
    agent_investment_by_batch: Tuple[Tuple[str, Decimal], ...]
    agent_investment_forced: Decimal
    net_profit: Decimal
    agent_profit: Decimal
    operator_profit: Decimal
    sponsor_shares: Tuple[SponsorShare, ...]

    @property
    def total_to_operator(self) -> Decimal:
        return (
            self.debt_cleared
            + self.operator_investment_existing
            + self.operator_investment_forced
            + self.operator_profit
        )

    @property
    def total_to_agent(self) -> Decimal:
        return self.agent_investment_existing + self.agent_investment_forced + self.agent_profit

    @property
    def total_to_sponsors(self) -> Decimal:
        return sum((s.amount for s in self.sponsor_shares), ZERO)


def allocate(
    revenue,
    positions: Sequence[BatchPosition],
    forced: Optional[ForcedInvestment],
    debts: Sequence[DebtItem],
    model,
    sponsor_chain: Sequence[str] = (),
) -> Allocation:
    """
    spend the pool in strict order, each step takes min(pool, target):
      1) debts (oldest first)                 -> operator
      2) operator investment, existing batches (oldest-unrecovered first)
      3) operator investment, forced batch
      4) agent investment, existing batches
      5) agent investment, forced batch
      6) what is left is net profit, split by the commission model

    pool = revenue + untransferred retail money of the involved batches.
    """
    pool = q(to_decimal(revenue)) + sum(
        (floor_zero(p.money_collected - p.money_transferred) for p in positions), ZERO
    )
    start = pool

    # 1) debts
    debt_paid = []
    for item in debts:
        paid, pool = take(pool, item.amount)
        if paid > 0:
            debt_paid.append((item.key, paid))
    debt_cleared = sum((amount for _, amount in debt_paid), ZERO)

    # 2) operator investment on existing batches
    op_by_batch = []
    for p in positions:
        paid, pool = take(pool, p.operator_investment - p.money_transferred)
        op_by_batch.append((p.batch_id, paid))
    op_existing = sum((amount for _, amount in op_by_batch), ZERO)

    # 3) operator investment on the forced batch
    op_forced = ZERO
    if forced is not None:
        op_forced, pool = take(pool, forced.operator)

    # 4) agent investment on existing batches
    agent_by_batch = []
    for p in positions:
        paid, pool = take(pool, p.agent_investment)
        agent_by_batch.append((p.batch_id, paid))
    agent_existing = sum((amount for _, amount in agent_by_batch), ZERO)

    # 5) agent investment on the forced batch
    agent_forced = ZERO
    if forced is not None:
        agent_forced, pool = take(pool, forced.agent)

    # 6) profit
    net_profit = pool
    shares = split(net_profit, model, sponsor_chain)

    allocation = Allocation(
        pool=start,
        debt_cleared=debt_cleared,
        debt_paid=tuple(debt_paid),
        operator_investment_existing=op_existing,
        operator_investment_by_batch=tuple(op_by_batch),
        operator_investment_forced=op_forced,
        agent_investment_existing=agent_existing,
        agent_investment_by_batch=tuple(agent_by_batch),
        agent_investment_forced=agent_forced,
        net_profit=net_profit,
        agent_profit=shares.agent_share,
        operator_profit=shares.operator_share,
        sponsor_shares=shares.sponsor_shares,
    )
    return allocation
