"""
when a per-tranche settlement becomes payable, and how much it is worth.

the threshold rules are a table keyed by (tranche count, tranche number)
instead of an if/else on 2 vs 3 tranches. a new batch shape means a new
row here, nothing else.
"""
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, NamedTuple, Sequence, Set, Tuple

from cascade_engine import operator_share
from errors import InsufficientAmount, InvalidStateTransition
from models import Batch, Settlement, SettlementConcept, SettlementState, Tranche, new_id
from money import ZERO, floor_zero, to_decimal
from tranche_engine import stock_pct

SETTLEMENT_TRANSITIONS: Dict[SettlementState, Set[SettlementState]] = {
    SettlementState.INACTIVE: {SettlementState.PENDING, SettlementState.SUCCEEDED},
    SettlementState.PENDING: {SettlementState.SUCCEEDED},
    SettlementState.SUCCEEDED: set(),
}

MONEY = "money"
STOCK = "stock"


class TriggerRule(NamedTuple):
    kind: str  # MONEY: collected >= operator investment, STOCK: stock% <= pct
    stock_pct: Decimal = ZERO


def trigger_table(early_pct, late_pct) -> Dict[Tuple[int, int], TriggerRule]:
    early, late = to_decimal(early_pct), to_decimal(late_pct)
    return {
        (3, 1): TriggerRule(MONEY),
        (3, 2): TriggerRule(STOCK, early),
        (3, 3): TriggerRule(STOCK, late),
        (2, 1): TriggerRule(STOCK, early),
        (2, 2): TriggerRule(STOCK, late),
    }


CONCEPTS: Dict[Tuple[int, int], SettlementConcept] = {
    (3, 1): SettlementConcept.ADMIN_INVESTMENT,
    (3, 2): SettlementConcept.PROFIT,
    (3, 3): SettlementConcept.PROFIT,
    (2, 1): SettlementConcept.MIXED,
    (2, 2): SettlementConcept.PROFIT,
}


def concept_for(tranche_count: int, number: int) -> SettlementConcept:
    try:
        return CONCEPTS[(tranche_count, number)]
    except KeyError:
        raise ValueError(f"no settlement concept for tranche {number} of {tranche_count}")


def new_settlement(batch: Batch, tranche: Tranche, tranche_count: int) -> Settlement:
    return Settlement(
        id=new_id(),
        tranche_id=tranche.id,
        batch_id=batch.id,
        tranche_number=tranche.number,
        concept=concept_for(tranche_count, tranche.number),
    )


def should_trigger(rule: TriggerRule, batch: Batch, tranche: Tranche) -> bool:
    # a sold-out tranche is always due, whatever its rule
    if tranche.current_stock == 0:
        return True
    if rule.kind == MONEY:
        return batch.money_collected >= batch.operator_investment
    return stock_pct(tranche) <= rule.stock_pct


def expected_amount(concept, batch: Batch, sponsor_chain: Sequence[str] = ()) -> Decimal:
    """
    ADMIN_INVESTMENT: operator investment
    MIXED: operator investment + operator profit share to date
    PROFIT: operator profit share to date minus profit already handed over
    """
    concept = SettlementConcept(concept)
    profit = floor_zero(batch.money_collected - batch.total_investment)
    op_profit = operator_share(profit, batch.model, sponsor_chain)

    if concept is SettlementConcept.ADMIN_INVESTMENT:
        return batch.operator_investment
    if concept is SettlementConcept.MIXED:
        return batch.operator_investment + op_profit

    profit_paid = floor_zero(batch.money_transferred - batch.operator_investment)
    return floor_zero(op_profit - profit_paid)


def shortfall(expected, absorbed, received) -> Decimal:
    return floor_zero(to_decimal(expected) - to_decimal(absorbed) - to_decimal(received))


def with_expected(settlement: Settlement, expected) -> Settlement:
    expected = to_decimal(expected)
    return replace(
        settlement,
        expected=expected,
        shortfall=shortfall(expected, settlement.absorbed, settlement.received),
    )


def is_open(settlement: Settlement) -> bool:
    return settlement.state is not SettlementState.SUCCEEDED and settlement.closed_by_bulk_id is None


def activate(settlement: Settlement, expected, now: datetime) -> Settlement:
    if settlement.state is not SettlementState.INACTIVE:
        raise InvalidStateTransition("settlement", settlement.id, settlement.state.value, "PENDING")
    return replace(with_expected(settlement, expected), state=SettlementState.PENDING, activated_at=now)


def confirm(settlement: Settlement, received, now: datetime) -> Settlement:
    """
    PENDING -> SUCCEEDED. the agent must bring at least expected - absorbed.
    """
    if settlement.state is not SettlementState.PENDING:
        raise InvalidStateTransition("settlement", settlement.id, settlement.state.value, "SUCCEEDED")
    received = to_decimal(received)
    if received < 0:
        raise ValueError("received amount cannot be negative")
    if received < settlement.expected - settlement.absorbed:
        raise InsufficientAmount(settlement.id, settlement.expected, settlement.absorbed, received)
    return replace(
        settlement,
        state=SettlementState.SUCCEEDED,
        received=received,
        shortfall=ZERO,
        confirmed_at=now,
    )


def close_by_bulk(settlement: Settlement, bulk_id: str, now: datetime) -> Settlement:
    """an INACTIVE/PENDING settlement absorbed in full by a bulk settlement."""
    if settlement.state is SettlementState.SUCCEEDED:
        raise InvalidStateTransition("settlement", settlement.id, settlement.state.value, "SUCCEEDED")
    return replace(
        settlement,
        state=SettlementState.SUCCEEDED,
        absorbed=floor_zero(settlement.expected - settlement.received),
        shortfall=ZERO,
        closed_by_bulk_id=bulk_id,
        confirmed_at=now,
    )


def outstanding_debt(settlements: Sequence[Settlement]) -> Decimal:
    """unsettled shortfalls of PENDING settlements."""
    return sum(
        (s.shortfall for s in settlements if s.state is SettlementState.PENDING),
        ZERO,
    )


def absorb(settlement: Settlement, amount, bulk_id: str, now: datetime) -> Settlement:
    """
    part (or all) of a PENDING settlement's shortfall paid out of a bulk sale's
    debt-clearing step. once nothing is left it is closed by that bulk settlement.
    """
    if settlement.state is not SettlementState.PENDING:
        raise InvalidStateTransition("settlement", settlement.id, settlement.state.value, "ABSORB")
    absorbed = settlement.absorbed + to_decimal(amount)
    remaining = shortfall(settlement.expected, absorbed, settlement.received)
    if remaining > 0:
        return replace(settlement, absorbed=absorbed, shortfall=remaining)
    return replace(
        settlement,
        state=SettlementState.SUCCEEDED,
        absorbed=absorbed,
        shortfall=ZERO,
        closed_by_bulk_id=bulk_id,
        confirmed_at=now,
    )
