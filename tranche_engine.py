from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Sequence, Set

from errors import InsufficientStock, InvalidStateTransition
from models import Tranche, TrancheState, new_id
from money import round_units, to_decimal

TRANCHE_TRANSITIONS: Dict[TrancheState, Set[TrancheState]] = {
    TrancheState.INACTIVE: {TrancheState.RELEASED, TrancheState.FINALIZED},
    TrancheState.RELEASED: {TrancheState.IN_TRANSIT},
    TrancheState.IN_TRANSIT: {TrancheState.IN_HAND},
    TrancheState.IN_HAND: {TrancheState.FINALIZED},
    TrancheState.FINALIZED: set(),
}

# states that count as "the batch's active tranche"
ACTIVE_STATES = {TrancheState.RELEASED, TrancheState.IN_TRANSIT, TrancheState.IN_HAND}

_STAMP = {
    TrancheState.RELEASED: "released_at",
    TrancheState.IN_TRANSIT: "in_transit_at",
    TrancheState.IN_HAND: "in_hand_at",
    TrancheState.FINALIZED: "finalized_at",
}


def can_transition(current: TrancheState, target: TrancheState) -> bool:
    return target in TRANCHE_TRANSITIONS.get(current, set())


def transition(tranche: Tranche, target: TrancheState, now: datetime) -> Tranche:
    """
    return the tranche moved to `target`, with its timestamp stamped.
    INACTIVE -> FINALIZED is only legal once the stock is gone (a reserved
    tranche drained by a bulk sale, or closed together with its batch).
    """
    if not can_transition(tranche.state, target):
        raise InvalidStateTransition("tranche", tranche.id, tranche.state.value, target.value)
    if (
        tranche.state is TrancheState.INACTIVE
        and target is TrancheState.FINALIZED
        and tranche.current_stock > 0
    ):
        raise InvalidStateTransition(
            "tranche",
            tranche.id,
            tranche.state.value,
            target.value,
            f"tranche {tranche.id} still holds {tranche.current_stock} units",
        )
    return replace(tranche, state=target, **{_STAMP[target]: now})


def split_quantity(quantity: int, two_tranche_max: int = 50) -> List[int]:
    """
    quantity <= two_tranche_max -> 2 tranches (half / rest)
    otherwise                   -> 3 tranches (a third, a third, rest)
    51 -> [17, 17, 17], 50 -> [25, 25], 21 -> [11, 10]
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    if quantity <= two_tranche_max:
        first = round_units(to_decimal(quantity) * Decimal("0.5"))
        return [first, quantity - first]
    third = round_units(to_decimal(quantity) * Decimal("0.333"))
    return [third, third, quantity - 2 * third]


def build_tranches(batch_id: str, quantity: int, two_tranche_max: int = 50) -> List[Tranche]:
    return [
        Tranche(
            id=new_id(),
            batch_id=batch_id,
            number=number,
            initial_stock=stock,
            current_stock=stock,
        )
        for number, stock in enumerate(split_quantity(quantity, two_tranche_max), start=1)
    ]


def consume(tranche: Tranche, units: int, bulk: bool = False) -> Tranche:
    """take `units` out of current stock. retail sales need the tranche IN_HAND."""
    if units <= 0:
        raise ValueError("units must be positive")
    if not bulk and tranche.state is not TrancheState.IN_HAND:
        raise InvalidStateTransition(
            "tranche",
            tranche.id,
            tranche.state.value,
            "SELL",
            f"tranche {tranche.id} is {tranche.state.value}, sales need IN_HAND",
        )
    if units > tranche.current_stock:
        raise InsufficientStock(tranche.id, units, tranche.current_stock)
    return replace(
        tranche,
        current_stock=tranche.current_stock - units,
        bulk_consumed=tranche.bulk_consumed + (units if bulk else 0),
    )


def stock_pct(tranche: Tranche) -> Decimal:
    if tranche.initial_stock == 0:
        return Decimal("0")
    return to_decimal(tranche.current_stock) * Decimal("100") / to_decimal(tranche.initial_stock)


def is_last(tranche: Tranche, tranches: Sequence[Tranche]) -> bool:
    return tranche.number == max(t.number for t in tranches)


def active_tranche(tranches: Sequence[Tranche]):
    active = [t for t in tranches if t.state in ACTIVE_STATES]
    return active[0] if active else None


def due_for_transit(tranche: Tranche, now: datetime, dwell: timedelta) -> bool:
    return (
        tranche.state is TrancheState.RELEASED
        and tranche.released_at is not None
        and tranche.released_at + dwell <= now
    )


def next_releasable(tranches: Sequence[Tranche]):
    """lowest-numbered INACTIVE tranche that still has stock, or None."""
    waiting = sorted(
        (t for t in tranches if t.state is TrancheState.INACTIVE and t.current_stock > 0),
        key=lambda t: t.number,
    )
    return waiting[0] if waiting else None
