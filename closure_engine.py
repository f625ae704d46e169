from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from errors import InvalidStateTransition
from models import Batch, ClosureSettlement, SettlementState, Tranche, new_id
from money import floor_zero


def new_closure(batch: Batch, last_tranche: Tranche) -> ClosureSettlement:
    return ClosureSettlement(id=new_id(), batch_id=batch.id, tranche_id=last_tranche.id)


def residual(batch: Batch) -> Decimal:
    """whatever the agent still holds for the operator once the batch is sold out."""
    return floor_zero(batch.money_collected - batch.money_transferred)


def batch_sold_out(tranches: Sequence[Tranche]) -> bool:
    return bool(tranches) and all(t.current_stock == 0 for t in tranches)


def activate(closure: ClosureSettlement, batch: Batch, now: datetime) -> ClosureSettlement:
    if closure.state is not SettlementState.INACTIVE:
        raise InvalidStateTransition("closure", closure.id, closure.state.value, "PENDING")
    return replace(closure, state=SettlementState.PENDING, residual=residual(batch), activated_at=now)


def confirm(closure: ClosureSettlement, now: datetime) -> ClosureSettlement:
    if closure.state is not SettlementState.PENDING:
        raise InvalidStateTransition("closure", closure.id, closure.state.value, "SUCCEEDED")
    return replace(closure, state=SettlementState.SUCCEEDED, confirmed_at=now)
