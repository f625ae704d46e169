import logging
from dataclasses import replace
from typing import Optional

import batch_engine
import closure_engine
import events
import tranche_engine
from models import BatchState, ClosureSettlement, SettlementState, TrancheState, utcnow
from store import require, saved

logger = logging.getLogger(__name__)


def _activate_in_tx(tx, batch_id, now) -> Optional[ClosureSettlement]:
    closure = tx.get_closure_by_batch(batch_id)
    if closure is None or closure.state is not SettlementState.INACTIVE:
        return None
    batch = require(tx.get_batch(batch_id), "batch", batch_id)
    if batch.state is not BatchState.ACTIVE:
        return None
    if not closure_engine.batch_sold_out(tx.list_tranches(batch_id)):
        return None
    open_settlements = [
        s for s in tx.list_settlements(batch_ids=[batch_id]) if s.state is not SettlementState.SUCCEEDED
    ]
    if open_settlements:
        logger.info(
            "batch %s sold out but %d settlement(s) still open, closure waits", batch_id, len(open_settlements)
        )
        return None

    activated = tx.update_closure(closure_engine.activate(closure, batch, now), closure.version)
    if activated is None:
        return None
    events.emit(
        tx,
        events.CLOSURE_PENDING,
        "closure",
        closure.id,
        batch_id=batch_id,
        agent_id=batch.agent_id,
        residual=activated.residual,
    )
    return activated


def activate_closure(store, batch_id, now=None) -> Optional[ClosureSettlement]:
    """
    INACTIVE -> PENDING once every tranche is empty and every per-tranche
    settlement succeeded. returns None (and changes nothing) otherwise, so
    redelivered events are harmless.
    """
    now = now or utcnow()
    with store.transaction() as tx:
        activated = _activate_in_tx(tx, batch_id, now)
    if activated is not None:
        logger.info("closure %s for batch %s pending, residual %s", activated.id, batch_id, activated.residual)
    return activated


def confirm_closure(store, closure_id, now=None) -> ClosureSettlement:
    """
    PENDING -> SUCCEEDED, and in the same transaction the final tranche and
    the batch are finalized. terminal: nothing gets released from here.
    """
    now = now or utcnow()
    with store.transaction() as tx:
        closure = require(tx.get_closure(closure_id), "closure", closure_id)
        batch = require(tx.get_batch(closure.batch_id), "batch", closure.batch_id)

        # money may have moved since activation
        residual = closure_engine.residual(batch)
        confirmed = replace(closure_engine.confirm(closure, now), residual=residual)
        stored = saved(tx.update_closure(confirmed, closure.version), "closure", closure_id, closure.version)

        for tranche in tx.list_tranches(batch.id):
            if tranche.state is TrancheState.FINALIZED:
                continue
            saved(
                tx.update_tranche(
                    tranche_engine.transition(tranche, TrancheState.FINALIZED, now),
                    tranche.version,
                    expected_state=tranche.state,
                ),
                "tranche",
                tranche.id,
                tranche.version,
            )

        finalized = batch_engine.transition(batch, BatchState.FINALIZED, now)
        finalized = replace(finalized, money_transferred=batch.money_transferred + residual)
        saved(tx.update_batch(finalized, batch.version), "batch", batch.id, batch.version)

        events.emit(
            tx,
            events.CLOSURE_SUCCEEDED,
            "closure",
            closure_id,
            batch_id=batch.id,
            agent_id=batch.agent_id,
            residual=residual,
        )
        events.emit(tx, events.BATCH_FINALIZED, "batch", batch.id, agent_id=batch.agent_id)

    logger.info("closure %s confirmed, batch %s finalized", closure_id, batch.id)
    return stored


def get_closure(store, closure_id) -> ClosureSettlement:
    with store.transaction() as tx:
        return require(tx.get_closure(closure_id), "closure", closure_id)
