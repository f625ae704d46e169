import logging
from typing import List

import batch_engine
import closure_engine
import events
import settlement_engine
import tranche_engine
from config import settings
from models import Batch, BatchState, CommissionModel, utcnow
from sponsor_engine import require_eligible_agent
from store import require, saved
from tranche_db import _release_in_tx

logger = logging.getLogger(__name__)


def create_batch(store, directory, agent_id, quantity, model=CommissionModel.SIXTY_FORTY) -> Batch:
    """
    new CREATED batch for an eligible agent, with its tranches laid out
    (all INACTIVE). nothing is released until the batch is activated.
    """
    require_eligible_agent(agent_id, directory)
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    batch = batch_engine.new_batch(
        agent_id,
        quantity,
        model,
        unit_cost=settings.UNIT_COST,
        operator_pct=settings.OPERATOR_INVESTMENT_PCT,
    )
    tranches = tranche_engine.build_tranches(batch.id, quantity, settings.TWO_TRANCHE_MAX_QUANTITY)

    with store.transaction() as tx:
        tx.insert_batch(batch)
        for tranche in tranches:
            tx.insert_tranche(tranche)
        events.emit(
            tx,
            events.BATCH_CREATED,
            "batch",
            batch.id,
            agent_id=agent_id,
            quantity=quantity,
            model=batch.model,
            tranches=[t.initial_stock for t in tranches],
            total_investment=batch.total_investment,
        )

    logger.info("batch %s created for %s: %d units in %d tranches", batch.id, agent_id, quantity, len(tranches))
    return batch


def activate_batch(store, batch_id, now=None) -> Batch:
    """
    CREATED -> ACTIVE in one transaction:
      - stamp activation time
      - one INACTIVE settlement per tranche + the INACTIVE closure settlement
      - release tranche #1
    """
    now = now or utcnow()
    with store.transaction() as tx:
        batch = require(tx.get_batch(batch_id), "batch", batch_id)
        batch_engine.require_regular(batch, BatchState.ACTIVE.value)
        activated = saved(
            tx.update_batch(batch_engine.transition(batch, BatchState.ACTIVE, now), batch.version),
            "batch",
            batch_id,
            batch.version,
        )

        tranches = tx.list_tranches(batch_id)
        for tranche in tranches:
            tx.insert_settlement(settlement_engine.new_settlement(activated, tranche, len(tranches)))
        tx.insert_closure(closure_engine.new_closure(activated, tranches[-1]))

        _release_in_tx(tx, tranches[0], now)

        events.emit(
            tx,
            events.BATCH_ACTIVATED,
            "batch",
            batch_id,
            agent_id=activated.agent_id,
            quantity=activated.quantity,
            is_forced=activated.is_forced,
            reward_fund_inflow=batch_engine.reward_fund_contribution(
                activated.quantity, settings.REWARD_FUND_PER_UNIT
            ),
        )

    logger.info("batch %s activated", batch_id)
    return activated


def cancel_batch(store, batch_id) -> Batch:
    """hard delete, only while CREATED."""
    with store.transaction() as tx:
        batch = require(tx.get_batch(batch_id), "batch", batch_id)
        batch_engine.require_regular(batch, "CANCELLED")
        batch_engine.require_cancellable(batch)
        tx.delete_batch(batch_id)
        events.emit(tx, events.BATCH_CANCELLED, "batch", batch_id, agent_id=batch.agent_id, quantity=batch.quantity)
    logger.info("batch %s cancelled", batch_id)
    return batch


def get_batch(store, batch_id) -> Batch:
    with store.transaction() as tx:
        return require(tx.get_batch(batch_id), "batch", batch_id)


def list_batches(store, agent_id=None, state=None) -> List[Batch]:
    with store.transaction() as tx:
        return tx.list_batches(agent_id=agent_id, state=BatchState(state) if state else None)


def batch_overview(store, batch_id) -> dict:
    """batch with its tranches, settlements and closure, for the query side."""
    with store.transaction() as tx:
        batch = require(tx.get_batch(batch_id), "batch", batch_id)
        return {
            "batch": batch,
            "tranches": tx.list_tranches(batch_id),
            "settlements": tx.list_settlements(batch_ids=[batch_id]),
            "closure": tx.get_closure_by_batch(batch_id),
        }
