import logging
from dataclasses import replace
from typing import List, Optional

import closure_engine
import events
import settlement_engine
from config import settings
from models import Batch, CommissionModel, Settlement, SettlementState, Tranche, utcnow
from sponsor_engine import get_sponsor_chain
from store import require, saved

logger = logging.getLogger(__name__)


def sponsor_chain_for(batch: Batch, directory) -> List[str]:
    if batch.model is not CommissionModel.CASCADE or directory is None:
        return []
    return get_sponsor_chain(batch.agent_id, directory, settings.OPERATOR_ID, settings.MAX_SPONSOR_HOPS)


def _refresh_in_tx(tx, batch: Batch, tranche: Tranche, tranche_count: int, chain, now) -> Optional[Settlement]:
    """
    re-evaluate one tranche's settlement after its numbers moved:
      - INACTIVE + trigger hit -> PENDING with a fresh expected amount
      - INACTIVE / PENDING otherwise -> expected amount recalculated
    settlements already closed (confirmed or absorbed by a bulk settlement) are never touched.
    """
    settlement = tx.get_settlement_by_tranche(tranche.id)
    if settlement is None or not settlement_engine.is_open(settlement):
        return settlement

    expected = settlement_engine.expected_amount(settlement.concept, batch, chain)
    rules = settlement_engine.trigger_table(settings.EARLY_TRIGGER_STOCK_PCT, settings.LATE_TRIGGER_STOCK_PCT)
    rule = rules[(tranche_count, tranche.number)]

    if settlement.state is SettlementState.INACTIVE and settlement_engine.should_trigger(rule, batch, tranche):
        activated = saved(
            tx.update_settlement(settlement_engine.activate(settlement, expected, now), settlement.version),
            "settlement",
            settlement.id,
            settlement.version,
        )
        events.emit(
            tx,
            events.SETTLEMENT_PENDING,
            "settlement",
            settlement.id,
            batch_id=batch.id,
            agent_id=batch.agent_id,
            tranche_number=tranche.number,
            concept=activated.concept,
            expected=activated.expected,
        )
        logger.info("settlement %s (tranche #%d) is now PENDING for %s", settlement.id, tranche.number, expected)
        return activated

    # small drifts are not worth a write
    if abs(expected - settlement.expected) <= settings.EXPECTED_AMOUNT_TOLERANCE:
        return settlement
    updated = saved(
        tx.update_settlement(settlement_engine.with_expected(settlement, expected), settlement.version),
        "settlement",
        settlement.id,
        settlement.version,
    )
    if settlement.state is SettlementState.PENDING:
        logger.info("settlement %s expected amount moved %s -> %s", settlement.id, settlement.expected, expected)
    return updated


def _confirm_in_tx(tx, settlement: Settlement, amount, now) -> Optional[Settlement]:
    """
    confirm against the snapshot the caller read. returns None when another
    writer got there first (0 rows): that is a no-op, not an error.
    """
    confirmed = settlement_engine.confirm(settlement, amount, now)
    stored = tx.update_settlement(confirmed, settlement.version)
    if stored is None:
        logger.info("settlement %s already confirmed elsewhere, skipping", settlement.id)
        return None

    batch = require(tx.get_batch(settlement.batch_id), "batch", settlement.batch_id)
    moved = saved(
        tx.update_batch(replace(batch, money_transferred=batch.money_transferred + stored.received), batch.version),
        "batch",
        batch.id,
        batch.version,
    )

    events.emit(
        tx,
        events.SETTLEMENT_SUCCEEDED,
        "settlement",
        stored.id,
        batch_id=batch.id,
        agent_id=batch.agent_id,
        tranche_number=stored.tranche_number,
        received=stored.received,
        money_transferred=moved.money_transferred,
    )

    tranches = tx.list_tranches(batch.id)
    if stored.tranche_number == tranches[-1].number and closure_engine.batch_sold_out(tranches):
        events.emit(tx, events.LAST_TRANCHE_DEPLETED, "batch", batch.id, tranche_id=tranches[-1].id)
    return stored


def confirm_settlement(store, settlement_id, amount, now=None) -> Settlement:
    """
    PENDING -> SUCCEEDED when the agent hands over at least expected - absorbed.
    raises InsufficientAmount (with the shortfall) otherwise.
    """
    now = now or utcnow()
    with store.transaction() as tx:
        settlement = require(tx.get_settlement(settlement_id), "settlement", settlement_id)
        stored = _confirm_in_tx(tx, settlement, amount, now)
        if stored is None:
            return require(tx.get_settlement(settlement_id), "settlement", settlement_id)
    logger.info("settlement %s confirmed with %s", settlement_id, stored.received)
    return stored


def get_settlement(store, settlement_id) -> Settlement:
    with store.transaction() as tx:
        return require(tx.get_settlement(settlement_id), "settlement", settlement_id)


def list_settlements(store, batch_id=None, state=None) -> List[Settlement]:
    with store.transaction() as tx:
        return tx.list_settlements(
            batch_ids=[batch_id] if batch_id else None,
            state=SettlementState(state) if state else None,
        )
