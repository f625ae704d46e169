import logging
from dataclasses import replace

import closure_engine
import events
import tranche_engine
from config import settings
from errors import InvalidStateTransition
from models import BatchState, TrancheState, utcnow
from money import to_decimal
from settlement_db import _refresh_in_tx, sponsor_chain_for
from store import require, saved

logger = logging.getLogger(__name__)


def record_retail_sale(store, directory, batch_id, quantity, amount, now=None) -> dict:
    """
    a retail sale out of the batch's IN_HAND tranche.

    one transaction:
      1) take the units out of the tranche (finalize it if it was not the last one and is now empty)
      2) add the money to the batch
      3) re-evaluate the tranche's settlement (trigger + expected amount)
      4) outbox: sale, low stock, investment recovered, tranche finalized, batch sold out
    """
    now = now or utcnow()
    amount = to_decimal(amount)
    if amount < 0:
        raise ValueError("sale amount cannot be negative")

    with store.transaction() as tx:
        batch = require(tx.get_batch(batch_id), "batch", batch_id)
        if batch.state is not BatchState.ACTIVE:
            raise InvalidStateTransition("batch", batch_id, batch.state.value, "SELL")

        tranches = tx.list_tranches(batch_id)
        tranche = tranche_engine.active_tranche(tranches)
        if tranche is None or tranche.state is not TrancheState.IN_HAND:
            raise InvalidStateTransition(
                "batch",
                batch_id,
                tranche.state.value if tranche else "NO_ACTIVE_TRANCHE",
                "SELL",
                f"batch {batch_id} has no tranche in hand",
            )

        # 1) stock
        before_pct = tranche_engine.stock_pct(tranche)
        consumed = tranche_engine.consume(tranche, quantity)
        finalize = consumed.current_stock == 0 and not tranche_engine.is_last(tranche, tranches)
        if finalize:
            consumed = tranche_engine.transition(consumed, TrancheState.FINALIZED, now)
        stored_tranche = saved(
            tx.update_tranche(consumed, tranche.version, expected_state=TrancheState.IN_HAND),
            "tranche",
            tranche.id,
            tranche.version,
        )

        # 2) money
        stored_batch = saved(
            tx.update_batch(replace(batch, money_collected=batch.money_collected + amount), batch.version),
            "batch",
            batch.id,
            batch.version,
        )

        # 3) settlement
        chain = sponsor_chain_for(stored_batch, directory)
        settlement = _refresh_in_tx(tx, stored_batch, stored_tranche, len(tranches), chain, now)

        # 4) events
        events.emit(
            tx,
            events.SALE_RECORDED,
            "batch",
            batch_id,
            agent_id=batch.agent_id,
            tranche_number=tranche.number,
            quantity=quantity,
            amount=amount,
            money_collected=stored_batch.money_collected,
        )

        after_pct = tranche_engine.stock_pct(stored_tranche)
        notice = settings.LOW_STOCK_NOTICE_PCT
        if 0 < after_pct <= notice < before_pct:
            events.emit(
                tx,
                events.LOW_STOCK,
                "tranche",
                tranche.id,
                batch_id=batch_id,
                agent_id=batch.agent_id,
                number=tranche.number,
                current_stock=stored_tranche.current_stock,
                stock_pct=after_pct.quantize(to_decimal("0.01")),
            )

        if batch.money_collected < batch.total_investment <= stored_batch.money_collected:
            events.emit(
                tx,
                events.INVESTMENT_RECOVERED,
                "batch",
                batch_id,
                agent_id=batch.agent_id,
                total_investment=batch.total_investment,
                money_collected=stored_batch.money_collected,
            )

        if finalize:
            events.emit(
                tx,
                events.TRANCHE_FINALIZED,
                "tranche",
                tranche.id,
                batch_id=batch_id,
                number=tranche.number,
                from_state=TrancheState.IN_HAND,
                current_stock=0,
            )

        all_tranches = tx.list_tranches(batch_id)
        if closure_engine.batch_sold_out(all_tranches):
            events.emit(tx, events.LAST_TRANCHE_DEPLETED, "batch", batch_id, tranche_id=all_tranches[-1].id)

    logger.info("sale on batch %s: %d units for %s (tranche #%d)", batch_id, quantity, amount, tranche.number)
    return {"batch": stored_batch, "tranche": stored_tranche, "settlement": settlement}
