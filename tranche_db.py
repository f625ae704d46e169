import logging
from datetime import timedelta
from typing import Optional

import events
import tranche_engine
from config import settings
from errors import InvalidStateTransition
from models import BatchState, SettlementState, Tranche, TrancheState, utcnow
from store import require, saved

logger = logging.getLogger(__name__)


def _move(tx, tranche: Tranche, target: TrancheState, now) -> Tranche:
    moved = tranche_engine.transition(tranche, target, now)
    stored = saved(
        tx.update_tranche(moved, tranche.version, expected_state=tranche.state),
        "tranche",
        tranche.id,
        tranche.version,
    )
    events.emit(
        tx,
        "TRANCHE_" + target.value,
        "tranche",
        tranche.id,
        batch_id=tranche.batch_id,
        number=tranche.number,
        from_state=tranche.state,
        current_stock=tranche.current_stock,
    )
    return stored


def _release_in_tx(tx, tranche: Tranche, now) -> Tranche:
    """
    INACTIVE -> RELEASED, refusing a second active tranche in the batch.
    """
    batch = require(tx.get_batch(tranche.batch_id), "batch", tranche.batch_id)
    if batch.state is not BatchState.ACTIVE:
        raise InvalidStateTransition(
            "tranche",
            tranche.id,
            tranche.state.value,
            TrancheState.RELEASED.value,
            f"batch {batch.id} is {batch.state.value}, tranches are only released on ACTIVE batches",
        )
    siblings = [t for t in tx.list_tranches(batch.id) if t.id != tranche.id]
    other = tranche_engine.active_tranche(siblings)
    if other is not None:
        raise InvalidStateTransition(
            "tranche",
            tranche.id,
            tranche.state.value,
            TrancheState.RELEASED.value,
            f"tranche {other.number} of batch {batch.id} is still {other.state.value}",
        )
    return _move(tx, tranche, TrancheState.RELEASED, now)


def release_tranche(store, tranche_id, now=None) -> Tranche:
    now = now or utcnow()
    with store.transaction() as tx:
        tranche = require(tx.get_tranche(tranche_id), "tranche", tranche_id)
        released = _release_in_tx(tx, tranche, now)
    logger.info("tranche %s (#%d) released", tranche_id, released.number)
    return released


def mark_in_transit(store, tranche_id, now=None) -> Tranche:
    """pickup: RELEASED -> IN_TRANSIT."""
    now = now or utcnow()
    with store.transaction() as tx:
        tranche = require(tx.get_tranche(tranche_id), "tranche", tranche_id)
        return _move(tx, tranche, TrancheState.IN_TRANSIT, now)


def confirm_delivery(store, tranche_id, now=None) -> Tranche:
    """IN_TRANSIT -> IN_HAND. from here on the agent can sell from it."""
    now = now or utcnow()
    with store.transaction() as tx:
        tranche = require(tx.get_tranche(tranche_id), "tranche", tranche_id)
        return _move(tx, tranche, TrancheState.IN_HAND, now)


def get_tranche(store, tranche_id) -> Tranche:
    with store.transaction() as tx:
        return require(tx.get_tranche(tranche_id), "tranche", tranche_id)


def auto_transit_released(store, now=None, dwell_hours=None) -> int:
    """
    background sweep: RELEASED tranches older than the dwell time go IN_TRANSIT.

    each tranche is moved in its own transaction with a state+version
    conditional update. if another instance already moved it we get 0 rows
    back and simply skip it, so running this from several processes is fine.
    """
    now = now or utcnow()
    dwell = timedelta(hours=settings.TRANCHE_AUTO_TRANSIT_HOURS if dwell_hours is None else dwell_hours)

    with store.transaction() as tx:
        candidates = [
            t for t in tx.list_tranches_in_state(TrancheState.RELEASED) if tranche_engine.due_for_transit(t, now, dwell)
        ]

    moved = 0
    for tranche in candidates:
        with store.transaction() as tx:
            updated = tx.update_tranche(
                tranche_engine.transition(tranche, TrancheState.IN_TRANSIT, now),
                tranche.version,
                expected_state=TrancheState.RELEASED,
            )
            if updated is None:
                logger.debug("tranche %s already moved by someone else", tranche.id)
                continue
            events.emit(
                tx,
                events.TRANCHE_IN_TRANSIT,
                "tranche",
                tranche.id,
                batch_id=tranche.batch_id,
                number=tranche.number,
                from_state=TrancheState.RELEASED,
                current_stock=tranche.current_stock,
                automatic=True,
            )
            moved += 1

    if moved:
        logger.info("auto-transit sweep moved %d tranche(s)", moved)
    return moved


def _release_next_in_tx(tx, batch_id, now) -> Optional[Tranche]:
    batch = tx.get_batch(batch_id)
    if batch is None or batch.state is not BatchState.ACTIVE:
        return None
    tranches = tx.list_tranches(batch_id)
    if tranche_engine.active_tranche(tranches) is not None:
        return None
    candidate = tranche_engine.next_releasable(tranches)
    if candidate is None:
        return None

    # every earlier tranche has to be settled before the next one goes out
    for earlier in tranches:
        if earlier.number >= candidate.number:
            continue
        settlement = tx.get_settlement_by_tranche(earlier.id)
        if settlement is not None and settlement.state is not SettlementState.SUCCEEDED:
            return None

    return _release_in_tx(tx, candidate, now)


def release_next_if_ready(store, batch_id, now=None) -> Optional[Tranche]:
    """
    release the batch's next tranche once the current one is finished and
    all earlier settlements succeeded. safe to call repeatedly.
    """
    now = now or utcnow()
    with store.transaction() as tx:
        released = _release_next_in_tx(tx, batch_id, now)
    if released is not None:
        logger.info("batch %s: tranche #%d released", batch_id, released.number)
    return released
