"""
bulk (wholesale) sales and their consolidated settlement.

register_bulk_sale works out the numbers and stores a PENDING BulkSettlement
(plus a CREATED forced batch when existing stock is not enough).
confirm_bulk_settlement re-plans the stock and re-runs the allocation against
the batches as they are now, then applies everything in one transaction:
stock, per-tranche settlements, batch money, the forced batch. if any step
fails the whole thing rolls back. a PENDING bulk settlement can also be
cancelled, which drops its forced batch.
"""
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional

import batch_engine
import bulk_engine
import closure_engine
import events
import settlement_engine
import tranche_engine
from config import settings
from errors import BusinessRuleViolation, InvalidStateTransition
from models import (
    Batch,
    BatchState,
    BulkSettlement,
    BulkSettlementState,
    CommissionModel,
    SettlementState,
    TrancheState,
    new_id,
    utcnow,
)
from money import ZERO, q, to_decimal
from sponsor_engine import get_sponsor_chain, require_eligible_agent
from store import require, saved

logger = logging.getLogger(__name__)

EQUIPMENT_DEBT_KEY = "equipment"


def _debts_in_tx(tx, agent_id, active_batches, involved_ids, equipment_debt) -> List[bulk_engine.DebtItem]:
    """
    outstanding shortfalls of PENDING settlements on batches this sale does not
    touch (oldest batch first), then the equipment debt.
    settlements of involved batches are settled through the investment/profit steps instead.
    """
    debts = []
    for batch in active_batches:
        if batch.id in involved_ids:
            continue
        for s in tx.list_settlements(batch_ids=[batch.id], state=SettlementState.PENDING):
            if s.shortfall > 0:
                debts.append(bulk_engine.DebtItem(s.id, s.shortfall))
    equipment = to_decimal(equipment_debt.debt_for(agent_id)) if equipment_debt is not None else ZERO
    if equipment > 0:
        debts.append(bulk_engine.DebtItem(EQUIPMENT_DEBT_KEY, q(equipment)))
    return debts


def _plan_in_tx(tx, agent_id, units):
    """the agent's ACTIVE regular batches (oldest first) and where `units` would come from."""
    active = sorted(
        (b for b in tx.list_batches(agent_id=agent_id, state=BatchState.ACTIVE) if not b.is_forced),
        key=lambda b: b.activated_at or b.created_at,
    )
    tranches_by_batch = {b.id: tx.list_tranches(b.id) for b in active}
    return active, bulk_engine.plan_consumption(units, active, tranches_by_batch)


def _allocate_in_tx(
    tx, ports, agent_id, revenue, active: List[Batch], plan, model, forced: Optional[bulk_engine.ForcedInvestment]
) -> bulk_engine.Allocation:
    involved = [b for b in active if b.id in plan.involved_batch_ids]
    positions = [
        bulk_engine.BatchPosition(b.id, b.operator_investment, b.agent_investment, b.money_collected, b.money_transferred)
        for b in involved
    ]
    debts = _debts_in_tx(tx, agent_id, active, set(plan.involved_batch_ids), ports.equipment_debt)
    chain = []
    if model is CommissionModel.CASCADE:
        chain = get_sponsor_chain(agent_id, ports.directory, settings.OPERATOR_ID, settings.MAX_SPONSOR_HOPS)
    return bulk_engine.allocate(revenue, positions, forced, debts, model, chain)


def _allocation_fields(allocation: bulk_engine.Allocation, plan) -> dict:
    return dict(
        pool=allocation.pool,
        debt_cleared=allocation.debt_cleared,
        debt_paid=allocation.debt_paid,
        operator_investment_existing=allocation.operator_investment_existing,
        operator_investment_forced=allocation.operator_investment_forced,
        agent_investment_existing=allocation.agent_investment_existing,
        agent_investment_forced=allocation.agent_investment_forced,
        net_profit=allocation.net_profit,
        agent_profit=allocation.agent_profit,
        operator_profit=allocation.operator_profit,
        sponsor_shares=allocation.sponsor_shares,
        total_to_operator=allocation.total_to_operator,
        total_to_agent=allocation.total_to_agent,
        involved_batch_ids=plan.involved_batch_ids,
        affected_tranches=plan.sources,
    )


def register_bulk_sale(
    store, ports, agent_id, quantity, with_liquor, bulk_sale_id=None, model=None, now=None
) -> BulkSettlement:
    """
    price the sale, plan where the units come from, allocate the money and
    store a PENDING bulk settlement. same bulk_sale_id twice -> same settlement back.
    the numbers are a quote: confirmation recomputes them.
    """
    now = now or utcnow()
    bulk_sale_id = bulk_sale_id or new_id()

    with store.transaction() as tx:
        existing = tx.get_bulk_settlement_by_sale(bulk_sale_id)
        if existing is not None:
            logger.info("bulk sale %s already registered as %s", bulk_sale_id, existing.id)
            return existing

    require_eligible_agent(agent_id, ports.directory)
    price = bulk_engine.unit_price(quantity, with_liquor, settings.BULK_MIN_QUANTITY)
    revenue = bulk_engine.gross_revenue(quantity, price)

    with store.transaction() as tx:
        active, plan = _plan_in_tx(tx, agent_id, quantity)

        involved = [b for b in active if b.id in plan.involved_batch_ids]
        if model is None:
            model = involved[0].model if involved else CommissionModel.SIXTY_FORTY
        model = CommissionModel(model)

        forced_batch = None
        forced = None
        if plan.forced_units > 0:
            forced_batch = batch_engine.new_batch(
                agent_id,
                plan.forced_units,
                model,
                unit_cost=settings.UNIT_COST,
                operator_pct=settings.OPERATOR_INVESTMENT_PCT,
                is_forced=True,
                bulk_sale_id=bulk_sale_id,
            )
            tx.insert_batch(forced_batch)
            for tranche in tranche_engine.build_tranches(
                forced_batch.id, plan.forced_units, settings.TWO_TRANCHE_MAX_QUANTITY
            ):
                tx.insert_tranche(tranche)
            forced = bulk_engine.ForcedInvestment(forced_batch.operator_investment, forced_batch.agent_investment)

        allocation = _allocate_in_tx(tx, ports, agent_id, revenue, active, plan, model, forced)

        bulk = BulkSettlement(
            id=new_id(),
            bulk_sale_id=bulk_sale_id,
            agent_id=agent_id,
            model=model,
            quantity=quantity,
            unit_price=price,
            gross_revenue=revenue,
            forced_batch_id=forced_batch.id if forced_batch else None,
            forced_units=plan.forced_units,
            created_at=now,
            **_allocation_fields(allocation, plan),
        )
        tx.insert_bulk_settlement(bulk)

        events.emit(
            tx,
            events.BULK_SETTLEMENT_CREATED,
            "bulk_settlement",
            bulk.id,
            agent_id=agent_id,
            bulk_sale_id=bulk_sale_id,
            quantity=quantity,
            gross_revenue=revenue,
            total_to_operator=bulk.total_to_operator,
            total_to_agent=bulk.total_to_agent,
        )
        if forced_batch is not None:
            events.emit(
                tx,
                events.FORCED_BATCH_CREATED,
                "batch",
                forced_batch.id,
                agent_id=agent_id,
                quantity=forced_batch.quantity,
                bulk_sale_id=bulk_sale_id,
            )

    logger.info(
        "bulk sale %s: %d units at %s, operator %s / agent %s, forced units %d",
        bulk_sale_id,
        quantity,
        price,
        bulk.total_to_operator,
        bulk.total_to_agent,
        plan.forced_units,
    )
    return bulk


def _consume_sources_in_tx(tx, bulk: BulkSettlement, now) -> Dict[str, int]:
    """drain every affected tranche. returns units taken per batch."""
    units_by_batch: Dict[str, int] = defaultdict(int)
    for source in bulk.affected_tranches:
        tranche = require(tx.get_tranche(source.tranche_id), "tranche", source.tranche_id)
        siblings = tx.list_tranches(tranche.batch_id)
        drained = tranche_engine.consume(tranche, source.units, bulk=True)
        finalize = drained.current_stock == 0 and not tranche_engine.is_last(tranche, siblings)
        if finalize:
            drained = tranche_engine.transition(drained, TrancheState.FINALIZED, now)
        saved(
            tx.update_tranche(drained, tranche.version, expected_state=tranche.state),
            "tranche",
            tranche.id,
            tranche.version,
        )
        if finalize:
            events.emit(
                tx,
                events.TRANCHE_FINALIZED,
                "tranche",
                tranche.id,
                batch_id=tranche.batch_id,
                number=tranche.number,
                from_state=tranche.state,
                current_stock=0,
                bulk_settlement_id=bulk.id,
            )
        units_by_batch[source.batch_id] += source.units
    return units_by_batch


def _close_settlements_in_tx(tx, bulk: BulkSettlement, now) -> List[str]:
    closed = []
    # every open settlement on the batches this sale drew from
    for settlement in tx.list_settlements(batch_ids=list(bulk.involved_batch_ids)):
        if not settlement_engine.is_open(settlement):
            continue
        saved(
            tx.update_settlement(settlement_engine.close_by_bulk(settlement, bulk.id, now), settlement.version),
            "settlement",
            settlement.id,
            settlement.version,
        )
        closed.append(settlement.id)

    # debts paid on other batches
    for key, amount in bulk.debt_paid:
        if key == EQUIPMENT_DEBT_KEY:
            continue
        settlement = tx.get_settlement(key)
        if settlement is None or settlement.state is not SettlementState.PENDING:
            logger.warning("debt settlement %s no longer pending, skipping %s", key, amount)
            continue
        absorbed = saved(
            tx.update_settlement(settlement_engine.absorb(settlement, amount, bulk.id, now), settlement.version),
            "settlement",
            settlement.id,
            settlement.version,
        )
        batch = require(tx.get_batch(settlement.batch_id), "batch", settlement.batch_id)
        saved(
            tx.update_batch(replace(batch, money_transferred=batch.money_transferred + amount), batch.version),
            "batch",
            batch.id,
            batch.version,
        )
        if absorbed.state is SettlementState.SUCCEEDED:
            closed.append(settlement.id)
            events.emit(
                tx,
                events.SETTLEMENT_SUCCEEDED,
                "settlement",
                settlement.id,
                batch_id=batch.id,
                agent_id=batch.agent_id,
                tranche_number=settlement.tranche_number,
                received=settlement.received,
                bulk_settlement_id=bulk.id,
            )
    return closed


def _settle_forced_batch_in_tx(tx, bulk: BulkSettlement, now):
    """activate and finalize the forced batch straight away, all stock gone."""
    batch = require(tx.get_batch(bulk.forced_batch_id), "batch", bulk.forced_batch_id)
    for tranche in tx.list_tranches(batch.id):
        drained = tranche_engine.consume(tranche, tranche.current_stock, bulk=True)
        saved(
            tx.update_tranche(
                tranche_engine.transition(drained, TrancheState.FINALIZED, now),
                tranche.version,
                expected_state=TrancheState.INACTIVE,
            ),
            "tranche",
            tranche.id,
            tranche.version,
        )
    revenue = q(to_decimal(bulk.forced_units) * bulk.unit_price)
    active = batch_engine.transition(batch, BatchState.ACTIVE, now)
    finalized = batch_engine.transition(active, BatchState.FINALIZED, now)
    finalized = replace(finalized, money_collected=revenue, money_transferred=revenue)
    stored = saved(tx.update_batch(finalized, batch.version), "batch", batch.id, batch.version)

    # the reward fund is paid once the forced batch really exists
    events.emit(
        tx,
        events.BATCH_ACTIVATED,
        "batch",
        batch.id,
        agent_id=batch.agent_id,
        quantity=batch.quantity,
        is_forced=True,
        bulk_settlement_id=bulk.id,
        reward_fund_inflow=batch_engine.reward_fund_contribution(batch.quantity, settings.REWARD_FUND_PER_UNIT),
    )
    return stored


def confirm_bulk_settlement(store, ports, bulk_id, now=None) -> BulkSettlement:
    """
    PENDING -> SUCCEEDED, all or nothing:
      0) re-plan the stock and re-run the allocation on current numbers
      1) drain the affected tranches (finalizing empty non-last ones)
      2) close the per-tranche settlements the sale covers
      3) move retail + wholesale money on the involved batches
      4) activate + finalize the forced batch, if any
      5) outbox: sold-out batches (closure), bulk settlement succeeded

    the forced batch size is fixed at registration. if retail sales since then
    left too little stock for the rest, confirmation is refused and the bulk
    settlement has to be cancelled and registered again.
    """
    now = now or utcnow()
    with store.transaction() as tx:
        bulk = require(tx.get_bulk_settlement(bulk_id), "bulk_settlement", bulk_id)
        if bulk.state is not BulkSettlementState.PENDING:
            raise InvalidStateTransition("bulk_settlement", bulk_id, bulk.state.value, "SUCCEEDED")

        # 0) numbers as they are now
        active, plan = _plan_in_tx(tx, bulk.agent_id, bulk.quantity - bulk.forced_units)
        if plan.forced_units > 0:
            raise BusinessRuleViolation(
                "bulk_stock_changed",
                f"bulk settlement {bulk_id} is {plan.forced_units} unit(s) short of stock, cancel and register again",
                bulk_settlement_id=bulk_id,
                missing_units=plan.forced_units,
            )
        forced = None
        if bulk.forced_batch_id:
            forced_batch = require(tx.get_batch(bulk.forced_batch_id), "batch", bulk.forced_batch_id)
            forced = bulk_engine.ForcedInvestment(forced_batch.operator_investment, forced_batch.agent_investment)
        allocation = _allocate_in_tx(tx, ports, bulk.agent_id, bulk.gross_revenue, active, plan, bulk.model, forced)
        current = replace(bulk, **_allocation_fields(allocation, plan))
        if current.pool != bulk.pool or current.affected_tranches != bulk.affected_tranches:
            logger.info(
                "bulk settlement %s moved since registration: pool %s -> %s, operator %s -> %s",
                bulk_id,
                bulk.pool,
                current.pool,
                bulk.total_to_operator,
                current.total_to_operator,
            )

        # 1) stock
        units_by_batch = _consume_sources_in_tx(tx, current, now)

        # 2) settlements
        closed = _close_settlements_in_tx(tx, current, now)

        # 3) money on involved batches: the pool took their untransferred retail money
        for batch_id in current.involved_batch_ids:
            batch = require(tx.get_batch(batch_id), "batch", batch_id)
            wholesale = q(to_decimal(units_by_batch[batch_id]) * current.unit_price)
            saved(
                tx.update_batch(
                    replace(
                        batch,
                        money_collected=batch.money_collected + wholesale,
                        money_transferred=batch.money_transferred + batch_engine.untransferred(batch) + wholesale,
                    ),
                    batch.version,
                ),
                "batch",
                batch_id,
                batch.version,
            )

        # 4) forced batch
        if current.forced_batch_id:
            _settle_forced_batch_in_tx(tx, current, now)

        confirmed = replace(
            current,
            state=BulkSettlementState.SUCCEEDED,
            closed_settlement_ids=tuple(closed),
            confirmed_at=now,
        )
        stored = saved(tx.update_bulk_settlement(confirmed, bulk.version), "bulk_settlement", bulk_id, bulk.version)

        # 5) events
        for batch_id in current.involved_batch_ids:
            tranches = tx.list_tranches(batch_id)
            if closure_engine.batch_sold_out(tranches):
                events.emit(
                    tx,
                    events.LAST_TRANCHE_DEPLETED,
                    "batch",
                    batch_id,
                    tranche_id=tranches[-1].id,
                    bulk_settlement_id=bulk_id,
                )
        events.emit(
            tx,
            events.BULK_SETTLEMENT_SUCCEEDED,
            "bulk_settlement",
            bulk_id,
            agent_id=current.agent_id,
            bulk_sale_id=current.bulk_sale_id,
            involved_batch_ids=list(current.involved_batch_ids),
            closed_settlement_ids=list(closed),
            forced_batch_id=current.forced_batch_id,
            total_to_operator=current.total_to_operator,
            total_to_agent=current.total_to_agent,
            sponsor_shares=[
                {"sponsor_id": s.sponsor_id, "level": s.level, "amount": s.amount} for s in current.sponsor_shares
            ],
        )

    logger.info("bulk settlement %s confirmed, %d settlement(s) closed", bulk_id, len(closed))
    return stored


def cancel_bulk_settlement(store, bulk_id) -> BulkSettlement:
    """PENDING -> CANCELLED. the forced batch goes with it, stock and money are untouched."""
    with store.transaction() as tx:
        bulk = require(tx.get_bulk_settlement(bulk_id), "bulk_settlement", bulk_id)
        if bulk.state is not BulkSettlementState.PENDING:
            raise InvalidStateTransition("bulk_settlement", bulk_id, bulk.state.value, "CANCELLED")

        if bulk.forced_batch_id:
            forced = tx.get_batch(bulk.forced_batch_id)
            if forced is not None:
                batch_engine.require_cancellable(forced)
                tx.delete_batch(forced.id)

        cancelled = saved(
            tx.update_bulk_settlement(replace(bulk, state=BulkSettlementState.CANCELLED), bulk.version),
            "bulk_settlement",
            bulk_id,
            bulk.version,
        )
        events.emit(
            tx,
            events.BULK_SETTLEMENT_CANCELLED,
            "bulk_settlement",
            bulk_id,
            agent_id=bulk.agent_id,
            bulk_sale_id=bulk.bulk_sale_id,
            forced_batch_id=bulk.forced_batch_id,
        )

    logger.info("bulk settlement %s cancelled", bulk_id)
    return cancelled


def get_bulk_settlement(store, bulk_id) -> BulkSettlement:
    with store.transaction() as tx:
        return require(tx.get_bulk_settlement(bulk_id), "bulk_settlement", bulk_id)


def list_bulk_settlements(store, agent_id=None) -> List[BulkSettlement]:
    with store.transaction() as tx:
        return tx.list_bulk_settlements(agent_id=agent_id)
