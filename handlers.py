"""
post-commit reactions to outbox events.

every handler here may see the same event more than once (the relay is
at-least-once), so each one is a no-op when its work is already done:
release_next_if_ready / activate_closure re-check state, reward-fund inflows
are keyed by (reason, batch id), and notifications are fire-and-forget.
"""
import logging

import events
from closure_db import activate_closure
from money import to_decimal
from ports import safe_notify
from tranche_db import release_next_if_ready

logger = logging.getLogger(__name__)

# event -> notification template sent to the agent in the payload
NOTIFICATIONS = {
    events.BATCH_ACTIVATED: "BATCH_ACTIVATED",
    events.SETTLEMENT_PENDING: "SETTLEMENT_DUE",
    events.SETTLEMENT_SUCCEEDED: "SETTLEMENT_CONFIRMED",
    events.LOW_STOCK: "LOW_STOCK",
    events.INVESTMENT_RECOVERED: "INVESTMENT_RECOVERED",
    events.CLOSURE_PENDING: "CLOSURE_DUE",
    events.CLOSURE_SUCCEEDED: "CLOSURE_CONFIRMED",
    events.BULK_SETTLEMENT_CREATED: "BULK_SETTLEMENT_DUE",
    events.BULK_SETTLEMENT_SUCCEEDED: "BULK_SETTLEMENT_CONFIRMED",
    events.BULK_SETTLEMENT_CANCELLED: "BULK_SETTLEMENT_CANCELLED",
}


def register_handlers(bus, store, ports):
    def notify(event_type, payload):
        agent_id = payload.get("agent_id")
        if agent_id:
            safe_notify(ports.notifier, agent_id, NOTIFICATIONS[event_type], payload)

    def release_next(event_type, payload):
        release_next_if_ready(store, payload["batch_id"])

    def closure(event_type, payload):
        activate_closure(store, payload["aggregate_id"])

    def reward_fund_on_activation(event_type, payload):
        # forced batches are activated by their bulk settlement confirmation
        reason = "forced_batch" if payload.get("is_forced") else "batch_activation"
        ports.reward_fund.record_inflow(to_decimal(payload["reward_fund_inflow"]), reason, payload["aggregate_id"])

    bus.subscribe(events.BATCH_ACTIVATED, reward_fund_on_activation)
    bus.subscribe(events.SETTLEMENT_SUCCEEDED, release_next)
    bus.subscribe(events.TRANCHE_FINALIZED, release_next)
    bus.subscribe(events.LAST_TRANCHE_DEPLETED, closure)
    for event_type in NOTIFICATIONS:
        bus.subscribe(event_type, notify)

    logger.debug("event handlers registered")
    return bus
