import logging
from collections import defaultdict
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List

from money import fmt

logger = logging.getLogger(__name__)

# event types written to the outbox
BATCH_CREATED = "BATCH_CREATED"
BATCH_ACTIVATED = "BATCH_ACTIVATED"
BATCH_CANCELLED = "BATCH_CANCELLED"
BATCH_FINALIZED = "BATCH_FINALIZED"
TRANCHE_RELEASED = "TRANCHE_RELEASED"
TRANCHE_IN_TRANSIT = "TRANCHE_IN_TRANSIT"
TRANCHE_IN_HAND = "TRANCHE_IN_HAND"
TRANCHE_FINALIZED = "TRANCHE_FINALIZED"
SALE_RECORDED = "SALE_RECORDED"
LOW_STOCK = "LOW_STOCK"
INVESTMENT_RECOVERED = "INVESTMENT_RECOVERED"
SETTLEMENT_PENDING = "SETTLEMENT_PENDING"
SETTLEMENT_SUCCEEDED = "SETTLEMENT_SUCCEEDED"
LAST_TRANCHE_DEPLETED = "LAST_TRANCHE_DEPLETED"
BULK_SETTLEMENT_CREATED = "BULK_SETTLEMENT_CREATED"
BULK_SETTLEMENT_SUCCEEDED = "BULK_SETTLEMENT_SUCCEEDED"
BULK_SETTLEMENT_CANCELLED = "BULK_SETTLEMENT_CANCELLED"
FORCED_BATCH_CREATED = "FORCED_BATCH_CREATED"
CLOSURE_PENDING = "CLOSURE_PENDING"
CLOSURE_SUCCEEDED = "CLOSURE_SUCCEEDED"

Handler = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """
    tiny in-process pub/sub used by the outbox relay.
    handlers run synchronously, in subscription order. any handler error
    bubbles up to the publisher so the relay can retry the whole message,
    which is why handlers have to be idempotent.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler):
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: str) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    def publish(self, event_type: str, payload: Dict[str, Any]):
        handlers = self.handlers_for(event_type)
        if not handlers:
            logger.debug("no handlers for %s", event_type)
        for handler in handlers:
            handler(event_type, payload)


def jsonable(value):
    """payloads go to a JSON column, so decimals become fixed strings."""
    if is_dataclass(value):
        return jsonable(asdict(value))
    if isinstance(value, Decimal):
        return fmt(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def emit(tx, event_type: str, aggregate_type: str, aggregate_id: str, **data):
    """
    write an outbox row inside the caller's transaction.
    the aggregate is repeated inside the payload so handlers only need the payload.
    """
    payload = jsonable(dict(data, aggregate_type=aggregate_type, aggregate_id=aggregate_id))
    return tx.enqueue(event_type, aggregate_type, aggregate_id, payload)
