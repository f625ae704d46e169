from typing import Any, Dict, Optional


class DomainError(ValueError):
    """
    base class for every business failure raised by the core.

    it stays a ValueError so older call sites doing `except ValueError`
    keep working. `code` is stable and meant for programmatic branching,
    `details` carries the structured numbers (shortfalls, states, ids).
    """

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidStateTransition(DomainError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, entity_id, current, requested, message: Optional[str] = None):
        details = {
            "entity": entity,
            "id": entity_id,
            "current_state": str(current),
            "requested": str(requested),
        }
        super().__init__(
            message or f"{entity} {entity_id} cannot go from {current} to {requested}",
            details,
        )


class InsufficientStock(DomainError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, tranche_id, requested: int, available: int):
        super().__init__(
            f"tranche {tranche_id} has {available} units, {requested} requested",
            {
                "tranche_id": tranche_id,
                "requested": requested,
                "available": available,
                "shortfall": requested - available,
            },
        )


class InsufficientAmount(DomainError):
    code = "INSUFFICIENT_AMOUNT"

    def __init__(self, settlement_id, expected, absorbed, received):
        shortfall = expected - absorbed - received
        super().__init__(
            f"settlement {settlement_id} needs {expected - absorbed}, got {received}",
            {
                "settlement_id": settlement_id,
                "expected": str(expected),
                "absorbed": str(absorbed),
                "received": str(received),
                "shortfall": str(shortfall),
            },
        )


class EntityNotFound(DomainError):
    code = "ENTITY_NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class ConcurrencyConflict(DomainError):
    """version mismatch on a conditional update. safe to retry."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, entity: str, entity_id, expected_version: int):
        super().__init__(
            f"{entity} {entity_id} was modified concurrently",
            {"entity": entity, "id": entity_id, "expected_version": expected_version},
        )


class EventDeliveryFailure(DomainError):
    code = "EVENT_DELIVERY_FAILURE"

    def __init__(self, outbox_id, event_type: str, cause: Exception):
        super().__init__(
            f"delivery of {event_type} ({outbox_id}) failed: {cause}",
            {"outbox_id": outbox_id, "event_type": event_type, "cause": repr(cause)},
        )


class BusinessRuleViolation(DomainError):
    """a precondition that is neither a state nor a stock/amount problem (agent not eligible, too few units...)."""

    code = "BUSINESS_RULE_VIOLATION"

    def __init__(self, rule: str, message: str, **details):
        details["rule"] = rule
        super().__init__(message, details)
