"""
row types shared by the engines, the stores and the http layer.

everything is a frozen dataclass: flows never mutate a row in place,
they build a new one with dataclasses.replace() and hand it to the store
together with the version they read. that keeps the in-memory store's
rollback trivial and mirrors the conditional UPDATEs on the postgres side.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from money import ZERO


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommissionModel(str, Enum):
    SIXTY_FORTY = "60/40"
    CASCADE = "50/50-cascade"


class BatchState(str, Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    FINALIZED = "FINALIZED"


class TrancheState(str, Enum):
    INACTIVE = "INACTIVE"
    RELEASED = "RELEASED"
    IN_TRANSIT = "IN_TRANSIT"
    IN_HAND = "IN_HAND"
    FINALIZED = "FINALIZED"


class SettlementState(str, Enum):
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"


class SettlementConcept(str, Enum):
    ADMIN_INVESTMENT = "ADMIN_INVESTMENT"
    PROFIT = "PROFIT"
    MIXED = "MIXED"


class BulkSettlementState(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class Batch:
    id: str
    agent_id: str
    quantity: int
    model: CommissionModel
    state: BatchState
    total_investment: Decimal
    operator_investment: Decimal
    agent_investment: Decimal
    money_collected: Decimal = ZERO
    money_transferred: Decimal = ZERO
    is_forced: bool = False
    bulk_sale_id: Optional[str] = None
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None


@dataclass(frozen=True)
class Tranche:
    id: str
    batch_id: str
    number: int
    initial_stock: int
    current_stock: int
    state: TrancheState = TrancheState.INACTIVE
    bulk_consumed: int = 0
    version: int = 1
    released_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    in_hand_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None


@dataclass(frozen=True)
class Settlement:
    id: str
    tranche_id: str
    batch_id: str
    tranche_number: int
    concept: SettlementConcept
    state: SettlementState = SettlementState.INACTIVE
    expected: Decimal = ZERO
    received: Decimal = ZERO
    shortfall: Decimal = ZERO
    absorbed: Decimal = ZERO
    closed_by_bulk_id: Optional[str] = None
    version: int = 1
    activated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None


@dataclass(frozen=True)
class SponsorShare:
    sponsor_id: str
    level: int
    amount: Decimal


@dataclass(frozen=True)
class AffectedTranche:
    tranche_id: str
    batch_id: str
    number: int
    units: int


@dataclass(frozen=True)
class BulkSettlement:
    id: str
    bulk_sale_id: str
    agent_id: str
    model: CommissionModel
    quantity: int
    unit_price: Decimal
    gross_revenue: Decimal
    pool: Decimal
    debt_cleared: Decimal
    debt_paid: Tuple[Tuple[str, Decimal], ...]
    operator_investment_existing: Decimal
    operator_investment_forced: Decimal
    agent_investment_existing: Decimal
    agent_investment_forced: Decimal
    net_profit: Decimal
    agent_profit: Decimal
    operator_profit: Decimal
    sponsor_shares: Tuple[SponsorShare, ...] = ()
    total_to_operator: Decimal = ZERO
    total_to_agent: Decimal = ZERO
    state: BulkSettlementState = BulkSettlementState.PENDING
    involved_batch_ids: Tuple[str, ...] = ()
    affected_tranches: Tuple[AffectedTranche, ...] = ()
    closed_settlement_ids: Tuple[str, ...] = ()
    forced_batch_id: Optional[str] = None
    forced_units: int = 0
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ClosureSettlement:
    id: str
    batch_id: str
    tranche_id: str
    state: SettlementState = SettlementState.INACTIVE
    residual: Decimal = ZERO
    version: int = 1
    activated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None


@dataclass(frozen=True)
class OutboxMessage:
    id: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any]
    retries: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


@dataclass(frozen=True)
class EventRecord:
    id: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any]
    metadata: Dict[str, Any]
    recorded_at: datetime = field(default_factory=utcnow)
