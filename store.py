"""
in-memory store with the same contract as db.pg_store.PgStore.

tables are plain dicts keyed by id (like the in-memory tables the first
version of the trade engine used). rows are frozen dataclasses, so a
transaction can snapshot every table with a shallow copy and put it back
if anything inside the `with` block raises.

updates are conditional: `update_x(row, expected_version)` only writes if the
stored row still carries expected_version, bumps the version and returns the
stored row. otherwise it returns None, just like an UPDATE ... WHERE version = %s
that touched 0 rows.
"""
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from models import (
    Batch,
    BatchState,
    BulkSettlement,
    ClosureSettlement,
    EventRecord,
    OutboxMessage,
    Settlement,
    SettlementState,
    Tranche,
    TrancheState,
    new_id,
)
from errors import ConcurrencyConflict, EntityNotFound

TABLES = ("batches", "tranches", "settlements", "bulk_settlements", "closures", "outbox", "events")


class MemoryStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self.tables: Dict[str, Dict[str, object]] = {name: {} for name in TABLES}

    @contextmanager
    def transaction(self):
        """
        serializes writers and rolls every table back on error.
        nested calls join the outer transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield MemoryTx(self)
                finally:
                    self._depth -= 1
                return

            snapshot = {name: dict(rows) for name, rows in self.tables.items()}
            self._depth = 1
            try:
                yield MemoryTx(self)
            except BaseException:
                self.tables = snapshot
                raise
            finally:
                self._depth = 0


class MemoryTx:
    def __init__(self, store: MemoryStore):
        self.store = store

    def _t(self, name) -> Dict[str, object]:
        return self.store.tables[name]

    def _insert(self, table, row):
        rows = self._t(table)
        if row.id in rows:
            raise ValueError(f"duplicate id {row.id} in {table}")
        rows[row.id] = row
        return row

    def _update(self, table, row, expected_version, **match):
        rows = self._t(table)
        current = rows.get(row.id)
        if current is None or current.version != expected_version:
            return None
        for attr, value in match.items():
            if value is not None and getattr(current, attr) != value:
                return None
        stored = replace(row, version=expected_version + 1)
        rows[row.id] = stored
        return stored

    # ---------- batches ----------

    def insert_batch(self, batch: Batch) -> Batch:
        return self._insert("batches", batch)

    def get_batch(self, batch_id) -> Optional[Batch]:
        return self._t("batches").get(batch_id)

    def list_batches(self, agent_id=None, state: Optional[BatchState] = None) -> List[Batch]:
        rows = [
            b
            for b in self._t("batches").values()
            if (agent_id is None or b.agent_id == agent_id) and (state is None or b.state is state)
        ]
        return sorted(rows, key=lambda b: b.created_at)

    def update_batch(self, batch: Batch, expected_version: int) -> Optional[Batch]:
        return self._update("batches", batch, expected_version)

    def delete_batch(self, batch_id) -> None:
        tranches = self._t("tranches")
        for tranche_id in [t.id for t in tranches.values() if t.batch_id == batch_id]:
            del tranches[tranche_id]
        self._t("batches").pop(batch_id, None)

    # ---------- tranches ----------

    def insert_tranche(self, tranche: Tranche) -> Tranche:
        return self._insert("tranches", tranche)

    def get_tranche(self, tranche_id) -> Optional[Tranche]:
        return self._t("tranches").get(tranche_id)

    def list_tranches(self, batch_id) -> List[Tranche]:
        rows = [t for t in self._t("tranches").values() if t.batch_id == batch_id]
        return sorted(rows, key=lambda t: t.number)

    def list_tranches_in_state(self, state: TrancheState) -> List[Tranche]:
        return [t for t in self._t("tranches").values() if t.state is state]

    def update_tranche(self, tranche: Tranche, expected_version: int, expected_state=None) -> Optional[Tranche]:
        return self._update("tranches", tranche, expected_version, state=expected_state)

    # ---------- settlements ----------

    def insert_settlement(self, settlement: Settlement) -> Settlement:
        return self._insert("settlements", settlement)

    def get_settlement(self, settlement_id) -> Optional[Settlement]:
        return self._t("settlements").get(settlement_id)

    def get_settlement_by_tranche(self, tranche_id) -> Optional[Settlement]:
        for s in self._t("settlements").values():
            if s.tranche_id == tranche_id:
                return s
        return None

    def list_settlements(self, batch_ids=None, state: Optional[SettlementState] = None) -> List[Settlement]:
        rows = [
            s
            for s in self._t("settlements").values()
            if (batch_ids is None or s.batch_id in batch_ids) and (state is None or s.state is state)
        ]
        return sorted(rows, key=lambda s: (s.batch_id, s.tranche_number))

    def update_settlement(self, settlement: Settlement, expected_version: int) -> Optional[Settlement]:
        return self._update("settlements", settlement, expected_version)

    # ---------- bulk settlements ----------

    def insert_bulk_settlement(self, bulk: BulkSettlement) -> BulkSettlement:
        if self.get_bulk_settlement_by_sale(bulk.bulk_sale_id) is not None:
            raise ValueError(f"bulk sale {bulk.bulk_sale_id} already has a settlement")
        return self._insert("bulk_settlements", bulk)

    def get_bulk_settlement(self, bulk_id) -> Optional[BulkSettlement]:
        return self._t("bulk_settlements").get(bulk_id)

    def get_bulk_settlement_by_sale(self, bulk_sale_id) -> Optional[BulkSettlement]:
        for b in self._t("bulk_settlements").values():
            if b.bulk_sale_id == bulk_sale_id:
                return b
        return None

    def list_bulk_settlements(self, agent_id=None) -> List[BulkSettlement]:
        rows = [b for b in self._t("bulk_settlements").values() if agent_id is None or b.agent_id == agent_id]
        return sorted(rows, key=lambda b: b.created_at)

    def update_bulk_settlement(self, bulk: BulkSettlement, expected_version: int) -> Optional[BulkSettlement]:
        return self._update("bulk_settlements", bulk, expected_version)

    # ---------- closures ----------

    def insert_closure(self, closure: ClosureSettlement) -> ClosureSettlement:
        return self._insert("closures", closure)

    def get_closure(self, closure_id) -> Optional[ClosureSettlement]:
        return self._t("closures").get(closure_id)

    def get_closure_by_batch(self, batch_id) -> Optional[ClosureSettlement]:
        for c in self._t("closures").values():
            if c.batch_id == batch_id:
                return c
        return None

    def update_closure(self, closure: ClosureSettlement, expected_version: int) -> Optional[ClosureSettlement]:
        return self._update("closures", closure, expected_version)

    # ---------- outbox ----------

    def enqueue(self, event_type, aggregate_type, aggregate_id, payload) -> OutboxMessage:
        message = OutboxMessage(
            id=new_id(),
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=dict(payload),
        )
        return self._insert("outbox", message)

    def fetch_pending_outbox(self, limit: int, max_retries: int) -> List[OutboxMessage]:
        pending = [m for m in self._t("outbox").values() if m.processed_at is None and m.retries < max_retries]
        return sorted(pending, key=lambda m: m.created_at)[:limit]

    def mark_outbox_processed(self, message_id, processed_at: datetime) -> None:
        rows = self._t("outbox")
        rows[message_id] = replace(rows[message_id], processed_at=processed_at)

    def mark_outbox_failed(self, message_id, error: str) -> None:
        rows = self._t("outbox")
        current = rows[message_id]
        rows[message_id] = replace(current, retries=current.retries + 1, last_error=error)

    def delete_processed_outbox(self, cutoff: datetime) -> int:
        rows = self._t("outbox")
        stale = [m.id for m in rows.values() if m.processed_at is not None and m.processed_at < cutoff]
        for message_id in stale:
            del rows[message_id]
        return len(stale)

    def get_outbox_message(self, message_id) -> Optional[OutboxMessage]:
        return self._t("outbox").get(message_id)

    def list_outbox(self, parked_only=False, max_retries=3, limit=100) -> List[OutboxMessage]:
        rows = sorted(self._t("outbox").values(), key=lambda m: m.created_at)
        if parked_only:
            rows = [m for m in rows if m.processed_at is None and m.retries >= max_retries]
        return rows[:limit]

    # ---------- event records ----------

    def append_event_record(self, record: EventRecord) -> EventRecord:
        return self._insert("events", record)

    def list_event_records(
        self, aggregate_type=None, aggregate_id=None, event_type=None, since=None, until=None, limit=500
    ) -> List[EventRecord]:
        rows = [
            r
            for r in self._t("events").values()
            if (aggregate_type is None or r.aggregate_type == aggregate_type)
            and (aggregate_id is None or r.aggregate_id == aggregate_id)
            and (event_type is None or r.event_type == event_type)
            and (since is None or r.recorded_at >= since)
            and (until is None or r.recorded_at <= until)
        ]
        return sorted(rows, key=lambda r: r.recorded_at)[:limit]


def require(row, entity: str, entity_id):
    """raise EntityNotFound for a missing row, otherwise hand it back."""
    if row is None:
        raise EntityNotFound(entity, entity_id)
    return row


def saved(row, entity: str, entity_id, expected_version: int):
    """a conditional update that lost the race is a ConcurrencyConflict for user commands."""
    if row is None:
        raise ConcurrencyConflict(entity, entity_id, expected_version)
    return row
