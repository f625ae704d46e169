"""
postgres-backed store. same method names and semantics as store.MemoryStore,
so every *_db flow runs unchanged against either one.
"""
import logging
from contextlib import contextmanager
from typing import List, Optional

from psycopg import Connection

from db import repositories as repo
from db.db import get_conn
from models import (
    Batch,
    BulkSettlement,
    ClosureSettlement,
    EventRecord,
    OutboxMessage,
    Settlement,
    Tranche,
    new_id,
)

logger = logging.getLogger(__name__)


class PgStore:
    def __init__(self, dsn: str = None):
        self.dsn = dsn

    @contextmanager
    def transaction(self):
        with get_conn(self.dsn) as conn:
            try:
                yield PgTx(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise


class PgTx:
    def __init__(self, conn: Connection):
        self.conn = conn

    # ---------- batches ----------

    def insert_batch(self, batch: Batch) -> Batch:
        return repo.insert_row(self.conn, batch)

    def get_batch(self, batch_id) -> Optional[Batch]:
        return repo.fetch_one(self.conn, Batch, "id = %s", (batch_id,))

    def list_batches(self, agent_id=None, state=None) -> List[Batch]:
        return repo.list_batches(self.conn, agent_id, state)

    def update_batch(self, batch: Batch, expected_version: int) -> Optional[Batch]:
        return repo.update_versioned(self.conn, batch, expected_version)

    def delete_batch(self, batch_id) -> None:
        repo.delete_batch(self.conn, batch_id)

    # ---------- tranches ----------

    def insert_tranche(self, tranche: Tranche) -> Tranche:
        return repo.insert_row(self.conn, tranche)

    def get_tranche(self, tranche_id) -> Optional[Tranche]:
        return repo.fetch_one(self.conn, Tranche, "id = %s", (tranche_id,))

    def list_tranches(self, batch_id) -> List[Tranche]:
        return repo.fetch_all(self.conn, Tranche, "batch_id = %s", (batch_id,), order_by="number")

    def list_tranches_in_state(self, state) -> List[Tranche]:
        return repo.fetch_all(self.conn, Tranche, "state = %s", (state.value,), order_by="released_at")

    def update_tranche(self, tranche: Tranche, expected_version: int, expected_state=None) -> Optional[Tranche]:
        return repo.update_versioned(self.conn, tranche, expected_version, expected_state)

    # ---------- settlements ----------

    def insert_settlement(self, settlement: Settlement) -> Settlement:
        return repo.insert_row(self.conn, settlement)

    def get_settlement(self, settlement_id) -> Optional[Settlement]:
        return repo.fetch_one(self.conn, Settlement, "id = %s", (settlement_id,))

    def get_settlement_by_tranche(self, tranche_id) -> Optional[Settlement]:
        return repo.fetch_one(self.conn, Settlement, "tranche_id = %s", (tranche_id,))

    def list_settlements(self, batch_ids=None, state=None) -> List[Settlement]:
        return repo.fetch_all(
            self.conn,
            Settlement,
            "(%(ids)s::text[] IS NULL OR batch_id = ANY(%(ids)s)) AND (%(state)s::text IS NULL OR state = %(state)s)",
            {"ids": list(batch_ids) if batch_ids is not None else None, "state": state.value if state else None},
            order_by="batch_id, tranche_number",
        )

    def update_settlement(self, settlement: Settlement, expected_version: int) -> Optional[Settlement]:
        return repo.update_versioned(self.conn, settlement, expected_version)

    # ---------- bulk settlements ----------

    def insert_bulk_settlement(self, bulk: BulkSettlement) -> BulkSettlement:
        return repo.insert_row(self.conn, bulk)

    def get_bulk_settlement(self, bulk_id) -> Optional[BulkSettlement]:
        return repo.fetch_one(self.conn, BulkSettlement, "id = %s", (bulk_id,))

    def get_bulk_settlement_by_sale(self, bulk_sale_id) -> Optional[BulkSettlement]:
        return repo.fetch_one(self.conn, BulkSettlement, "bulk_sale_id = %s", (bulk_sale_id,))

    def list_bulk_settlements(self, agent_id=None) -> List[BulkSettlement]:
        return repo.fetch_all(
            self.conn,
            BulkSettlement,
            "(%(agent_id)s::text IS NULL OR agent_id = %(agent_id)s)",
            {"agent_id": agent_id},
            order_by="created_at",
        )

    def update_bulk_settlement(self, bulk: BulkSettlement, expected_version: int) -> Optional[BulkSettlement]:
        return repo.update_versioned(self.conn, bulk, expected_version)

    # ---------- closures ----------

    def insert_closure(self, closure: ClosureSettlement) -> ClosureSettlement:
        return repo.insert_row(self.conn, closure)

    def get_closure(self, closure_id) -> Optional[ClosureSettlement]:
        return repo.fetch_one(self.conn, ClosureSettlement, "id = %s", (closure_id,))

    def get_closure_by_batch(self, batch_id) -> Optional[ClosureSettlement]:
        return repo.fetch_one(self.conn, ClosureSettlement, "batch_id = %s", (batch_id,))

    def update_closure(self, closure: ClosureSettlement, expected_version: int) -> Optional[ClosureSettlement]:
        return repo.update_versioned(self.conn, closure, expected_version)

    # ---------- outbox ----------

    def enqueue(self, event_type, aggregate_type, aggregate_id, payload) -> OutboxMessage:
        message = OutboxMessage(
            id=new_id(),
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=dict(payload),
        )
        return repo.insert_row(self.conn, message)

    def fetch_pending_outbox(self, limit: int, max_retries: int) -> List[OutboxMessage]:
        return repo.fetch_pending_outbox(self.conn, limit, max_retries)

    def mark_outbox_processed(self, message_id, processed_at) -> None:
        repo.mark_outbox_processed(self.conn, message_id, processed_at)

    def mark_outbox_failed(self, message_id, error: str) -> None:
        repo.mark_outbox_failed(self.conn, message_id, error)

    def delete_processed_outbox(self, cutoff) -> int:
        return repo.delete_processed_outbox(self.conn, cutoff)

    def get_outbox_message(self, message_id) -> Optional[OutboxMessage]:
        return repo.fetch_one(self.conn, OutboxMessage, "id = %s", (message_id,))

    def list_outbox(self, parked_only=False, max_retries=3, limit=100) -> List[OutboxMessage]:
        if parked_only:
            return repo.fetch_all(
                self.conn,
                OutboxMessage,
                "processed_at IS NULL AND retries >= %s",
                (max_retries,),
                order_by="created_at",
                limit=limit,
            )
        return repo.fetch_all(self.conn, OutboxMessage, order_by="created_at", limit=limit)

    # ---------- event records ----------

    def append_event_record(self, record: EventRecord) -> EventRecord:
        return repo.insert_row(self.conn, record)

    def list_event_records(
        self, aggregate_type=None, aggregate_id=None, event_type=None, since=None, until=None, limit=500
    ) -> List[EventRecord]:
        return repo.list_event_records(self.conn, aggregate_type, aggregate_id, event_type, since, until, limit)
