"""
raw SQL for the settlement core.

plain functions taking a psycopg Connection, one per query, same as the
rest of the db layer. conditional updates use
    UPDATE ... WHERE id = %s AND version = %s [AND state = %s] RETURNING *
and return None when 0 rows matched (someone else won the race).
"""
from dataclasses import asdict, fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from psycopg import Connection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from models import (
    AffectedTranche,
    Batch,
    BatchState,
    BulkSettlement,
    BulkSettlementState,
    ClosureSettlement,
    CommissionModel,
    EventRecord,
    OutboxMessage,
    Settlement,
    SettlementConcept,
    SettlementState,
    SponsorShare,
    Tranche,
    TrancheState,
)

TABLE_FOR = {
    Batch: "batches",
    Tranche: "tranches",
    Settlement: "settlements",
    BulkSettlement: "bulk_settlements",
    ClosureSettlement: "closure_settlements",
    OutboxMessage: "outbox_messages",
    EventRecord: "event_records",
}

# columns that live in JSONB
JSON_COLUMNS = {
    "payload",
    "metadata",
    "debt_paid",
    "sponsor_shares",
    "involved_batch_ids",
    "affected_tranches",
    "closed_settlement_ids",
}

ENUMS = {
    "model": CommissionModel,
    "concept": SettlementConcept,
}

STATE_ENUM = {
    Batch: BatchState,
    Tranche: TrancheState,
    Settlement: SettlementState,
    BulkSettlement: BulkSettlementState,
    ClosureSettlement: SettlementState,
}


def _json_ready(value):
    if is_dataclass(value):
        return _json_ready(asdict(value))
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_ready(v) for v in value]
    return value


def _to_db(name: str, value):
    if name in JSON_COLUMNS:
        return Jsonb(_json_ready(value))
    if isinstance(value, Enum):
        return value.value
    return value


def _params(row) -> Dict[str, Any]:
    return {f.name: _to_db(f.name, getattr(row, f.name)) for f in fields(row)}


def _from_db(cls: Type, rec: Dict[str, Any]):
    """dict_row record -> frozen dataclass, re-hydrating enums and json tuples."""
    data = dict(rec)
    if cls in STATE_ENUM and data.get("state") is not None:
        data["state"] = STATE_ENUM[cls](data["state"])
    for name, enum in ENUMS.items():
        if name in data and data[name] is not None:
            data[name] = enum(data[name])
    if cls is BulkSettlement:
        data["debt_paid"] = tuple((k, Decimal(v)) for k, v in data["debt_paid"])
        data["sponsor_shares"] = tuple(
            SponsorShare(s["sponsor_id"], s["level"], Decimal(s["amount"])) for s in data["sponsor_shares"]
        )
        data["involved_batch_ids"] = tuple(data["involved_batch_ids"])
        data["affected_tranches"] = tuple(AffectedTranche(**t) for t in data["affected_tranches"])
        data["closed_settlement_ids"] = tuple(data["closed_settlement_ids"])
    return cls(**data)


def insert_row(conn: Connection, row):
    table = TABLE_FOR[type(row)]
    params = _params(row)
    columns = ", ".join(params)
    placeholders = ", ".join(f"%({name})s" for name in params)
    with conn.cursor() as cur:
        cur.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", params)
    return row


def fetch_one(conn: Connection, cls: Type, where: str, args) -> Optional[Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT * FROM {TABLE_FOR[cls]} WHERE {where}", args)
        rec = cur.fetchone()
    return _from_db(cls, rec) if rec else None


def fetch_all(conn: Connection, cls: Type, where: str = "TRUE", args=(), order_by: str = "id", limit: int = None) -> List[Any]:
    sql = f"SELECT * FROM {TABLE_FOR[cls]} WHERE {where} ORDER BY {order_by}"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, args)
        return [_from_db(cls, rec) for rec in cur.fetchall()]


def update_versioned(conn: Connection, row, expected_version: int, expected_state=None):
    """
    write every column of `row`, bump the version, but only if the stored row
    is still at expected_version (and expected_state when given).
    returns the stored row or None when 0 rows were affected.
    """
    cls = type(row)
    params = _params(row)
    params.pop("id")
    params.pop("version")
    assignments = ", ".join(f"{name} = %({name})s" for name in params)
    params["id"] = row.id
    params["expected_version"] = expected_version
    sql = f"UPDATE {TABLE_FOR[cls]} SET {assignments}, version = version + 1 WHERE id = %(id)s AND version = %(expected_version)s"
    if expected_state is not None:
        params["expected_state"] = _to_db("state", expected_state)
        sql += " AND state = %(expected_state)s"
    sql += " RETURNING *"
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        rec = cur.fetchone()
    return _from_db(cls, rec) if rec else None


# ---------- batches / tranches ----------


def list_batches(conn: Connection, agent_id=None, state=None) -> List[Batch]:
    return fetch_all(
        conn,
        Batch,
        "(%(agent_id)s::text IS NULL OR agent_id = %(agent_id)s) AND (%(state)s::text IS NULL OR state = %(state)s)",
        {"agent_id": agent_id, "state": _to_db("state", state)},
        order_by="created_at",
    )


def delete_batch(conn: Connection, batch_id: str) -> None:
    """tranches go with it (ON DELETE CASCADE)."""
    with conn.cursor() as cur:
        cur.execute("DELETE FROM batches WHERE id = %s", (batch_id,))


# ---------- outbox ----------


def fetch_pending_outbox(conn: Connection, limit: int, max_retries: int) -> List[OutboxMessage]:
    return fetch_all(
        conn,
        OutboxMessage,
        "processed_at IS NULL AND retries < %s",
        (max_retries,),
        order_by="created_at",
        limit=limit,
    )


def mark_outbox_processed(conn: Connection, message_id: str, processed_at) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE outbox_messages SET processed_at = %s WHERE id = %s",
            (processed_at, message_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"outbox message {message_id} not found")


def mark_outbox_failed(conn: Connection, message_id: str, error: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE outbox_messages SET retries = retries + 1, last_error = %s WHERE id = %s",
            (error, message_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"outbox message {message_id} not found")


def delete_processed_outbox(conn: Connection, cutoff) -> int:
    with conn.cursor() as cur:
        cur.execute(
            "DELETE FROM outbox_messages WHERE processed_at IS NOT NULL AND processed_at < %s",
            (cutoff,),
        )
        return cur.rowcount


# ---------- event records ----------


def list_event_records(
    conn: Connection, aggregate_type=None, aggregate_id=None, event_type=None, since=None, until=None, limit=500
) -> List[EventRecord]:
    clauses, args = [], []
    for column, value in (("aggregate_type", aggregate_type), ("aggregate_id", aggregate_id), ("event_type", event_type)):
        if value is not None:
            clauses.append(f"{column} = %s")
            args.append(value)
    if since is not None:
        clauses.append("recorded_at >= %s")
        args.append(since)
    if until is not None:
        clauses.append("recorded_at <= %s")
        args.append(until)
    where = " AND ".join(clauses) or "TRUE"
    return fetch_all(conn, EventRecord, where, tuple(args), order_by="recorded_at", limit=limit)


# ---------- collaborators ----------


def get_agent(conn: Connection, agent_id: str) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT id, state, sponsor_id, requires_password_change FROM agents WHERE id = %s",
            (agent_id,),
        )
        return cur.fetchone()


def open_equipment_debt(conn: Connection, agent_id: str) -> Decimal:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM equipment_debts WHERE agent_id = %s AND settled = FALSE",
            (agent_id,),
        )
        return cur.fetchone()[0]


def insert_reward_fund_entry(conn: Connection, amount: Decimal, reason: str, batch_id: Optional[str]) -> bool:
    """one entry per (reason, batch). returns False when it was already there."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO reward_fund_entries (amount, reason, batch_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (reason, batch_id) DO NOTHING
            RETURNING id
            """,
            (amount, reason, batch_id),
        )
        return cur.fetchone() is not None
