"""
same flows as the in-memory tests, against postgres. skipped when the
database in DATABASE_URL is not reachable.
"""
from decimal import Decimal

import psycopg
import pytest

import batch_db
import sale_db
import settlement_db
import tranche_db
from config import settings
from db.db import apply_schema, get_conn
from db.pg_store import PgStore
from models import SettlementState, TrancheState
from ports import AgentRecord, in_memory_collaborators
from runtime import build_runtime


def _postgres_available():
    try:
        with psycopg.connect(settings.DATABASE_URL, connect_timeout=2):
            return True
    except psycopg.Error:
        return False


pytestmark = pytest.mark.skipif(not _postgres_available(), reason="postgres not reachable")


def reset_db_state():
    apply_schema()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "TRUNCATE event_records, outbox_messages, closure_settlements, bulk_settlements, "
                "settlements, tranches, batches, reward_fund_entries CASCADE;"
            )
        conn.commit()


def _make_runtime():
    reset_db_state()
    agents = [AgentRecord(id="a1", sponsor_id="operator")]
    return build_runtime(PgStore(settings.DATABASE_URL), in_memory_collaborators(agents), sleep=lambda s: None)


def test_batch_round_trip_through_postgres():
    rt = _make_runtime()
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 51)
    batch_db.activate_batch(rt.store, batch.id)

    overview = batch_db.batch_overview(rt.store, batch.id)
    assert overview["batch"].operator_investment == Decimal("61200.00")
    assert overview["tranches"][0].state is TrancheState.RELEASED

    tranche_id = overview["tranches"][0].id
    tranche_db.mark_in_transit(rt.store, tranche_id)
    tranche_db.confirm_delivery(rt.store, tranche_id)
    result = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch.id, 17, Decimal("68000"))
    assert result["settlement"].state is SettlementState.PENDING

    settlement_db.confirm_settlement(rt.store, result["settlement"].id, Decimal("61200"))
    while rt.relay.process_pending()["fetched"]:
        pass

    assert tranche_db.get_tranche(rt.store, overview["tranches"][1].id).state is TrancheState.RELEASED


def test_conditional_update_loses_race():
    rt = _make_runtime()
    batch = batch_db.create_batch(rt.store, rt.ports.directory, "a1", 20)

    with rt.store.transaction() as tx:
        assert tx.update_batch(batch, batch.version) is not None
    with rt.store.transaction() as tx:
        # version moved on
        assert tx.update_batch(batch, batch.version) is None
