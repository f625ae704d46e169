from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import events
from events import EventBus
from outbox import OutboxRelay, backoff_seconds
from store import MemoryStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _store_with_message(**data):
    store = MemoryStore()
    with store.transaction() as tx:
        events.emit(tx, "PING", "thing", "t1", **data)
    return store


def _outbox(store):
    with store.transaction() as tx:
        return tx.list_outbox()


def test_backoff_is_capped():
    assert [backoff_seconds(r, 8) for r in range(6)] == [1, 2, 4, 8, 8, 8]


def test_delivery_writes_event_record():
    store = _store_with_message(n=1)
    seen = []
    relay = OutboxRelay(store, lambda event_type, payload: seen.append((event_type, payload)), clock=lambda: T0)

    assert relay.process_pending() == {"fetched": 1, "processed": 1, "failed": 0}

    assert seen == [("PING", {"n": 1, "aggregate_type": "thing", "aggregate_id": "t1"})]
    with store.transaction() as tx:
        records = tx.list_event_records(aggregate_id="t1")
    message = _outbox(store)[0]
    assert len(records) == 1
    assert records[0].metadata["outbox_id"] == message.id
    assert message.processed_at == T0

    # nothing left to do
    assert relay.process_pending()["fetched"] == 0


def test_failed_delivery_is_retried_with_backoff():
    """handler fails twice then recovers: exactly one event record, two backoffs."""
    store = _store_with_message(n=2)
    calls, sleeps = [], []

    def publish(event_type, payload):
        calls.append(event_type)
        if len(calls) <= 2:
            raise RuntimeError("handler down")

    relay = OutboxRelay(store, publish, max_retries=3, backoff_cap=8, sleep=sleeps.append)

    assert relay.process_pending() == {"fetched": 1, "processed": 0, "failed": 1}
    assert relay.process_pending() == {"fetched": 1, "processed": 0, "failed": 1}
    assert relay.process_pending() == {"fetched": 1, "processed": 1, "failed": 0}

    assert sleeps == [1, 2]
    message = _outbox(store)[0]
    assert message.retries == 2
    assert "handler down" in message.last_error
    with store.transaction() as tx:
        assert len(tx.list_event_records()) == 1


def test_message_is_parked_after_max_retries():
    store = _store_with_message()
    sleeps = []

    def publish(event_type, payload):
        raise RuntimeError("always broken")

    relay = OutboxRelay(store, publish, max_retries=3, sleep=sleeps.append)
    for _ in range(3):
        relay.process_pending()

    assert relay.process_pending()["fetched"] == 0
    assert sleeps == [1, 2, 4]
    with store.transaction() as tx:
        parked = tx.list_outbox(parked_only=True, max_retries=3)
        assert tx.list_event_records() == []
    assert len(parked) == 1
    assert parked[0].processed_at is None


def test_purge_only_drops_old_processed_rows():
    store = _store_with_message()
    with store.transaction() as tx:
        events.emit(tx, "PONG", "thing", "t2")

    relay = OutboxRelay(store, lambda event_type, payload: None, batch_size=1, clock=lambda: T0)
    relay.process_pending()  # only the first message

    later = OutboxRelay(store, lambda event_type, payload: None, clock=lambda: T0 + timedelta(days=8))
    assert later.purge_processed(older_than_days=7) == 1

    remaining = _outbox(store)
    assert [m.event_type for m in remaining] == ["PONG"]
    # the record of the delivered one survives
    with store.transaction() as tx:
        assert [r.event_type for r in tx.list_event_records()] == ["PING"]


def test_overlapping_pass_is_skipped():
    store = _store_with_message()
    nested = []

    def publish(event_type, payload):
        nested.append(relay.process_pending())

    relay = OutboxRelay(store, publish)
    relay.process_pending()

    assert nested == [None]
    assert not relay.is_processing


def test_bus_runs_handlers_in_order_and_propagates_errors():
    bus = EventBus()
    order = []
    bus.subscribe("X", lambda t, p: order.append("first"))
    bus.subscribe("X", lambda t, p: order.append("second"))

    bus.publish("X", {})
    bus.publish("NOBODY_LISTENS", {})
    assert order == ["first", "second"]

    def broken(event_type, payload):
        raise ValueError("boom")

    bus.subscribe("X", broken)
    with pytest.raises(ValueError):
        bus.publish("X", {})


def test_emit_makes_payload_json_friendly():
    store = MemoryStore()
    with store.transaction() as tx:
        message = events.emit(tx, "PAID", "settlement", "s1", amount=Decimal("12.5"), when=T0)

    assert message.payload["amount"] == "12.50"
    assert message.payload["when"] == T0.isoformat()
    assert message.payload["aggregate_type"] == "settlement"
