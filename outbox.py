"""
transactional outbox relay.

business flows write OutboxMessage rows in the same transaction as their
state change (tx.enqueue(...)). the relay reads pending rows, hands each one
to `publish`, and on success writes an EventRecord and stamps processed_at
in one transaction. on failure it backs off and bumps the retry counter;
rows at max_retries stop being polled but stay in the table.

the relay only knows about OutboxMessage / EventRecord, not about batches
or settlements, so any store exposing the outbox methods works.
"""
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from errors import EventDeliveryFailure
from models import EventRecord, OutboxMessage, new_id

logger = logging.getLogger(__name__)

Publish = Callable[[str, Dict[str, Any]], None]


def backoff_seconds(retries: int, cap: int) -> int:
    return min(cap, 2 ** retries)


class OutboxRelay:
    def __init__(
        self,
        store,
        publish: Publish,
        batch_size: int = 50,
        max_retries: int = 3,
        backoff_cap: int = 8,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.publish = publish
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_cap = backoff_cap
        self.sleep = sleep
        self.clock = clock
        self._guard = threading.Lock()

    @property
    def is_processing(self) -> bool:
        return self._guard.locked()

    def process_pending(self) -> Optional[Dict[str, int]]:
        """
        one polling pass. returns counters, or None when a previous pass is
        still running in this process (overlapping runs are skipped).
        """
        if not self._guard.acquire(blocking=False):
            logger.debug("outbox pass already running, skipping")
            return None
        try:
            with self.store.transaction() as tx:
                messages = tx.fetch_pending_outbox(self.batch_size, self.max_retries)

            stats = {"fetched": len(messages), "processed": 0, "failed": 0}
            for message in messages:
                if self._deliver(message):
                    stats["processed"] += 1
                else:
                    stats["failed"] += 1
            if messages:
                logger.info("outbox pass: %s", stats)
            return stats
        finally:
            self._guard.release()

    def _deliver(self, message: OutboxMessage) -> bool:
        try:
            self.publish(message.event_type, message.payload)
        except Exception as exc:
            failure = EventDeliveryFailure(message.id, message.event_type, exc)
            wait = backoff_seconds(message.retries, self.backoff_cap)
            logger.warning(
                "%s (attempt %d/%d), backing off %ss",
                failure.message,
                message.retries + 1,
                self.max_retries,
                wait,
            )
            self.sleep(wait)
            with self.store.transaction() as tx:
                tx.mark_outbox_failed(message.id, repr(exc)[:1000])
            if message.retries + 1 >= self.max_retries:
                logger.error("outbox message %s parked after %d attempts", message.id, message.retries + 1)
            return False

        processed_at = self.clock()
        record = EventRecord(
            id=new_id(),
            event_type=message.event_type,
            aggregate_type=message.aggregate_type,
            aggregate_id=message.aggregate_id,
            payload=message.payload,
            metadata={"outbox_id": message.id, "processed_at": processed_at.isoformat()},
            recorded_at=processed_at,
        )
        with self.store.transaction() as tx:
            tx.append_event_record(record)
            tx.mark_outbox_processed(message.id, processed_at)
        return True

    def purge_processed(self, older_than_days: int = 7) -> int:
        """retention: drop processed outbox rows. event records are left alone."""
        cutoff = self.clock() - timedelta(days=older_than_days)
        with self.store.transaction() as tx:
            deleted = tx.delete_processed_outbox(cutoff)
        if deleted:
            logger.info("purged %d processed outbox messages older than %s", deleted, cutoff.isoformat())
        return deleted
