import logging
from dataclasses import dataclass

from config import settings
from events import EventBus
from handlers import register_handlers
from outbox import OutboxRelay
from ports import Collaborators

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: object
    ports: Collaborators
    bus: EventBus
    relay: OutboxRelay


def postgres_collaborators(dsn: str = None) -> Collaborators:
    from db.collaborators import PgAgentDirectory, PgEquipmentDebt, PgRewardFund
    from ports import LoggingNotifier

    return Collaborators(
        directory=PgAgentDirectory(dsn),
        equipment_debt=PgEquipmentDebt(dsn),
        notifier=LoggingNotifier(),
        reward_fund=PgRewardFund(dsn),
    )


def build_runtime(store=None, ports: Collaborators = None, sleep=None) -> Runtime:
    """
    wire store + collaborators + event bus + outbox relay.
    defaults to postgres for everything; tests pass a MemoryStore and in-memory ports.
    """
    if store is None:
        from db.pg_store import PgStore

        store = PgStore(settings.DATABASE_URL)
    if ports is None:
        ports = postgres_collaborators(settings.DATABASE_URL)

    bus = register_handlers(EventBus(), store, ports)
    relay_kwargs = {}
    if sleep is not None:
        relay_kwargs["sleep"] = sleep
    relay = OutboxRelay(
        store,
        bus.publish,
        batch_size=settings.OUTBOX_BATCH_SIZE,
        max_retries=settings.OUTBOX_MAX_RETRIES,
        backoff_cap=settings.OUTBOX_BACKOFF_CAP_SECONDS,
        **relay_kwargs,
    )
    logger.debug("runtime wired with %s", type(store).__name__)
    return Runtime(store=store, ports=ports, bus=bus, relay=relay)
