import logging
from dataclasses import dataclass
from typing import Any, Callable

from .commands import CommandPublisher
from .db import TelemetryStore, build_store
from .mqtt_handler import ConnectionManager, create_client
from .routing import MessageKind, TopicRouter
from .settings import Settings
from .state import StateAggregator
from .telemetry import TelemetryIngestor

log = logging.getLogger("api")


@dataclass
class BridgeContext:
    """Everything a request or an inbound message needs, built once at startup."""

    settings: Settings
    store: TelemetryStore
    connection: ConnectionManager
    router: TopicRouter
    ingestor: TelemetryIngestor
    publisher: CommandPublisher
    aggregator: StateAggregator


def build_context(
    settings: Settings,
    store: TelemetryStore | None = None,
    client_factory: Callable[[Settings], Any] = create_client,
) -> BridgeContext:
    store = store if store is not None else build_store(settings)
    connection = ConnectionManager(settings, client_factory=client_factory)
    ingestor = TelemetryIngestor(store)
    publisher = CommandPublisher(store, connection, default_actor=settings.default_actor)

    router = TopicRouter()
    router.add_route("sensor", "data", MessageKind.TELEMETRY, ingestor.ingest)
    if settings.enable_device_ack:
        router.add_route("servo", "status", MessageKind.SERVO_STATUS, publisher.record_ack)
        router.add_route("water", "status", MessageKind.WATER_STATUS, publisher.record_water_status)
    for topic in router.subscriptions():
        connection.add_subscription(topic)
    connection.set_message_handler(router.dispatch)

    log.info(
        "Bridge wired store=%s subs=%s device_ack=%s",
        type(store).__name__, router.subscriptions(), settings.enable_device_ack,
    )
    return BridgeContext(
        settings=settings,
        store=store,
        connection=connection,
        router=router,
        ingestor=ingestor,
        publisher=publisher,
        aggregator=StateAggregator(store),
    )
