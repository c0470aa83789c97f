# devicebridge/mqtt_handler.py
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import paho.mqtt.client as mqtt

from .errors import PublishUnavailable
from .models import ConnectionState
from .settings import Settings

log = logging.getLogger("mqtt")

MessageHandler = Callable[[str, bytes], Awaitable[Any]]
StateListener = Callable[[ConnectionState, ConnectionState], None]


def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1


def _rc_str(rc) -> str:
    name = getattr(rc, "getName", None)
    if callable(name):
        return f"{_rc_int(rc)}:{name()}"
    return str(getattr(rc, "value", rc))


class EventKind(str, Enum):
    TICK = "tick"
    CONNECTED = "connected"
    OFFLINE = "offline"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    MESSAGE = "message"


@dataclass
class ConnectionEvent:
    kind: EventKind
    topic: str | None = None
    payload: bytes = b""
    detail: str | None = None


def create_client(settings: Settings) -> mqtt.Client:
    client = mqtt.Client(
        client_id=settings.mqtt_client_id,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
        reconnect_on_failure=False,  # retries are driven by the reconnect timer
    )
    client.enable_logger(log)  # paho internal logs
    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
    client.connect_timeout = settings.mqtt_connect_timeout
    return client


class ConnectionManager:
    """Owns the broker connection and its lifecycle.

    paho runs its network loop on a thread of its own. Its callbacks never touch
    this object's state directly; they post ConnectionEvents which a single
    reactor task on the asyncio loop applies one at a time:

        disconnected -> connecting -> connected
        connected -> offline -> connecting   (transport loss)

    While not connected, every reconnect tick starts a new attempt unless one
    is still within the connect timeout. Retries never give up.

    Inbound messages are moved onto a second queue and handed to the message
    handler by a consumer task of their own, in arrival order, so a slow store
    write never holds up connection events.
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[Settings], Any] = create_client,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.host = settings.mqtt_host
        self.port = settings.mqtt_port
        self.username = settings.mqtt_username
        self.keepalive = settings.mqtt_keepalive
        self.reconnect_interval = settings.mqtt_reconnect_interval
        self.connect_timeout = settings.mqtt_connect_timeout
        self.qos = 0
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: list[str] = []
        self._listeners: list[StateListener] = []
        self._message_handler: MessageHandler | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._messages: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue()
        self._reactor: asyncio.Task | None = None
        self._consumer: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._attempt: asyncio.Task | None = None
        self._attempt_started: float | None = None
        self._stopping = False

        self.client = client_factory(settings)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message

    # ---- public surface ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "is_connected": self.is_connected,
            "broker": self.host,
            "port": self.port,
        }

    def add_subscription(self, topic: str) -> None:
        if topic not in self._subscriptions:
            self._subscriptions.append(topic)

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._reactor is not None:
            log.info("MQTT already started")
            return
        log.info(
            "Bootstrapping host=%s port=%s user=%s subs=%s",
            self.host, self.port, "<set>" if self.username else "<none>", self._subscriptions,
        )
        self._stopping = False
        self._loop = asyncio.get_running_loop()
        self._reactor = asyncio.create_task(self._run_reactor())
        self._consumer = asyncio.create_task(self._run_consumer())
        self._ticker = asyncio.create_task(self._run_ticker())
        self._events.put_nowait(ConnectionEvent(EventKind.TICK))

    async def stop(self) -> None:
        self._stopping = True
        tasks = [t for t in (self._ticker, self._reactor, self._consumer) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._ticker = self._reactor = self._consumer = None
        if self._attempt is not None:
            # a connect worker finishing after disconnect would restart the network loop
            await asyncio.gather(self._attempt, return_exceptions=True)
            self._attempt = None
        try:
            await asyncio.to_thread(self._close_transport)
        except (OSError, RuntimeError) as e:
            log.warning("Error while closing MQTT transport: %s", e)
        self._set_state(ConnectionState.DISCONNECTED)

    def post(self, event: ConnectionEvent) -> None:
        """Queue an event from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            log.debug("Dropping %s event; reactor not running", event.kind.value)
            return
        loop.call_soon_threadsafe(self._events.put_nowait, event)

    def publish(self, topic: str, payload: dict) -> None:
        if not self.is_connected:
            raise PublishUnavailable(f"MQTT not connected (state={self._state.value})")
        info = self.client.publish(topic, json.dumps(payload), qos=self.qos, retain=False)
        # paho v2: info.rc == MQTT_ERR_SUCCESS (0) when queued
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishUnavailable(f"publish rc={info.rc}")

    # ---- state machine ----

    async def handle_event(self, event: ConnectionEvent) -> None:
        kind = event.kind
        if kind is EventKind.TICK:
            self._handle_tick()
        elif kind is EventKind.CONNECTED:
            self._attempt_started = None
            self._set_state(ConnectionState.CONNECTED)
            self._subscribe_all()
        elif kind is EventKind.OFFLINE:
            if self._state is not ConnectionState.CONNECTED:
                # paho also reports a refused CONNACK as a disconnect
                log.warning("Connect attempt dropped rc=%s state=%s", event.detail, self._state.value)
                self._attempt_started = None
                return
            log.warning("Connection lost rc=%s. Reconnecting…", event.detail)
            self._attempt_started = None
            self._set_state(ConnectionState.OFFLINE)
            if not self._stopping:
                self._begin_attempt()
        elif kind is EventKind.DISCONNECTED:
            self._attempt_started = None
            self._set_state(ConnectionState.DISCONNECTED)
        elif kind is EventKind.ERROR:
            log.warning("MQTT error state=%s: %s", self._state.value, event.detail)
            if self._state is not ConnectionState.CONNECTED:
                # let the next tick retry
                self._attempt_started = None
        elif kind is EventKind.MESSAGE:
            self._messages.put_nowait((event.topic or "", event.payload))

    def _handle_tick(self) -> None:
        if self._state is ConnectionState.CONNECTED or self._stopping:
            return
        if self._attempt_started is not None:
            elapsed = self._clock() - self._attempt_started
            if elapsed < self.connect_timeout:
                return
            log.warning("Connect attempt abandoned after %.1fs without CONNACK", elapsed)
            self._attempt_started = None
        if self._attempt is not None and not self._attempt.done():
            log.debug("Previous connect worker still running; retrying on next tick")
            return
        self._begin_attempt()

    def _begin_attempt(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._attempt_started = self._clock()
        self._attempt = asyncio.create_task(self._open_transport())

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        if old is new:
            return
        log.info("MQTT state %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            listener(old, new)

    def _subscribe_all(self) -> None:
        for topic in self._subscriptions:
            res, mid = self.client.subscribe(topic, qos=self.qos)
            log.info("Connected. SUB %s res=%s mid=%s", topic, res, mid)

    async def _deliver(self, topic: str, payload: bytes) -> None:
        if self._message_handler is None:
            log.debug("No handler for topic=%s", topic)
            return
        try:
            await self._message_handler(topic, payload)
        except Exception:
            log.exception("on_message error topic=%s", topic)

    # ---- transport (worker threads) ----

    async def _open_transport(self) -> None:
        log.info("Connecting to MQTT %s:%s", self.host, self.port)
        try:
            await asyncio.to_thread(self._connect_blocking)
        except (OSError, ValueError) as e:
            self._events.put_nowait(ConnectionEvent(EventKind.ERROR, detail=f"connect failed: {e}"))

    def _connect_blocking(self) -> None:
        # joins the previous network thread if one already exited
        self.client.loop_stop()
        self.client.connect(self.host, self.port, keepalive=self.keepalive)
        self.client.loop_start()

    def _close_transport(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()

    async def _run_reactor(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except Exception:
                log.exception("Failed to handle %s event", event.kind.value)

    async def _run_consumer(self) -> None:
        while True:
            topic, payload = await self._messages.get()
            await self._deliver(topic, payload)

    async def _run_ticker(self) -> None:
        while True:
            await asyncio.sleep(self.reconnect_interval)
            self._events.put_nowait(ConnectionEvent(EventKind.TICK))

    # ---- paho callbacks (network thread) ----

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            self.post(ConnectionEvent(EventKind.ERROR, detail=f"connect refused rc={_rc_str(reason_code)}"))
            return
        self.post(ConnectionEvent(EventKind.CONNECTED))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        kind = EventKind.DISCONNECTED if self._stopping else EventKind.OFFLINE
        self.post(ConnectionEvent(kind, detail=_rc_str(reason_code)))

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties):
        log.info("SUBACK mid=%s granted=%s", mid, [_rc_int(rc) for rc in reason_codes])
        if any(_rc_int(rc) >= 0x80 for rc in reason_codes):
            log.warning("Subscription rejected by broker ACL mid=%s", mid)

    def _on_message(self, client, userdata, msg):
        self.post(ConnectionEvent(EventKind.MESSAGE, topic=msg.topic, payload=msg.payload))
