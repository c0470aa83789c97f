import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import MessageParseError

log = logging.getLogger("router")

Handler = Callable[[str, dict], Awaitable[Any]]


class MessageKind(str, Enum):
    TELEMETRY = "telemetry"
    SERVO_STATUS = "servo_status"
    WATER_STATUS = "water_status"


@dataclass(frozen=True)
class Route:
    category: str
    suffix: str
    kind: MessageKind
    handler: Handler

    @property
    def topic_filter(self) -> str:
        return f"{self.category}/+/{self.suffix}"

    def match(self, topic: str) -> str | None:
        """Return the device id if `topic` is `<category>/<device_id>/<suffix>`."""
        parts = topic.split("/")
        if len(parts) != 3:
            return None
        category, device_id, suffix = parts
        if category != self.category or suffix != self.suffix or not device_id:
            return None
        return device_id


def decode_payload(payload: bytes) -> dict:
    try:
        data = json.loads(payload.decode("utf-8")) if payload else {}
    except (UnicodeDecodeError, ValueError) as e:
        raise MessageParseError(f"invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise MessageParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


class TopicRouter:
    """Maps inbound topics to handlers by category and suffix around a device-id wildcard."""

    def __init__(self) -> None:
        self._routes: list[Route] = []
        self.stats = {"rx_total": 0, "dispatched": 0, "dropped": 0}

    def add_route(self, category: str, suffix: str, kind: MessageKind, handler: Handler) -> Route:
        route = Route(category, suffix, kind, handler)
        self._routes.append(route)
        return route

    def subscriptions(self) -> list[str]:
        return [r.topic_filter for r in self._routes]

    def resolve(self, topic: str) -> tuple[Route, str] | None:
        for route in self._routes:
            device_id = route.match(topic)
            if device_id is not None:
                return route, device_id
        return None

    async def dispatch(self, topic: str, payload: bytes) -> bool:
        """Route one inbound message. Returns True when a handler consumed it."""
        self.stats["rx_total"] += 1
        found = self.resolve(topic)
        if found is None:
            self.stats["dropped"] += 1
            log.info("Dropping message on unrouted topic=%s", topic)
            return False
        route, device_id = found
        try:
            data = decode_payload(payload)
            await route.handler(device_id, data)
        except MessageParseError as e:
            self.stats["dropped"] += 1
            log.warning("Dropping %s message topic=%s: %s", route.kind.value, topic, e)
            return False
        self.stats["dispatched"] += 1
        return True
