"""
Unit tests for TopicRouter.
"""

import json
from unittest.mock import AsyncMock

import pytest

from devicebridge.errors import MessageParseError
from devicebridge.routing import MessageKind, TopicRouter, decode_payload


@pytest.fixture
def router():
    r = TopicRouter()
    r.add_route("sensor", "data", MessageKind.TELEMETRY, AsyncMock())
    r.add_route("servo", "status", MessageKind.SERVO_STATUS, AsyncMock())
    return r


class TestResolve:
    def test_subscriptions_use_single_level_wildcard(self, router):
        assert router.subscriptions() == ["sensor/+/data", "servo/+/status"]

    @pytest.mark.parametrize(
        "topic,kind,device_id",
        [
            ("sensor/dev1/data", MessageKind.TELEMETRY, "dev1"),
            ("sensor/Dev-1/data", MessageKind.TELEMETRY, "Dev-1"),
            ("servo/esp32_a/status", MessageKind.SERVO_STATUS, "esp32_a"),
        ],
    )
    def test_matching_topics(self, router, topic, kind, device_id):
        route, found = router.resolve(topic)
        assert route.kind is kind
        assert found == device_id

    @pytest.mark.parametrize(
        "topic",
        [
            "sensor/dev1/status",
            "sensor//data",
            "sensor/dev1/data/extra",
            "prefix/sensor/dev1/data",
            "water/dev1/status",
            "control/dev1/servo",
            "",
        ],
    )
    def test_non_matching_topics(self, router, topic):
        assert router.resolve(topic) is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_passes_decoded_payload(self, router):
        payload = json.dumps({"device_id": "dev1", "temperature": 20}).encode()

        assert await router.dispatch("sensor/dev1/data", payload) is True

        handler = router.resolve("sensor/dev1/data")[0].handler
        handler.assert_awaited_once_with("dev1", {"device_id": "dev1", "temperature": 20})

    @pytest.mark.asyncio
    async def test_unmatched_topic_never_dispatched(self, router):
        assert await router.dispatch("weather/dev1/data", b'{"temperature": 1}') is False

        for topic in ("sensor/x/data", "servo/x/status"):
            router.resolve(topic)[0].handler.assert_not_awaited()
        assert router.stats["dropped"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [b"not json", b"\xff\xfe", b"[1, 2]", b'"text"'])
    async def test_bad_payload_dropped(self, router, payload):
        assert await router.dispatch("sensor/dev1/data", payload) is False
        router.resolve("sensor/dev1/data")[0].handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handler_parse_error_dropped(self, router):
        router.resolve("sensor/dev1/data")[0].handler.side_effect = MessageParseError("bad reading")

        assert await router.dispatch("sensor/dev1/data", b"{}") is False
        assert router.stats == {"rx_total": 1, "dispatched": 0, "dropped": 1}


class TestDecodePayload:
    def test_empty_payload_is_empty_object(self):
        assert decode_payload(b"") == {}

    def test_rejects_non_object(self):
        with pytest.raises(MessageParseError):
            decode_payload(b"42")
