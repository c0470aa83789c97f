import logging
from typing import Any

from .db import TelemetryStore
from .errors import MessageParseError, StorageError
from .models import TelemetryRecord
from .utils import coerce_bool, parse_ts, utcnow

log = logging.getLogger("telemetry")


def _reading(payload: dict, key: str) -> float | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise MessageParseError(f"{key} must be numeric, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise MessageParseError(f"{key} must be numeric, got {value!r}") from e


def _servo_state(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError) as e:
        raise MessageParseError(f"servo_state must be an integer, got {value!r}") from e


class TelemetryIngestor:
    def __init__(self, store: TelemetryStore):
        self.store = store

    def normalize(self, device_id: str, payload: dict) -> TelemetryRecord:
        claimed = payload.get("device_id")
        if claimed is not None and claimed != device_id:
            log.warning("Payload device_id=%r differs from topic device_id=%r; using topic", claimed, device_id)
        return TelemetryRecord(
            device_id=device_id,
            temperature=_reading(payload, "temperature"),
            humidity=_reading(payload, "humidity"),
            pressure=_reading(payload, "pressure"),
            servo_state=_servo_state(payload.get("servo_state")),
            water_state=coerce_bool(payload.get("water_state")),
            timestamp=parse_ts(payload.get("timestamp") or payload.get("ts")),
        )

    async def ingest(self, device_id: str, payload: dict) -> TelemetryRecord | None:
        """Persist one reading and mark the device as seen.

        Storage failures are logged and the reading is lost; there is no retry.
        """
        record = self.normalize(device_id, payload)
        name = payload.get("name") or payload.get("device_name")
        if not isinstance(name, str):
            name = None
        try:
            saved = await self.store.append_telemetry(record)
            await self.store.upsert_device(device_id, seen_at=utcnow(), display_name=name)
        except StorageError as e:
            log.error("Error saving sensor data device_id=%s: %s", device_id, e)
            return None
        log.info("Sensor data saved device_id=%s id=%s", device_id, saved.id)
        return saved
