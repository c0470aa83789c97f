import logging
from typing import Iterable

from .db import TelemetryStore
from .models import TelemetryRecord
from .utils import sort_instant

log = logging.getLogger("telemetry")


def _rank(record: TelemetryRecord):
    return sort_instant(record.timestamp), record.id or 0


def latest_per_device(records: Iterable[TelemetryRecord]) -> dict[str, TelemetryRecord]:
    """Keep, per device, the record with the greatest timestamp.

    Arrival order is irrelevant: timestamps are compared as instants and ties
    go to the higher record id.
    """
    latest: dict[str, TelemetryRecord] = {}
    for record in records:
        current = latest.get(record.device_id)
        if current is None or _rank(record) > _rank(current):
            latest[record.device_id] = record
    return latest


class StateAggregator:
    def __init__(self, store: TelemetryStore):
        self.store = store

    async def latest(self, device_id: str | None = None):
        """Latest record for `device_id` (or None), or a list with one record per device."""
        records = await self.store.query_telemetry(device_id)
        latest = latest_per_device(records)
        log.debug("Aggregated %d records into %d devices", len(records), len(latest))
        if device_id is not None:
            return latest.get(device_id)
        return list(latest.values())
