"""
Unit tests for latest-per-device aggregation.
"""

import itertools
from datetime import datetime, timezone

import pytest

from devicebridge.models import TelemetryRecord
from devicebridge.state import StateAggregator, latest_per_device


def _rec(id, device_id, ts, **kw):
    return TelemetryRecord(id=id, device_id=device_id, timestamp=ts, **kw)


class TestLatestPerDevice:
    def test_empty(self):
        assert latest_per_device([]) == {}

    def test_reverse_read_order_keeps_newest(self):
        """10:00 then 10:05 read back newest-first still picks 10:05"""
        early = _rec(1, "A", datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))
        late = _rec(2, "A", datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc))

        assert latest_per_device([late, early])["A"] is late
        assert latest_per_device([early, late])["A"] is late

    def test_timestamps_compared_as_instants(self):
        # 10:00+02:00 is 08:00Z, earlier than 09:30Z despite sorting later as text
        plus_two = _rec(1, "A", "2024-01-01T10:00:00+02:00")
        zulu = _rec(2, "A", "2024-01-01T09:30:00Z")
        precise = _rec(3, "B", "2024-01-01T09:30:00.500000Z")
        coarse = _rec(4, "B", "2024-01-01T09:30:00Z")

        latest = latest_per_device([zulu, plus_two, coarse, precise])

        assert latest["A"] is zulu
        assert latest["B"] is precise

    def test_naive_timestamps_treated_as_utc(self):
        naive = _rec(1, "A", datetime(2024, 1, 1, 9, 0))
        aware = _rec(2, "A", datetime(2024, 1, 1, 8, 59, tzinfo=timezone.utc))
        assert latest_per_device([naive, aware])["A"] is naive

    def test_order_independent_and_idempotent(self):
        records = [
            _rec(1, "A", datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)),
            _rec(2, "B", datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)),
            _rec(3, "A", datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc)),
            _rec(4, "B", datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)),  # tie with id 2
            _rec(5, "C", datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)),
        ]
        expected = {"A": 3, "B": 4, "C": 5}

        for perm in itertools.permutations(records):
            once = latest_per_device(perm)
            assert {k: v.id for k, v in once.items()} == expected
            again = latest_per_device(once.values())
            assert {k: v.id for k, v in again.items()} == expected


class TestStateAggregator:
    @pytest.mark.asyncio
    async def test_empty_store(self, memory_store):
        agg = StateAggregator(memory_store)
        assert await agg.latest() == []
        assert await agg.latest("dev1") is None

    @pytest.mark.asyncio
    async def test_one_record_per_device(self, memory_store):
        for device_id, minute in [("A", 5), ("B", 1), ("A", 0), ("B", 9)]:
            await memory_store.append_telemetry(
                _rec(None, device_id, datetime(2024, 1, 1, 10, minute, tzinfo=timezone.utc))
            )
        agg = StateAggregator(memory_store)

        latest = {r.device_id: r.timestamp.minute for r in await agg.latest()}
        assert latest == {"A": 5, "B": 9}
        assert (await agg.latest("B")).timestamp.minute == 9
        assert await agg.latest("Z") is None
