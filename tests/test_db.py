"""
Tests for the persistence implementations.

SqlStore runs against a throwaway SQLite file; MemoryStore is exercised
through the same calls so both honour the same ordering rules.
"""

from datetime import datetime, timedelta, timezone

import pytest

from devicebridge.db import MemoryStore, SqlStore, build_store
from devicebridge.errors import StorageError
from devicebridge.models import ControlCommand, TelemetryRecord

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def sql_store(tmp_path):
    return SqlStore(f"sqlite:///{tmp_path / 'bridge.db'}")


@pytest.fixture(params=["sql", "memory"])
def any_store(request, tmp_path):
    if request.param == "sql":
        return SqlStore(f"sqlite:///{tmp_path / 'bridge.db'}")
    return MemoryStore()


class TestBuildStore:
    def test_memory_without_url(self, settings):
        assert isinstance(build_store(settings), MemoryStore)

    def test_sql_with_url(self, settings, tmp_path):
        configured = settings.model_copy(update={"database_url": f"sqlite:///{tmp_path / 'x.db'}"})
        assert isinstance(build_store(configured), SqlStore)


class TestStores:
    @pytest.mark.asyncio
    async def test_append_and_history(self, any_store):
        await any_store.init()
        for minutes in (0, 10, 5):
            saved = await any_store.append_telemetry(
                TelemetryRecord(device_id="dev1", temperature=20 + minutes, timestamp=T0 + timedelta(minutes=minutes))
            )
            assert saved.id is not None
        await any_store.append_telemetry(TelemetryRecord(device_id="dev2", timestamp=T0))

        history = await any_store.query_telemetry_history("dev1", limit=2)

        assert [r.temperature for r in history] == [30.0, 25.0]
        assert len(await any_store.query_telemetry("dev1")) == 3
        assert len(await any_store.query_telemetry()) == 4

    @pytest.mark.asyncio
    async def test_upsert_device_and_listing(self, any_store):
        await any_store.init()
        await any_store.upsert_device("dev1", seen_at=T0)
        await any_store.upsert_device("dev2", seen_at=T0 + timedelta(minutes=1), display_name="Pump house")
        updated = await any_store.upsert_device("dev1", seen_at=T0 + timedelta(minutes=2))

        assert updated.display_name == "Device dev1"
        assert updated.is_online is True
        devices = await any_store.list_devices()
        assert [d.device_id for d in devices] == ["dev1", "dev2"]
        assert devices[1].display_name == "Pump house"

    @pytest.mark.asyncio
    async def test_command_status_update(self, any_store):
        await any_store.init()
        await any_store.append_command(ControlCommand(device_id="dev1", kind="servo", target_value=10, final_value=10, issued_at=T0))
        await any_store.append_command(
            ControlCommand(device_id="dev1", kind="servo", target_value=250, final_value=180, issued_at=T0 + timedelta(seconds=1))
        )
        await any_store.append_command(
            ControlCommand(device_id="dev1", kind="water", target_value="on", final_value=True, issued_at=T0 + timedelta(seconds=2))
        )

        row = await any_store.update_command_status("dev1", "servo", "acked", 175)

        assert (row.target_value, row.final_value, row.status) == (250, 175, "acked")
        assert await any_store.update_command_status("dev9", "servo", "acked") is None


class TestSqlStoreErrors:
    @pytest.mark.asyncio
    async def test_backend_failure_wrapped(self, tmp_path):
        store = SqlStore(f"sqlite:///{tmp_path / 'missing' / 'nested' / 'bridge.db'}")

        with pytest.raises(StorageError):
            await store.append_telemetry(TelemetryRecord(device_id="dev1", timestamp=T0))

    @pytest.mark.asyncio
    async def test_init_failure_only_logged(self, tmp_path):
        store = SqlStore(f"sqlite:///{tmp_path / 'missing' / 'bridge.db'}")
        await store.init()

    @pytest.mark.asyncio
    async def test_query_without_tables_raises_storage_error(self, sql_store):
        with pytest.raises(StorageError):
            await sql_store.list_devices()
