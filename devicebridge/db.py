import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, create_engine, Session, select

from .errors import StorageError
from .models import CommandStatus, ControlCommand, Device, TelemetryRecord
from .settings import Settings
from .utils import sort_instant

log = logging.getLogger("store")

T = TypeVar("T")


class TelemetryStore(ABC):
    """Persistence used by the bridge.

    Writes are single-row and atomic; reads are simple filtered/ordered scans.
    Implementations raise StorageError on any backend failure.
    """

    async def init(self) -> None:
        pass

    @abstractmethod
    async def append_telemetry(self, record: TelemetryRecord) -> TelemetryRecord: ...

    @abstractmethod
    async def upsert_device(self, device_id: str, seen_at: datetime, display_name: str | None = None) -> Device: ...

    @abstractmethod
    async def append_command(self, command: ControlCommand) -> ControlCommand: ...

    @abstractmethod
    async def update_command_status(
        self, device_id: str, kind: str, status: str, final_value: Any = None
    ) -> ControlCommand | None:
        """Move the newest `sent` command of this kind for the device to `status`."""

    @abstractmethod
    async def query_telemetry(self, device_id: str | None = None) -> list[TelemetryRecord]:
        """All telemetry, optionally for one device. No ordering is promised."""

    @abstractmethod
    async def query_telemetry_history(self, device_id: str, limit: int) -> list[TelemetryRecord]:
        """Up to `limit` records for the device, newest first."""

    @abstractmethod
    async def list_devices(self) -> list[Device]:
        """Known devices, most recently seen first."""


def _default_name(device_id: str) -> str:
    return f"Device {device_id}"


class SqlStore(TelemetryStore):
    def __init__(self, database_url: str):
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            # sessions run in worker threads
            kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_engine(database_url, **kwargs)

    def get_session(self) -> Session:
        # keep attributes loaded so rows stay readable after the session closes
        return Session(self.engine, expire_on_commit=False)

    async def _run(self, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def init(self) -> None:
        log.info("Checking database connection url=%s", self.engine.url.render_as_string(hide_password=True))
        try:
            await self._run(lambda: SQLModel.metadata.create_all(self.engine))
        except StorageError as e:
            log.error("Database check failed: %s", e)
        else:
            log.info("Database connection successful")

    async def append_telemetry(self, record: TelemetryRecord) -> TelemetryRecord:
        def work():
            with self.get_session() as s:
                s.add(record)
                s.commit()
                s.refresh(record)
                return record
        return await self._run(work)

    async def upsert_device(self, device_id: str, seen_at: datetime, display_name: str | None = None) -> Device:
        def work():
            with self.get_session() as s:
                d = s.get(Device, device_id)
                if d is None:
                    d = Device(device_id=device_id, display_name=display_name or _default_name(device_id))
                elif display_name:
                    d.display_name = display_name
                d.last_seen = seen_at
                d.is_online = True
                s.add(d)
                s.commit()
                s.refresh(d)
                return d
        return await self._run(work)

    async def append_command(self, command: ControlCommand) -> ControlCommand:
        def work():
            with self.get_session() as s:
                s.add(command)
                s.commit()
                s.refresh(command)
                return command
        return await self._run(work)

    async def update_command_status(self, device_id, kind, status, final_value=None):
        def work():
            with self.get_session() as s:
                stmt = (
                    select(ControlCommand)
                    .where(
                        ControlCommand.device_id == device_id,
                        ControlCommand.kind == kind,
                        ControlCommand.status == CommandStatus.SENT.value,
                    )
                    .order_by(ControlCommand.issued_at.desc(), ControlCommand.id.desc())
                )
                row = s.exec(stmt).first()
                if row is None:
                    return None
                row.status = status
                if final_value is not None:
                    row.final_value = final_value
                s.add(row)
                s.commit()
                s.refresh(row)
                return row
        return await self._run(work)

    async def query_telemetry(self, device_id=None):
        def work():
            with self.get_session() as s:
                stmt = select(TelemetryRecord)
                if device_id is not None:
                    stmt = stmt.where(TelemetryRecord.device_id == device_id)
                return list(s.exec(stmt).all())
        return await self._run(work)

    async def query_telemetry_history(self, device_id, limit):
        def work():
            with self.get_session() as s:
                stmt = (
                    select(TelemetryRecord)
                    .where(TelemetryRecord.device_id == device_id)
                    .order_by(TelemetryRecord.timestamp.desc(), TelemetryRecord.id.desc())
                    .limit(limit)
                )
                return list(s.exec(stmt).all())
        return await self._run(work)

    async def list_devices(self):
        def work():
            with self.get_session() as s:
                return list(s.exec(select(Device).order_by(Device.last_seen.desc())).all())
        return await self._run(work)


class MemoryStore(TelemetryStore):
    """Process-local store used when no database is configured (demo mode)."""

    def __init__(self) -> None:
        self.telemetry: list[TelemetryRecord] = []
        self.commands: list[ControlCommand] = []
        self.devices: dict[str, Device] = {}
        self._ids = itertools.count(1)

    async def init(self) -> None:
        log.warning("No DATABASE_URL set; running in demo mode with in-memory storage")

    async def append_telemetry(self, record):
        record.id = next(self._ids)
        self.telemetry.append(record)
        return record

    async def upsert_device(self, device_id, seen_at, display_name=None):
        d = self.devices.get(device_id)
        if d is None:
            d = Device(device_id=device_id, display_name=display_name or _default_name(device_id))
            self.devices[device_id] = d
        elif display_name:
            d.display_name = display_name
        d.last_seen = seen_at
        d.is_online = True
        return d

    async def append_command(self, command):
        command.id = next(self._ids)
        self.commands.append(command)
        return command

    async def update_command_status(self, device_id, kind, status, final_value=None):
        for row in reversed(self.commands):
            if row.device_id == device_id and row.kind == kind and row.status == CommandStatus.SENT.value:
                row.status = status
                if final_value is not None:
                    row.final_value = final_value
                return row
        return None

    async def query_telemetry(self, device_id=None):
        return [r for r in self.telemetry if device_id is None or r.device_id == device_id]

    async def query_telemetry_history(self, device_id, limit):
        rows = [r for r in self.telemetry if r.device_id == device_id]
        rows.sort(key=lambda r: (sort_instant(r.timestamp), r.id or 0), reverse=True)
        return rows[:limit]

    async def list_devices(self):
        return sorted(self.devices.values(), key=lambda d: sort_instant(d.last_seen), reverse=True)


def build_store(settings: Settings) -> TelemetryStore:
    if settings.database_url:
        return SqlStore(settings.database_url)
    return MemoryStore()
