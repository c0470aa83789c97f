from enum import Enum
from typing import Any, Optional
from datetime import datetime
from sqlmodel import SQLModel, Field, Column, JSON

from .utils import utcnow


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    OFFLINE = "offline"


class CommandKind(str, Enum):
    SERVO = "servo"
    WATER = "water"


class CommandStatus(str, Enum):
    SENT = "sent"
    ACKED = "acked"
    FAILED = "failed"


class Device(SQLModel, table=True):
    __tablename__ = "devices"

    device_id: str = Field(primary_key=True, index=True)
    display_name: str
    last_seen: Optional[datetime] = Field(default=None, index=True)
    is_online: bool = False


class TelemetryRecord(SQLModel, table=True):
    __tablename__ = "sensor_data"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    servo_state: int = 0
    water_state: bool = False
    timestamp: datetime = Field(default_factory=utcnow, index=True)


class ControlCommand(SQLModel, table=True):
    __tablename__ = "control_commands"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    kind: str  # servo|water
    target_value: Any = Field(default=None, sa_column=Column(JSON))
    final_value: Any = Field(default=None, sa_column=Column(JSON))
    issued_by: str = "web_api"
    status: str = Field(default=CommandStatus.SENT.value)  # sent|acked|failed
    issued_at: datetime = Field(default_factory=utcnow, index=True)
