from datetime import datetime
from pydantic import BaseModel
from typing import Any, Optional


class DeviceOut(BaseModel):
    device_id: str
    device_name: str
    last_seen: Optional[datetime] = None
    is_online: bool


class TelemetryOut(BaseModel):
    id: Optional[int] = None
    device_id: str
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    servo_state: int
    water_state: bool
    timestamp: datetime


class DevicesResponse(BaseModel):
    devices: list[DeviceOut]
    count: int
    status: str = "success"


class DataResponse(BaseModel):
    data: TelemetryOut | list[TelemetryOut] | None
    status: str = "success"


class HistoryResponse(BaseModel):
    device_id: str
    history: list[TelemetryOut]
    count: int
    status: str = "success"


# fields are optional so missing ones can be reported as a 400, not a 422
class ServoCommandRequest(BaseModel):
    device_id: Optional[str] = None
    angle: Any = None
    command_by: Optional[str] = None


class WaterCommandRequest(BaseModel):
    device_id: Optional[str] = None
    state: Any = None
    command_by: Optional[str] = None


class ServoCommandResponse(BaseModel):
    status: str = "success"
    message: str
    device_id: str
    angle: int
    delivered: bool


class WaterCommandResponse(BaseModel):
    status: str = "success"
    message: str
    device_id: str
    water_state: bool
    delivered: bool


class MqttStatus(BaseModel):
    state: str
    is_connected: bool
    broker: str
    port: int


class MqttStatusResponse(BaseModel):
    mqtt: MqttStatus
