import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .context import BridgeContext, build_context
from .db import TelemetryStore
from .errors import CommandValidationError, StorageError
from .models import Device, TelemetryRecord
from .mqtt_handler import create_client
from .schemas import (
    DataResponse, DeviceOut, DevicesResponse, HistoryResponse, MqttStatusResponse,
    ServoCommandRequest, ServoCommandResponse, TelemetryOut, WaterCommandRequest, WaterCommandResponse,
)
from .settings import Settings, settings as default_settings
from .utils import add_cors, utcnow

log = logging.getLogger("api")

api = APIRouter()

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 1000


def get_context(request: Request) -> BridgeContext:
    return request.app.state.ctx


def _device_out(d: Device) -> DeviceOut:
    return DeviceOut(device_id=d.device_id, device_name=d.display_name, last_seen=d.last_seen, is_online=d.is_online)


def _history_limit(raw: str | None) -> int:
    # unparseable or non-positive limits fall back to the default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_HISTORY_LIMIT
    if value < 1:
        return DEFAULT_HISTORY_LIMIT
    return min(value, MAX_HISTORY_LIMIT)


def _telemetry_out(r: TelemetryRecord) -> TelemetryOut:
    return TelemetryOut(
        id=r.id, device_id=r.device_id, temperature=r.temperature, humidity=r.humidity,
        pressure=r.pressure, servo_state=r.servo_state, water_state=r.water_state, timestamp=r.timestamp,
    )


@api.get("/")
def health(ctx: BridgeContext = Depends(get_context)):
    return {
        "message": "IoT device bridge is running",
        "status": "active",
        "timestamp": utcnow().isoformat(),
        "storage": type(ctx.store).__name__,
        "mqtt": ctx.connection.get_status(),
        "endpoints": {
            "devices": "/api/devices",
            "data": "/api/data",
            "history": "/api/history/{device_id}",
            "control": {"servo": "/api/control/servo", "water": "/api/control/water"},
            "mqtt_status": "/api/mqtt-status",
        },
    }


@api.get("/api/devices", response_model=DevicesResponse)
async def list_devices(ctx: BridgeContext = Depends(get_context)):
    rows = await ctx.store.list_devices()
    return DevicesResponse(devices=[_device_out(d) for d in rows], count=len(rows))


@api.get("/api/data", response_model=DataResponse)
async def latest_data(device_id: str | None = None, ctx: BridgeContext = Depends(get_context)):
    result = await ctx.aggregator.latest(device_id)
    if device_id is not None:
        return DataResponse(data=_telemetry_out(result) if result is not None else None)
    return DataResponse(data=[_telemetry_out(r) for r in result])


@api.get("/api/history/{device_id}", response_model=HistoryResponse)
async def history(device_id: str, limit: str | None = Query(None), ctx: BridgeContext = Depends(get_context)):
    rows = await ctx.store.query_telemetry_history(device_id, _history_limit(limit))
    return HistoryResponse(device_id=device_id, history=[_telemetry_out(r) for r in rows], count=len(rows))


@api.post("/api/control/servo", response_model=ServoCommandResponse)
async def control_servo(body: ServoCommandRequest, ctx: BridgeContext = Depends(get_context)):
    if not body.device_id or body.angle is None:
        raise HTTPException(status_code=400, detail="Device ID and angle are required")
    result = await ctx.publisher.send_servo(body.device_id, body.angle, body.command_by)
    return ServoCommandResponse(
        message=f"Servo command sent to {result.device_id}: {result.value}°",
        device_id=result.device_id,
        angle=result.value,
        delivered=result.delivered,
    )


@api.post("/api/control/water", response_model=WaterCommandResponse)
async def control_water(body: WaterCommandRequest, ctx: BridgeContext = Depends(get_context)):
    if not body.device_id or body.state is None:
        raise HTTPException(status_code=400, detail="Device ID and state are required")
    result = await ctx.publisher.send_water(body.device_id, body.state, body.command_by)
    return WaterCommandResponse(
        message=f"Water command sent to {result.device_id}: {result.value}",
        device_id=result.device_id,
        water_state=result.value,
        delivered=result.delivered,
    )


@api.get("/api/mqtt-status", response_model=MqttStatusResponse)
def mqtt_status(ctx: BridgeContext = Depends(get_context)):
    return {"mqtt": ctx.connection.get_status()}


async def _http_error(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


async def _validation_error(request: Request, exc: CommandValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def _request_invalid(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"error": "Invalid request"})
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid value")
    return JSONResponse(status_code=400, content={"error": f"{field}: {message}" if field else message})


async def _storage_error(request: Request, exc: StorageError):
    log.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


async def _unexpected_error(request: Request, exc: Exception):
    log.exception("Server error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    settings: Settings | None = None,
    context: BridgeContext | None = None,
    store: TelemetryStore | None = None,
    client_factory: Callable[[Settings], Any] = create_client,
) -> FastAPI:
    """Build the HTTP app. The bridge context is created on startup unless one is given."""
    settings = settings or (context.settings if context else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.log_level.upper())
        if getattr(app.state, "ctx", None) is None:
            app.state.ctx = build_context(settings, store=store, client_factory=client_factory)
        ctx: BridgeContext = app.state.ctx
        await ctx.store.init()
        await ctx.connection.start()
        try:
            yield
        finally:
            await ctx.connection.stop()

    app = FastAPI(title="Device Bridge API", version="0.1.0", lifespan=lifespan)
    add_cors(app, settings.cors_origins)
    app.include_router(api)
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _request_invalid)
    app.add_exception_handler(CommandValidationError, _validation_error)
    app.add_exception_handler(StorageError, _storage_error)
    app.add_exception_handler(Exception, _unexpected_error)
    if context is not None:
        app.state.ctx = context

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("devicebridge.main:app", host=default_settings.host, port=default_settings.port)
