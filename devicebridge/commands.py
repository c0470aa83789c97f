import logging
import math
from dataclasses import dataclass
from typing import Any

from .db import TelemetryStore
from .errors import CommandValidationError, MessageParseError, PublishUnavailable, StorageError
from .models import CommandKind, CommandStatus, ControlCommand
from .mqtt_handler import ConnectionManager
from .utils import coerce_bool, utcnow

log = logging.getLogger("commands")

SERVO_MIN = 0
SERVO_MAX = 180

_FAILED_STATUSES = {"failed", "error"}


def clamp_angle(value: Any) -> int:
    """Clamp a servo angle into [0, 180] and truncate it to an int.

    Accepts ints, floats and numeric strings; booleans, NaN and anything else
    raise CommandValidationError.
    """
    if value is None or isinstance(value, bool):
        raise CommandValidationError(f"angle must be a number, got {value!r}")
    try:
        angle = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError) as e:
        raise CommandValidationError(f"angle must be a number, got {value!r}") from e
    if math.isnan(angle):
        raise CommandValidationError("angle must be a number, got NaN")
    return int(max(SERVO_MIN, min(SERVO_MAX, angle)))


def command_topic(device_id: str, kind: CommandKind) -> str:
    return f"control/{device_id}/{kind.value}"


@dataclass
class CommandResult:
    device_id: str
    kind: CommandKind
    value: Any
    issued_by: str
    topic: str
    delivered: bool
    command: ControlCommand


class CommandPublisher:
    def __init__(self, store: TelemetryStore, connection: ConnectionManager, default_actor: str = "web_api"):
        self.store = store
        self.connection = connection
        self.default_actor = default_actor

    async def send_servo(self, device_id: str, angle: Any, issued_by: str | None = None) -> CommandResult:
        return await self.issue(CommandKind.SERVO, device_id, angle, issued_by)

    async def send_water(self, device_id: str, state: Any, issued_by: str | None = None) -> CommandResult:
        return await self.issue(CommandKind.WATER, device_id, state, issued_by)

    async def issue(self, kind: CommandKind, device_id: str, target: Any, issued_by: str | None = None) -> CommandResult:
        """Validate, record and publish one actuator command.

        The command is written to the audit log before publishing, so it is
        recorded as `sent` even when the broker is unreachable. A publish while
        disconnected is logged and reported as `delivered=False`; it never raises.
        StorageError from the audit write propagates and nothing is published.
        """
        if not isinstance(device_id, str) or not device_id:
            raise CommandValidationError("device_id is required")
        if kind is CommandKind.SERVO:
            value: Any = clamp_angle(target)
            field = "target_angle"
        else:
            value = coerce_bool(target)
            field = "water_state"
        actor = issued_by or self.default_actor
        issued_at = utcnow()

        command = await self.store.append_command(
            ControlCommand(
                device_id=device_id,
                kind=kind.value,
                target_value=target,
                final_value=value,
                issued_by=actor,
                status=CommandStatus.SENT.value,
                issued_at=issued_at,
            )
        )

        topic = command_topic(device_id, kind)
        payload = {
            "device_id": device_id,
            field: value,
            "command_by": actor,
            "timestamp": issued_at.isoformat(),
        }
        try:
            self.connection.publish(topic, payload)
        except PublishUnavailable as e:
            log.error("Cannot publish %s command device_id=%s: %s", kind.value, device_id, e)
            delivered = False
        else:
            log.info("Published %s command topic=%s value=%s by=%s", kind.value, topic, value, actor)
            delivered = True
        return CommandResult(device_id, kind, value, actor, topic, delivered, command)

    async def record_ack(self, device_id: str, payload: dict) -> ControlCommand | None:
        """Apply a servo status report to the newest outstanding servo command."""
        status = str(payload.get("status", "")).strip().lower()
        if payload.get("success") is False or status in _FAILED_STATUSES:
            new_status = CommandStatus.FAILED
        else:
            new_status = CommandStatus.ACKED
        reported = payload.get("final_angle", payload.get("angle"))
        try:
            final_value = clamp_angle(reported) if reported is not None else None
        except CommandValidationError as e:
            raise MessageParseError(str(e)) from e
        try:
            row = await self.store.update_command_status(
                device_id, CommandKind.SERVO.value, new_status.value, final_value
            )
        except StorageError as e:
            log.error("Error recording servo status device_id=%s: %s", device_id, e)
            return None
        if row is None:
            log.info("Servo status from device_id=%s with no outstanding command", device_id)
        else:
            log.info("Servo command id=%s device_id=%s -> %s", row.id, device_id, new_status.value)
        return row

    async def record_water_status(self, device_id: str, payload: dict) -> None:
        # advisory only; nothing is persisted
        log.info("Water status device_id=%s state=%s", device_id, payload.get("water_state", payload.get("state")))
