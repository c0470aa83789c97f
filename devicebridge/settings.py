import os
import time

from pydantic import BaseModel, field_validator


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str | None = os.getenv("DATABASE_URL") or None
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")

    mqtt_host: str = os.getenv("MQTT_HOST", "broker.hivemq.com")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_client_id: str = os.getenv("MQTT_CLIENT_ID") or f"devicebridge-{int(time.time())}"
    mqtt_keepalive: int = int(os.getenv("MQTT_KEEPALIVE", "30"))
    mqtt_reconnect_interval: float = float(os.getenv("MQTT_RECONNECT_INTERVAL", "5"))
    mqtt_connect_timeout: float = float(os.getenv("MQTT_CONNECT_TIMEOUT", "10"))

    # servo/water status topics are only subscribed when devices send acks
    enable_device_ack: bool = _flag("MQTT_DEVICE_ACK")
    default_actor: str = os.getenv("DEFAULT_ACTOR", "web_api")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))

    @field_validator("mqtt_port", "port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("mqtt_reconnect_interval", "mqtt_connect_timeout", "mqtt_keepalive")
    @classmethod
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

settings = Settings()
