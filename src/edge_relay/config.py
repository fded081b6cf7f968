"""
Relay settings.

Everything the relay needs at construction comes from one explicit settings
object (environment variables prefixed ``EDGE_RELAY_`` or a ``.env`` file);
nothing is compiled in. Validation is eager so a bad deployment fails before
any socket is bound.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Literal, Optional
from urllib.parse import urlsplit

from psycopg.conninfo import make_conninfo
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

SSLMode = Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"]
MQTT_SCHEMES = {"tcp": 1883, "mqtt": 1883, "ssl": 8883, "mqtts": 8883}


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected host:port, got {address!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"invalid port in {address!r}") from None
    if not 0 <= port_num <= 65535:
        raise ValueError(f"port out of range in {address!r}")
    return host.strip("[]"), port_num


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EDGE_RELAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # --- ingest ---
    listen_address: str = "127.0.0.1:8888"
    max_datagram_size: int = Field(1024, gt=0, le=65535)
    # stored in a VARCHAR(50) column
    source_address: Optional[str] = Field(None, min_length=1, max_length=50)
    use_peer_address: bool = False

    # --- queues ---
    publish_queue_capacity: int = Field(100, gt=0)
    convert_queue_capacity: int = Field(100, gt=0)
    record_queue_capacity: int = Field(200, gt=0)

    # --- mqtt ---
    mqtt_enabled: bool = True
    mqtt_broker: str = "tcp://localhost:1883"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[SecretStr] = None
    mqtt_client_id: Optional[str] = None
    mqtt_topic: str = "edge/telemetry"
    mqtt_qos: int = Field(0, ge=0, le=2)
    mqtt_retain: bool = False
    mqtt_keepalive: int = Field(60, gt=0)
    mqtt_connect_timeout: float = Field(10.0, gt=0)
    mqtt_reconnect_interval: float = Field(5.0, ge=0)
    mqtt_disconnect_timeout_ms: int = Field(250, ge=0)

    # --- timescale ---
    timescale_enabled: bool = True
    db_host: str = "localhost"
    db_port: int = Field(5432, gt=0, le=65535)
    db_user: str = "postgres"
    db_password: Optional[SecretStr] = None
    db_name: str = "postgres"
    db_sslmode: SSLMode = "disable"
    table_name: str = "udp_binary_data"
    pool_min: int = Field(1, ge=0)
    pool_max: int = Field(25, gt=0)
    pool_max_lifetime: float = Field(300.0, gt=0)
    pool_max_idle: float = Field(600.0, gt=0)
    connect_timeout: float = Field(5.0, gt=0)
    flush_timeout: float = Field(10.0, gt=0)
    rollback_timeout: float = Field(2.0, gt=0)

    # --- batching ---
    batch_size: int = Field(100, gt=0)
    flush_interval: float = Field(5.0, gt=0)

    # --- runtime ---
    shutdown_grace: float = Field(2.0, ge=0)
    drop_log_every: int = Field(100, gt=0)
    log_level: str = "INFO"
    metrics_port: Optional[int] = Field(None, gt=0, le=65535)

    @field_validator("listen_address")
    @classmethod
    def _validate_listen_address(cls, v: str) -> str:
        split_host_port(v)
        return v

    @field_validator("mqtt_broker")
    @classmethod
    def _validate_broker(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in MQTT_SCHEMES:
            raise ValueError(
                f"Invalid broker scheme: {parts.scheme!r}. Must be one of {sorted(MQTT_SCHEMES)}"
            )
        if not parts.hostname:
            raise ValueError(f"broker URL has no host: {v!r}")
        return v

    @field_validator("mqtt_topic")
    @classmethod
    def _validate_topic(cls, v: str) -> str:
        if not v or "+" in v or "#" in v:
            raise ValueError("publish topic must be non-empty and contain no wildcards")
        return v

    @field_validator("table_name")
    @classmethod
    def _validate_table(cls, v: str) -> str:
        if not _IDENTIFIER.match(v):
            raise ValueError(f"Invalid table name: {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def _upcase_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _check_sinks(self) -> "RelaySettings":
        if not (self.mqtt_enabled or self.timescale_enabled):
            raise ValueError("at least one sink (mqtt or timescale) must be enabled")
        if self.pool_min > self.pool_max:
            raise ValueError("pool_min must be <= pool_max")
        if self.timescale_enabled and len(self.record_source) > 50:
            raise ValueError("source address must fit in 50 characters; set source_address")
        return self

    # ---------- derived ----------

    @property
    def listen_host(self) -> str:
        return split_host_port(self.listen_address)[0]

    @property
    def listen_port(self) -> int:
        return split_host_port(self.listen_address)[1]

    @property
    def record_source(self) -> str:
        """Source address stamped on persisted records."""
        return self.source_address or self.listen_address

    @property
    def mqtt_host(self) -> str:
        return urlsplit(self.mqtt_broker).hostname or "localhost"

    @property
    def mqtt_port(self) -> int:
        parts = urlsplit(self.mqtt_broker)
        return parts.port or MQTT_SCHEMES[parts.scheme]

    @property
    def mqtt_tls(self) -> bool:
        return urlsplit(self.mqtt_broker).scheme in ("ssl", "mqtts")

    @property
    def dsn(self) -> str:
        return make_conninfo(
            host=self.db_host,
            port=self.db_port,
            user=self.db_user,
            password=self.db_password.get_secret_value() if self.db_password else None,
            dbname=self.db_name,
            sslmode=self.db_sslmode,
            connect_timeout=max(1, int(self.connect_timeout)),
        )


@lru_cache()
def get_settings() -> RelaySettings:
    return RelaySettings()
