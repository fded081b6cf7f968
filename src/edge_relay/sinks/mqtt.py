"""
MQTT publish sink.

Wraps an aiomqtt client with the narrow contract the publisher needs:
connect once at startup (failure is fatal), publish one payload at a time,
disconnect with a bound. After the broker connection drops, publishes fail fast
and a reconnect is attempted at most once per ``reconnect_interval``.
"""

from __future__ import annotations

import asyncio
import ssl
import time
from typing import TYPE_CHECKING, Optional

import aiomqtt
from loguru import logger

from ..errors import ConnectError, PublishError

if TYPE_CHECKING:
    from ..config import RelaySettings


class MqttSink:
    def __init__(
        self,
        hostname: str,
        port: int = 1883,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: Optional[str] = None,
        keepalive: int = 60,
        tls: bool = False,
        connect_timeout: float = 10.0,
        reconnect_interval: float = 5.0,
    ):
        self._hostname = hostname
        self._port = port
        self._username = username
        self._password = password
        self.client_id = client_id or f"edge_relay_{int(time.time())}"
        self._keepalive = keepalive
        self._tls = tls
        self._connect_timeout = connect_timeout
        self._reconnect_interval = reconnect_interval

        self._client: Optional[aiomqtt.Client] = None
        self._connected = False
        self._ever_connected = False
        self._last_attempt = 0.0

    @classmethod
    def from_settings(cls, settings: "RelaySettings") -> "MqttSink":
        return cls(
            settings.mqtt_host,
            settings.mqtt_port,
            username=settings.mqtt_username,
            password=(
                settings.mqtt_password.get_secret_value() if settings.mqtt_password else None
            ),
            client_id=settings.mqtt_client_id,
            keepalive=settings.mqtt_keepalive,
            tls=settings.mqtt_tls,
            connect_timeout=settings.mqtt_connect_timeout,
            reconnect_interval=settings.mqtt_reconnect_interval,
        )

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def broker(self) -> str:
        return f"{self._hostname}:{self._port}"

    def _new_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self._hostname,
            port=self._port,
            username=self._username,
            password=self._password,
            identifier=self.client_id,
            keepalive=self._keepalive,
            tls_context=ssl.create_default_context() if self._tls else None,
            timeout=self._connect_timeout,
        )

    async def connect(self) -> None:
        await self._open()

    async def _open(self) -> aiomqtt.Client:
        self._last_attempt = time.monotonic()
        client = self._new_client()
        try:
            await asyncio.wait_for(client.__aenter__(), timeout=self._connect_timeout)
        except (aiomqtt.MqttError, OSError, asyncio.TimeoutError) as exc:
            raise ConnectError(f"failed to connect to MQTT broker {self.broker}: {exc}") from exc

        self._client = client
        self._connected = True
        self._ever_connected = True
        logger.info(f"MQTT connected to {self.broker} as {self.client_id}")
        return client

    async def publish(self, topic: str, qos: int, retain: bool, payload: bytes) -> None:
        client = await self._ensure_connected()
        try:
            await client.publish(topic, payload=payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as exc:
            if self._connected:
                self._connected = False
                logger.warning(f"MQTT connection lost: {exc}")
            raise PublishError(str(exc)) from exc

    async def _ensure_connected(self) -> aiomqtt.Client:
        if self._connected and self._client is not None:
            return self._client
        if not self._ever_connected:
            raise PublishError("MQTT sink is not connected")

        since = time.monotonic() - self._last_attempt
        if since < self._reconnect_interval:
            raise PublishError("MQTT connection lost, waiting to reconnect")

        await self._release_client(timeout=self._connect_timeout)
        logger.info(f"Reconnecting to MQTT broker {self.broker}...")
        try:
            return await self._open()
        except ConnectError as exc:
            raise PublishError(str(exc)) from exc

    async def disconnect(self, timeout_ms: int = 250) -> None:
        if self._client is None:
            return
        logger.info("Disconnecting MQTT...")
        await self._release_client(timeout=max(timeout_ms, 1) / 1000.0)

    async def _release_client(self, timeout: float) -> None:
        client, self._client = self._client, None
        self._connected = False
        if client is None:
            return
        try:
            await asyncio.wait_for(client.__aexit__(None, None, None), timeout=timeout)
        except (aiomqtt.MqttError, OSError, asyncio.TimeoutError) as exc:
            logger.debug(f"MQTT disconnect did not complete cleanly: {exc}")
