"""MQTT sink publishing accepted messages to the downstream broker."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import unquote, urlsplit

import paho.mqtt.client as mqtt

from lora_endpoint._constants import (
    MQTT_DEFAULT_PORT,
    MQTT_DEFAULT_TLS_PORT,
    MQTT_PUBLISH_TIMEOUT_SECONDS,
    MQTT_TOPIC_TEMPLATE,
)
from lora_endpoint.exceptions import EndpointConfigError, EndpointSinkError
from lora_endpoint.models.message import Message

_TLS_SCHEMES = frozenset({"mqtts", "ssl", "tls"})
_PLAIN_SCHEMES = frozenset({"mqtt", "tcp"})


@dataclass(frozen=True)
class BrokerAddress:
    """Where and how to reach the MQTT broker."""

    host: str
    port: int
    tls: bool = False
    username: str | None = None
    password: str | None = None


def parse_broker_url(raw_broker: str) -> BrokerAddress:
    """Parse ``mqtt://``/``mqtts://`` URLs or a bare ``host[:port]``."""
    value = raw_broker.strip()
    if not value:
        raise EndpointConfigError("Broker value is empty")
    if "://" not in value:
        value = f"mqtt://{value}"

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in _TLS_SCHEMES | _PLAIN_SCHEMES:
        raise EndpointConfigError(f"Unsupported broker scheme '{parts.scheme}'")
    if not parts.hostname:
        raise EndpointConfigError(f"Broker URL '{raw_broker}' has no host")

    tls = scheme in _TLS_SCHEMES
    try:
        port = parts.port
    except ValueError as exc:
        raise EndpointConfigError(f"Invalid broker port in '{raw_broker}'") from exc
    if port is None:
        port = MQTT_DEFAULT_TLS_PORT if tls else MQTT_DEFAULT_PORT

    return BrokerAddress(
        host=parts.hostname,
        port=port,
        tls=tls,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


def topic_for(message: Message) -> str:
    return MQTT_TOPIC_TEMPLATE.format(eui=message.eui)


class MqttSink:
    """Threaded paho-mqtt client exposed as an async delivery function.

    The paho network loop runs on its own thread. Each call publishes one
    message and returns once the broker has acknowledged it, raising
    :class:`EndpointSinkError` otherwise.
    """

    def __init__(
        self,
        broker: BrokerAddress,
        *,
        client_id: str = "",
        qos: int = 1,
        keepalive: int = 60,
        connect_timeout: float = 30.0,
        publish_timeout: float = MQTT_PUBLISH_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._broker = broker
        self._client_id = client_id
        self._qos = qos
        self._keepalive = keepalive
        self._connect_timeout = connect_timeout
        self._publish_timeout = publish_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._connected = threading.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def connect(self) -> None:
        """Connect to the broker and wait for the CONNACK."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._start)

    async def aclose(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stop)

    async def __call__(self, message: Message) -> None:
        client = self._client
        topic = topic_for(message)
        if client is None:
            raise EndpointSinkError("MQTT client is not connected", topic=topic)

        info = client.publish(topic, message.model_dump_json(), qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise EndpointSinkError(
                f"Publish to {topic} failed: {mqtt.error_string(info.rc)}",
                topic=topic,
            )

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.wait_for_publish, self._publish_timeout)
        except (RuntimeError, ValueError) as exc:
            raise EndpointSinkError(f"Publish to {topic} failed: {exc}", topic=topic) from exc
        if not info.is_published():
            raise EndpointSinkError(f"Publish to {topic} timed out", topic=topic)
        self._logger.debug("Published message id=%s topic=%s", message.id, topic)

    def _start(self) -> None:
        self._stop()
        broker = self._broker
        self._logger.debug("MQTT connect requested host=%s port=%s tls=%s", broker.host, broker.port, broker.tls)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
        )
        client.enable_logger(self._logger)
        if broker.username is not None:
            client.username_pw_set(broker.username, broker.password)
        if broker.tls:
            client.tls_set()

        def on_connect(
            _client: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.info("Connected to MQTT broker %s:%s", broker.host, broker.port)
            self._connected.set()

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._connected.clear()
            self._logger.warning("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect

        try:
            client.connect(broker.host, broker.port, keepalive=self._keepalive)
        except OSError as exc:
            raise EndpointSinkError(f"Cannot connect to MQTT broker {broker.host}:{broker.port}: {exc}") from exc
        client.loop_start()
        self._client = client

        if not self._connected.wait(self._connect_timeout):
            self._stop()
            raise EndpointSinkError(f"MQTT broker {broker.host}:{broker.port} did not accept the connection")

    def _stop(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        was_connected = self._connected.is_set()
        self._connected.clear()
        try:
            if was_connected:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
