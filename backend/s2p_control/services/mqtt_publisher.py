from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Event, Lock
from time import monotonic, time
from typing import Any, Protocol
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from s2p_control.core.config import Settings
from s2p_control.core.errors import BrokerPublishError, BrokerTimeoutError

MQTT_TCP_PORT = 1883
MQTT_TLS_PORT = 8883
_TCP_PORTS: frozenset[int] = frozenset({MQTT_TCP_PORT, MQTT_TLS_PORT})


@dataclass(frozen=True)
class BrokerEndpoint:
    host: str
    port: int
    transport: str
    tls: bool
    path: str | None = None

    @property
    def url(self) -> str:
        if self.transport == "websockets":
            scheme = "wss" if self.tls else "ws"
            return f"{scheme}://{self.host}:{self.port}{self.path or ''}"
        scheme = "mqtts" if self.tls else "mqtt"
        return f"{scheme}://{self.host}:{self.port}"


class CommandPublisher(Protocol):
    def publish(self, topic: str, payload: str) -> None: ...


def normalize_broker_endpoint(
    raw_host: str,
    *,
    transport: str = "websockets",
    ws_port: int = 8884,
    ws_path: str = "/mqtt",
) -> BrokerEndpoint:
    text = (raw_host or "").strip()
    if text == "":
        raise ValueError("broker host is not configured")
    if "://" not in text:
        text = f"mqtts://{text}"

    parts = urlsplit(text)
    scheme = parts.scheme.lower()
    host = parts.hostname
    if not host:
        raise ValueError(f"invalid broker host: {raw_host!r}")
    try:
        port = parts.port
    except ValueError as exc:
        raise ValueError(f"invalid broker port: {raw_host!r}") from exc

    if transport == "websockets":
        tls = scheme != "ws"
        if port is None or port in _TCP_PORTS:
            port = ws_port
        path = parts.path if parts.path not in ("", "/") else "/" + ws_path.strip("/")
        return BrokerEndpoint(host=host, port=port, transport="websockets", tls=tls, path=path)

    if transport != "tcp":
        raise ValueError(f"unsupported mqtt transport: {transport!r}")
    tls = scheme in ("mqtts", "ssl", "wss")
    if port is None:
        port = MQTT_TLS_PORT if tls else MQTT_TCP_PORT
    return BrokerEndpoint(host=host, port=port, transport="tcp", tls=tls)


class MqttCommandPublisher:
    """Single-shot MQTT v5 publisher: connect, publish with QoS, disconnect.

    The whole exchange is bounded by ``timeout_seconds``; a publish only
    counts as done once the broker acknowledged it.
    """

    def __init__(
        self,
        *,
        endpoint: BrokerEndpoint,
        username: str | None,
        password: str | None,
        qos: int = 1,
        timeout_seconds: float = 10.0,
        client_id_prefix: str = "s2p-edge",
    ) -> None:
        self._endpoint = endpoint
        self._username = username
        self._password = password
        self._qos = qos
        self._timeout_seconds = timeout_seconds
        self._client_id = f"{client_id_prefix}-{int(time() * 1000)}"
        self._logger = logging.getLogger("s2p_control.mqtt_publisher")

        self._lock = Lock()
        self._connected = Event()
        self._connect_reason: Any = None
        self._disconnect_reason: Any = None

    @property
    def endpoint(self) -> BrokerEndpoint:
        return self._endpoint

    def publish(self, topic: str, payload: str) -> None:
        deadline = monotonic() + self._timeout_seconds
        with self._lock:
            self._connect_reason = None
            self._disconnect_reason = None
        self._connected.clear()
        client = self._build_client()

        self._logger.info(
            "mqtt connecting broker=%s client_id=%s",
            self._endpoint.url,
            self._client_id,
        )
        try:
            client.connect(host=self._endpoint.host, port=self._endpoint.port, keepalive=30)
        except TimeoutError as exc:
            raise BrokerTimeoutError("MQTT publish timed out", details=f"connect: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise BrokerPublishError("MQTT publish failed", details=str(exc)) from exc

        client.loop_start()
        try:
            if not self._connected.wait(timeout=_remaining(deadline)):
                raise BrokerTimeoutError("MQTT publish timed out", details="no CONNACK from broker")
            with self._lock:
                reason = self._connect_reason
                dropped = self._disconnect_reason
            if reason is None:
                raise BrokerPublishError(
                    "MQTT publish failed",
                    details=f"connection closed before CONNACK: {dropped}",
                )
            if getattr(reason, "is_failure", False):
                raise BrokerPublishError("MQTT publish failed", details=f"broker refused connection: {reason}")

            info = client.publish(topic, payload=payload, qos=self._qos)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise BrokerPublishError("MQTT publish failed", details=mqtt.error_string(info.rc))
            try:
                info.wait_for_publish(timeout=_remaining(deadline))
            except (RuntimeError, ValueError) as exc:
                raise BrokerPublishError("MQTT publish failed", details=str(exc)) from exc
            if not info.is_published():
                raise BrokerTimeoutError("MQTT publish timed out", details="no PUBACK from broker")

            self._logger.info("mqtt publish acknowledged topic=%s qos=%s", topic, self._qos)
        finally:
            try:
                client.disconnect()
            except Exception:
                self._logger.exception("mqtt disconnect failed broker=%s", self._endpoint.url)
            client.loop_stop()

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
            transport=self._endpoint.transport,
        )
        if self._endpoint.transport == "websockets":
            client.ws_set_options(path=self._endpoint.path or "/mqtt")
        if self._endpoint.tls:
            client.tls_set()
        if self._username is not None:
            client.username_pw_set(self._username, self._password)
        client.connect_timeout = self._timeout_seconds
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        return client

    def _on_connect(
        self,
        _client: mqtt.Client,
        _userdata: object,
        _flags: Any,
        reason_code: Any,
        _properties: Any = None,
    ) -> None:
        with self._lock:
            self._connect_reason = reason_code
        if getattr(reason_code, "is_failure", False):
            self._logger.error("mqtt connect refused broker=%s reason=%s", self._endpoint.url, reason_code)
        self._connected.set()

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: object,
        _flags: Any,
        reason_code: Any,
        _properties: Any = None,
    ) -> None:
        with self._lock:
            before_connack = self._connect_reason is None
            if before_connack:
                self._disconnect_reason = reason_code
        if not before_connack:
            self._logger.debug("mqtt disconnected broker=%s reason=%s", self._endpoint.url, reason_code)
            return
        self._logger.error(
            "mqtt connection closed before CONNACK broker=%s reason=%s",
            self._endpoint.url,
            reason_code,
        )
        self._connected.set()


def build_command_publisher(settings: Settings) -> MqttCommandPublisher:
    try:
        endpoint = normalize_broker_endpoint(
            settings.mqtt_host,
            transport=settings.mqtt_transport,
            ws_port=settings.mqtt_ws_port,
            ws_path=settings.mqtt_ws_path,
        )
    except ValueError as exc:
        raise BrokerPublishError("MQTT publish failed", details=str(exc)) from exc
    return MqttCommandPublisher(
        endpoint=endpoint,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        qos=settings.mqtt_qos,
        timeout_seconds=settings.mqtt_publish_timeout_seconds,
        client_id_prefix=settings.mqtt_client_id_prefix,
    )


def _remaining(deadline: float) -> float:
    return max(0.0, deadline - monotonic())
