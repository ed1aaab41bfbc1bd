from __future__ import annotations
import logging
import queue
import threading
import uuid
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import paho.mqtt.client as mqtt

from forwarder.features.events import ControlEvent, ControlKind


class BrokerConnectionError(Exception):
    """The initial broker handshake failed."""
    pass


class PublishError(Exception):
    """The broker did not acknowledge a publish."""
    pass


@runtime_checkable
class BrokerClient(Protocol):
    """Minimal broker interface the Publisher depends on."""
    def connect(self) -> None: ...
    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> None: ...
    def disconnect(self) -> None: ...


def default_client_id() -> str:
    return f"mataelang-sensor-{uuid.uuid4().hex}"


def _paho_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
    )


class MqttBrokerClient:
    """paho-mqtt backed BrokerClient.

    paho's connection callbacks are only translated into ControlEvents
    on the given queue; the forwarder's control loop decides what to do
    with them.
    """

    def __init__(
            self,
            host: str = "127.0.0.1",
            port: int = 1883,
            username: Optional[str] = None,
            password: Optional[str] = None,
            client_id: Optional[str] = None,
            events: Optional["queue.Queue[ControlEvent]"] = None,
            connect_timeout: float = 5.0,
            publish_timeout: float = 10.0,
            keepalive: int = 60,
            client_factory: Callable[[str], Any] = _paho_client,
            logger: Optional[logging.Logger] = None,
    ):
        self.host = host
        self.port = port
        self.client_id = client_id or default_client_id()
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout
        self.keepalive = keepalive
        self.events = events
        self.log = logger or logging.getLogger(__name__)

        self._connack = threading.Event()
        self._connect_failure: Optional[str] = None

        self._client = client_factory(self.client_id)
        if username and password:
            self._client.username_pw_set(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect

    def connect(self) -> None:
        self.log.info("Connecting to MQTT broker at %s:%d", self.host, self.port)
        self._connack.clear()
        self._connect_failure = None
        try:
            self._client.connect(self.host, self.port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            raise BrokerConnectionError(f"cannot connect to {self.host}:{self.port}: {e}") from e

        self._client.loop_start()
        if not self._connack.wait(timeout=self.connect_timeout):
            self._client.loop_stop()
            raise BrokerConnectionError(
                f"no CONNACK from {self.host}:{self.port} within {self.connect_timeout}s"
            )
        if self._connect_failure is not None:
            self._client.loop_stop()
            raise BrokerConnectionError(
                f"broker {self.host}:{self.port} refused connection: {self._connect_failure}"
            )

    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> None:
        try:
            info = self._client.publish(topic, payload, qos=qos, retain=retain)
        except ValueError as e:  # invalid topic or oversized payload
            raise PublishError(str(e)) from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(mqtt.error_string(info.rc))
        try:
            info.wait_for_publish(timeout=self.publish_timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(str(e)) from e
        if not info.is_published():
            raise PublishError(f"no acknowledgement within {self.publish_timeout}s")

    def disconnect(self) -> None:
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
        self.log.info("MQTT client disconnected")

    # paho callbacks (network thread)
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            self._connect_failure = str(reason_code)
        else:
            self._post(ControlKind.CONNECTED, str(reason_code))
        self._connack.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._post(ControlKind.CONNECTION_LOST, str(reason_code))

    def _post(self, kind: ControlKind, detail: str) -> None:
        if self.events is not None:
            self.events.put(ControlEvent(kind, detail))
