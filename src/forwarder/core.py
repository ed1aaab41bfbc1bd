from __future__ import annotations
import json
import logging
import os
import queue
import sys
import threading
from pathlib import Path
from types import TracebackType
from typing import Any, Dict, Generator, Literal, Optional

from forwarder.settings import ForwarderSettings
from forwarder.features.broker import BrokerClient, MqttBrokerClient
from forwarder.features.decoder import AlertDecoder, DecodeError
from forwarder.features.delivery import DeliveryQueue
from forwarder.features.events import ControlEvent, ControlKind
from forwarder.features.manager import Manager, manager_command
from forwarder.features.manager_socket import ManagerSocketFactory
from forwarder.features.publisher import Publisher, PublisherException
from forwarder.features.reaper import RotationReaper, ROTATION_REAP_INTERVAL
from forwarder.features.stats import DeliveryCounters, StatsReporter
from forwarder.features.tailer import FileTailer


class ForwarderException(Exception):
    """The pipeline stopped because of an unrecoverable error."""
    pass


class SourceNotFoundError(ForwarderException):
    """The alert file does not exist at startup."""
    pass


class Forwarder(Manager):
    """Tails the Snort alert file, stamps each alert with the sensor id and
    republishes it to the broker.

    Four tasks share one stop event: the producer loop (tail + decode +
    enqueue), the publisher, the stats reporter and the rotation reaper.
    run() owns the control loop: it ends when the stop event is set or a
    terminal ControlEvent arrives.
    """

    def __init__(
            self,
            settings: Optional[ForwarderSettings] = None,
            broker: Optional[BrokerClient] = None,
            socket_factory: Optional[ManagerSocketFactory] = None,
            reap_interval: float = ROTATION_REAP_INTERVAL,
    ):
        # Prepare attributes & logger first
        self.settings: ForwarderSettings = settings if settings is not None else ForwarderSettings()
        self.log: logging.Logger = self._build_logger()
        self._stop_event = threading.Event()
        self._control: queue.Queue[ControlEvent] = queue.Queue()
        self._running = False

        self.decoder = AlertDecoder(self.settings.sensor_id)
        self.counters = DeliveryCounters()
        self.queue = DeliveryQueue(
            self._stop_event,
            maxsize=self.settings.queue_size,
            poll_interval=self.settings.poll_interval,
        )
        self.broker: BrokerClient = broker if broker is not None else MqttBrokerClient(
            host=self.settings.mqtt_host,
            port=self.settings.mqtt_port,
            username=self.settings.mqtt_username,
            password=self.settings.mqtt_password,
            client_id=self.settings.mqtt_client_id,
            events=self._control,
            connect_timeout=self.settings.connect_timeout,
            publish_timeout=self.settings.publish_timeout,
            logger=self.log,
        )
        self.publisher = Publisher(
            self.queue,
            self.broker,
            self.settings.mqtt_topic,
            self.counters,
            qos=self.settings.mqtt_qos,
            retain=self.settings.mqtt_retain,
            stop_event=self._stop_event,
            logger=self.log,
        )
        self.stats = StatsReporter(
            self.counters,
            interval=self.settings.stats_interval,
            stop_event=self._stop_event,
            logger=self.log,
        )
        self.reaper = RotationReaper(
            self.settings.snort_alert_file_path,
            interval=reap_interval,
            stop_event=self._stop_event,
            logger=self.log,
        )
        self.tailer = FileTailer(
            self.settings.snort_alert_file_path,
            stop_event=self._stop_event,
            poll_interval=self.settings.poll_interval,
            from_end=self.settings.tail_from_end,
            logger=self.log,
        )
        self._producer: Optional[threading.Thread] = None

        # now init Manager (opens REP socket & discovers commands)
        Manager.__init__(self, settings=self.settings, socket_factory=socket_factory, logger=self.log)
        self.log.debug("forwarder[%s] created", self.settings.sensor_id)

    # public API
    def check_source(self) -> None:
        path = self.settings.snort_alert_file_path
        self.log.info("Checking snort alert file is exist...")
        if not os.path.exists(path):
            raise SourceNotFoundError(f"The snort alert file at {path} does not exist")
        self.log.info("Snort alert file exist")

    def connect(self) -> None:
        """Connect the broker client; BrokerConnectionError is fatal."""
        self.broker.connect()

    def run(self) -> None:
        """Start all tasks, then serve the control loop until stopped."""
        self.log_configuration()
        self.check_source()
        self.connect()

        try:
            lines = self.tailer.lines()  # opens the file, fatal if it fails
        except OSError as e:
            self.broker.disconnect()
            raise SourceNotFoundError(f"Cannot open snort alert file: {e}") from e

        self._running = True
        self.publisher.start()
        self.stats.start()
        self.reaper.start()
        self._producer = threading.Thread(
            target=self._produce, args=(lines,), name="ProducerLoop", daemon=True
        )
        self._producer.start()
        self.log.info("Start sending logs")

        failure: Optional[ControlEvent] = None
        try:
            while not self._stop_event.is_set():
                try:
                    event = self._control.get(timeout=self.settings.poll_interval)
                except queue.Empty:
                    continue
                if event.kind is ControlKind.CONNECTED:
                    self.log.info("MQTT Client Connected.")
                elif event.kind is ControlKind.CONNECTION_LOST:
                    self.log.warning("Connection Lost: %s", event.detail)
                elif event.kind is ControlKind.SOURCE_FAILED:
                    self.log.error("Alert source failed: %s", event.detail)
                    failure = event
                if event.is_terminal:
                    break
        finally:
            self._shutdown()

        if failure is not None:
            raise ForwarderException(f"alert source failed: {failure.detail}")

    @manager_command()
    def stop(self) -> str:
        """Request shutdown of every task; the control loop does the rest.

        Only sets the shared event, so it is safe to call from a signal
        handler.
        """
        if self._stop_event.is_set():
            return "already stopping or stopped"
        self._stop_event.set()
        self.log.info("Stop command received")
        return "forwarder stopped"

    @manager_command()
    def status(self) -> str:
        return json.dumps(self.status_report(), indent=2)

    def status_report(self) -> Dict[str, Any]:
        total, success = self.counters.peek()
        last = self.stats.last_snapshot
        return {
            "running": self._running,
            "sensor_id": self.settings.sensor_id,
            "topic": self.settings.mqtt_topic,
            "source": self.settings.snort_alert_file_path,
            "pending": {"total": total, "success": success, "failed": total - success},
            "last_stats": last.as_dict() if last is not None else None,
        }

    def log_configuration(self) -> None:
        s = self.settings
        self.log.info("Loading configuration.")
        self.log.info("Sensor ID\t\t: %s", s.sensor_id)
        self.log.info("MQTT Broker Host\t: %s", s.mqtt_host)
        self.log.info("MQTT Broker Port\t: %d", s.mqtt_port)
        self.log.info("MQTT Broker Auth\t: %s", "enabled" if s.auth_enabled else "disabled")
        self.log.info("MQTT Broker Topic\t: %s", s.mqtt_topic)
        self.log.info("Snort Alert Path\t: %s", s.snort_alert_file_path)

    # producer
    def _produce(self, lines: Generator[str, None, None]) -> None:
        try:
            for line in lines:
                if not line.strip():
                    continue
                try:
                    record = self.decoder.decode(line)
                except DecodeError as e:
                    self.log.error("Cannot parse event log: %s", e)
                    continue

                if self.settings.verbose:
                    self.log.info("PAYLOAD - %s", record)

                if not self.queue.put(record):
                    break  # stopping
        except Exception as e:
            self.log.exception("Producer loop failed: %s", e)
            self._control.put(ControlEvent(ControlKind.SOURCE_FAILED, str(e)))
        finally:
            lines.close()

    def _shutdown(self) -> None:
        self._stop_event.set()
        if self._producer is not None and self._producer.is_alive():
            self._producer.join(timeout=self.settings.poll_interval * 4 + 1.0)

        # the publisher flushes at most queue_size records, each bounded by the publish timeout
        flush_budget = self.settings.publish_timeout * (self.settings.queue_size + 1) + 1.0
        try:
            self.publisher.stop(timeout=flush_budget)
        except PublisherException as e:
            self.log.error("Failed to stop publisher: %s", e)

        self.stats.stop()
        self.reaper.stop()
        try:
            self.broker.disconnect()
        except Exception as e:
            self.log.warning("Broker disconnect failed: %s", e)
        self._running = False
        self.log.info("Forwarder stopped")

    # helpers
    def _build_logger(self) -> logging.Logger:
        name = f"forwarder.{self.settings.sensor_id}"
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, self.settings.log_level.upper(), logging.INFO))
        logger.propagate = False  # don't bubble to root logger -> avoid duplicate lines

        # Avoid duplicate handlers if this gets called again with same name
        if logger.handlers:
            return logger

        fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")

        # Point the console handler at the real, uncaptured stream
        if self.settings.log_to_console:
            safe_stdout = getattr(sys, "__stdout__", sys.stdout)
            sh = logging.StreamHandler(safe_stdout)
            sh.setFormatter(fmt)
            logger.addHandler(sh)
        if self.settings.log_to_file:
            Path(self.settings.log_dir).mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(
                Path(self.settings.log_dir) / f"forwarder_{self.settings.sensor_id}.log",
                encoding="utf-8",
                delay=True,  # don't open until first write
            )
            fh.setFormatter(fmt)
            logger.addHandler(fh)
        return logger

    # context-manager sugar
    def __enter__(self) -> "Forwarder":
        return self

    def __exit__(
            self,
            _exc_type: type[BaseException] | None,
            _exc_val: BaseException | None,
            _exc_tb: TracebackType | None
    ) -> Literal[False]:
        if not self._stop_event.is_set():  # only stop if not already stopped
            self.stop()
        self._close_manager()  # close REP socket & thread
        return False  # propagate exceptions
