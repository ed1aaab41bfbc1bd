import json
import threading
import logging
from typing import Optional

from forwarder.features.broker import BrokerClient, PublishError
from forwarder.features.decoder import AlertRecord
from forwarder.features.delivery import DeliveryQueue
from forwarder.features.stats import DeliveryCounters


class PublisherException(Exception):
    """Custom exception for publisher-related errors."""
    pass


def encode_payload(record: AlertRecord) -> bytes:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


class Publisher:
    """Publisher drives a background thread that drains the delivery queue
    and republishes each record to the broker, one at a time.

    Delivery is at-most-once: a record the broker does not acknowledge
    is counted as failed and dropped.
    """

    def __init__(
            self,
            queue: DeliveryQueue,
            broker: BrokerClient,
            topic: str,
            counters: DeliveryCounters,
            qos: int = 0,
            retain: bool = True,
            stop_event: Optional[threading.Event] = None,
            logger: Optional[logging.Logger] = None,
    ):
        self.queue = queue
        self.broker = broker
        self.topic = topic
        self.counters = counters
        self.qos = qos
        self.retain = retain
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self.log = logger or logging.getLogger(__name__)

        # control flags
        self._running = False
        self._thread = threading.Thread(
            target=self._run_loop, name="PublisherLoop", daemon=True
        )

    def start(self) -> str:
        if not self._running:
            self._running = True
            self._thread.start()
            return "publisher started"
        return "publisher already running"

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            record = self.queue.get()
            if record is None:
                continue  # timeout, check stop flag
            self.publish(record)

        leftover = self.queue.drain()
        if leftover:
            self.log.info("Publisher: flushing %d queued record(s) before exit", len(leftover))
        for record in leftover:
            self.publish(record)

    def publish(self, record: AlertRecord) -> bool:
        """Publish one record and account for the outcome."""
        try:
            payload = encode_payload(record)
        except (TypeError, ValueError) as e:
            self.log.error("Cannot serialize record: %s", e)
            self.counters.record(delivered=False)
            return False

        try:
            self.broker.publish(self.topic, payload, self.qos, self.retain)
        except PublishError as e:
            self.log.error("Publish to %s failed: %s", self.topic, e)
            self.counters.record(delivered=False)
            return False

        self.counters.record(delivered=True)
        return True

    def stop(self, timeout: float = 1.0) -> None:
        """Stop the publisher loop after flushing what is still queued.

        Raises:
            PublisherException: If the thread does not finish in time
        """
        if not self._running:
            self.log.debug("Publisher is not running, skipping stop")
            return None
        self._running = False
        self._stop_event.set()

        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            raise PublisherException("Publisher thread failed to stop within timeout")
        self.log.debug("Publisher stopped successfully")
        return None

    @property
    def running(self) -> bool:
        return self._running
