import json
import threading
import time
from typing import List, Optional, Set

import pytest

from forwarder.features.broker import BrokerConnectionError, PublishError


class FakeBroker:
    """In-memory BrokerClient that records every publish call in order."""

    def __init__(self, ack_delay: float = 0.0, fail_on: Optional[Set[str]] = None,
                 refuse_connect: bool = False):
        self.ack_delay = ack_delay
        self.fail_on = fail_on or set()
        self.refuse_connect = refuse_connect
        self.connected = False
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def connect(self) -> None:
        if self.refuse_connect:
            raise BrokerConnectionError("connection refused")
        self.connected = True

    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> None:
        record = json.loads(payload)
        with self._lock:
            self.calls.append((topic, record, qos, retain))
        if self.ack_delay:
            time.sleep(self.ack_delay)
        if record.get("msg") in self.fail_on:
            raise PublishError("not acknowledged")

    def disconnect(self) -> None:
        self.connected = False

    @property
    def records(self) -> List[dict]:
        with self._lock:
            return [call[1] for call in self.calls]

    def wait_for(self, n: int, timeout: float = 3.0) -> List[dict]:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if len(self.records) >= n:
                break
            time.sleep(0.01)
        return self.records


@pytest.fixture
def fake_broker():
    return FakeBroker()
