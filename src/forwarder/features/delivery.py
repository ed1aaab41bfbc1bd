"""Bounded handoff between the producer loop and the publisher thread.

The queue is deliberately tiny (one slot by default): when the broker
slows down, the publisher stops taking records, put() blocks and the
producer stops reading the alert file. Nothing is buffered without
bound.
"""
from __future__ import annotations
import queue
import threading
from typing import List, Optional

from forwarder.features.decoder import AlertRecord


class DeliveryQueue:
    """FIFO channel of AlertRecords that honours a shared stop event."""

    def __init__(
            self,
            stop_event: threading.Event,
            maxsize: int = 1,
            poll_interval: float = 0.25,
    ) -> None:
        if maxsize < 1:
            raise ValueError("delivery queue needs at least one slot")
        self._queue: queue.Queue[AlertRecord] = queue.Queue(maxsize=maxsize)
        self._stop_event = stop_event
        self.poll_interval = poll_interval

    def put(self, record: AlertRecord) -> bool:
        """Block until the record is accepted; False if stopping first."""
        while not self._stop_event.is_set():
            try:
                self._queue.put(record, timeout=self.poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def get(self) -> Optional[AlertRecord]:
        """Next record, or None if nothing arrived within poll_interval."""
        try:
            return self._queue.get(timeout=self.poll_interval)
        except queue.Empty:
            return None

    def drain(self) -> List[AlertRecord]:
        records: List[AlertRecord] = []
        while True:
            try:
                records.append(self._queue.get_nowait())
            except queue.Empty:
                return records

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize
