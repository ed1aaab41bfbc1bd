from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple

from forwarder.features.periodic import PeriodicTask


@dataclass(frozen=True)
class StatsSnapshot:
    total: int = 0
    success: int = 0
    failed: int = 0
    rate: int = 0  # whole messages per second over the window

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class DeliveryCounters:
    """Per-window message/success counters shared by the publisher and the
    stats reporter.

    Each delivery outcome bumps both counters under one lock, so a
    snapshot can never see success > total.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._message_count = 0
        self._success_count = 0

    def record(self, delivered: bool) -> None:
        with self._lock:
            self._message_count += 1
            if delivered:
                self._success_count += 1

    def peek(self) -> Tuple[int, int]:
        with self._lock:
            return self._message_count, self._success_count

    def snapshot_and_reset(self) -> Tuple[int, int]:
        with self._lock:
            counts = (self._message_count, self._success_count)
            self._message_count = 0
            self._success_count = 0
        return counts


class StatsReporter(PeriodicTask):
    """Logs a throughput/error summary once per stats interval."""

    name = "StatsReporter"

    def __init__(
            self,
            counters: DeliveryCounters,
            interval: float = 10,
            stop_event: Optional[threading.Event] = None,
            logger: Optional[logging.Logger] = None,
    ):
        super().__init__(interval=interval, stop_event=stop_event, logger=logger)
        self.counters = counters
        self.last_snapshot: Optional[StatsSnapshot] = None

    def report(self) -> StatsSnapshot:
        total, success = self.counters.snapshot_and_reset()
        snapshot = StatsSnapshot(
            total=total,
            success=success,
            failed=total - success,
            rate=int(total // self.interval),
        )
        self.last_snapshot = snapshot
        self.log.info(
            "[STATS] Total=%d\tSuccess=%d\tFailed=%d\tAvgRate=%s message/second",
            snapshot.total, snapshot.success, snapshot.failed, f"{snapshot.rate:,}",
        )
        return snapshot

    def tick(self) -> None:
        self.report()
