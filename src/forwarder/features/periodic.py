import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional


class PeriodicTask(ABC):
    """Background thread that calls tick() every `interval` seconds until
    the shared stop event is set."""

    name: str = "PeriodicTask"

    def __init__(
            self,
            interval: float,
            stop_event: Optional[threading.Event] = None,
            logger: Optional[logging.Logger] = None,
    ):
        if interval <= 0:
            raise ValueError(f"{self.name} interval must be positive, got {interval}")
        self.interval = interval
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self.log = logger or logging.getLogger(__name__)
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)

    @abstractmethod
    def tick(self) -> None:
        ...

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def _run_loop(self) -> None:
        # wait() doubles as the timer and returns early once stop is requested
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                self.log.exception("%s tick failed: %s", self.name, e)

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.log.warning("%s did not stop within %.1fs", self.name, timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()
