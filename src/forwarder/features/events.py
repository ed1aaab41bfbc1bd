from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class ControlKind(str, Enum):
    CONNECTED = "connected"
    CONNECTION_LOST = "connection_lost"
    SOURCE_FAILED = "source_failed"


@dataclass(frozen=True)
class ControlEvent:
    """Lifecycle notification posted on the forwarder's control queue.

    A shutdown request is not an event: it is the shared stop event,
    which the control loop checks between gets.
    """
    kind: ControlKind
    detail: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind is ControlKind.SOURCE_FAILED
