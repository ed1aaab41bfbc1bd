"""Follow an append-only alert file across truncation and rotation.

Rotation is detected by comparing the (device, inode) pair of the open
handle with the one currently at the path; truncation by the path's size
dropping below our read offset. Either way the sequence keeps going,
only the shared stop event ends it.
"""
from __future__ import annotations
import logging
import os
import threading
from typing import BinaryIO, Generator, Iterator, Optional, Tuple


FileIdentity = Tuple[int, int]


def _identity(st: os.stat_result) -> FileIdentity:
    return st.st_dev, st.st_ino


def _decode(raw: bytes) -> str:
    return raw.rstrip(b"\r\n").decode("utf-8", errors="replace")


class FileTailer:
    """Lazy, infinite sequence of lines from `path`."""

    def __init__(
            self,
            path: str,
            stop_event: Optional[threading.Event] = None,
            poll_interval: float = 0.25,
            from_end: bool = False,
            logger: Optional[logging.Logger] = None,
    ):
        self.path = path
        self.poll_interval = poll_interval
        self.from_end = from_end
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self.log = logger or logging.getLogger(__name__)

    def lines(self) -> Generator[str, None, None]:
        """Open the file now (raising if it is missing) and follow it."""
        fh = open(self.path, "rb")
        if self.from_end:
            fh.seek(0, os.SEEK_END)
        self.log.debug("Tailing %s from offset %d", self.path, fh.tell())
        return self._follow(fh)

    def _follow(self, fh: BinaryIO) -> Generator[str, None, None]:
        ident = _identity(os.fstat(fh.fileno()))
        pending = b""  # line written without its newline yet
        try:
            while not self._stop_event.is_set():
                chunk = fh.readline()
                if chunk:
                    pending += chunk
                    if pending.endswith(b"\n"):
                        line, pending = _decode(pending), b""
                        yield line
                    continue

                state = self._path_state(fh, ident)
                if state == "rotated":
                    # whatever the writer left in the old file comes first
                    for line in self._drain(fh, pending):
                        yield line
                    pending = b""
                    reopened = self._reopen()
                    if reopened is not None:
                        fh.close()
                        fh = reopened
                        ident = _identity(os.fstat(fh.fileno()))
                        self.log.info("Alert file %s was rotated, reopened", self.path)
                        continue
                elif state == "truncated":
                    self.log.info("Alert file %s was truncated, reading from start", self.path)
                    fh.seek(0)
                    pending = b""
                    continue

                self._stop_event.wait(self.poll_interval)
        finally:
            fh.close()

    def _path_state(self, fh: BinaryIO, ident: FileIdentity) -> str:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return "missing"  # mid-rotation, the new file is not there yet
        if _identity(st) != ident:
            return "rotated"
        if st.st_size < fh.tell():
            return "truncated"
        return "idle"

    @staticmethod
    def _drain(fh: BinaryIO, pending: bytes) -> Iterator[str]:
        rest = pending + fh.read()
        for raw in rest.splitlines():
            if raw:
                yield _decode(raw)

    def _reopen(self) -> Optional[BinaryIO]:
        try:
            return open(self.path, "rb")
        except FileNotFoundError:
            return None
