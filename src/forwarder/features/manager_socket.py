from __future__ import annotations
from pathlib import Path
import errno
from typing import Protocol, runtime_checkable
from urllib.parse import urlparse

import pynng
import logging


@runtime_checkable
class ManagerSocket(Protocol):
    """Minimal socket interface the Manager depends on."""
    def recv(self) -> bytes: ...
    def send(self, data: bytes) -> None: ...
    def close(self) -> None: ...
    recv_timeout: int


class ManagerSocketFactory(Protocol):
    """Factory that creates bound ManagerSocket instances."""
    def create(self, addr: str, logger: logging.Logger) -> ManagerSocket: ...


class NngRepSocketFactory:
    """Default factory using pynng.Rep0, clearing stale IPC files first."""
    def create(self, addr: str, logger: logging.Logger) -> ManagerSocket:
        parsed = urlparse(addr)
        if parsed.scheme == "ipc":
            ipc_path = Path(parsed.path)
            try:
                ipc_path.unlink()
            except OSError as exc:
                if exc.errno != errno.ENOENT:  # ignore file doesn't exist errors
                    logger.error("Failed to remove IPC file: %s", exc)
                    raise
        elif parsed.scheme == "tcp" and not parsed.port:
            raise ValueError(f"Missing port in TCP address: {addr}")

        sock = pynng.Rep0()
        try:
            sock.listen(addr)
            logger.info("Manager listening on %s", addr)
            return sock
        except pynng.NNGException as exc:
            logger.error("Failed to bind to address %s: %s", addr, exc)
            sock.close()
            raise
