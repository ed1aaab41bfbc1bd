"""Request/Reply command-manager for the forwarder.

The Manager class starts a background thread with a REP socket that
waits for simple string commands, so a running agent can be queried or
stopped from another process (see `mataelang-forwarder status|stop`).

Default commands
----------------
ping   -> pong
<decorated commands> -> dynamically dispatched on self
<else> -> "unknown command"
"""
from __future__ import annotations
from typing import Optional, Callable, TypeVar
import threading
import pynng
import logging
from forwarder.settings import ForwarderSettings
from forwarder.features.manager_socket import (
    ManagerSocket,
    ManagerSocketFactory,
    NngRepSocketFactory,
)


F = TypeVar('F', bound=Callable[..., str])


# Decorator to mark callable commands on a component
def manager_command(name: str | None = None) -> Callable[[F], F]:
    """Decorator to tag methods as manager-exposed commands.

    Usage:
        @manager_command()          -> command name is the method name (lowercase)
        @manager_command("status")  -> explicit command name
    """
    def _wrap(fn: F) -> F:
        setattr(fn, "_manager_command", True)
        setattr(fn, "_manager_command_name", (name or fn.__name__).lower())
        return fn
    return _wrap


class Manager:
    """Mixin that serves commands on a REP socket in the background.

    With `manager_addr` unset no socket is opened and commands can only
    be dispatched in-process through _handle_cmd().
    """

    def __init__(
            self,
            settings: ForwarderSettings,
            socket_factory: Optional[ManagerSocketFactory] = None,
            logger: Optional[logging.Logger] = None,
    ):
        self._manager_stop = threading.Event()
        self._manager_settings = settings
        self.log = logger or logging.getLogger(__name__)

        # discover @manager_command-decorated methods once
        self._decorated_handlers: dict[str, Callable[..., str]] = {}
        self._discover_decorated_commands()

        self._rep_sock: Optional[ManagerSocket] = None
        self._manager_thread: Optional[threading.Thread] = None
        if not settings.manager_addr:
            self.log.debug("No manager address configured, command channel disabled")
            return

        factory: ManagerSocketFactory = (
            socket_factory if socket_factory is not None else NngRepSocketFactory()
        )
        self._rep_sock = factory.create(str(settings.manager_addr), self.log)
        self._rep_sock.recv_timeout = settings.manager_recv_timeout

        self._manager_thread = threading.Thread(
            target=self._command_loop, name="ManagerCmdLoop", daemon=True
        )
        self._manager_thread.start()

    def _discover_decorated_commands(self) -> None:
        for attr_name in dir(type(self)):
            if attr_name.startswith("_"):
                continue
            func = getattr(type(self), attr_name, None)
            if not callable(func) or not getattr(func, "_manager_command", False):
                continue
            cmd_name = getattr(func, "_manager_command_name", attr_name).lower()
            # store the bound method; call directly later
            self._decorated_handlers[cmd_name] = getattr(self, attr_name)

    # internal machinery
    def _command_loop(self) -> None:
        if self._rep_sock is None:
            return
        while not self._manager_stop.is_set():
            try:
                raw: bytes = self._rep_sock.recv()  # blocks with timeout
                cmd = raw.decode("utf-8", errors="ignore").strip()
                self.log.debug("Received command: %s", cmd)
            except pynng.Timeout:
                continue  # Timeout occurred, check stop event and continue
            except pynng.NNGException:
                break  # socket closed elsewhere

            try:
                reply: str = self._handle_cmd(cmd)
            except Exception as e:
                self.log.error("Unexpected error handling command '%s': %s", cmd, e)
                reply = "error: internal error processing command"

            try:
                self._rep_sock.send(reply.encode())
                self.log.debug("Sent response: %s", reply)
            except pynng.NNGException:
                break

    def _handle_cmd(self, cmd: str) -> str:
        """Route a command string to the right handler.

        Priority:
          1. @manager_command-decorated methods on self
          2. Built-in 'ping'
          3. Unknown
        """
        self.log.info("Processing command: %s", cmd)

        verb = cmd.split(" ", 1)[0].lower()  # split: verb [args...]

        fn = self._decorated_handlers.get(verb)
        if fn is not None:
            try:
                reply = fn()
                self.log.debug("Executed command '%s': %s", verb, reply)
                return reply
            except Exception as e:
                self.log.error("Error executing command '%s': %s", verb, e)
                return f"error: {e}"

        if verb == "ping":
            return "pong"

        return f"unknown command: {cmd}"

    # tear-down helper
    def _close_manager(self) -> None:
        """Called by Forwarder.__exit__."""
        self._manager_stop.set()
        if self._rep_sock is not None:
            try:
                # closing from another thread unblocks .recv() in pynng
                self._rep_sock.close()
            except pynng.NNGException as e:
                self.log.debug("Manager socket already closed: %s", e)

        if self._manager_thread is not None and self._manager_thread.is_alive():
            self._manager_thread.join(timeout=self._manager_settings.manager_thread_join_timeout)
