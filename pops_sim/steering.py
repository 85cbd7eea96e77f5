"""Remote steering of a running simulation.

A controller connects over TCP and sends semicolon-separated ASCII
messages:

    cmd:play   cmd:pause   cmd:stepf   cmd:stepb   cmd:stop
    load:<year>:<path>     name:<text>    goto:<checkpoint>    sync

A background reader thread parses them into ``SteeringCommand`` records
and puts them into a ``CommandQueue``; the engine loop takes at most one
command per iteration without blocking. The engine reports back with
``output:<name>|`` after each emitted product and ``info:last:<name>``
when the simulation reaches its end.

Any receive failure (closed connection, socket error) ends the reader
and is delivered to the engine as a Stop command.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import List, Optional

from pops_sim.types import CommandKind

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SteeringCommand:
    """One steering command with its payload (if any)."""
    kind: CommandKind
    year: Optional[int] = None      # GOTO: checkpoint index; LOAD_DATA: calendar year
    path: Optional[str] = None      # LOAD_DATA: treatment grid name
    name: Optional[str] = None      # CHANGE_NAME: new output basename

    @classmethod
    def play(cls) -> "SteeringCommand":
        return cls(CommandKind.PLAY)

    @classmethod
    def pause(cls) -> "SteeringCommand":
        return cls(CommandKind.PAUSE)

    @classmethod
    def step_forward(cls) -> "SteeringCommand":
        return cls(CommandKind.STEP_FORWARD)

    @classmethod
    def step_back(cls) -> "SteeringCommand":
        return cls(CommandKind.STEP_BACK)

    @classmethod
    def stop(cls) -> "SteeringCommand":
        return cls(CommandKind.STOP)

    @classmethod
    def goto(cls, checkpoint: int) -> "SteeringCommand":
        return cls(CommandKind.GOTO, year=checkpoint)

    @classmethod
    def load_data(cls, year: int, path: str) -> "SteeringCommand":
        return cls(CommandKind.LOAD_DATA, year=year, path=path)

    @classmethod
    def change_name(cls, name: str) -> "SteeringCommand":
        return cls(CommandKind.CHANGE_NAME, name=name)

    @classmethod
    def sync_runs(cls) -> "SteeringCommand":
        return cls(CommandKind.SYNC_RUNS)


_SIMPLE_COMMANDS = {
    "play": CommandKind.PLAY,
    "pause": CommandKind.PAUSE,
    "stepf": CommandKind.STEP_FORWARD,
    "stepb": CommandKind.STEP_BACK,
    "stop": CommandKind.STOP,
}


def parse_message(message: str) -> Optional[SteeringCommand]:
    """Parse one message (no ``;``). Returns None if it is not understood."""
    message = message.strip()
    if message.startswith("cmd:"):
        kind = _SIMPLE_COMMANDS.get(message[4:])
        return SteeringCommand(kind) if kind is not None else None
    try:
        if message.startswith("load:"):
            parts = message.split(":")
            if len(parts) < 3 or not parts[2]:
                return None
            return SteeringCommand.load_data(int(parts[1]), ":".join(parts[2:]))
        if message.startswith("name:"):
            return SteeringCommand.change_name(message[5:])
        if message.startswith("goto:"):
            return SteeringCommand.goto(int(message[5:]))
    except ValueError:
        return None
    if message == "sync":
        return SteeringCommand.sync_runs()
    return None


def parse_messages(text: str) -> List[SteeringCommand]:
    """Parse a received buffer into commands, in order.

    Empty messages are skipped; messages that cannot be parsed are
    logged and dropped. Nothing after a ``cmd:stop`` is parsed.
    """
    commands = []
    for message in text.split(";"):
        if not message.strip():
            continue
        command = parse_message(message)
        if command is None:
            logger.warning("Ignoring unrecognized steering message %r", message)
            continue
        commands.append(command)
        if command.kind is CommandKind.STOP:
            break
    return commands


# ═══════════════════════════════════════════════════════════════════════
# COMMAND QUEUE
# ═══════════════════════════════════════════════════════════════════════

class CommandQueue:
    """Thread-safe FIFO of steering commands with a non-blocking poll."""

    def __init__(self):
        self._queue: "queue.Queue[SteeringCommand]" = queue.Queue()

    def put(self, command: SteeringCommand) -> None:
        self._queue.put(command)

    def poll(self) -> Optional[SteeringCommand]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def empty(self) -> bool:
        return self._queue.empty()


# ═══════════════════════════════════════════════════════════════════════
# CHANNEL
# ═══════════════════════════════════════════════════════════════════════

class SteeringChannel:
    """TCP steering connection with a background reader thread.

    Args:
        host: Controller address.
        port: Controller port.
        receive_timeout: Seconds one receive may block.
        buffer_size: Maximum bytes per receive.
        sock: An already connected socket (host and port are then unused).
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        receive_timeout: float = 1.0,
        buffer_size: int = 200,
        sock: Optional[socket.socket] = None,
    ):
        if sock is None and (host is None or port is None):
            raise ValueError("SteeringChannel needs host and port or a socket")
        self.host = host
        self.port = port
        self.receive_timeout = receive_timeout
        self.buffer_size = buffer_size
        self.commands = CommandQueue()
        self._sock = sock
        self._thread: Optional[threading.Thread] = None
        self._closing = threading.Event()

    @classmethod
    def from_config(cls, section) -> "SteeringChannel":
        return cls(section.host, section.port,
                   receive_timeout=section.receive_timeout,
                   buffer_size=section.buffer_size)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Connect (unless given a socket) and start the reader thread."""
        if self._sock is None:
            logger.info("Connecting to steering server %s:%s", self.host, self.port)
            self._sock = socket.create_connection((self.host, self.port))
        self._sock.settimeout(self.receive_timeout)
        self._thread = threading.Thread(
            target=self._read_loop, name="steering-reader", daemon=True)
        self._thread.start()

    def _read_loop(self) -> None:
        while not self._closing.is_set():
            try:
                data = self._sock.recv(self.buffer_size)
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._closing.is_set():
                    logger.warning("Steering receive failed: %s", exc)
                    self.commands.put(SteeringCommand.stop())
                return
            if not data:
                if not self._closing.is_set():
                    logger.warning("Steering connection closed by peer")
                    self.commands.put(SteeringCommand.stop())
                return
            for command in parse_messages(data.decode("ascii", errors="replace")):
                logger.info("Received steering command %s", command.kind.name)
                self.commands.put(command)
                if command.kind is CommandKind.STOP:
                    return

    def poll(self) -> Optional[SteeringCommand]:
        """Next queued command, or None."""
        return self.commands.poll()

    def send(self, text: str) -> None:
        """Send a notification; failures are logged, not raised."""
        if self._sock is None:
            return
        try:
            self._sock.sendall(text.encode("ascii", errors="replace"))
        except OSError as exc:
            logger.warning("Steering send of %r failed: %s", text, exc)

    def close(self) -> None:
        """Close the connection and wait for the reader to finish."""
        self._closing.set()
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already disconnected
            self._sock.close()
        if self._thread is not None:
            self._thread.join(timeout=max(self.receive_timeout, 0.5) * 2)
