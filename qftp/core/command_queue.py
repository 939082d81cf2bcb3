import enum
import logging
from collections import deque
from typing import Any, Deque, Optional, Tuple

from qftp.core.command import Command
from qftp.core.errors import ConnectionClosedError

logger = logging.getLogger(__name__)


class QueueState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    FAILED = "failed"


class CommandQueue:
    """
    FIFO of control commands. Only one queued command has its reply cycle
    open at a time; the next one is written when the previous completes.

    Commands submitted with ``run_now`` skip the backlog and are written
    immediately. They never advance the queue, so the caller is responsible
    for issuing them only where the exchange is already serialized.
    """

    def __init__(self, client):
        self.client = client
        self.state = QueueState.IDLE
        self.current: Optional[Command] = None
        self.error: Optional[BaseException] = None
        self._backlog: Deque[Command] = deque()

    def __len__(self):
        return len(self._backlog)

    @property
    def processing(self) -> bool:
        return self.state is QueueState.BUSY

    def register(self, command: Command, prepend: bool = False):
        if self.state is QueueState.FAILED:
            command.fail(ConnectionClosedError(f"Cannot run {command.verb}: {self.error}"))
            return
        command.on_complete = self._on_complete
        if prepend:
            self._backlog.appendleft(command)
        else:
            self._backlog.append(command)
        logger.debug(f"Queued {command.verb} ({len(self._backlog)} waiting)")
        if self.current is None:
            self.advance()

    def advance(self):
        if self.state is QueueState.FAILED:
            logger.debug("Queue failed, not advancing")
            return
        if self.current is not None and not self.current.done:
            return
        if not self._backlog:
            self.current = None
            self.state = QueueState.IDLE
            logger.debug("--queue empty--")
            return

        command = self._backlog.popleft()
        self.state = QueueState.BUSY
        self.current = command
        self._send(command)

    def run_now(self, command: Command):
        if self.state is QueueState.FAILED:
            command.fail(ConnectionClosedError(f"Cannot run {command.verb}: {self.error}"))
            return
        command.on_complete = None
        self._send(command)

    def submit(self, raw_command: str, run_now: bool = False, prepend: bool = False) -> Command:
        command = Command(raw_command, run_now=run_now)
        if run_now:
            self.run_now(command)
        else:
            self.register(command, prepend=prepend)
        return command

    def submit_chain(self, first_raw: str, second_raw: str) -> Tuple[Command, Command]:
        """
        Queue two commands that must run back to back (RNFR then RNTO).
        The second is put at the head of the backlog when the first
        succeeds, before the queue advances; it is cancelled if the first fails.
        """
        first = Command(first_raw)
        second = Command(second_raw)

        def on_first_complete(command: Command):
            if not command.future.cancelled() and command.future.exception() is None:
                self.register(second, prepend=True)
            else:
                second.future.cancel()
            self._on_complete(command)

        self.register(first)
        first.on_complete = on_first_complete
        return first, second

    async def run(self, raw_command: str, run_now: bool = False, prepend: bool = False) -> Any:
        """Submit a command and wait for its result. Failures are raised as FtpError."""
        command = self.submit(raw_command, run_now=run_now, prepend=prepend)
        return await command.future

    def _send(self, command: Command):
        logger.debug(f">loading command: {command.raw_command.split(' ', 1)[0]}")
        self.client.dispatcher.expect(command)
        try:
            self.client.control.send_command(command.raw_command)
        except (RuntimeError, OSError) as e:
            logger.error(f"Failed to send {command.verb}: {e}")
            self.client.dispatcher.discard(command)
            command.fail(ConnectionClosedError(str(e)))
            self.fail(e)

    def _on_complete(self, command: Command):
        if command is not self.current:
            return
        self.current = None
        self.advance()

    def fail(self, error: BaseException):
        """Enter the fatal state; every waiting command is failed."""
        if self.state is QueueState.FAILED:
            return
        self.state = QueueState.FAILED
        self.error = error
        current, self.current = self.current, None
        pending = list(self._backlog)
        self._backlog.clear()
        if current is not None:
            current.fail(ConnectionClosedError(str(error)))
        for command in pending:
            command.fail(ConnectionClosedError(f"Cannot run {command.verb}: {error}"))
