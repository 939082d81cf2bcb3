import asyncio
import enum
from typing import Any, Callable, Optional

from qftp.core.parser import ReplyRecord


class Phase(enum.Enum):
    AWAITING_REPLY = "awaiting_reply"
    # 150 seen for a non-store verb: waiting for the data payload and the terminal reply
    TRANSFERRING = "transferring"
    # 150 seen for STOR: the terminal reply follows separately
    AWAITING_FINAL_REPLY = "awaiting_final_reply"
    # 226 seen for DELE: waiting for the file action reply
    AWAITING_FILE_ACTION = "awaiting_file_action"
    DONE = "done"


class Command:
    """A single control-channel command and its one-shot completion."""

    def __init__(self, raw_command: str, run_now: bool = False):
        self.raw_command = raw_command.strip()
        self.run_now = run_now
        self.parse_command()
        self.phase = Phase.AWAITING_REPLY
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.payload_received = False
        self.final_reply: Optional[ReplyRecord] = None
        self.on_complete: Optional[Callable[["Command"], None]] = None

    def parse_command(self):
        # Paths may contain spaces, so only the verb is split off
        parts = self.raw_command.split(' ', 1)
        self.name = parts[0].upper()
        self.args = parts[1] if len(parts) > 1 else ""

    def __str__(self):
        return f"Command(name='{self.name}', args='{self.args}', phase={self.phase.value})"

    @property
    def verb(self) -> str:
        return self.name

    @property
    def done(self) -> bool:
        return self.phase is Phase.DONE

    def resolve(self, data: Any):
        if not self.future.done():
            self.future.set_result(data)

    def fail(self, error: BaseException):
        if not self.future.done():
            self.future.set_exception(error)

    def complete(self):
        """Ends the reply cycle. Runs the completion hook once."""
        if self.phase is Phase.DONE:
            return
        self.phase = Phase.DONE
        if self.on_complete is not None:
            self.on_complete(self)
