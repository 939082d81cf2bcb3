import asyncio
import logging
from collections import deque
from typing import Deque, Optional

from qftp.core.command import Command, Phase
from qftp.core.errors import ConnectionClosedError, FtpError, FtpReplyError, TransferAbortedError
from qftp.core.parser import ReplyRecord

logger = logging.getLogger(__name__)

CONTINUATION_CODES = ("150", "125")
PATH_CREATED = "257"
TRANSFER_COMPLETE = "226"
STORE_VERBS = ("STOR",)


class ResponseDispatcher:
    """
    Routes control-channel replies to the commands waiting for them.

    Commands are answered in the order they were written, so the oldest
    in-flight command owns the next reply. A command stays in flight until
    its terminal reply arrives, even when its caller was answered earlier
    (a download resolves as soon as the data connection delivers the payload).
    """

    def __init__(self, client):
        self.client = client
        self.parser = client.parser
        self.in_flight: Deque[Command] = deque()
        self._buffer = ''

    @property
    def current(self) -> Optional[Command]:
        """The oldest in-flight command that still waits for a reply."""
        for command in self.in_flight:
            # Has its terminal reply and only waits for the data connection
            if command.phase is Phase.TRANSFERRING and command.final_reply is not None:
                continue
            return command
        return None

    def expect(self, command: Command):
        self.in_flight.append(command)

    def discard(self, command: Command):
        try:
            self.in_flight.remove(command)
        except ValueError:
            pass

    def feed(self, chunk: bytes):
        self._buffer += chunk.decode('utf-8', errors='replace')
        complete, self._buffer = self.parser.split_complete(self._buffer)
        if not complete:
            return
        records = self.parser.parse_chunk(complete)
        if not records:
            logger.debug(f"No reply code in chunk, dropped: {complete.strip()!r}")

        # A code repeated within one chunk is processed once per command
        delivered = []
        for record in records:
            command = self.current
            if any(code == record.code and seen is command for code, seen in delivered):
                logger.debug(f"Repeated {record.code} for {command} dropped")
                continue
            delivered.append((record.code, command))
            self.dispatch(record)

    def dispatch(self, record: ReplyRecord):
        command = self.current
        if command is None:
            logger.warning(f"Unsolicited reply dropped: {record.code} {record.body}")
            return

        logger.debug(f"{record.code} -> {command}")
        if command.phase is Phase.AWAITING_REPLY:
            self._on_reply(command, record)
        elif command.phase is Phase.TRANSFERRING:
            self._on_transfer_reply(command, record)
        elif command.phase in (Phase.AWAITING_FINAL_REPLY, Phase.AWAITING_FILE_ACTION):
            self._on_final_reply(command, record)

    def _on_reply(self, command: Command, record: ReplyRecord):
        if record.code in CONTINUATION_CODES:
            if command.verb in STORE_VERBS:
                command.phase = Phase.AWAITING_FINAL_REPLY
            else:
                command.phase = Phase.TRANSFERRING
                self._wait_for_payload(command)
            return

        if record.is_preliminary:
            return

        if record.is_error:
            command.fail(FtpReplyError(record.body, record.code))
            self._finish(command)
            return

        if record.code == PATH_CREATED:
            command.resolve(self.parser.parse_quoted_path(record.body))
        elif record.code == TRANSFER_COMPLETE and command.verb == "DELE":
            command.phase = Phase.AWAITING_FILE_ACTION
            return
        else:
            command.resolve(record.body)
        self._finish(command)

    def _on_transfer_reply(self, command: Command, record: ReplyRecord):
        if record.is_preliminary:
            return
        if record.is_error:
            command.fail(FtpReplyError(record.body, record.code))
            self._finish(command)
            return

        command.final_reply = record
        if command.payload_received:
            command.resolve(record.body)
            self._finish(command)

    def _on_final_reply(self, command: Command, record: ReplyRecord):
        if record.is_preliminary:
            return
        if record.is_error:
            command.fail(FtpReplyError(record.body, record.code))
        else:
            command.resolve(record.body)
        self._finish(command)

    def _wait_for_payload(self, command: Command):
        try:
            waiter = self.client.data.received()
        except RuntimeError as e:
            command.fail(FtpError(str(e), "150"))
            command.payload_received = True
            return
        waiter.add_done_callback(lambda future: self._on_payload(command, future))

    def _on_payload(self, command: Command, future: asyncio.Future):
        command.payload_received = True
        if future.cancelled():
            command.fail(TransferAbortedError("Data transfer aborted"))
        elif future.exception() is not None:
            command.fail(future.exception())
        elif command.verb in self.client.transfer_types:
            command.resolve(future.result())

        if command.phase is Phase.TRANSFERRING and command.final_reply is not None:
            command.resolve(command.final_reply.body)
            self._finish(command)

    def _finish(self, command: Command):
        self.discard(command)
        command.complete()

    def connection_lost(self, error: Optional[BaseException] = None):
        pending = list(self.in_flight)
        self.in_flight.clear()
        self._buffer = ''
        for command in pending:
            command.fail(ConnectionClosedError(f"Control connection closed during {command.verb}: {error or 'EOF'}"))
            command.phase = Phase.DONE
