import asyncio
import enum
import logging
from typing import List, Optional

from qftp.core.errors import DataConnectionError, InvalidResponseError, TransferAbortedError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


class DataState(enum.Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    ABORTING = "aborting"


class DataChannelManager:
    """
    Maneja la conexión de datos PASV del cliente FTP.

    Only one data connection exists at a time. Everything the server sends
    on it up to EOF is the payload, available through ``received()``.
    """

    def __init__(self, client):
        self.client = client
        self.state = DataState.CLOSED
        self.aborted = False
        self.ip: Optional[str] = None
        self.port: Optional[int] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._chunks: List[bytes] = []
        self._payload: Optional[asyncio.Future] = None
        self._claimed = False
        self._closed: Optional[asyncio.Future] = None

    @property
    def is_open(self) -> bool:
        return self.state is DataState.OPEN

    def pasv_command(self) -> str:
        if not self.client.config.pasv_send_address:
            return "PASV"
        parts = self.client.control.remote_address.split('.')
        if len(parts) != 4:
            return "PASV"
        return "PASV " + ",".join(parts)

    def resolve_address(self, reply: str):
        """Address from the 227 reply, or the control peer and configured port."""
        try:
            return self.client.parser.parse_pasv_response(reply)
        except InvalidResponseError:
            fallback = (self.client.control.remote_address, self.client.config.pasv_port)
            logger.warning(f"[DATA] No address in PASV reply {reply!r}, using {fallback[0]}:{fallback[1]}")
            return fallback

    async def open(self):
        """
        Negotiate passive mode and connect to the announced address.
        Returns once the connection is established.
        """
        if self.state is not DataState.CLOSED:
            raise RuntimeError("Data connection already established.")
        self.state = DataState.CONNECTING
        # A payload left over from an earlier transfer is never handed out
        self._payload = None
        loop = asyncio.get_running_loop()
        self._closed = loop.create_future()
        try:
            reply = await self.client.commands.run(self.pasv_command())
            self.ip, self.port = self.resolve_address(reply)
            logger.info(f"[DATA] Connecting to {self.ip}:{self.port}")
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.ip, self.port), self.client.config.timeout)
        except (asyncio.TimeoutError, OSError) as e:
            self._mark_closed()
            raise DataConnectionError(f"Failed to open data connection to {self.ip}:{self.port} - {e}") from e
        except BaseException:
            self._mark_closed()
            raise

        if self.aborted:
            logger.warning("[DATA] Aborted while connecting")
            self.writer.close()
            self._mark_closed()
            raise TransferAbortedError("Data transfer aborted")

        self.state = DataState.OPEN
        self._chunks = []
        self._payload = loop.create_future()
        self._claimed = False
        self._read_task = asyncio.ensure_future(self._read_until_eof())
        logger.info(f"[DATA] Connected to {self.ip}:{self.port}")

    def received(self) -> asyncio.Future:
        """
        Future resolved with the payload once the server closes the connection.
        It is handed out once per connection.
        """
        if self._payload is None or self._claimed:
            raise RuntimeError("No data connection established.")
        self._claimed = True
        payload = self._payload
        if self.state is DataState.CLOSED and payload.done():
            self._payload = None
        return payload

    async def _read_until_eof(self):
        try:
            while True:
                data = await self.reader.read(CHUNK_SIZE)
                if not data:
                    break
                self._chunks.append(data)
        except asyncio.CancelledError:
            self._settle(error=TransferAbortedError("Data transfer aborted"))
            self._mark_closed()
            raise
        except OSError as e:
            logger.error(f"[DATA] Connection error on {self.ip}:{self.port} - {e}")
            self._settle(error=DataConnectionError(str(e)))
        else:
            self._settle(payload=b''.join(self._chunks))
        if self.writer is not None:
            self.writer.close()
        self._mark_closed()
        logger.info(f"[DATA] Disconnected from {self.ip}:{self.port}")

    async def write_and_close(self, payload: bytes):
        if self.aborted or self.state is not DataState.OPEN:
            raise TransferAbortedError("Data transfer aborted")
        try:
            self.writer.write(payload)
            await self.writer.drain()
        except OSError as e:
            if self.aborted:
                raise TransferAbortedError("Data transfer aborted") from e
            raise DataConnectionError(f"Failed to send data to {self.ip}:{self.port} - {e}") from e
        logger.debug(f"[DATA] Sent {len(payload)} bytes")
        # Nothing is read back on an upload
        self._claimed = True
        await self.close()

    async def close(self):
        if self.state in (DataState.CLOSED, DataState.CONNECTING):
            return
        if self.state is DataState.OPEN:
            self.state = DataState.CLOSING
        writer = self.writer
        self._settle(payload=b''.join(self._chunks))
        task = self._read_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        self._mark_closed()

    async def wait_closed(self):
        if self.state is DataState.CLOSED or self._closed is None:
            return
        await asyncio.shield(self._closed)

    def abort(self):
        """
        Flag the transfer as aborted and force the connection closed.
        The flag stays set until a queue consumes it with consume_abort().
        """
        logger.warning(f"[DATA] Aborting data connection ({self.state.value})")
        self.aborted = True
        if self.state in (DataState.CLOSED, DataState.CONNECTING):
            return
        self.state = DataState.ABORTING
        self._settle(error=TransferAbortedError("Data transfer aborted"))
        if self.writer is not None:
            self.writer.close()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    def consume_abort(self) -> bool:
        if self.aborted:
            self.aborted = False
            return True
        return False

    def _settle(self, payload: Optional[bytes] = None, error: Optional[BaseException] = None):
        if self._payload is None or self._payload.done():
            return
        if error is not None:
            self._payload.set_exception(error)
            # Nobody may be waiting on an aborted payload
            self._payload.add_done_callback(lambda f: f.exception())
        else:
            self._payload.set_result(payload)

    def _mark_closed(self):
        self.state = DataState.CLOSED
        self.reader = None
        self.writer = None
        self._read_task = None
        if self._claimed and self._payload is not None and self._payload.done():
            self._payload = None
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)
