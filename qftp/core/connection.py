import asyncio
import logging
from typing import Callable, Optional

from qftp.core.parser import MessageStructure, Parser

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


class ControlConnectionManager:
    def __init__(self, host: str, port: int, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._on_chunk: Optional[Callable[[bytes], None]] = None
        self._on_close: Optional[Callable[[Optional[Exception]], None]] = None

    @property
    def connected(self) -> bool:
        return self.writer is not None

    @property
    def remote_address(self) -> str:
        if self.writer is None:
            raise RuntimeError("No connection established.")
        peer = self.writer.get_extra_info('peername')
        return peer[0] if peer else self.host

    def set_sink(self, on_chunk: Callable[[bytes], None],
                 on_close: Callable[[Optional[Exception]], None]):
        self._on_chunk = on_chunk
        self._on_close = on_close

    async def connect(self) -> MessageStructure:
        """
        Open the control connection and read the server greeting.
        Inbound traffic after the greeting is handed to the sink chunk by chunk.
        """
        if self.writer is not None:
            raise RuntimeError("Connection already established.")
        try:
            logger.info(f"Connecting to {self.host}:{self.port} (timeout={self.timeout}s)")
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout)
            greeting = await asyncio.wait_for(self._read_greeting(), self.timeout)
        except (asyncio.TimeoutError, OSError) as e:
            logger.error(f"✗ Failed to connect to {self.host}:{self.port} - {e}")
            await self.disconnect()
            raise ConnectionError(f"Failed to connect to {self.host}:{self.port} - {e}") from e

        logger.info(f"✓ Connected to {self.host}:{self.port}")
        self._read_task = asyncio.ensure_future(self._read_loop())
        return greeting

    async def _read_greeting(self) -> MessageStructure:
        lines = []
        while True:
            line = await self.reader.readline()
            if not line:
                raise ConnectionError("Connection closed before greeting")
            text = line.decode('utf-8', errors='replace').rstrip('\r\n')
            lines.append(text)
            # A multi-line greeting ends with "220 " on its last line
            if len(text) >= 4 and text[:3].isdigit() and text[3] == ' ':
                break
            if len(lines) == 1 and len(text) == 3 and text.isdigit():
                break
        response = '\n'.join(lines)
        logger.debug(f"← RECV: {response}")
        return Parser().parse_data(response)

    async def _read_loop(self):
        error = None
        try:
            while True:
                data = await self.reader.read(CHUNK_SIZE)
                if not data:
                    break
                logger.debug(f"← RECV: {data.decode('utf-8', errors='replace').strip()}")
                if self._on_chunk is not None:
                    self._on_chunk(data)
        except asyncio.CancelledError:
            raise
        except OSError as e:
            logger.error(f"Control connection error on {self.host}:{self.port} - {e}")
            error = e
        logger.info(f"Control connection to {self.host}:{self.port} closed")
        if self._on_close is not None:
            self._on_close(error)

    def send_command(self, command: str):
        if self.writer is None:
            raise RuntimeError("No connection established.")
        if not command.endswith('\r\n'):
            command += '\r\n'
        shown = "PASS ****" if command.upper().startswith("PASS ") else command.strip()
        logger.debug(f"→ SEND: {shown}")
        self.writer.write(command.encode('utf-8'))

    async def disconnect(self):
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self.writer is not None:
            logger.info(f"Closing connection to {self.host}:{self.port}")
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError:
                pass
            logger.info(f"✓ Disconnected from {self.host}:{self.port}")
        self.reader = None
        self.writer = None
