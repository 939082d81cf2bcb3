import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Optional

from qftp.core.commands import ClientCommandHandler
from qftp.core.config import ClientConfig
from qftp.core.parser import MessageStructure
from qftp.ui.console import execute

logger = logging.getLogger(__name__)


class SessionRunner:
    """
    Runs a client session on its own event loop thread so that blocking
    callers (the Streamlit script) can drive it.
    """

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self.client: Optional[ClientCommandHandler] = None
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, name="qftp-loop", daemon=True)
        self.thread.start()

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def submit(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, coro: Awaitable[Any]) -> Any:
        return self.submit(coro).result(self.timeout)

    def open(self, config: ClientConfig, login: bool = True) -> MessageStructure:
        async def _open():
            client = ClientCommandHandler(config)
            greeting = await client.connect()
            if login:
                await client.login()
            return client, greeting

        self.client, greeting = self.call(_open())
        logger.info(f"[UI] Session open: {config.host}:{config.port}")
        return greeting

    def execute(self, line: str) -> Any:
        if self.client is None:
            raise RuntimeError("Not connected. Connect first.")
        return self.call(execute(self.client, line))

    def close(self):
        if self.client is not None:
            try:
                self.call(self.client.close())
            finally:
                self.client = None
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(self.timeout)
        if not self.thread.is_alive():
            self.loop.close()
        logger.info("[UI] Session closed")
