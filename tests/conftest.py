"""Shared fixtures: an in-memory asyncio FTP server and clients bound to it."""

import asyncio
import posixpath
from typing import Optional

import pytest
import pytest_asyncio

from qftp.core.commands import ClientCommandHandler
from qftp.core.config import ClientConfig

MTIME = "20140615091813"


class FakeFtpServer:
    """
    Minimal FTP server over an in-memory file tree.

    Each PASV opens a fresh listener on an ephemeral port; the next
    transfer command uses whatever connection arrived on it. Every command
    line received is kept in ``received`` for ordering assertions.
    """

    def __init__(self):
        self.files = {}
        self.mtimes = {}
        self.dirs = {"/"}
        self.cwd = "/"
        self.received = []
        self.port: Optional[int] = None
        self._server = None
        self._writers = []
        self._data = None
        self._rename_from = None

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        self._close_listener()
        for writer in self._writers:
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    # File tree helpers
    def _abs(self, path: str) -> str:
        return posixpath.normpath(posixpath.join(self.cwd, path or "."))

    def add_dir(self, path: str):
        path = self._abs(path)
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def add_file(self, path: str, content: bytes = b"", mtime: str = MTIME):
        path = self._abs(path)
        self.add_dir(posixpath.dirname(path))
        self.files[path] = content
        self.mtimes[path] = mtime

    def children(self, path: str):
        entries = [p for p in self.dirs | set(self.files) if p != path and posixpath.dirname(p) == path]
        return sorted(entries)

    def commands(self, verb: Optional[str] = None):
        if verb is None:
            return list(self.received)
        return [line for line in self.received if line.split(" ", 1)[0].upper() == verb]

    def _stat_line(self, path: str) -> str:
        name = posixpath.basename(path)
        if path in self.dirs:
            return f"drwxr-xr-x 2 owner group 4096 Jun 15  2014 {name}"
        return f"-rw-r--r-- 1 owner group {len(self.files[path])} Jun 15  2014 {name}"

    # Control connection
    @staticmethod
    def _reply(writer, text: str):
        writer.write(f"{text}\r\n".encode("utf-8"))

    async def _handle(self, reader, writer):
        self._writers.append(writer)
        self._reply(writer, "220 Service ready for new user")
        await writer.drain()
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                text = line.decode("utf-8").strip()
                if not text:
                    continue
                self.received.append(text)
                verb, _, arg = text.partition(" ")
                handler = getattr(self, f"_cmd_{verb.lower()}", None)
                if handler is None:
                    self._reply(writer, f"502 Command {verb} not implemented")
                    await writer.drain()
                    continue
                keep_open = await handler(writer, arg.strip())
                await writer.drain()
                if keep_open is False:
                    break
        except ConnectionError:
            pass
        finally:
            writer.close()

    # Data connection
    def _close_listener(self):
        if self._data is None:
            return
        listener, accepted = self._data
        self._data = None
        listener.close()
        if accepted.done():
            accepted.result()[1].close()
        else:
            accepted.cancel()

    async def _data_connection(self):
        if self._data is None:
            return None
        listener, accepted = self._data
        self._data = None
        try:
            return await asyncio.wait_for(accepted, 5)
        finally:
            listener.close()

    async def _send_data(self, writer, opening: str, payload: bytes, closing: str):
        conn = await self._data_connection()
        if conn is None:
            self._reply(writer, "425 Use PASV first")
            return
        self._reply(writer, f"150 {opening}")
        await writer.drain()
        _, data_writer = conn
        data_writer.write(payload)
        try:
            await data_writer.drain()
        except ConnectionError:
            pass
        data_writer.close()
        self._reply(writer, f"226 {closing}")

    async def _cmd_pasv(self, writer, arg):
        self._close_listener()
        accepted = asyncio.get_running_loop().create_future()

        async def on_connect(data_reader, data_writer):
            if accepted.done():
                data_writer.close()
            else:
                accepted.set_result((data_reader, data_writer))

        listener = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        port = listener.sockets[0].getsockname()[1]
        self._data = (listener, accepted)
        self._reply(writer, f"227 Entering Passive Mode (127,0,0,1,{port >> 8},{port & 0xff})")

    # Session
    async def _cmd_user(self, writer, arg):
        if arg == "nobody":
            self._reply(writer, "530 Not logged in")
        else:
            self._reply(writer, "331 User name okay, need password")

    async def _cmd_pass(self, writer, arg):
        if arg == "wrong":
            self._reply(writer, "530 Login incorrect")
        else:
            self._reply(writer, "230 User logged in, proceed")

    async def _cmd_noop(self, writer, arg):
        self._reply(writer, "200 NOOP ok")

    async def _cmd_syst(self, writer, arg):
        self._reply(writer, "215 UNIX Type: L8")

    async def _cmd_stat(self, writer, arg):
        self._reply(writer, "211-FTP server status:\r\n 20 files in tree\r\n211 End of status")

    async def _cmd_abor(self, writer, arg):
        self._close_listener()
        self._reply(writer, "225 ABOR command successful")

    async def _cmd_quit(self, writer, arg):
        self._reply(writer, "221 Goodbye")
        return False

    # Directories
    async def _cmd_pwd(self, writer, arg):
        self._reply(writer, f'257 "{self.cwd}" is the current directory')

    async def _cmd_cwd(self, writer, arg):
        path = self._abs(arg)
        if path not in self.dirs:
            self._reply(writer, "550 Directory not found")
            return
        self.cwd = path
        self._reply(writer, f'250 Directory changed to "{path}"')

    async def _cmd_mkd(self, writer, arg):
        path = self._abs(arg)
        if path in self.dirs or path in self.files:
            self._reply(writer, "550 Directory already exists")
        elif posixpath.dirname(path) not in self.dirs:
            self._reply(writer, "550 Parent directory not found")
        else:
            self.dirs.add(path)
            self._reply(writer, f'257 "{path}" created')

    async def _cmd_rmd(self, writer, arg):
        path = self._abs(arg)
        if path not in self.dirs:
            self._reply(writer, "550 Directory not found")
        elif self.children(path):
            self._reply(writer, "550 Directory not empty")
        else:
            self.dirs.discard(path)
            self._reply(writer, "250 Directory removed")

    # Files
    async def _cmd_dele(self, writer, arg):
        path = self._abs(arg)
        if path not in self.files:
            self._reply(writer, "550 File not found")
            return
        del self.files[path]
        self._reply(writer, f"250 Deleted {path}")

    async def _cmd_rnfr(self, writer, arg):
        path = self._abs(arg)
        if path not in self.files:
            self._reply(writer, "550 File not found")
            return
        self._rename_from = path
        self._reply(writer, "350 Ready for destination name")

    async def _cmd_rnto(self, writer, arg):
        if self._rename_from is None:
            self._reply(writer, "503 Bad sequence of commands")
            return
        source, self._rename_from = self._rename_from, None
        self.add_file(arg, self.files.pop(source), self.mtimes.pop(source, MTIME))
        self._reply(writer, "250 Rename successful")

    async def _cmd_mdtm(self, writer, arg):
        path = self._abs(arg)
        if path not in self.files:
            self._reply(writer, "550 File not found")
        else:
            self._reply(writer, f"213 {self.mtimes[path]}")

    async def _cmd_size(self, writer, arg):
        path = self._abs(arg)
        if path not in self.files:
            self._reply(writer, "550 File not found")
        else:
            self._reply(writer, f"213 {len(self.files[path])}")

    # Transfers
    async def _cmd_list(self, writer, arg):
        path = self._abs(arg)
        if path in self.files:
            entries = [path]
        elif path in self.dirs:
            entries = self.children(path)
        else:
            self._close_listener()
            self._reply(writer, "550 No such file or directory")
            return
        listing = "".join(f"{self._stat_line(p)}\r\n" for p in entries)
        await self._send_data(writer, "Here comes the directory listing",
                              f"total {len(entries)}\r\n{listing}".encode("utf-8"), "Directory send OK")

    async def _cmd_nlst(self, writer, arg):
        path = self._abs(arg)
        if path not in self.dirs:
            self._close_listener()
            self._reply(writer, "550 No such file or directory")
            return
        names = "".join(f"{posixpath.basename(p)}\r\n" for p in self.children(path))
        await self._send_data(writer, "Here comes the directory listing", names.encode("utf-8"), "Directory send OK")

    async def _cmd_retr(self, writer, arg):
        path = self._abs(arg)
        if path not in self.files:
            self._close_listener()
            self._reply(writer, "550 File not found")
            return
        await self._send_data(writer, f"Opening data connection for {posixpath.basename(path)}",
                              self.files[path], "Transfer complete")

    async def _cmd_stor(self, writer, arg):
        path = self._abs(arg)
        if posixpath.dirname(path) not in self.dirs:
            self._close_listener()
            self._reply(writer, "550 Directory not found")
            return
        conn = await self._data_connection()
        if conn is None:
            self._reply(writer, "425 Use PASV first")
            return
        self._reply(writer, f"150 Opening data connection for {posixpath.basename(path)}")
        await writer.drain()
        data_reader, data_writer = conn
        content = await data_reader.read()
        data_writer.close()
        self.files[path] = content
        self.mtimes[path] = MTIME
        self._reply(writer, "226 Transfer complete")


class FakeControl:
    """Stands in for ControlConnectionManager; replies are fed by hand."""

    remote_address = "10.0.0.5"

    def __init__(self):
        self.sent = []
        self.on_chunk = None
        self.on_close = None

    def set_sink(self, on_chunk, on_close):
        self.on_chunk = on_chunk
        self.on_close = on_close

    def send_command(self, command: str):
        self.sent.append(command)

    def reply(self, text: str):
        self.on_chunk(text.encode("utf-8"))

    async def disconnect(self):
        pass


@pytest_asyncio.fixture
async def ftp_server():
    server = FakeFtpServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def client_config(ftp_server):
    return ClientConfig(host="127.0.0.1", port=ftp_server.port, user="anonymous", password="guest", timeout=5.0)


@pytest_asyncio.fixture
async def client(client_config):
    """Connected and logged-in client."""
    handler = ClientCommandHandler(client_config)
    await handler.connect()
    await handler.login()
    yield handler
    await handler.close()


@pytest.fixture
def control():
    return FakeControl()


@pytest_asyncio.fixture
async def offline_client(control):
    """Client wired to a FakeControl; no sockets involved."""
    return ClientCommandHandler(ClientConfig(), connection=control)
