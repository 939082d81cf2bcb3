import asyncio
import logging
import posixpath
import re
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from qftp.core.command_queue import CommandQueue
from qftp.core.config import ClientConfig
from qftp.core.connection import ControlConnectionManager
from qftp.core.data_connection import DataChannelManager, DataState
from qftp.core.dispatcher import ResponseDispatcher
from qftp.core.errors import ConnectionClosedError, FtpError, FtpReplyError
from qftp.core.hooks import HookRegistry, build_default_hooks
from qftp.core.parser import MessageStructure, Parser
from qftp.core.stat_record import StatRecord
from qftp.core.transfer import PathSpec, TransferQueue, UploadQueue, split_paths

logger = logging.getLogger(__name__)

HISTORY_SIZE = 500

_CHDIR_RE = re.compile(r"directory is (.*)", re.IGNORECASE)
_DELETED_RE = re.compile(r"eleted (.*)")


class ClientCommandHandler:
    """
    FTP client session: one control connection, one passive data connection,
    and the queues that keep both in order.
    """

    def __init__(self, config: ClientConfig, connection: Optional[ControlConnectionManager] = None,
                 parser: Optional[Parser] = None, hooks: Optional[HookRegistry] = None):
        self.config = config
        self.control = connection or ControlConnectionManager(config.host, config.port, config.timeout)
        self.parser = parser or Parser()
        self.hooks = hooks or build_default_hooks()
        self.transfer_types = set()
        self.cwd = ''
        self.base_dir = config.base_dir
        self.history: Deque[Dict[str, Any]] = deque(maxlen=HISTORY_SIZE)

        self.dispatcher = ResponseDispatcher(self)
        self.commands = CommandQueue(self)
        self.data = DataChannelManager(self)
        self.data_lock = asyncio.Lock()
        self.control.set_sink(self.dispatcher.feed, self._connection_lost)

        self._retr = TransferQueue.create(self, 'RETR')
        self._list = TransferQueue.create(self, 'LIST')
        self._nlst = TransferQueue.create(self, 'NLST')
        self._mdtm = TransferQueue.create(self, 'MDTM')
        self._size = TransferQueue.create(self, 'SIZE')
        self.uploads = UploadQueue(self)

    # Connection lifecycle
    async def connect(self) -> MessageStructure:
        greeting = await self.control.connect()
        self._record(f"CONNECT {self.config.host}:{self.config.port}", data=greeting.message,
                     error=greeting.type in ("error", "unknown"))
        return greeting

    async def login(self, user: Optional[str] = None, password: Optional[str] = None) -> str:
        """Sends USER, then PASS when a password is configured."""
        user = self.config.user if user is None else user
        password = self.config.password if password is None else password
        reply = await self._execute(f"USER {user}")
        if password:
            reply = await self._execute(f"PASS {password}", shown="PASS ****")
        logger.info(f"Logged in as {user}")
        return reply

    async def close(self):
        """Drops both connections without sending QUIT."""
        await self.data.close()
        await self.control.disconnect()
        self._fail_pending(ConnectionClosedError("Client closed"))

    def _connection_lost(self, error: Optional[BaseException]):
        logger.error(f"Control connection lost: {error or 'closed by server'}")
        self._fail_pending(ConnectionClosedError(f"Control connection lost: {error or 'closed by server'}"))
        if self.data.state is not DataState.CLOSED:
            self.data.abort()

    def _fail_pending(self, error: ConnectionClosedError):
        self.commands.fail(error)
        self.dispatcher.connection_lost(error)

    # History
    def _record(self, command: str, data: Any = None, error: Any = None):
        self.history.append({
            "time": datetime.now(timezone.utc),
            "command": command,
            "data": data,
            "error": error,
        })

    def get_history(self) -> List[Dict[str, Any]]:
        """Return a copy of the history list."""
        return list(self.history)

    def clear_history(self):
        self.history.clear()

    async def _execute(self, command: str, run_now: bool = False, prepend: bool = False,
                       shown: Optional[str] = None) -> Any:
        label = shown or command
        try:
            result = await self.commands.run(command, run_now=run_now, prepend=prepend)
        except FtpError as e:
            self._record(label, error=str(e))
            raise
        self._record(label, data=result)
        return result

    async def _transfer(self, label: str, future: asyncio.Future) -> Any:
        try:
            result = await future
        except (FtpError, OSError, ValueError) as e:
            self._record(label, error=str(e))
            raise
        self._record(label, data=result)
        return result

    # Raw commands
    async def run(self, command: str, run_now: bool = False, prepend: bool = False) -> Any:
        """
        Queue a raw command and return the reply text. With ``run_now`` the
        command is written immediately instead of waiting its turn.
        """
        if not command or not command.strip():
            raise ValueError("run expected a command")
        return await self._execute(command, run_now=run_now, prepend=prepend)

    async def raw(self, command: str) -> Any:
        return await self.run(command, run_now=True)

    async def user(self, user: str):
        return await self._execute(f"USER {user}")

    async def pass_(self, password: str):
        return await self._execute(f"PASS {password}", shown="PASS ****")

    async def pasv(self):
        return await self._execute(self.data.pasv_command())

    async def ping(self):
        return await self._execute("NOOP")

    async def stat(self):
        return await self._execute("STAT")

    async def info(self):
        return await self._execute("SYST")

    async def quit(self):
        reply = await self._execute("QUIT")
        await self.close()
        return reply

    # Directories
    async def root(self) -> str:
        return await self.chdir(self.base_dir or '/')

    async def mkdir(self, dirpath: str) -> str:
        """Creates a directory and returns the name the server reports."""
        return await self._execute(f"MKD {dirpath}")

    async def getcwd(self) -> str:
        reply = await self._execute("PWD")
        self.cwd = self.parser.parse_quoted_path(reply)
        return self.cwd

    async def chdir(self, dirname: str) -> str:
        reply = await self._execute(f"CWD {dirname}")
        match = _CHDIR_RE.search(reply or '')
        if match:
            self.cwd = match.group(1).strip().strip('"')
        else:
            self.cwd = posixpath.normpath(posixpath.join(self.cwd or '/', dirname))
        return self.cwd

    async def rmdir(self, dirpath: str, recursive: bool = True) -> bool:
        """
        Removes a remote directory. When the server refuses because the
        directory is not empty, its files and subdirectories are removed
        first and the removal is retried once all of them have finished.
        """
        try:
            await self._execute(f"RMD {dirpath}")
            return True
        except FtpReplyError as e:
            if not recursive or e.code != "550":
                raise
            logger.info(f"directory not empty: {dirpath}")

        entries = await self.ls(dirpath)
        children = [entry for entry in entries if entry.filename not in ('.', '..')]
        removals = []
        for entry in children:
            child = posixpath.join(dirpath, entry.filename)
            if entry.is_directory:
                removals.append(self.rmdir(child, recursive=True))
            else:
                removals.append(self.unlink(child))

        # Every child has finished, in whatever order, before the retry
        results = await asyncio.gather(*removals, return_exceptions=True)
        for entry, result in zip(children, results):
            if isinstance(result, Exception):
                logger.warning(f"error removing {entry.filename}: {result}")

        await self._execute(f"RMD {dirpath}")
        return True

    # Files
    async def unlink(self, filepath: str) -> str:
        reply = await self._execute(f"DELE {filepath}")
        match = _DELETED_RE.search(reply or '')
        return match.group(1) if match else reply

    async def rename(self, paths: PathSpec) -> str:
        if isinstance(paths, str) or len(paths) != 2:
            raise ValueError("rename expected a [from, to] pair")
        source, target = paths
        first, second = self.commands.submit_chain(f"RNFR {source}", f"RNTO {target}")
        label = f"RENAME {source} -> {target}"
        try:
            await first.future
            result = await second.future
        except FtpError as e:
            self._record(label, error=str(e))
            raise
        self._record(label, data=result)
        return result

    async def abort(self) -> bool:
        """
        Cancels the running transfer, if any, and sends ABOR. A cancelled
        transfer fails with TransferAbortedError and its queue moves on.
        """
        if self.uploads.active or self.data.state is not DataState.CLOSED:
            self.data.abort()
        await self._execute("ABOR", run_now=True)
        return True

    async def get(self, filepath: str) -> bytes:
        return await self._transfer(f"RETR {filepath}", self._retr.enqueue(filepath))

    async def save(self, paths: PathSpec) -> str:
        """Downloads ``remote`` (or ``[remote, local]``) and writes it locally."""
        remote_path, local_path = split_paths(paths)
        logger.info(f">saving file: {remote_path} to {local_path}")
        data = await self.get(remote_path)
        await asyncio.to_thread(Path(local_path).write_bytes, data)
        return local_path

    async def put(self, paths: PathSpec) -> str:
        local_path, remote_path = split_paths(paths)
        # History shows the command the way the console takes it
        label = f"STOR {remote_path}" if local_path == remote_path else f"STOR {local_path} {remote_path}"
        return await self._transfer(label, self.uploads.put((local_path, remote_path)))

    async def ls(self, filepath: str = '') -> List[StatRecord]:
        return await self._transfer(f"LIST {filepath}".strip(), self._list.enqueue(filepath))

    async def lsnames(self, dirpath: str = '') -> List[str]:
        return await self._transfer(f"NLST {dirpath}".strip(), self._nlst.enqueue(dirpath))

    async def filemtime(self, filepath: str) -> int:
        return await self._transfer(f"MDTM {filepath}", self._mdtm.enqueue(filepath))

    async def size(self, filepath: str) -> int:
        return await self._transfer(f"SIZE {filepath}", self._size.enqueue(filepath))
