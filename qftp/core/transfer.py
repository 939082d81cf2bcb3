import asyncio
import enum
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, List, Optional, Sequence, Tuple, Union

from qftp.core.errors import FtpError, TransferAbortedError

logger = logging.getLogger(__name__)

PathSpec = Union[str, Sequence[str]]


class QueueState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    ABORTING = "aborting"


def split_paths(paths: PathSpec) -> Tuple[str, str]:
    """
    A single path is used on both sides; a pair is taken as (source, target).
    """
    if isinstance(paths, str):
        if not paths:
            raise ValueError("expected a path, got an empty string")
        return paths, paths
    if not isinstance(paths, (list, tuple)):
        raise TypeError(f"expected a path or a [source, target] pair, got {type(paths).__name__}")
    if len(paths) == 0:
        raise ValueError("expected a path or a [source, target] pair, got an empty sequence")
    if len(paths) == 1:
        return paths[0], paths[0]
    return paths[0], paths[1]


@dataclass
class TransferJob:
    path: str
    future: asyncio.Future
    key: str = field(default_factory=lambda: uuid.uuid4().hex)
    queued_at: float = field(default_factory=time.time)
    local_path: Optional[str] = None
    payload: Optional[asyncio.Future] = None


class _JobQueue:
    def __init__(self, client):
        self.client = client
        self.state = QueueState.IDLE
        self._jobs: Deque[TransferJob] = deque()
        self._task: Optional[asyncio.Task] = None
        self._idle_waiters: List[asyncio.Future] = []

    def __len__(self):
        return len(self._jobs)

    @property
    def pending(self) -> List[str]:
        return [job.key for job in self._jobs]

    def _start(self):
        if self.state is not QueueState.IDLE:
            return
        self.state = QueueState.BUSY
        self._task = asyncio.ensure_future(self._run())

    async def _run(self):
        try:
            while self._jobs:
                job = self._jobs.popleft()
                self.state = QueueState.BUSY
                try:
                    await self._process(job)
                except Exception as e:
                    # Only this job fails; the rest of the queue still runs
                    logger.error(f"{self.name} {job.path} failed: {e!r}")
                    if not job.future.done():
                        job.future.set_exception(e)
                # The finished job's callbacks run before the next job starts
                await asyncio.sleep(0)
        finally:
            self.state = QueueState.IDLE
            self._task = None
            logger.debug(f"{self.name} queue empty")
            waiters, self._idle_waiters = self._idle_waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(None)

    async def join(self):
        """Wait until every queued job has been processed."""
        if self.state is QueueState.IDLE and not self._jobs:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    def _check_aborted(self, job: TransferJob) -> bool:
        if not self.client.data.consume_abort():
            return False
        self.state = QueueState.ABORTING
        logger.warning(f"{self.name} aborted: {job.path}")
        if not job.future.done():
            job.future.set_exception(TransferAbortedError(f"Transfer of {job.path} aborted"))
        return True

    async def _process(self, job: TransferJob):
        raise NotImplementedError


class TransferQueue(_JobQueue):
    """
    Serializes one download-style verb (RETR, LIST, NLST, MDTM, SIZE) over
    the shared data connection.
    """

    def __init__(self, client, verb: str):
        super().__init__(client)
        self.verb = verb.upper()
        self.name = self.verb

    @classmethod
    def create(cls, client, verb: str) -> "TransferQueue":
        verb = verb.upper()
        client.transfer_types.add(verb)
        return cls(client, verb)

    def enqueue(self, path: str) -> asyncio.Future:
        job = TransferJob(path=path, future=asyncio.get_running_loop().create_future())
        self._jobs.append(job)
        logger.debug(f"{self.verb} queued {path} ({job.key})")
        self._start()
        return job.future

    async def _process(self, job: TransferJob):
        data = self.client.data
        async with self.client.data_lock:
            await self._transfer(data, job)

    async def _transfer(self, data, job: TransferJob):
        try:
            await data.open()
            if self._check_aborted(job):
                return
            payload = await self.client.commands.run(f"{self.verb} {job.path}".strip())
            hook = self.client.hooks.get(self.verb)
            if hook is not None:
                payload = hook(payload)
            if not job.future.done():
                job.future.set_result(payload)
        except TransferAbortedError as e:
            if not self._check_aborted(job) and not job.future.done():
                job.future.set_exception(e)
        except (FtpError, ValueError) as e:
            logger.warning(f"{self.verb} {job.path} failed: {e}")
            if not job.future.done():
                job.future.set_exception(e)
        finally:
            await data.close()
            # Data connection is closed: the transfer is complete
            self._check_aborted(job)


class UploadQueue(_JobQueue):
    """
    Serializes STOR. The payload is written to the data connection and the
    connection closed before STOR is sent; the abort flag is checked after
    the connection opens, after the payload is written, and after STOR.
    """

    name = "STOR"

    def __init__(self, client):
        super().__init__(client)
        self.active = False

    def put(self, paths: PathSpec) -> asyncio.Future:
        local_path, remote_path = split_paths(paths)
        logger.info(f">putting file: {local_path!r} to {remote_path!r}")
        loop = asyncio.get_running_loop()
        job = TransferJob(path=remote_path, future=loop.create_future(), local_path=local_path)
        # The read runs outside the queue; the job waits for it when its turn comes
        job.payload = asyncio.ensure_future(asyncio.to_thread(Path(local_path).read_bytes))
        self._jobs.append(job)
        self._start()
        return job.future

    async def _process(self, job: TransferJob):
        try:
            payload = await job.payload
        except OSError as e:
            logger.error(f"Failed to read {job.local_path}: {e}")
            job.future.set_exception(e)
            return

        data = self.client.data
        async with self.client.data_lock:
            await self._store(data, job, payload)

    async def _store(self, data, job: TransferJob, payload: bytes):
        self.active = True
        try:
            await data.open()
            if self._check_aborted(job):
                return
            await data.write_and_close(payload)
            if self._check_aborted(job):
                return
            reply = await self.client.commands.run(f"STOR {job.path}", run_now=True)
            if not job.future.done():
                job.future.set_result(reply)
        except TransferAbortedError as e:
            if not self._check_aborted(job) and not job.future.done():
                job.future.set_exception(e)
        except FtpError as e:
            logger.warning(f"STOR {job.path} failed: {e}")
            if not job.future.done():
                job.future.set_exception(e)
        finally:
            self.active = False
            await data.close()
            self._check_aborted(job)
