"""Background operation execution and per-instance locking."""

import asyncio
import logging
import os
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


def operation_owner() -> str:
    """Identity of this broker process, recorded on pending operations."""
    return f"{socket.gethostname()}:{os.getpid()}"


class InstanceLocks:
    """One lock per instance ID, shared by request handlers and workers.

    Handlers and background jobs run on different event loops and threads,
    so the locks are thread locks acquired off the event loop. An entry lives
    only while someone holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _checkout(self, instance_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = self._locks[instance_id] = threading.Lock()
            self._users[instance_id] = self._users.get(instance_id, 0) + 1
            return lock

    def _checkin(self, instance_id: str) -> None:
        with self._guard:
            self._users[instance_id] -= 1
            if not self._users[instance_id]:
                del self._users[instance_id]
                del self._locks[instance_id]

    @asynccontextmanager
    async def hold(self, instance_id: str):
        """Hold the lock of ``instance_id`` for the body of the ``async with``."""
        lock = self._checkout(instance_id)
        try:
            if not lock.acquire(blocking=False):
                await asyncio.get_running_loop().run_in_executor(None, lock.acquire)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(instance_id)

    def locked(self, instance_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(instance_id)
        return lock is not None and lock.locked()

    def active_count(self) -> int:
        """Number of instance IDs currently held or waited on."""
        with self._guard:
            return len(self._locks)


class OperationWorker:
    """Runs long provisioning and teardown jobs on a thread pool.

    Each job gets a fresh event loop in its worker thread.
    """

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers,
                                           thread_name_prefix='broker-operation')

    def submit(self, name: str, job: Job) -> Future:
        logger.info(f"Submitting background operation {name}")
        return self.executor.submit(self._run, name, job)

    @staticmethod
    def _run(name: str, job: Job) -> None:
        try:
            asyncio.run(job())
            logger.info(f"Background operation {name} finished")
        except Exception as e:
            logger.error(f"Background operation {name} crashed: {e}", exc_info=True)
            raise

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
