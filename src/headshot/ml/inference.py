"""Worker pool for blocking image work.

Architecture:
    workflow / FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> OpenCV / ONNX / Pillow

A caller that cannot get one of the N slots within ``queue_timeout`` seconds
gets TimeoutError; the HTTP layer turns that into a 503.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from headshot.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    running: int
    waiting: int
    capacity: int


class InferencePool:
    """Bounded executor shared by detection and cropping."""

    def __init__(self, settings: Settings) -> None:
        self._capacity = settings.max_concurrent
        self._queue_timeout = settings.queue_timeout
        self._slots = asyncio.Semaphore(self._capacity)
        self._executor = ThreadPoolExecutor(max_workers=self._capacity, thread_name_prefix="headshot-worker")
        self._lock = threading.Lock()
        self._running = 0
        self._waiting = 0
        self._closed = False

    async def run(self, func: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Run ``func`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: No slot became free within the queue timeout.
            RuntimeError: The pool was shut down.
        """
        if self._closed:
            raise RuntimeError("Worker pool is shut down")
        call = functools.partial(func, *args, **kwargs) if kwargs else functools.partial(func, *args)
        async with self._slot(getattr(func, "__name__", repr(func))):
            return await asyncio.get_running_loop().run_in_executor(self._executor, call)

    @asynccontextmanager
    async def _slot(self, label: str) -> AsyncIterator[None]:
        self._adjust(waiting=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("Worker pool saturated (%d running); rejecting %s", self.active_count, label)
            raise
        finally:
            self._adjust(waiting=-1)

        self._adjust(running=1)
        try:
            yield
        finally:
            self._slots.release()
            self._adjust(running=-1)

    def _adjust(self, running: int = 0, waiting: int = 0) -> None:
        with self._lock:
            self._running += running
            self._waiting += waiting

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(running=self._running, waiting=self._waiting, capacity=self._capacity)

    @property
    def active_count(self) -> int:
        return self.stats().running

    @property
    def queue_depth(self) -> int:
        return self.stats().waiting

    def shutdown(self) -> None:
        """Wait for running work, then stop the worker threads."""
        self._closed = True
        self._executor.shutdown(wait=True)
