"""Transformation concurrency layer.

Architecture:
    FastAPI (async) -> slot (asyncio.Semaphore) -> ThreadPoolExecutor -> blocking subprocess pipeline

A request that cannot get a slot within ``Settings.slot_timeout`` seconds is
rejected with 503 by the API layer.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from reshapex.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransformPool:
    """Bounds how many transformations run at once and keeps them off the event loop."""

    def __init__(self, settings: Settings, slot_timeout: float | None = None) -> None:
        self._size = settings.max_concurrent
        self._slot_timeout = settings.slot_timeout if slot_timeout is None else slot_timeout
        self._slots = asyncio.Semaphore(self._size)
        self._executor = ThreadPoolExecutor(
            max_workers=self._size,
            thread_name_prefix="reshapex-transform",
        )
        self._lock = threading.Lock()
        self._waiting = 0
        self._running = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking transformation on a worker thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the slot timeout.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        self._adjust(waiting=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._slot_timeout)
        except TimeoutError:
            logger.warning(
                "All %d transformation slots busy for %.1fs (%d waiting)",
                self._size,
                self._slot_timeout,
                self.queue_depth,
            )
            raise
        finally:
            self._adjust(waiting=-1)

        self._adjust(running=1)
        try:
            yield
        finally:
            self._slots.release()
            self._adjust(running=-1)

    def _adjust(self, *, waiting: int = 0, running: int = 0) -> None:
        with self._lock:
            self._waiting += waiting
            self._running += running

    @property
    def size(self) -> int:
        return self._size

    @property
    def active_count(self) -> int:
        """Number of transformations currently running."""
        with self._lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._lock:
            return self._waiting

    def shutdown(self) -> None:
        """Shut down the worker threads, waiting for running transformations."""
        self._executor.shutdown(wait=True)
