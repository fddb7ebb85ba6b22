"""Bounded execution of blocking pipeline calls for the HTTP API.

Coordinator and store calls block on remote services, so the API hands them
to a thread pool sized like its admission semaphore. A request that cannot
get a slot within ``acquire_timeout`` seconds fails with ``TimeoutError``,
which the routes turn into a 503.
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

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ACQUIRE_TIMEOUT: float = 5.0


class ProcessingPool:
    """Admits at most ``max_concurrent`` blocking calls at a time."""

    def __init__(self, max_concurrent: int, acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT) -> None:
        self._slots = asyncio.Semaphore(max_concurrent)
        self._acquire_timeout = acquire_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="detectx-pipeline")
        self._lock = threading.Lock()
        self._waiting = 0
        self._running = 0

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        with self._lock:
            return self._waiting

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Call ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If every slot stays busy for ``acquire_timeout`` seconds.
        """
        async with self._slot():
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    def _adjust(self, waiting: int = 0, running: int = 0) -> None:
        with self._lock:
            self._waiting += waiting
            self._running += running

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        self._adjust(waiting=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._acquire_timeout)
        except TimeoutError:
            logger.warning("No processing slot free after %.1fs", self._acquire_timeout)
            raise
        finally:
            self._adjust(waiting=-1)

        self._adjust(running=1)
        try:
            yield
        finally:
            self._slots.release()
            self._adjust(running=-1)
