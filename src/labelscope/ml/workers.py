"""Worker threads for the two blocking pipeline stages: decoding and inference.

Both stages share one bounded pool, so at most ``max_concurrent`` Pillow
decodes and ONNX runs execute at once::

    decoder / invoker -> WorkerPool.run(..., busy_error=...) -> slot -> thread

A job that gets no slot within ``SLOT_TIMEOUT_SECONDS`` fails with the
``busy_error`` its stage passed in, so the pipeline records it as that
stage's error phase like any other decode or inference failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from labelscope.config import Settings
    from labelscope.errors import ErrorKind, LabelScopeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOT_TIMEOUT_SECONDS: float = 5.0


class WorkerPool:
    """Bounded thread pool shared by the decoder and the classification invoker.

    Job counts are kept per stage, keyed by the stage's error kind. They are
    only touched from the event loop, so they need no lock.
    """

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="labelscope-worker",
        )
        self._running: Counter[ErrorKind] = Counter()
        self._waiting: Counter[ErrorKind] = Counter()

    async def run(self, func: Callable[..., T], *args: object, busy_error: type[LabelScopeError]) -> T:
        """Run ``func(*args)`` on a worker thread for the stage owning ``busy_error``.

        Exceptions raised by ``func`` propagate unchanged.

        Raises:
            LabelScopeError: An instance of ``busy_error`` if no worker frees up in time.
        """
        async with self._slot(busy_error):
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)

    @contextlib.asynccontextmanager
    async def _slot(self, busy_error: type[LabelScopeError]) -> AsyncIterator[None]:
        stage = busy_error.kind
        self._waiting[stage] += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=SLOT_TIMEOUT_SECONDS)
        except TimeoutError as exc:
            logger.warning(
                "No worker for %s within %.1fs (%d running, %d waiting)",
                stage,
                SLOT_TIMEOUT_SECONDS,
                self.running,
                self.waiting,
            )
            raise busy_error(f"no worker free within {SLOT_TIMEOUT_SECONDS:.1f}s") from exc
        finally:
            self._waiting[stage] -= 1

        self._running[stage] += 1
        try:
            yield
        finally:
            self._running[stage] -= 1
            self._slots.release()

    @property
    def running(self) -> int:
        """Number of jobs currently executing on a worker thread."""
        return sum(self._running.values())

    @property
    def waiting(self) -> int:
        """Number of jobs waiting for a free worker."""
        return sum(self._waiting.values())

    def running_for(self, kind: ErrorKind) -> int:
        """Number of running jobs submitted by the stage that fails with ``kind``."""
        return self._running[kind]

    def shutdown(self) -> None:
        """Wait for running jobs and stop the worker threads."""
        self._executor.shutdown(wait=True)
