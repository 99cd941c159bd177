"""Model lifecycle: asynchronous load with bounded automatic retry.

The controller owns the single classifier instance. Loading happens on a
thread; failures are retried on a cancellable timer until the attempt budget
is spent, after which the controller parks in ``FAILED`` until ``retry()``.

State diagram::

    UNINITIALIZED --start()--> LOADING --ok--> READY
                                  |  ^
                          failure |  | timer (attempt < max_attempts)
                                  v  |
                               (retrying)
                                  |
                                  +--attempt == max_attempts--> FAILED --retry()--> LOADING
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from labelscope.errors import ModelLoadError
from labelscope.ml.model_manager import MODEL_ALPHA, MODEL_VERSION

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from labelscope.config import Settings

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Loading failed. Retrying... (Attempt {attempt}/{max_attempts})"


class ClassifierModel(Protocol):
    """What the rest of the service needs from a loaded model."""

    @property
    def model_name(self) -> str: ...

    @property
    def labels(self) -> tuple[str, ...]: ...

    def predict(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]: ...


class ModelState(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class RetryState:
    """Automatic retry bookkeeping. ``attempt`` counts failed loads since the last reset."""

    max_attempts: int = 3
    delay: float = 2.0
    attempt: int = 0

    def reset(self) -> None:
        self.attempt = 0


@dataclass(frozen=True)
class ModelStatus:
    state: ModelState
    attempt: int
    max_attempts: int
    message: str | None
    version: int = MODEL_VERSION
    alpha: float = MODEL_ALPHA
    model_name: str | None = None


class ModelLifecycleController:
    """Owns the shared classifier and drives its load/retry state machine.

    Only one load is ever in flight: ``start()`` is a no-op while a load task is
    running, and new attempts are issued only by the retry timer or ``retry()``.
    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        loader: Callable[[], ClassifierModel],
        *,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        self._loader = loader
        self._retry = RetryState(max_attempts=max_attempts, delay=retry_delay)
        self._state = ModelState.UNINITIALIZED
        self._model: ClassifierModel | None = None
        self._message: str | None = None
        self._load_task: asyncio.Task[None] | None = None
        self._retry_timer: asyncio.TimerHandle | None = None
        self._settled = asyncio.Event()
        self._listeners: list[Callable[[ModelStatus], None]] = []

    @classmethod
    def from_settings(cls, settings: Settings, loader: Callable[[], ClassifierModel]) -> ModelLifecycleController:
        return cls(
            loader,
            max_attempts=settings.model_load_max_attempts,
            retry_delay=settings.model_load_retry_delay,
        )

    # -- Read-only accessors --------------------------------------------------

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def model(self) -> ClassifierModel | None:
        """The loaded classifier, or ``None`` unless the state is ``READY``."""
        if self._state is not ModelState.READY:
            return None
        return self._model

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def attempt(self) -> int:
        return self._retry.attempt

    @property
    def max_attempts(self) -> int:
        return self._retry.max_attempts

    @property
    def load_in_flight(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    def status(self) -> ModelStatus:
        return ModelStatus(
            state=self._state,
            attempt=self._retry.attempt,
            max_attempts=self._retry.max_attempts,
            message=self._message,
            model_name=self._model.model_name if self._model is not None else None,
        )

    def add_listener(self, callback: Callable[[ModelStatus], None]) -> None:
        """Call ``callback`` with the new status after every transition."""
        self._listeners.append(callback)

    # -- Transitions ----------------------------------------------------------

    def start(self) -> bool:
        """Begin one asynchronous load attempt.

        Returns ``False`` without doing anything if a load is already in flight.
        """
        if self.load_in_flight:
            logger.debug("Model load already in flight, not starting another")
            return False

        self._cancel_retry_timer()
        self._state = ModelState.LOADING
        self._model = None
        self._message = None
        self._settled.clear()

        logger.info(
            "Loading model version=%s alpha=%s (attempt %d/%d)",
            MODEL_VERSION,
            MODEL_ALPHA,
            self._retry.attempt + 1,
            self._retry.max_attempts,
        )
        self._load_task = asyncio.get_running_loop().create_task(self._load(), name="model-load")
        self._notify()
        return True

    def retry(self) -> bool:
        """Reset the attempt counter and start loading again, whatever the current state."""
        logger.info("Manual model retry requested (state=%s)", self._state)
        self._cancel_retry_timer()
        self._retry.reset()
        return self.start()

    def shutdown(self) -> None:
        """Cancel any pending retry and in-flight load, and drop the model."""
        self._cancel_retry_timer()
        if self._load_task is not None:
            self._load_task.cancel()
            self._load_task = None
        self._model = None
        self._state = ModelState.UNINITIALIZED
        self._message = None
        logger.info("Model lifecycle shut down")
        self._notify()

    async def wait_until_settled(self, timeout: float | None = None) -> ModelState:
        """Wait until the controller reaches ``READY`` or ``FAILED``.

        Raises:
            TimeoutError: If ``timeout`` elapses first.
        """
        await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        return self._state

    # -- Internal -------------------------------------------------------------

    async def _load(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            model = await loop.run_in_executor(None, self._loader)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._load_task = None
            self._on_failure(exc)
        else:
            self._load_task = None
            self._on_success(model)

    def _on_success(self, model: ClassifierModel) -> None:
        self._model = model
        self._state = ModelState.READY
        self._message = None
        self._retry.reset()
        self._settled.set()
        logger.info("Model %s ready", model.model_name)
        self._notify()

    def _on_failure(self, exc: Exception) -> None:
        self._retry.attempt += 1
        if isinstance(exc, ModelLoadError):
            logger.warning("Model load attempt %d failed: %s", self._retry.attempt, exc)
        else:
            logger.exception("Model load attempt %d failed", self._retry.attempt, exc_info=exc)

        if self._retry.attempt < self._retry.max_attempts:
            self._message = RETRY_MESSAGE.format(
                attempt=self._retry.attempt,
                max_attempts=self._retry.max_attempts,
            )
            self._retry_timer = asyncio.get_running_loop().call_later(self._retry.delay, self._on_retry_timer)
            self._notify()
            return

        self._state = ModelState.FAILED
        self._message = ModelLoadError.message
        self._settled.set()
        logger.error("Model load failed %d times, giving up until manual retry", self._retry.attempt)
        self._notify()

    def _on_retry_timer(self) -> None:
        self._retry_timer = None
        self.start()

    def _cancel_retry_timer(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _notify(self) -> None:
        status = self.status()
        for callback in self._listeners:
            try:
                callback(status)
            except Exception:
                logger.exception("Model status listener %r failed", callback)
