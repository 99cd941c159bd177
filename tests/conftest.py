"""Shared fixtures: fake models and loaders, in-memory images, worker pools."""

from __future__ import annotations

import io
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from labelscope.config import Settings
from labelscope.errors import ModelLoadError
from labelscope.ml.workers import WorkerPool

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray

LABELS: tuple[str, ...] = ("tabby cat", "golden retriever", "red fox", "barn owl", "honeybee", "ant", "elk")
PROBABILITIES: tuple[float, ...] = (0.05, 0.40, 0.20, 0.20, 0.10, 0.03, 0.02)


def make_image_bytes(width: int = 32, height: int = 24, fmt: str = "PNG", color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/labelscope_test_models",
        "max_concurrent": 2,
        "model_load_max_attempts": 3,
        "model_load_retry_delay": 0.01,
        "top_k": 5,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


class FakeModel:
    """Stands in for ``MobileNetClassifier`` with a fixed score vector."""

    def __init__(
        self,
        labels: tuple[str, ...] = LABELS,
        probabilities: tuple[float, ...] = PROBABILITIES,
        name: str = "fake_mobilenet",
    ) -> None:
        self._labels = labels
        self._probabilities = np.asarray(probabilities, dtype=np.float32)
        self._name = name
        self.calls = 0

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def predict(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        self.calls += 1
        return self._probabilities.copy()


class FlakyLoader:
    """Model loader that fails ``failures`` times before succeeding.

    With ``failures=None`` it never succeeds. Calls run on executor threads,
    so the counter is guarded.
    """

    def __init__(self, failures: int | None = 0, model: FakeModel | None = None) -> None:
        self.failures = failures
        self.model = model or FakeModel()
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self) -> FakeModel:
        with self._lock:
            self.calls += 1
            call = self.calls
        if self.failures is None or call <= self.failures:
            raise ModelLoadError(f"simulated failure #{call}")
        return self.model


class BlockingLoader:
    """Model loader that blocks its worker thread until ``release()`` is called."""

    def __init__(self, model: FakeModel | None = None) -> None:
        self.model = model or FakeModel()
        self.calls = 0
        self._gate = threading.Event()

    def release(self) -> None:
        self._gate.set()

    def __call__(self) -> FakeModel:
        self.calls += 1
        self._gate.wait(timeout=5)
        return self.model


class BytesSource:
    """In-memory ``ImageSource``."""

    def __init__(self, data: bytes, content_type: str | None, filename: str | None = "upload.png") -> None:
        self._data = data
        self.content_type = content_type
        self.filename = filename
        self.reads = 0

    async def read(self) -> bytes:
        self.reads += 1
        return self._data


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def worker_pool(settings: Settings) -> Iterator[WorkerPool]:
    pool = WorkerPool(settings)
    yield pool
    pool.shutdown()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes()
