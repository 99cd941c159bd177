"""Tests for ranking and the classification invoker."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
from conftest import LABELS, FakeModel, make_image_bytes

from labelscope.errors import InferenceError, ModelNotReadyError
from labelscope.ml.classifier import ClassificationInvoker, rank
from labelscope.ml.decoder import decode_bytes

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from labelscope.ml.decoder import DecodedImage
    from labelscope.ml.workers import WorkerPool


@pytest.fixture()
def image() -> DecodedImage:
    return decode_bytes(make_image_bytes(), max_pixels=10_000)


class _BrokenModel(FakeModel):
    def predict(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        raise RuntimeError("onnx runtime exploded")


class TestRank:
    def test_sorted_descending_and_truncated(self) -> None:
        probs = np.array([0.1, 0.5, 0.05, 0.3, 0.05], dtype=np.float32)
        ranked = rank(probs, ("a", "b", "c", "d", "e"), top_k=3)
        assert [p.label for p in ranked] == ["b", "d", "a"]
        assert all(x.probability >= y.probability for x, y in zip(ranked, ranked[1:], strict=False))

    def test_ties_keep_native_order(self) -> None:
        probs = np.array([0.2, 0.3, 0.2, 0.3], dtype=np.float32)
        ranked = rank(probs, ("w", "x", "y", "z"), top_k=4)
        assert [p.label for p in ranked] == ["x", "z", "w", "y"]

    def test_fewer_labels_than_top_k(self) -> None:
        ranked = rank(np.array([0.7, 0.3]), ("yes", "no"), top_k=5)
        assert len(ranked) == 2

    def test_length_mismatch_raises(self) -> None:
        with pytest.raises(ValueError, match="labels"):
            rank(np.array([0.5, 0.5]), ("only",), top_k=5)

    def test_non_finite_raises(self) -> None:
        with pytest.raises(ValueError, match="non-finite"):
            rank(np.array([np.nan, 0.5]), ("a", "b"), top_k=5)

    def test_probabilities_clipped(self) -> None:
        ranked = rank(np.array([1.0000001, -1e-9]), ("a", "b"), top_k=2)
        assert ranked[0].probability == 1.0
        assert ranked[1].probability == 0.0


class TestClassificationInvoker:
    async def test_top_five_sorted(self, worker_pool: WorkerPool, image: DecodedImage) -> None:
        invoker = ClassificationInvoker(worker_pool, top_k=5)
        predictions = await invoker.classify(FakeModel(), image)

        assert len(predictions) == 5
        assert predictions[0].label == "golden retriever"
        assert predictions[0].probability == pytest.approx(0.40)
        # red fox and barn owl tie at 0.20; red fox comes first in the label list.
        assert [p.label for p in predictions[1:3]] == ["red fox", "barn owl"]
        assert all(0.0 <= p.probability <= 1.0 for p in predictions)
        assert all(x.probability >= y.probability for x, y in zip(predictions, predictions[1:], strict=False))

    async def test_top_k_override(self, worker_pool: WorkerPool, image: DecodedImage) -> None:
        invoker = ClassificationInvoker(worker_pool)
        predictions = await invoker.classify(FakeModel(), image, top_k=2)
        assert len(predictions) == 2

    async def test_no_model_fails_without_inference(self, worker_pool: WorkerPool, image: DecodedImage) -> None:
        invoker = ClassificationInvoker(worker_pool)
        with pytest.raises(ModelNotReadyError):
            await invoker.classify(None, image)
        assert worker_pool.running == 0

    async def test_inference_failure(self, worker_pool: WorkerPool, image: DecodedImage) -> None:
        invoker = ClassificationInvoker(worker_pool)
        with pytest.raises(InferenceError, match="exploded"):
            await invoker.classify(_BrokenModel(), image)

    async def test_bad_output_shape(self, worker_pool: WorkerPool, image: DecodedImage) -> None:
        invoker = ClassificationInvoker(worker_pool)
        model = FakeModel(labels=LABELS[:3])
        with pytest.raises(InferenceError):
            await invoker.classify(model, image)

    async def test_model_not_mutated(self, worker_pool: WorkerPool, image: DecodedImage) -> None:
        invoker = ClassificationInvoker(worker_pool)
        model = FakeModel()
        labels_before = model.labels
        await invoker.classify(model, image)
        await invoker.classify(model, image)
        assert model.labels == labels_before
        assert model.calls == 2
