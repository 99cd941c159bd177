"""Classification invoker: run the loaded model and rank its output."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from labelscope.errors import InferenceError, ModelNotReadyError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from labelscope.ml.decoder import DecodedImage
    from labelscope.ml.lifecycle import ClassifierModel
    from labelscope.ml.workers import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5


@dataclass(frozen=True)
class Prediction:
    """A single label with its probability."""

    label: str
    probability: float


def rank(probabilities: NDArray[np.float32], labels: tuple[str, ...], top_k: int) -> tuple[Prediction, ...]:
    """Return the ``top_k`` most probable labels, highest first.

    The sort is stable, so equal probabilities keep the model's label order.
    """
    scores = np.asarray(probabilities, dtype=np.float64).reshape(-1)
    if scores.shape[0] != len(labels):
        raise ValueError(f"{scores.shape[0]} probabilities for {len(labels)} labels")
    if not np.all(np.isfinite(scores)):
        raise ValueError("model produced non-finite probabilities")

    order = np.argsort(-scores, kind="stable")[:top_k]
    return tuple(
        Prediction(label=labels[i], probability=float(np.clip(scores[i], 0.0, 1.0)))
        for i in order
    )


class ClassificationInvoker:
    """Runs inference on the worker pool and turns scores into ``Prediction``s."""

    def __init__(self, pool: WorkerPool, top_k: int = DEFAULT_TOP_K) -> None:
        self._pool = pool
        self._top_k = top_k

    async def classify(
        self,
        model: ClassifierModel | None,
        image: DecodedImage,
        top_k: int | None = None,
    ) -> tuple[Prediction, ...]:
        """Classify ``image`` with ``model``.

        Raises:
            ModelNotReadyError: ``model`` is ``None``; no inference is attempted.
            InferenceError: Inference failed, produced unusable output, or no worker
                was free in time.
        """
        if model is None:
            raise ModelNotReadyError("classification requested before the model was ready")

        k = self._top_k if top_k is None else top_k
        try:
            probabilities = await self._pool.run(model.predict, image.pixels, busy_error=InferenceError)
            predictions = rank(probabilities, model.labels, k)
        except InferenceError:
            raise
        except Exception as exc:
            logger.exception("Inference with %s failed", model.model_name)
            raise InferenceError(str(exc)) from exc

        logger.info(
            "Classified %dx%d image: %s",
            image.width,
            image.height,
            ", ".join(f"{p.label}={p.probability:.3f}" for p in predictions),
        )
        return predictions
