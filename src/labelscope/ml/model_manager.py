"""Model loading: download MobileNet from the Hugging Face Hub and open it in ONNX Runtime.

The classifier configuration (architecture version and width multiplier) is
fixed at import time. ``OnnxModelLoader.load`` is blocking and is meant to be
driven by the lifecycle controller from a worker thread.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from labelscope.errors import ModelLoadError
from labelscope.ml.preprocessing import softmax, to_model_input

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from labelscope.config import Settings

logger = logging.getLogger(__name__)

MODEL_VERSION: int = 2
MODEL_ALPHA: float = 1.0


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a MobileNet ONNX export."""

    name: str
    version: int
    alpha: float
    repo_id: str
    filename: str
    labels_filename: str
    input_size: int
    resize_size: int


MODEL_REGISTRY: dict[tuple[int, float], ModelSpec] = {
    (2, 1.0): ModelSpec(
        name="mobilenet_v2_1.0_224",
        version=2,
        alpha=1.0,
        repo_id="onnx-community/mobilenet_v2_1.0_224",
        filename="onnx/model.onnx",
        labels_filename="config.json",
        input_size=224,
        resize_size=256,
    ),
}


def get_spec(version: int = MODEL_VERSION, alpha: float = MODEL_ALPHA) -> ModelSpec:
    try:
        return MODEL_REGISTRY[(version, alpha)]
    except KeyError:
        raise KeyError(f"Unknown MobileNet configuration: version={version} alpha={alpha}") from None


def read_labels(config_path: Path) -> list[str]:
    """Read the ordered class labels from a Hugging Face ``config.json``."""
    config = json.loads(config_path.read_text(encoding="utf-8"))
    id2label: dict[str, str] = config["id2label"]
    return [label for _, label in sorted(id2label.items(), key=lambda item: int(item[0]))]


class MobileNetClassifier:
    """A loaded classifier: ONNX session plus its label vocabulary.

    Instances are never mutated after construction.
    """

    def __init__(self, spec: ModelSpec, session: InferenceSession, labels: list[str]) -> None:
        self._spec = spec
        self._session = session
        self._labels = tuple(labels)
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def predict(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Return class probabilities in the model's native label order.

        Args:
            pixels: HxWx3 RGB uint8 array.
        """
        batch = to_model_input(pixels, crop_to=self._spec.input_size, resize_to=self._spec.resize_size)
        (logits,) = self._session.run(None, {self._input_name: batch})[:1]
        scores = np.asarray(logits, dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(self._labels):
            raise ValueError(f"model returned {scores.shape[0]} scores for {len(self._labels)} labels")
        return softmax(scores)


class OnnxModelLoader:
    """Downloads the fixed MobileNet export and builds a ``MobileNetClassifier``."""

    def __init__(self, settings: Settings, spec: ModelSpec | None = None) -> None:
        self._settings = settings
        self._spec = spec or get_spec()
        self._models_dir = Path(settings.models_dir)
        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    def __call__(self) -> MobileNetClassifier:
        return self.load()

    def load(self) -> MobileNetClassifier:
        """Download (if needed) and open the model.

        Raises:
            ModelLoadError: If downloading, reading labels or creating the session fails.
        """
        try:
            model_path = self._download(self._spec.filename)
            labels = read_labels(self._download(self._spec.labels_filename))
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"{self._spec.name}: {exc}") from exc

        logger.info("Loaded %s with %d labels (providers=%s)", self._spec.name, len(labels), self._providers)
        return MobileNetClassifier(self._spec, session, labels)

    # -- Internal -----------------------------------------------------------

    def _download(self, filename: str) -> Path:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        path = Path(
            hf_hub_download(
                repo_id=self._spec.repo_id,
                filename=filename,
                local_dir=str(self._models_dir / self._spec.name),
            )
        )
        logger.debug("Fetched %s/%s to %s", self._spec.repo_id, filename, path)
        return path

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        # Input shape is fixed at (1, 3, size, size), so planned buffers are reused across calls
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
