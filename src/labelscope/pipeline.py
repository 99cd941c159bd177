"""Submission pipeline: ingest -> decode -> classify, exposed as a single phase.

The presentation layer only ever reads ``PipelineStateMachine.snapshot()``.
Stage phases::

    IDLE -> VALIDATING -> DECODING -> ANALYZING -> RESULTS
                |             |            |
        VALIDATION_ERROR  DECODE_ERROR  ANALYSIS_ERROR

While the model is not ready the unified phase is ``MODEL_LOADING`` or
``MODEL_FAILED``; the stage phase is still tracked underneath.

Every submit and clear bumps a generation counter. Work resumed after an
``await`` only writes state if its generation is still current, so a slow
decode or inference for a superseded image cannot overwrite the newer one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from labelscope.errors import ErrorKind, LabelScopeError, ModelNotReadyError, UnsupportedTypeError
from labelscope.ml.image_source import ingest, is_image_type
from labelscope.ml.lifecycle import ModelState

if TYPE_CHECKING:
    from labelscope.ml.classifier import ClassificationInvoker, Prediction
    from labelscope.ml.decoder import DecodedImage, ImageDecoder
    from labelscope.ml.image_source import ImageSource, RawImage
    from labelscope.ml.lifecycle import ModelLifecycleController, ModelStatus

logger = logging.getLogger(__name__)


class PipelinePhase(StrEnum):
    MODEL_LOADING = "model_loading"
    MODEL_FAILED = "model_failed"
    IDLE = "idle"
    VALIDATING = "validating"
    VALIDATION_ERROR = "validation_error"
    DECODING = "decoding"
    DECODE_ERROR = "decode_error"
    ANALYZING = "analyzing"
    ANALYSIS_ERROR = "analysis_error"
    RESULTS = "results"


@dataclass(frozen=True)
class UploadedImage:
    raw: RawImage
    decoded: DecodedImage | None = None


@dataclass(frozen=True)
class PipelineSnapshot:
    """Immutable view of the pipeline handed to the presentation layer."""

    phase: PipelinePhase
    stage_phase: PipelinePhase
    message: str | None
    error_kind: ErrorKind | None
    image: UploadedImage | None
    predictions: tuple[Prediction, ...]
    generation: int
    model: ModelStatus


class PipelineStateMachine:
    """Sequences one image at a time through ingestion, decoding and classification."""

    def __init__(
        self,
        controller: ModelLifecycleController,
        decoder: ImageDecoder,
        invoker: ClassificationInvoker,
        *,
        max_file_size: int,
    ) -> None:
        self._controller = controller
        self._decoder = decoder
        self._invoker = invoker
        self._max_file_size = max_file_size

        self._generation = 0
        self._phase = PipelinePhase.IDLE
        self._error: LabelScopeError | None = None
        self._image: UploadedImage | None = None
        self._predictions: tuple[Prediction, ...] = ()

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> PipelineSnapshot:
        model_status = self._controller.status()
        stage_message = self._error.message if self._error else None
        if model_status.state in (ModelState.UNINITIALIZED, ModelState.LOADING):
            phase, message = PipelinePhase.MODEL_LOADING, model_status.message or stage_message
        elif model_status.state is ModelState.FAILED:
            phase, message = PipelinePhase.MODEL_FAILED, model_status.message
        else:
            phase, message = self._phase, stage_message

        return PipelineSnapshot(
            phase=phase,
            stage_phase=self._phase,
            message=message,
            error_kind=self._error.kind if self._error else None,
            image=self._image,
            predictions=self._predictions,
            generation=self._generation,
            model=model_status,
        )

    def clear(self) -> PipelineSnapshot:
        """Drop the current image and predictions and return to ``IDLE``."""
        self._generation += 1
        self._phase = PipelinePhase.IDLE
        self._error = None
        self._image = None
        self._predictions = ()
        logger.info("Pipeline cleared (generation %d)", self._generation)
        return self.snapshot()

    async def submit(self, source: ImageSource) -> PipelineSnapshot:
        """Run ``source`` through every stage and return the resulting snapshot.

        A submission supersedes any pipeline still in flight. The returned
        snapshot always describes the latest submission, which is not
        necessarily this one.
        """
        self._generation += 1
        generation = self._generation

        if not is_image_type(source.content_type):
            # Rejected before anything is read. A finished result stays, even across
            # repeated rejections; an unfinished image is dropped.
            if not self._predictions:
                self._image = None
                self._predictions = ()
            self._phase = PipelinePhase.VALIDATION_ERROR
            self._error = UnsupportedTypeError(f"declared type {source.content_type!r}")
            logger.info("Rejected %s: unsupported type %r", source.filename or "<body>", source.content_type)
            return self.snapshot()

        self._phase = PipelinePhase.VALIDATING
        self._error = None
        self._image = None
        self._predictions = ()

        try:
            raw = await ingest(source, max_bytes=self._max_file_size)
        except LabelScopeError as exc:
            return self._fail(generation, PipelinePhase.VALIDATION_ERROR, exc)
        if not self._is_current(generation):
            return self.snapshot()

        self._image = UploadedImage(raw=raw)
        self._phase = PipelinePhase.DECODING
        try:
            decoded = await self._decoder.decode(raw)
        except LabelScopeError as exc:
            return self._fail(generation, PipelinePhase.DECODE_ERROR, exc)
        if not self._is_current(generation):
            return self.snapshot()

        self._image = replace(self._image, decoded=decoded)
        model = self._controller.model
        if model is None:
            return self._fail(generation, PipelinePhase.ANALYSIS_ERROR, ModelNotReadyError())

        self._phase = PipelinePhase.ANALYZING
        try:
            predictions = await self._invoker.classify(model, decoded)
        except LabelScopeError as exc:
            return self._fail(generation, PipelinePhase.ANALYSIS_ERROR, exc)
        if not self._is_current(generation):
            return self.snapshot()

        self._predictions = predictions
        self._phase = PipelinePhase.RESULTS
        logger.info("Generation %d finished with %d predictions", generation, len(predictions))
        return self.snapshot()

    def _is_current(self, generation: int) -> bool:
        if generation == self._generation:
            return True
        logger.debug("Dropping result of superseded generation %d (current %d)", generation, self._generation)
        return False

    def _fail(self, generation: int, phase: PipelinePhase, exc: LabelScopeError) -> PipelineSnapshot:
        if self._is_current(generation):
            self._phase = phase
            self._error = exc
            logger.info("Generation %d failed in %s: %s (%s)", generation, phase, exc.kind, exc)
        return self.snapshot()
