"""Pydantic response schemas for the LabelScope API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from labelscope.errors import ErrorKind
from labelscope.ml.lifecycle import ModelState
from labelscope.pipeline import PipelinePhase

if TYPE_CHECKING:
    from labelscope.ml.lifecycle import ModelStatus
    from labelscope.pipeline import PipelineSnapshot, UploadedImage


class PredictionItem(BaseModel):
    """A single label with its probability."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)


class ImageInfo(BaseModel):
    """Metadata about the image currently held by the pipeline."""

    filename: str | None
    content_type: str
    size: int = Field(description="Size of the submitted file in bytes")
    width: int | None = Field(default=None, description="Decoded width in pixels, once decoded")
    height: int | None = Field(default=None, description="Decoded height in pixels, once decoded")
    format: str | None = None

    @classmethod
    def from_uploaded(cls, image: UploadedImage) -> ImageInfo:
        decoded = image.decoded
        return cls(
            filename=image.raw.filename,
            content_type=image.raw.declared_type,
            size=image.raw.size,
            width=decoded.width if decoded else None,
            height=decoded.height if decoded else None,
            format=decoded.format if decoded else None,
        )


class ModelStatusResponse(BaseModel):
    """State of the classification model."""

    state: ModelState
    attempt: int = Field(ge=0)
    max_attempts: int = Field(ge=1)
    message: str | None
    version: int
    alpha: float
    model_name: str | None

    @classmethod
    def from_status(cls, status: ModelStatus) -> ModelStatusResponse:
        return cls(
            state=status.state,
            attempt=status.attempt,
            max_attempts=status.max_attempts,
            message=status.message,
            version=status.version,
            alpha=status.alpha,
            model_name=status.model_name,
        )


class PipelineStateResponse(BaseModel):
    """Everything the presentation layer needs to render the current phase."""

    phase: PipelinePhase
    stage_phase: PipelinePhase
    message: str | None
    error_kind: ErrorKind | None
    image: ImageInfo | None
    predictions: list[PredictionItem]
    generation: int
    model: ModelStatusResponse

    @classmethod
    def from_snapshot(cls, snapshot: PipelineSnapshot) -> PipelineStateResponse:
        return cls(
            phase=snapshot.phase,
            stage_phase=snapshot.stage_phase,
            message=snapshot.message,
            error_kind=snapshot.error_kind,
            image=ImageInfo.from_uploaded(snapshot.image) if snapshot.image else None,
            predictions=[PredictionItem(label=p.label, probability=p.probability) for p in snapshot.predictions],
            generation=snapshot.generation,
            model=ModelStatusResponse.from_status(snapshot.model),
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    device: str
    model_state: ModelState
    running_jobs: int
    queued_jobs: int
