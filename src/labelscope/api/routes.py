"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Header, Request, UploadFile, status

from labelscope.api.schemas import HealthResponse, ModelStatusResponse, PipelineStateResponse
from labelscope.ml.image_source import RequestBodySource

if TYPE_CHECKING:
    from labelscope.config import Settings
    from labelscope.ml.lifecycle import ModelLifecycleController
    from labelscope.ml.workers import WorkerPool
    from labelscope.pipeline import PipelineStateMachine

router = APIRouter(prefix="/api/v1")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_pipeline(request: Request) -> PipelineStateMachine:
    pipeline: PipelineStateMachine = request.app.state.pipeline
    return pipeline


def _get_controller(request: Request) -> ModelLifecycleController:
    controller: ModelLifecycleController = request.app.state.model_controller
    return controller


def _get_worker_pool(request: Request) -> WorkerPool:
    pool: WorkerPool = request.app.state.worker_pool
    return pool


@router.post(
    "/image",
    response_model=PipelineStateResponse,
    summary="Submit an image picked from a file dialog",
)
async def submit_picked_image(request: Request, file: UploadFile) -> PipelineStateResponse:
    """Classify a multipart upload. Pipeline failures are reported in the returned phase."""
    snapshot = await _get_pipeline(request).submit(file)
    return PipelineStateResponse.from_snapshot(snapshot)


@router.put(
    "/image",
    response_model=PipelineStateResponse,
    summary="Submit an image dropped onto the page",
)
async def submit_dropped_image(
    request: Request,
    x_filename: Annotated[str | None, Header()] = None,
) -> PipelineStateResponse:
    """Classify the raw request body, typed by its Content-Type header."""
    snapshot = await _get_pipeline(request).submit(RequestBodySource(request, filename=x_filename))
    return PipelineStateResponse.from_snapshot(snapshot)


@router.delete(
    "/image",
    response_model=PipelineStateResponse,
    summary="Clear the current image and results",
)
async def clear_image(request: Request) -> PipelineStateResponse:
    return PipelineStateResponse.from_snapshot(_get_pipeline(request).clear())


@router.get(
    "/state",
    response_model=PipelineStateResponse,
    summary="Current pipeline phase",
)
async def get_state(request: Request) -> PipelineStateResponse:
    return PipelineStateResponse.from_snapshot(_get_pipeline(request).snapshot())


@router.get(
    "/model",
    response_model=ModelStatusResponse,
    summary="Model lifecycle status",
)
async def get_model_status(request: Request) -> ModelStatusResponse:
    return ModelStatusResponse.from_status(_get_controller(request).status())


@router.post(
    "/model/retry",
    response_model=ModelStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry loading the model",
)
async def retry_model(request: Request) -> ModelStatusResponse:
    """Reset the retry budget and start a new load attempt."""
    controller = _get_controller(request)
    controller.retry()
    return ModelStatusResponse.from_status(controller.status())


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_worker_pool(request)
    return HealthResponse(
        status="ok",
        device=settings.device,
        model_state=_get_controller(request).state,
        running_jobs=pool.running,
        queued_jobs=pool.waiting,
    )
