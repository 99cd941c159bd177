"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from labelscope.config import Settings
    from labelscope.ml.lifecycle import ClassifierModel

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labelscope.api.routes import router
from labelscope.config import get_settings
from labelscope.ml.classifier import ClassificationInvoker
from labelscope.ml.decoder import ImageDecoder
from labelscope.ml.lifecycle import ModelLifecycleController
from labelscope.ml.model_manager import MODEL_ALPHA, MODEL_VERSION, OnnxModelLoader
from labelscope.ml.workers import WorkerPool
from labelscope.pipeline import PipelineStateMachine

logger = logging.getLogger(__name__)


def init_app_state(
    app: FastAPI,
    settings: Settings,
    loader: Callable[[], ClassifierModel] | None = None,
) -> None:
    """Build the worker pool, model controller and pipeline and attach them to ``app.state``.

    ``loader`` defaults to downloading the fixed MobileNet export. The model
    load itself is not started here.
    """
    worker_pool = WorkerPool(settings)
    controller = ModelLifecycleController.from_settings(settings, loader or OnnxModelLoader(settings))
    pipeline = PipelineStateMachine(
        controller,
        ImageDecoder(worker_pool, max_pixels=settings.max_image_pixels),
        ClassificationInvoker(worker_pool, top_k=settings.top_k),
        max_file_size=settings.max_file_size,
    )

    app.state.settings = settings
    app.state.worker_pool = worker_pool
    app.state.model_controller = controller
    app.state.pipeline = pipeline


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start loading the model on startup, cancel and clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LabelScope (device=%s, max_concurrent=%s, model=v%s alpha=%s, top_k=%s)",
        settings.device,
        settings.max_concurrent,
        MODEL_VERSION,
        MODEL_ALPHA,
        settings.top_k,
    )

    init_app_state(app, settings)
    controller: ModelLifecycleController = app.state.model_controller
    controller.start()

    logger.info("LabelScope accepting requests")
    yield

    logger.info("Shutting down LabelScope")
    controller.shutdown()
    worker_pool: WorkerPool = app.state.worker_pool
    worker_pool.shutdown()
    logger.info("LabelScope shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LabelScope",
        description="Local image classification with a MobileNet model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("labelscope.main:app", host=settings.host, port=settings.port)
