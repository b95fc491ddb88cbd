"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from visiontag.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visiontag.api.routes import router
from visiontag.config import get_settings
from visiontag.ml.inference import InferencePool
from visiontag.ml.model_manager import OnnxModelManager
from visiontag.ml.text_recognizer import TesseractTextRecognizer

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


async def _evict_idle_models(manager: ModelManager) -> None:
    while True:
        await asyncio.sleep(EVICTION_INTERVAL_SECONDS)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting VisionTag (device=%s, max_concurrent=%s, model=%s, top_k=%s, ocr_language=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.top_k,
        settings.ocr_language,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.text_recognizer = TesseractTextRecognizer(language=settings.ocr_language, psm=settings.ocr_psm)

    eviction_task = asyncio.create_task(_evict_idle_models(model_manager))

    logger.info("VisionTag ready")
    yield

    logger.info("Shutting down VisionTag")
    eviction_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction_task
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("VisionTag shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VisionTag",
        description="Image tagging and text recognition API for captured camera frames",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
