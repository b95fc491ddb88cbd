"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from visiontag.api.middleware import verify_api_key
from visiontag.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
    RecognizeTextResponse,
    TextLineResult,
)
from visiontag.errors import (
    ExternalServiceError,
    ImageDecodeError,
    InvalidArgumentError,
    InvalidDimensionsError,
    ModelUnavailableError,
    UnsupportedPixelFormatError,
)
from visiontag.ml.image_classifier import QuantizedImageClassifier
from visiontag.ml.model_manager import MODEL_REGISTRY, get_model_spec
from visiontag.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from collections.abc import Callable

    from PIL import Image

    from visiontag.config import Settings
    from visiontag.ml.image_classifier import ClassificationResult
    from visiontag.ml.inference import InferencePool
    from visiontag.ml.model_manager import ModelManager
    from visiontag.ml.text_recognizer import TextRecognizer, TextResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_text_recognizer(request: Request) -> TextRecognizer:
    recognizer: TextRecognizer = request.app.state.text_recognizer
    return recognizer


def _decode(image_bytes: bytes, settings: Settings) -> Image.Image:
    return decode_image(
        image_bytes,
        max_file_size=settings.max_file_size,
        max_image_pixels=settings.max_image_pixels,
    )


def _classify(
    manager: ModelManager, model_name: str, image_bytes: bytes, settings: Settings, top_k: int
) -> list[ClassificationResult]:
    """Decode the upload, build a classifier from cached model state and run it (pool thread)."""
    image = _decode(image_bytes, settings)
    try:
        spec = get_model_spec(model_name)
    except KeyError as exc:
        raise ModelUnavailableError(str(exc.args[0])) from exc
    classifier = QuantizedImageClassifier(
        model_name=model_name,
        session=manager.get_session(model_name),
        labels=manager.get_labels(model_name),
        input_spec=spec.input_spec,
    )
    return classifier.classify(image, top_k=top_k)


def _recognize(recognizer: TextRecognizer, image_bytes: bytes, settings: Settings) -> TextResult:
    """Decode the upload and run OCR on it (pool thread)."""
    return recognizer.recognize(_decode(image_bytes, settings))


async def _run_in_pool(pool: InferencePool, func: Callable[..., T], *args: object) -> T:
    """Run work in the inference pool and map failures to HTTP errors."""
    try:
        return await pool.run(func, *args)
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, retry later",
        ) from exc
    except (ImageDecodeError, UnsupportedPixelFormatError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (InvalidArgumentError, InvalidDimensionsError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ModelUnavailableError as exc:
        logger.warning("Model unavailable: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ExternalServiceError as exc:
        logger.warning("External service failure: %s (cause: %r)", exc, exc.__cause__)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1, le=100, description="Number of tags to return")] = None,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return the top-K tags."""
    settings = _get_settings(request)
    image_bytes = await file.read()
    model_name = settings.classification_model
    k = top_k if top_k is not None else settings.top_k

    results = await _run_in_pool(
        _get_inference_pool(request), _classify, _get_model_manager(request), model_name, image_bytes, settings, k
    )
    logger.info("Classified %s with %s: %s", file.filename, model_name, [r.format() for r in results])
    return ClassifyImageResponse(
        model=model_name,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
    )


@router.post(
    "/recognize-text",
    response_model=RecognizeTextResponse,
    responses=_ERROR_RESPONSES,
    summary="Recognize text in an image",
)
async def recognize_text(request: Request, file: UploadFile) -> RecognizeTextResponse:
    """Run OCR on an uploaded image."""
    settings = _get_settings(request)
    image_bytes = await file.read()
    recognizer = _get_text_recognizer(request)

    result = await _run_in_pool(_get_inference_pool(request), _recognize, recognizer, image_bytes, settings)
    logger.info("Recognized %d lines in %s", len(result.lines), file.filename)
    return RecognizeTextResponse(
        text=result.text,
        lines=[
            TextLineResult(text=line.text, bbox=list(line.bbox), confidence=line.confidence)
            for line in result.lines
        ],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        if name == settings.classification_model:
            model_status = "active"
        elif not settings.allow_downloads and not manager.has_local_copy(name):
            model_status = "not_downloaded"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=name,
                task=spec.task,
                status=model_status,
                license=spec.license,
                input_shape=list(spec.input_spec.shape),
            )
        )

    return ModelsResponse(models=models)
