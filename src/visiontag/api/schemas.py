"""Pydantic request/response schemas for the VisionTag API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    model: str = Field(description="Name of the model that produced the tags")
    tags: list[ImageTag] = Field(description="Top-K tags sorted by confidence (descending)")


class TextLineResult(BaseModel):
    """A single recognized line of text."""

    text: str
    bbox: list[int] = Field(description="Pixel bounding box [x0, y0, x1, y1]")
    confidence: float | None = Field(default=None, description="Mean word confidence (0-100), if reported")


class RecognizeTextResponse(BaseModel):
    """Response for text recognition endpoint."""

    text: str
    lines: list[TextLineResult]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'image_classification'")
    status: str = Field(description="Model status: 'active', 'available', or 'not_downloaded'")
    license: str
    input_shape: list[int] = Field(description="NHWC input tensor shape")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
