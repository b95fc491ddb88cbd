"""Quantized image classification on top of an ONNX Runtime session.

The model takes a single uint8 NHWC image and returns one uint8 score per
label. Scores are dequantized to ``[0, 1]`` before top-K selection.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from visiontag.errors import ExternalServiceError
from visiontag.ml.preprocessing import encode_image
from visiontag.ml.top_k import ClassificationResult, dequantize_scores, select_top_k

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession
    from PIL import Image

    from visiontag.ml.preprocessing import TensorSpec

__all__ = ["ClassificationResult", "ImageClassifier", "QuantizedImageClassifier"]

logger = logging.getLogger(__name__)


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: Image.Image | NDArray[np.uint8], top_k: int | None = None) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Args:
            image: Pillow image or HxWx3 RGB uint8 array.
            top_k: Number of results; defaults to the classifier's own setting.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


class QuantizedImageClassifier:
    """Encode, run, dequantize, select."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        input_spec: TensorSpec,
        top_k: int = 3,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = tuple(labels)
        self._input_spec = input_spec
        self._top_k = top_k
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def classify(self, image: Image.Image | NDArray[np.uint8], top_k: int | None = None) -> list[ClassificationResult]:
        tensor = encode_image(image, self._input_spec)

        try:
            outputs = self._session.run(None, {self._input_name: tensor.as_array()})
        except Exception as exc:
            raise ExternalServiceError(f"Inference failed for model '{self._model_name}'") from exc

        scores = dequantize_scores(np.asarray(outputs[0])[0])
        if len(scores) != len(self._labels):
            raise ExternalServiceError(
                f"Model '{self._model_name}' returned {len(scores)} scores for {len(self._labels)} labels"
            )
        if not np.isfinite(scores).all():
            raise ExternalServiceError(f"Model '{self._model_name}' returned non-finite scores")

        results = select_top_k(scores, self._labels, self._top_k if top_k is None else top_k)
        logger.debug("Classified with %s: %s", self._model_name, [r.format() for r in results])
        return results
