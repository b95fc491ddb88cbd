"""Top-K label selection over a classifier's per-class scores."""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from visiontag.errors import InvalidArgumentError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import ArrayLike, NDArray


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float

    def format(self) -> str:
        """Render as ``label:confidence``."""
        return f"{self.label}:{self.confidence}"


def dequantize_scores(raw: bytes | ArrayLike) -> NDArray[np.float32]:
    """Map quantized uint8 scores to ``[0, 1]``.

    Integer input (including ``bytes``) is read as unsigned 8-bit and divided
    by 255. Floating point input is assumed to be normalized already and is
    returned as float32 unchanged.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        values = np.frombuffer(raw, dtype=np.uint8)
    else:
        values = np.asarray(raw).reshape(-1)

    if np.issubdtype(values.dtype, np.floating):
        return values.astype(np.float32)
    return (values.astype(np.int64) & 0xFF).astype(np.float32) / np.float32(255.0)


def select_top_k(
    scores: Sequence[float] | NDArray[np.floating],
    labels: Sequence[str],
    k: int,
) -> list[ClassificationResult]:
    """Return the ``k`` highest-scoring labels, best first.

    A bounded min-heap of capacity ``k`` is built fresh for every call: each
    ``(label, score)`` pair is pushed and the minimum is evicted whenever the
    heap grows past ``k``. Equal scores rank by first appearance, so the entry
    with the lower index wins.

    Args:
        scores: Per-class scores, index-aligned with ``labels``.
        labels: Class names.
        k: Maximum number of results, at least 1.

    Returns:
        ``min(k, len(scores))`` results sorted by descending confidence.

    Raises:
        InvalidArgumentError: If ``k < 1``, the lengths differ, or a score is
            NaN or infinite.
    """
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
        raise InvalidArgumentError(f"k must be a positive integer, got {k!r}")
    if len(scores) != len(labels):
        raise InvalidArgumentError(f"Got {len(scores)} scores for {len(labels)} labels")

    # Key (score, -index): among ties the later index is the smaller key.
    heap: list[tuple[float, int, str]] = []
    for index, (score, label) in enumerate(zip(_as_floats(scores), labels)):
        heapq.heappush(heap, (score, -index, label))
        if len(heap) > k:
            heapq.heappop(heap)

    drained = [heapq.heappop(heap) for _ in range(len(heap))]
    return [ClassificationResult(label=label, confidence=score) for score, _, label in reversed(drained)]


def format_results(results: Iterable[ClassificationResult]) -> list[str]:
    """Render results as ``label:confidence`` strings."""
    return [result.format() for result in results]


def _as_floats(scores: Sequence[float] | NDArray[np.floating]) -> list[float]:
    values = [float(value) for value in (scores.tolist() if isinstance(scores, np.ndarray) else scores)]
    for index, value in enumerate(values):
        if not math.isfinite(value):
            raise InvalidArgumentError(f"Score at index {index} is not finite: {value!r}")
    return values
