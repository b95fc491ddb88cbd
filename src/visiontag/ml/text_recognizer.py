"""Text recognition (OCR) backed by Tesseract."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import pytesseract
from PIL import Image

from visiontag.errors import ExternalServiceError
from visiontag.ml.preprocessing import as_pil_image

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextLine:
    """One recognized line with its pixel bounding box ``(x0, y0, x1, y1)``."""

    text: str
    bbox: tuple[int, int, int, int]
    confidence: float | None


@dataclass(frozen=True)
class TextResult:
    """Full recognized text plus its lines in reading order."""

    text: str
    lines: list[TextLine] = field(default_factory=list)


class TextRecognizer(Protocol):
    """Protocol for OCR engines."""

    def recognize(self, image: Image.Image | NDArray[np.uint8]) -> TextResult:
        """Recognize text in an image.

        Raises:
            ExternalServiceError: If the OCR engine fails.
        """
        ...


class TesseractTextRecognizer:
    """OCR through ``pytesseract.image_to_data``; words are grouped into lines."""

    def __init__(self, language: str = "eng", psm: int = 3) -> None:
        self.language = language
        self.psm = psm

    def recognize(self, image: Image.Image | NDArray[np.uint8]) -> TextResult:
        pil_image = _to_rgb(image)
        config = f"--oem 3 --psm {self.psm}"
        try:
            data = pytesseract.image_to_data(
                pil_image, lang=self.language, config=config, output_type=pytesseract.Output.DICT
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as exc:
            raise ExternalServiceError("Text recognition failed") from exc

        lines = _group_lines(data)
        result = TextResult(text="\n".join(line.text for line in lines), lines=lines)
        logger.debug("Recognized %d lines of text", len(lines))
        return result


def _to_rgb(image: Image.Image | NDArray[np.uint8]) -> Image.Image:
    return as_pil_image(image).convert("RGB")


def _group_lines(data: dict[str, list[Any]]) -> list[TextLine]:
    # (block, paragraph, line) -> list of (left, top, right, bottom, text, conf)
    grouped: dict[tuple[int, int, int], list[tuple[int, int, int, int, str, float | None]]] = {}
    for i, raw_text in enumerate(data.get("text", [])):
        text = str(raw_text or "").strip()
        if not text:
            continue
        left = int(data["left"][i])
        top = int(data["top"][i])
        right = left + int(data["width"][i])
        bottom = top + int(data["height"][i])
        conf = float(data["conf"][i]) if "conf" in data else None
        if conf is not None and conf < 0:
            conf = None
        key = (
            int(data["block_num"][i]),
            int(data["par_num"][i]),
            int(data["line_num"][i]),
        )
        grouped.setdefault(key, []).append((left, top, right, bottom, text, conf))

    lines: list[TextLine] = []
    for key in sorted(grouped):
        words = grouped[key]
        confs = [w[5] for w in words if w[5] is not None]
        lines.append(
            TextLine(
                text=" ".join(w[4] for w in words),
                bbox=(
                    min(w[0] for w in words),
                    min(w[1] for w in words),
                    max(w[2] for w in words),
                    max(w[3] for w in words),
                ),
                confidence=sum(confs) / len(confs) if confs else None,
            )
        )
    return lines
