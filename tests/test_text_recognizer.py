"""Tests for the Tesseract text recognizer."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np
import pytesseract
import pytest
from PIL import Image

from visiontag.errors import ExternalServiceError, UnsupportedPixelFormatError
from visiontag.ml.text_recognizer import TesseractTextRecognizer, TextLine

_TESSERACT_DATA: dict[str, list[object]] = {
    "text": ["", "Hello", "world", "Second", "  "],
    "block_num": [1, 1, 1, 1, 1],
    "par_num": [1, 1, 1, 1, 1],
    "line_num": [0, 1, 1, 2, 2],
    "word_num": [0, 1, 2, 1, 2],
    "left": [0, 10, 60, 10, 0],
    "top": [0, 5, 5, 30, 0],
    "width": [100, 40, 50, 70, 0],
    "height": [50, 10, 12, 10, 0],
    "conf": [-1, 90, 80, 70, -1],
}


class TestTesseractTextRecognizer:
    @patch("visiontag.ml.text_recognizer.pytesseract.image_to_data")
    def test_words_grouped_into_lines(self, mock_ocr: MagicMock) -> None:
        mock_ocr.return_value = _TESSERACT_DATA
        recognizer = TesseractTextRecognizer()

        result = recognizer.recognize(Image.new("RGB", (120, 60), (255, 255, 255)))

        assert result.text == "Hello world\nSecond"
        assert result.lines == [
            TextLine(text="Hello world", bbox=(10, 5, 110, 17), confidence=85.0),
            TextLine(text="Second", bbox=(10, 30, 80, 40), confidence=70.0),
        ]

    @patch("visiontag.ml.text_recognizer.pytesseract.image_to_data")
    def test_language_and_psm_forwarded(self, mock_ocr: MagicMock) -> None:
        mock_ocr.return_value = _TESSERACT_DATA
        recognizer = TesseractTextRecognizer(language="deu", psm=6)

        recognizer.recognize(Image.new("L", (20, 20)))

        kwargs = mock_ocr.call_args.kwargs
        assert kwargs["lang"] == "deu"
        assert kwargs["config"] == "--oem 3 --psm 6"
        assert kwargs["output_type"] == pytesseract.Output.DICT
        assert mock_ocr.call_args.args[0].mode == "RGB"

    @patch("visiontag.ml.text_recognizer.pytesseract.image_to_data")
    def test_no_text(self, mock_ocr: MagicMock) -> None:
        mock_ocr.return_value = {key: [] for key in _TESSERACT_DATA}
        result = TesseractTextRecognizer().recognize(np.zeros((8, 8, 3), dtype=np.uint8))
        assert result.text == ""
        assert result.lines == []

    @patch("visiontag.ml.text_recognizer.pytesseract.image_to_data")
    def test_tesseract_error_wrapped(self, mock_ocr: MagicMock) -> None:
        mock_ocr.side_effect = pytesseract.TesseractError(1, "failed to load language")

        with pytest.raises(ExternalServiceError) as exc_info:
            TesseractTextRecognizer().recognize(Image.new("RGB", (8, 8)))
        assert isinstance(exc_info.value.__cause__, pytesseract.TesseractError)

    @patch("visiontag.ml.text_recognizer.pytesseract.image_to_data")
    def test_missing_binary_wrapped(self, mock_ocr: MagicMock) -> None:
        mock_ocr.side_effect = pytesseract.TesseractNotFoundError()

        with pytest.raises(ExternalServiceError):
            TesseractTextRecognizer().recognize(Image.new("RGB", (8, 8)))

    def test_unsupported_mode(self) -> None:
        with pytest.raises(UnsupportedPixelFormatError):
            TesseractTextRecognizer().recognize(Image.new("F", (8, 8)))

    def test_two_channel_array_rejected(self) -> None:
        with pytest.raises(UnsupportedPixelFormatError, match="shape"):
            TesseractTextRecognizer().recognize(np.zeros((4, 4, 2), dtype=np.uint8))
