"""Tests for the quantized image classifier."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from visiontag.errors import ExternalServiceError
from visiontag.ml.image_classifier import QuantizedImageClassifier
from visiontag.ml.preprocessing import TensorSpec

LABELS = ("cat", "dog", "bird")
SPEC = TensorSpec(width=4, height=4, channels=3)


def _make_session(output: np.ndarray) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input")]
    session.run.return_value = [output]
    return session


def _make_classifier(session: MagicMock, top_k: int = 3) -> QuantizedImageClassifier:
    return QuantizedImageClassifier(
        model_name="test_model",
        session=session,
        labels=LABELS,
        input_spec=SPEC,
        top_k=top_k,
    )


class TestQuantizedImageClassifier:
    def test_classify_returns_dequantized_top_k(self) -> None:
        session = _make_session(np.array([[10, 250, 128]], dtype=np.uint8))
        classifier = _make_classifier(session)

        results = classifier.classify(Image.new("RGB", (10, 10)), top_k=2)

        assert [r.label for r in results] == ["dog", "bird"]
        assert results[0].confidence == pytest.approx(250 / 255)
        assert results[1].confidence == pytest.approx(128 / 255)

    def test_default_top_k(self) -> None:
        session = _make_session(np.array([[10, 250, 128]], dtype=np.uint8))
        classifier = _make_classifier(session, top_k=1)

        results = classifier.classify(Image.new("RGB", (10, 10)))

        assert [r.label for r in results] == ["dog"]

    def test_session_receives_encoded_nhwc_tensor(self) -> None:
        session = _make_session(np.array([[1, 2, 3]], dtype=np.uint8))
        classifier = _make_classifier(session)

        classifier.classify(Image.new("RGB", (8, 6), (7, 8, 9)))

        output_names, feeds = session.run.call_args.args
        assert output_names is None
        tensor = feeds["input"]
        assert tensor.shape == (1, 4, 4, 3)
        assert tensor.dtype == np.uint8
        assert tensor[0, 0, 0].tolist() == [7, 8, 9]

    def test_array_image_accepted(self) -> None:
        session = _make_session(np.array([[0, 0, 255]], dtype=np.uint8))
        classifier = _make_classifier(session)

        results = classifier.classify(np.zeros((5, 5, 3), dtype=np.uint8), top_k=1)

        assert results[0].label == "bird"
        assert results[0].confidence == pytest.approx(1.0)

    def test_session_failure_wrapped(self) -> None:
        session = _make_session(np.zeros((1, 3), dtype=np.uint8))
        session.run.side_effect = RuntimeError("kernel exploded")
        classifier = _make_classifier(session)

        with pytest.raises(ExternalServiceError, match="test_model") as exc_info:
            classifier.classify(Image.new("RGB", (4, 4)))
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_output_label_mismatch(self) -> None:
        session = _make_session(np.zeros((1, 5), dtype=np.uint8))
        classifier = _make_classifier(session)

        with pytest.raises(ExternalServiceError, match="5 scores for 3 labels"):
            classifier.classify(Image.new("RGB", (4, 4)))

    def test_non_finite_output(self) -> None:
        session = _make_session(np.array([[0.2, np.nan, 0.5]], dtype=np.float32))
        classifier = _make_classifier(session)

        with pytest.raises(ExternalServiceError, match="non-finite"):
            classifier.classify(Image.new("RGB", (4, 4)))

    def test_properties(self) -> None:
        classifier = _make_classifier(_make_session(np.zeros((1, 3), dtype=np.uint8)))
        assert classifier.model_name == "test_model"
        assert classifier.labels == LABELS
