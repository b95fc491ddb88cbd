"""Model manager: resolve, load, cache, and evict classification models.

A model is resolved from the local models directory first. Remote copies
on the HuggingFace Hub are fetched only when downloads are allowed, and
refreshed on every resolution when model updates are enabled. Label files
travel with their model and are loaded once.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from visiontag.errors import ModelUnavailableError
from visiontag.ml.labels import load_labels
from visiontag.ml.preprocessing import TensorSpec

if TYPE_CHECKING:
    from visiontag.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is available locally and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_labels(self, model_name: str) -> tuple[str, ...]:
        """Return the label set for a model."""
        ...

    def has_local_copy(self, model_name: str) -> bool:
        """Return whether the model file is present locally."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single quantized classification model."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    input_spec: TensorSpec
    task: ModelTask
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v1_1.0_224_quant": ModelSpec(
        name="mobilenet_v1_1.0_224_quant",
        repo_id="visiontag/visiontag-models",
        filename="mobilenet_v1_1.0_224_quant.onnx",
        labels_filename="labels.txt",
        subfolder=None,
        input_spec=TensorSpec(width=224, height=224, channels=3),
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
    "mobilenet_v2_1.0_224_quant": ModelSpec(
        name="mobilenet_v2_1.0_224_quant",
        repo_id="visiontag/visiontag-models",
        filename="mobilenet_v2_1.0_224_quant.onnx",
        labels_filename="labels.txt",
        subfolder=None,
        input_spec=TensorSpec(width=224, height=224, channels=3),
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry, raising ``KeyError`` for unknown names."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Resolves model files, and loads, caches, and evicts ONNX sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._labels: dict[str, tuple[str, ...]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local path of a model file, fetching it if permitted."""
        spec = get_model_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        path = self._resolve_file(spec, spec.filename)
        self._model_paths[model_name] = path
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        model_path = self.ensure_downloaded(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            # onnxruntime load errors (InvalidProtobuf, NoSuchFile, Fail) derive from Exception.
            raise ModelUnavailableError(f"Could not load model '{model_name}' from {model_path}") from exc

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_labels(self, model_name: str) -> tuple[str, ...]:
        """Return the model's label set, loading it on first use."""
        with self._lock:
            labels = self._labels.get(model_name)
        if labels is not None:
            return labels

        spec = get_model_spec(model_name)
        labels = load_labels(self._resolve_file(spec, spec.labels_filename))
        with self._lock:
            return self._labels.setdefault(model_name, labels)

    def has_local_copy(self, model_name: str) -> bool:
        """Whether the model file is already present in the models directory."""
        spec = get_model_spec(model_name)
        return self._local_path(spec, spec.filename).exists()

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _local_path(self, spec: ModelSpec, filename: str) -> Path:
        if spec.subfolder:
            return self._models_dir / spec.subfolder / filename
        return self._models_dir / filename

    def _resolve_file(self, spec: ModelSpec, filename: str) -> Path:
        local = self._local_path(spec, filename)
        settings = self._settings

        if local.exists():
            if not (settings.model_updates and settings.allow_downloads):
                return local
            try:
                return self._download(spec, filename)
            except ModelUnavailableError:
                logger.warning("Update check for %s failed, using local copy %s", filename, local, exc_info=True)
                return local

        if not settings.allow_downloads:
            raise ModelUnavailableError(
                f"'{filename}' for model '{spec.name}' is not in {self._models_dir} "
                "and VISIONTAG_ALLOW_DOWNLOADS=false"
            )
        return self._download(spec, filename)

    def _download(self, spec: ModelSpec, filename: str) -> Path:
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelUnavailableError(f"Could not download '{filename}' for model '{spec.name}'") from exc
        logger.info("Downloaded %s for %s to %s", filename, spec.name, downloaded)
        return downloaded

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
