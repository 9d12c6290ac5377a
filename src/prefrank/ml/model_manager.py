"""Model manager: fetch ONNX embedding models and share their sessions.

Every embedding worker asks the manager for the same model, usually all at
once when a directory is loaded. A model is fetched and loaded once; later
callers get the cached session. Sessions idle for longer than
``PREFRANK_MODEL_TTL`` seconds are dropped the next time any session is
requested.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from prefrank.config import Settings

logger = logging.getLogger(__name__)

ProviderList = list[str | tuple[str, dict[str, object]]]


class ModelManager(Protocol):
    """What embedders and the API need from a model manager."""

    def get_session(self, model_name: str) -> InferenceSession: ...

    def get_loaded_models(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------

CLIP_MEAN = (0.48145466, 0.4578275, 0.40821073)
CLIP_STD = (0.26862954, 0.26130258, 0.27577711)
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX image-embedding model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    embedding_dim: int
    input_size: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    license: str

    def local_path(self, models_dir: Path) -> Path:
        """Where ``hf_hub_download`` places this model below ``models_dir``."""
        base = models_dir / self.name
        if self.subfolder:
            base = base / self.subfolder
        return base / self.filename


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "clip_vit_b32_vision": ModelSpec(
        name="clip_vit_b32_vision",
        repo_id="Qdrant/clip-ViT-B-32-vision",
        filename="model.onnx",
        subfolder=None,
        embedding_dim=512,
        input_size=224,
        mean=CLIP_MEAN,
        std=CLIP_STD,
        license="MIT",
    ),
    "resnet50": ModelSpec(
        name="resnet50",
        repo_id="Qdrant/resnet50-onnx",
        filename="model.onnx",
        subfolder=None,
        embedding_dim=2048,
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        license="Apache-2.0",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# ONNX Runtime setup
# ---------------------------------------------------------------------------


def build_providers(settings: Settings) -> ProviderList:
    """Execution providers for ``settings.device``, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO runs its own graph optimizations.
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Shares one InferenceSession per model between embedding workers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

        # Guards the dicts below; loading happens under the per-model lock only.
        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._load_locks: dict[str, threading.Lock] = {}
        self._model_paths: dict[str, Path] = {}

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, fetching it from HuggingFace if missing."""
        spec = get_model_spec(model_name)

        known = self._model_paths.get(model_name)
        if known is not None and known.exists():
            return known

        local = spec.local_path(self._models_dir)
        if local.is_file():
            logger.debug("Using %s from %s", model_name, local)
            path = local
        else:
            logger.info("Fetching %s from %s", model_name, spec.repo_id)
            path = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir / spec.name),
                )
            )
        self._model_paths[model_name] = path
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the shared session for ``model_name``, loading it on first use."""
        self.unload_idle_models(keep=model_name)

        with self._lock:
            cached = self._touch(model_name)
            if cached is not None:
                return cached
            load_lock = self._load_locks.setdefault(model_name, threading.Lock())

        with load_lock:
            with self._lock:
                cached = self._touch(model_name)
            if cached is not None:
                return cached

            started = time.monotonic()
            session = InferenceSession(
                str(self.ensure_downloaded(model_name)),
                sess_options=self._session_options,
                providers=self._providers,
            )
            with self._lock:
                self._sessions[model_name] = _CachedSession(session=session, last_used=time.monotonic())
            logger.info("Loaded %s in %.2fs", model_name, time.monotonic() - started)
            return session

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def unload_idle_models(self, keep: str | None = None) -> None:
        """Drop sessions unused for longer than the TTL (0 disables eviction)."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        cutoff = time.monotonic() - ttl
        with self._lock:
            expired = [
                name for name, cached in self._sessions.items() if name != keep and cached.last_used < cutoff
            ]
            for name in expired:
                del self._sessions[name]
        for name in expired:
            logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        with self._lock:
            self._sessions.clear()
        logger.info("All model sessions cleared")

    def _touch(self, model_name: str) -> InferenceSession | None:
        cached = self._sessions.get(model_name)
        if cached is None:
            return None
        cached.last_used = time.monotonic()
        return cached.session
