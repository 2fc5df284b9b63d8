"""
Model loader - owns the single model/context pair

Responsibilities:
- Load a model file through the backend and create its context
- Keep at most one ModelHandle/ContextHandle pair alive (free-then-load)
- Serialize load, unload and generation behind one process-wide lock
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple

from config_loader import Config, get_config
from errors import EmptyInputError, LoadError, ModelNotLoaded
from models.backend import ContextParams, InferenceBackend, ModelParams
from session_log import NullSessionLog, SessionLog
from validators import validate_model_path

logger = logging.getLogger(__name__)


@dataclass
class ModelHandle:
    """Container for the loaded backend model and its metadata"""

    path: str
    raw: Any
    vocab_size: int
    eos_token: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextHandle:
    """Backend context bound to a ModelHandle"""

    raw: Any
    context_size: int
    position: int = 0

    def advance(self, n_tokens: int) -> int:
        """Move the sequence position forward by the tokens just decoded"""
        if n_tokens <= 0:
            raise ValueError(f"position must advance by a positive count, got {n_tokens}")
        self.position += n_tokens
        return self.position


@dataclass(frozen=True)
class ModelStatus:
    loaded: bool
    path: Optional[str] = None

    def describe(self) -> str:
        return f"Model loaded: {self.path}" if self.loaded else "No model loaded"


def model_params_from_config(config: Config) -> ModelParams:
    return ModelParams(
        use_mmap=config.use_mmap,
        use_mlock=config.use_mlock,
        n_gpu_layers=config.n_gpu_layers,
    )


def context_params_from_config(config: Config) -> ContextParams:
    return ContextParams(
        n_ctx=config.context_length,
        n_threads=config.n_threads,
        n_batch=config.n_batch,
    )


class ModelManager:
    """
    Lifecycle manager for the one loaded model

    Every operation that touches the model/context pair runs under
    ``self.lock`` (re-entrant so the embedded bridge can hold it across
    ensure_loaded + generate).
    """

    def __init__(
        self,
        backend: InferenceBackend,
        session_log: Optional[SessionLog] = None,
        config: Optional[Config] = None,
    ):
        self.backend = backend
        self.session_log = session_log or NullSessionLog()
        self.config = config or get_config()
        self.lock = threading.RLock()
        self._model: Optional[ModelHandle] = None
        self._context: Optional[ContextHandle] = None
        self._backend_initialized = False

    @property
    def is_loaded(self) -> bool:
        return self._model is not None and self._context is not None

    @property
    def model_params(self) -> ModelParams:
        return model_params_from_config(self.config)

    @property
    def context_params(self) -> ContextParams:
        return context_params_from_config(self.config)

    def status(self) -> ModelStatus:
        with self.lock:
            if self.is_loaded:
                return ModelStatus(loaded=True, path=self._model.path)
            return ModelStatus(loaded=False)

    def _init_backend(self, path: str) -> None:
        if self._backend_initialized:
            return
        try:
            self.backend.init()
        except Exception as exc:
            raise LoadError(path, f"Backend initialization failed: {exc}") from exc
        self._backend_initialized = True
        self.session_log.log(f"Initialized {self.backend.name} backend")

    def load(self, path: str) -> ModelHandle:
        """
        Load a model, replacing any loaded one

        Args:
            path: Model file path

        Returns:
            The new ModelHandle

        Raises:
            EmptyInputError: If path is empty
            LoadError: If backend init, model or context construction fails
        """
        if path is None or path == "":
            raise EmptyInputError("No model path provided")

        with self.lock:
            # Free-then-load: two models are never resident together, and a
            # failed load leaves nothing loaded
            self.unload()
            path = validate_model_path(path)
            self._init_backend(path)

            self.session_log.log(f"Loading model from {path}")
            started = time.perf_counter()

            try:
                raw_model = self.backend.load_model(path, self.model_params)
            except FileNotFoundError as exc:
                raise LoadError(path, f"Model path not found: {exc}") from exc
            except Exception as exc:
                raise LoadError(path, f"Model construction failed: {exc}") from exc
            if raw_model is None:
                raise LoadError(path, "Model construction failed")

            params = self.context_params
            try:
                raw_ctx = self.backend.create_context(raw_model, params)
                if raw_ctx is None:
                    raise RuntimeError("backend returned no context")
            except Exception as exc:
                self._free_model_quietly(raw_model)
                self.session_log.log("ERROR: Failed to create context")
                raise LoadError(path, f"Context construction failed: {exc}") from exc

            try:
                vocab_size = int(self.backend.vocab_size(raw_model))
                eos_token = int(self.backend.eos_token(raw_model))
                context_size = int(self.backend.context_size(raw_ctx))
            except Exception as exc:
                self._free_context_quietly(raw_ctx)
                self._free_model_quietly(raw_model)
                raise LoadError(path, f"Model introspection failed: {exc}") from exc

            self._model = ModelHandle(
                path=path,
                raw=raw_model,
                vocab_size=vocab_size,
                eos_token=eos_token,
                metadata={
                    "loaded_at": time.time(),
                    "load_seconds": time.perf_counter() - started,
                    "use_mmap": self.model_params.use_mmap,
                    "use_mlock": self.model_params.use_mlock,
                    "n_threads": params.n_threads,
                    "n_batch": params.n_batch,
                },
            )
            self._context = ContextHandle(raw=raw_ctx, context_size=context_size)

            self.session_log.log(f"Model loaded: {path}")
            self.session_log.log(f"  - Vocabulary size: {vocab_size}")
            self.session_log.log(f"  - Context size: {context_size}")
            self.session_log.log(
                f"Context created with {params.n_threads} threads, batch size {params.n_batch}"
            )
            logger.info(f"Model loaded: {path} (vocab={vocab_size}, n_ctx={context_size})")
            return self._model

    def ensure_loaded(self, path: str) -> ModelHandle:
        """Load ``path`` unless it is already the loaded model"""
        with self.lock:
            if self.is_loaded and self._model.path == path:
                return self._model
            return self.load(path)

    def unload(self) -> None:
        """Free context then model; idempotent and never raises"""
        with self.lock:
            context, model = self._context, self._model
            self._context = None
            self._model = None

            if context is not None:
                self._free_context_quietly(context.raw)
            if model is not None:
                self._free_model_quietly(model.raw)
                self.session_log.log(f"Model unloaded: {model.path}")
                logger.info(f"Model unloaded: {model.path}")

    @contextmanager
    def acquire(self) -> Iterator[Tuple[ModelHandle, ContextHandle]]:
        """
        Hold the exclusive lock and yield the loaded pair

        Raises:
            ModelNotLoaded: If nothing is loaded (no backend call is made)
        """
        with self.lock:
            if not self.is_loaded:
                raise ModelNotLoaded()
            yield self._model, self._context

    def shutdown(self) -> None:
        """Unload and release the backend (service stop)"""
        with self.lock:
            self.unload()
            if self._backend_initialized:
                try:
                    self.backend.shutdown()
                except Exception as exc:
                    logger.warning(f"Backend shutdown failed: {exc}")
                self._backend_initialized = False

    def _free_context_quietly(self, raw_ctx: Any) -> None:
        try:
            self.backend.free_context(raw_ctx)
        except Exception as exc:
            logger.warning(f"Failed to free context: {exc}")

    def _free_model_quietly(self, raw_model: Any) -> None:
        try:
            self.backend.free_model(raw_model)
        except Exception as exc:
            logger.warning(f"Failed to free model: {exc}")
