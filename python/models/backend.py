"""
Backend adapter - Thin wrapper around the llama.cpp C API

Responsibilities:
- Define the capability set the bridge needs from an inference engine
- Implement it over llama-cpp-python's low-level bindings
- Return raw handles; ownership and lifecycle live in models/loader.py
"""

import ctypes
import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

# llama-cpp-python ships a native library; guard the import so the bridge can
# still start (and report LoadError on LOAD) where it is not installed.
llama_cpp: Any = None
LLAMA_CPP_AVAILABLE = False
LLAMA_CPP_IMPORT_ERROR: Optional[str] = None

try:
    import llama_cpp  # type: ignore[no-redef]

    LLAMA_CPP_AVAILABLE = True
except Exception as exc:  # noqa: BLE001
    LLAMA_CPP_IMPORT_ERROR = f"llama-cpp-python import failed: {exc}"


@dataclass
class ModelParams:
    """Fixed model construction parameters"""

    use_mmap: bool = True
    use_mlock: bool = False
    n_gpu_layers: int = 0


@dataclass
class ContextParams:
    """Fixed context construction parameters"""

    n_ctx: int = 2048
    n_threads: int = 4
    n_batch: int = 512


@dataclass
class Batch:
    """Tokens submitted to one decode call

    ``logits[i]`` requests output scores for position ``positions[i]``.
    """

    tokens: List[int]
    positions: List[int]
    logits: List[bool] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.tokens) != len(self.positions):
            raise ValueError("tokens and positions must have the same length")
        if not self.logits:
            self.logits = [False] * len(self.tokens)
        elif len(self.logits) != len(self.tokens):
            raise ValueError("logits flags must match the number of tokens")

    def __len__(self) -> int:
        return len(self.tokens)

    @classmethod
    def for_prompt(cls, tokens: Sequence[int], start: int = 0) -> "Batch":
        """Whole prompt in one batch, scores only for the final position"""
        n = len(tokens)
        return cls(
            tokens=list(tokens),
            positions=list(range(start, start + n)),
            logits=[i == n - 1 for i in range(n)],
        )

    @classmethod
    def single(cls, token: int, position: int) -> "Batch":
        return cls(tokens=[token], positions=[position], logits=[True])


class InferenceBackend:
    """
    Capability set of an inference engine

    Raw model/context objects are opaque to the bridge. ``decode`` returns a
    status code (0 means success) like the C API; the other calls raise on
    failure.
    """

    name = "abstract"

    def init(self) -> None:
        raise NotImplementedError

    def load_model(self, path: str, params: ModelParams) -> Any:
        raise NotImplementedError

    def create_context(self, model: Any, params: ContextParams) -> Any:
        raise NotImplementedError

    def tokenize(self, model: Any, text: str, add_bos: bool = True) -> List[int]:
        raise NotImplementedError

    def decode(self, ctx: Any, batch: Batch) -> int:
        raise NotImplementedError

    def get_logits(self, ctx: Any) -> Sequence[float]:
        """Scores of the last requested output, length == vocab_size"""
        raise NotImplementedError

    def token_to_piece(self, model: Any, token: int) -> bytes:
        raise NotImplementedError

    def eos_token(self, model: Any) -> int:
        raise NotImplementedError

    def vocab_size(self, model: Any) -> int:
        raise NotImplementedError

    def context_size(self, ctx: Any) -> int:
        raise NotImplementedError

    def clear_context(self, ctx: Any) -> None:
        """Drop all cached sequence state (KV memory)"""
        raise NotImplementedError

    def free_context(self, ctx: Any) -> None:
        raise NotImplementedError

    def free_model(self, model: Any) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        """Release process-wide backend state"""
        return None


@dataclass
class _LlamaModel:
    ptr: Any
    vocab: Any


class LlamaCppBackend(InferenceBackend):
    """InferenceBackend over llama.cpp via llama-cpp-python"""

    name = "llama.cpp"

    # Large enough for any single-token piece; retried with the exact size otherwise
    PIECE_BUFFER_SIZE = 64

    def __init__(self) -> None:
        self._initialized = False

    def _require(self) -> None:
        if not LLAMA_CPP_AVAILABLE:
            raise RuntimeError(LLAMA_CPP_IMPORT_ERROR or "llama-cpp-python not available")

    def init(self) -> None:
        self._require()
        if not self._initialized:
            llama_cpp.llama_backend_init()
            self._initialized = True

    def load_model(self, path: str, params: ModelParams) -> _LlamaModel:
        self._require()
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Model file not found: {path}")

        model_params = llama_cpp.llama_model_default_params()
        model_params.use_mmap = params.use_mmap
        model_params.use_mlock = params.use_mlock
        model_params.n_gpu_layers = params.n_gpu_layers

        ptr = llama_cpp.llama_model_load_from_file(path.encode("utf-8"), model_params)
        if not ptr:
            raise RuntimeError(f"llama.cpp could not load {path}")
        return _LlamaModel(ptr=ptr, vocab=llama_cpp.llama_model_get_vocab(ptr))

    def create_context(self, model: _LlamaModel, params: ContextParams) -> Any:
        ctx_params = llama_cpp.llama_context_default_params()
        ctx_params.n_ctx = params.n_ctx
        ctx_params.n_batch = params.n_batch
        ctx_params.n_threads = params.n_threads
        ctx_params.n_threads_batch = params.n_threads

        ctx = llama_cpp.llama_init_from_model(model.ptr, ctx_params)
        if not ctx:
            raise RuntimeError("llama.cpp could not create a context")
        return ctx

    def tokenize(self, model: _LlamaModel, text: str, add_bos: bool = True) -> List[int]:
        data = text.encode("utf-8")
        capacity = len(data) + 128
        tokens = (llama_cpp.llama_token * capacity)()
        n = llama_cpp.llama_tokenize(model.vocab, data, len(data), tokens, capacity, add_bos, False)
        if n < 0:
            # Negative result is the required capacity
            capacity = -n
            tokens = (llama_cpp.llama_token * capacity)()
            n = llama_cpp.llama_tokenize(model.vocab, data, len(data), tokens, capacity, add_bos, False)
            if n < 0:
                raise RuntimeError(f"llama_tokenize failed with {n}")
        return list(tokens[:n])

    def decode(self, ctx: Any, batch: Batch) -> int:
        n = len(batch)
        native = llama_cpp.llama_batch_init(n, 0, 1)
        try:
            for i in range(n):
                native.token[i] = batch.tokens[i]
                native.pos[i] = batch.positions[i]
                native.n_seq_id[i] = 1
                native.seq_id[i][0] = 0
                native.logits[i] = 1 if batch.logits[i] else 0
            native.n_tokens = n
            return int(llama_cpp.llama_decode(ctx, native))
        finally:
            llama_cpp.llama_batch_free(native)

    def get_logits(self, ctx: Any) -> np.ndarray:
        model_ptr = llama_cpp.llama_get_model(ctx)
        n_vocab = llama_cpp.llama_vocab_n_tokens(llama_cpp.llama_model_get_vocab(model_ptr))
        ptr = llama_cpp.llama_get_logits_ith(ctx, -1)
        if not ptr:
            raise RuntimeError("llama.cpp returned no logits")
        return np.ctypeslib.as_array(ptr, shape=(n_vocab,)).copy()

    def token_to_piece(self, model: _LlamaModel, token: int) -> bytes:
        buf = ctypes.create_string_buffer(self.PIECE_BUFFER_SIZE)
        n = llama_cpp.llama_token_to_piece(model.vocab, token, buf, len(buf), 0, True)
        if n < 0:
            buf = ctypes.create_string_buffer(-n)
            n = llama_cpp.llama_token_to_piece(model.vocab, token, buf, len(buf), 0, True)
        return buf.raw[:max(n, 0)]

    def eos_token(self, model: _LlamaModel) -> int:
        return int(llama_cpp.llama_vocab_eos(model.vocab))

    def vocab_size(self, model: _LlamaModel) -> int:
        return int(llama_cpp.llama_vocab_n_tokens(model.vocab))

    def context_size(self, ctx: Any) -> int:
        return int(llama_cpp.llama_n_ctx(ctx))

    def clear_context(self, ctx: Any) -> None:
        # Name changed across llama.cpp releases
        clear = getattr(llama_cpp, "llama_kv_self_clear", None) or llama_cpp.llama_kv_cache_clear
        clear(ctx)

    def free_context(self, ctx: Any) -> None:
        llama_cpp.llama_free(ctx)

    def free_model(self, model: _LlamaModel) -> None:
        llama_cpp.llama_model_free(model.ptr)

    def shutdown(self) -> None:
        if self._initialized:
            llama_cpp.llama_backend_free()
            self._initialized = False
            logger.info("llama.cpp backend released")
