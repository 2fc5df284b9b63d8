"""Model lifecycle, tokenization and generation modules."""

from .backend import InferenceBackend, LlamaCppBackend, LLAMA_CPP_AVAILABLE
from .generator import GenerationEngine, GenerationResult
from .loader import ModelManager, ModelStatus

__all__ = [
    "InferenceBackend",
    "LlamaCppBackend",
    "LLAMA_CPP_AVAILABLE",
    "GenerationEngine",
    "GenerationResult",
    "ModelManager",
    "ModelStatus",
]
