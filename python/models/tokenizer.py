"""
Tokenizer wrappers - prompt encoding and token piece decoding

Responsibilities:
- Tokenize prompt text (BOS prepended) and enforce size bounds
- Turn token pieces (raw bytes) back into text incrementally
"""

import codecs
from dataclasses import dataclass
from typing import List

from errors import TokenizeError
from models.backend import InferenceBackend
from models.loader import ContextHandle, ModelHandle


@dataclass
class TokenizeResult:
    """Result of tokenization operation"""

    tokens: List[int]

    @property
    def count(self) -> int:
        return len(self.tokens)

    @property
    def last(self) -> int:
        return self.tokens[-1]


def tokenize_prompt(
    backend: InferenceBackend,
    model: ModelHandle,
    ctx: ContextHandle,
    prompt: str,
    max_tokens: int,
) -> TokenizeResult:
    """
    Tokenize a prompt for prefill

    Args:
        backend: Inference backend
        model: Loaded ModelHandle
        ctx: Its ContextHandle (for the window size)
        prompt: Prompt text
        max_tokens: Largest prompt accepted in one prefill batch

    Returns:
        TokenizeResult with at least one token

    Raises:
        TokenizeError: If the backend fails, yields nothing, or the prompt is too large
    """
    try:
        tokens = backend.tokenize(model.raw, prompt, add_bos=True)
    except Exception as exc:
        raise TokenizeError(f"backend tokenizer failed: {exc}") from exc

    if not tokens:
        raise TokenizeError("Empty prompt after tokenization")

    if len(tokens) > max_tokens:
        raise TokenizeError(f"prompt has {len(tokens)} tokens, limit is {max_tokens}")

    # Leave room for at least one generated position
    if len(tokens) >= ctx.context_size:
        raise TokenizeError(
            f"prompt has {len(tokens)} tokens, context window is {ctx.context_size}"
        )

    return TokenizeResult(tokens=list(tokens))


class PieceDecoder:
    """
    Incremental UTF-8 decoder for token pieces

    A multi-byte character may be split across tokens; bytes are held back
    until the character is complete. Invalid sequences become U+FFFD.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, piece: bytes) -> str:
        return self._decoder.decode(piece)

    def flush(self) -> str:
        """Emit whatever is still buffered at end of generation"""
        return self._decoder.decode(b"", final=True)
