"""
Generator module - Greedy autoregressive generation over the loaded model

Responsibilities:
- Tokenize the prompt and prefill it in one batch
- Run the decode / sample / detokenize loop until EOS or the token bound
- Deliver text in bulk (blocking) or per token (streaming)

Blocking calls run on a worker thread; the exclusive model lock is held for
the whole request.
"""

import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from config_loader import Config
from errors import DecodeError
from models.backend import Batch, InferenceBackend
from models.loader import ContextHandle, ModelHandle, ModelManager
from models.tokenizer import PieceDecoder, tokenize_prompt
from session_log import SessionLog
from validators import validate_prompt

logger = logging.getLogger(__name__)

FINISH_EOS = "eos"
FINISH_LENGTH = "length"
FINISH_CONTEXT_FULL = "context_full"
FINISH_DECODE_ERROR = "decode_error"

# on_token(text, final)
TokenCallback = Callable[[str, bool], None]


@dataclass
class GenerationSession:
    """Transient state of one generation call"""

    prompt: str
    prompt_tokens: List[int]
    limit: int
    generated: List[int] = field(default_factory=list)
    pieces: List[str] = field(default_factory=list)
    finish_reason: str = FINISH_LENGTH

    @property
    def emitted(self) -> int:
        return len(self.generated)

    def completion(self) -> str:
        return "".join(self.pieces)


@dataclass
class GenerationResult:
    """Outcome of one INFER / INFER_STREAM call"""

    prompt: str
    completion: str
    prompt_tokens: int
    tokens_generated: int
    finish_reason: str
    elapsed_s: float = 0.0

    @property
    def text(self) -> str:
        """Prompt followed by everything generated"""
        return self.prompt + self.completion

    @property
    def partial(self) -> bool:
        return self.finish_reason == FINISH_DECODE_ERROR


def select_greedy(logits: Sequence[float], vocab_size: Optional[int] = None) -> int:
    """
    Pick the highest-scoring token id

    Ties go to the lowest id (the first maximum wins) and NaN scores never
    win; if no score beats -inf the result is token 0.

    Args:
        logits: Scores indexed by token id
        vocab_size: Only the first vocab_size scores are considered

    Returns:
        Selected token id
    """
    scores = np.asarray(logits, dtype=np.float64)
    if vocab_size is not None:
        scores = scores[:vocab_size]
    if scores.size == 0:
        raise ValueError("empty logits vector")
    scores = np.where(np.isnan(scores), -np.inf, scores)
    return int(np.argmax(scores))


class GenerationEngine:
    """Runs generation requests against the ModelManager's loaded model"""

    def __init__(
        self,
        manager: ModelManager,
        max_new_tokens: Optional[int] = None,
        config: Optional[Config] = None,
    ):
        self.manager = manager
        self.config = config or manager.config
        self.max_new_tokens = max_new_tokens or self.config.max_new_tokens

    @property
    def backend(self) -> InferenceBackend:
        return self.manager.backend

    @property
    def session_log(self) -> SessionLog:
        return self.manager.session_log

    def generate(self, prompt: str, max_new_tokens: Optional[int] = None) -> GenerationResult:
        """
        Run generation to completion

        Raises:
            EmptyInputError: If the prompt is empty
            ModelNotLoaded: If no model is loaded
            TokenizeError: If the prompt cannot be tokenized
            DecodeError: If prefill fails
        """
        return self._run(prompt, None, max_new_tokens)

    def generate_stream(
        self,
        prompt: str,
        on_token: TokenCallback,
        max_new_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """
        Run generation, calling ``on_token(text, final)`` once per token

        ``final`` is True on the last call only. A run that stops before its
        first token still ends with one empty final call. Errors raised
        before the first token reach the caller with no callback made.
        """
        return self._run(prompt, on_token, max_new_tokens)

    def _run(
        self,
        prompt: str,
        on_token: Optional[TokenCallback],
        max_new_tokens: Optional[int],
    ) -> GenerationResult:
        prompt = validate_prompt(prompt, self.config.max_prompt_chars)
        limit = max_new_tokens or self.max_new_tokens

        with self.manager.acquire() as (model, ctx):
            return self._generate_locked(model, ctx, prompt, limit, on_token)

    def _decode(self, ctx: ContextHandle, batch: Batch) -> Tuple[bool, str]:
        try:
            status = self.backend.decode(ctx.raw, batch)
        except Exception as exc:
            return False, f"backend raised {type(exc).__name__}: {exc}"
        if status != 0:
            return False, f"decode returned status {status}"
        return True, ""

    def _generate_locked(
        self,
        model: ModelHandle,
        ctx: ContextHandle,
        prompt: str,
        limit: int,
        on_token: Optional[TokenCallback],
    ) -> GenerationResult:
        log = self.session_log.log
        backend = self.backend
        started = perf_counter()

        log(f"Prompt length: {len(prompt)} characters")

        # Each request is a fresh sequence; nothing carries over between requests
        try:
            backend.clear_context(ctx.raw)
        except Exception as exc:
            raise DecodeError("Failed to reset context", str(exc)) from exc
        ctx.position = 0

        # Tokenized
        tokenized = tokenize_prompt(backend, model, ctx, prompt, max_tokens=self.config.n_batch)
        log(f"Tokenized prompt into {tokenized.count} tokens")

        # Prefilled
        ok, reason = self._decode(ctx, Batch.for_prompt(tokenized.tokens, start=ctx.position))
        if not ok:
            log(f"ERROR: Failed to decode prompt ({reason})")
            raise DecodeError("Failed to evaluate prompt", reason)
        ctx.advance(tokenized.count)
        log("Prompt processing complete - generating response")

        # Generating
        session = GenerationSession(prompt=prompt, prompt_tokens=tokenized.tokens, limit=limit)
        decoder = PieceDecoder()
        pending: Optional[str] = None
        token = tokenized.last
        every = self.config.log_every_n_tokens

        for i in range(limit):
            if ctx.position >= ctx.context_size:
                log(f"Context window full at position {ctx.position}, stopping generation")
                session.finish_reason = FINISH_CONTEXT_FULL
                break

            ok, reason = self._decode(ctx, Batch.single(token, ctx.position))
            if ok:
                ctx.advance(1)
                try:
                    next_token = select_greedy(backend.get_logits(ctx.raw), model.vocab_size)
                except Exception as exc:
                    ok, reason = False, f"logits unavailable: {exc}"

            if not ok:
                log(f"ERROR: Failed to decode token {i} ({reason})")
                if on_token is not None and session.emitted == 0:
                    raise DecodeError("Failed to decode first token", reason)
                session.finish_reason = FINISH_DECODE_ERROR
                break

            if next_token == model.eos_token:
                log("Generated EOS token, stopping generation")
                session.finish_reason = FINISH_EOS
                break

            try:
                piece = backend.token_to_piece(model.raw, next_token)
            except Exception as exc:
                log(f"ERROR: Failed to convert token {next_token} to text ({exc})")
                if on_token is not None and session.emitted == 0:
                    raise DecodeError("Failed to decode first token", str(exc)) from exc
                session.finish_reason = FINISH_DECODE_ERROR
                break

            text = decoder.feed(piece)
            session.generated.append(next_token)
            session.pieces.append(text)

            if on_token is not None:
                # One-token lookahead so the final flag lands on the last token
                if pending is not None:
                    on_token(pending, False)
                pending = text

            if i % every == 0 or i == limit - 1:
                log(f"Generated token {i + 1}/{limit}: '{text}'")

            token = next_token

        tail = decoder.flush()
        if tail:
            session.pieces.append(tail)
        if on_token is not None:
            on_token((pending or "") + tail, True)

        completion = session.completion()
        elapsed = perf_counter() - started
        log(f"Final response length: {len(prompt) + len(completion)} characters")
        logger.debug(
            f"Generated {session.emitted} tokens in {elapsed:.3f}s "
            f"(prompt_tokens={tokenized.count}, finish_reason={session.finish_reason})"
        )

        return GenerationResult(
            prompt=prompt,
            completion=completion,
            prompt_tokens=tokenized.count,
            tokens_generated=session.emitted,
            finish_reason=session.finish_reason,
            elapsed_s=elapsed,
        )
