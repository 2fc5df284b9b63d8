"""
Embedded bridge - in-process completion API

Runs load-if-needed + generate on a dedicated worker thread and reports the
outcome as a CompletionResult, either through a callback or an awaitable.
This mode shares the ModelManager (and its lock) with the socket server
when both run in one process.
"""

import asyncio
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, NamedTuple, Optional

from config_loader import Config, get_config
from errors import BridgeError
from models.backend import InferenceBackend, LlamaCppBackend
from models.generator import GenerationEngine
from models.loader import ModelManager
from session_log import SessionLog, create_session_log
from validators import validate_model_path, validate_prompt

logger = logging.getLogger(__name__)


class CompletionResult(NamedTuple):
    """Exactly one of error/result is set"""

    error: Optional[str]
    result: Optional[str]

    @property
    def ok(self) -> bool:
        return self.error is None


CompletionCallback = Callable[[Optional[str], Optional[str]], None]


class EmbeddedBridge:
    """
    Async-mode interface for host applications

    Usage:
        with EmbeddedBridge() as bridge:
            bridge.process_prompt("model.gguf", "Hello", callback=on_done)
            outcome = await bridge.process_prompt_async("model.gguf", "Hello")
    """

    def __init__(
        self,
        manager: Optional[ModelManager] = None,
        engine: Optional[GenerationEngine] = None,
        config: Optional[Config] = None,
        backend: Optional[InferenceBackend] = None,
        session_log: Optional[SessionLog] = None,
    ):
        self.config = config or (manager.config if manager is not None else get_config())
        self._owns_manager = manager is None

        if manager is None:
            if session_log is None:
                session_log = create_session_log()
            session_log.open()
            manager = ModelManager(
                backend or LlamaCppBackend(), session_log=session_log, config=self.config
            )

        self.manager = manager
        self.engine = engine or GenerationEngine(manager, config=self.config)
        self.session_log = manager.session_log
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llama-bridge-worker")
        self._closed = False

        self.session_log.log("Embedded bridge initialized")

    def resolve_model_path(self, model_path: str) -> str:
        """Relative paths are taken relative to ``model.models_dir`` when configured"""
        if self.config.models_dir and not os.path.isabs(model_path):
            return os.path.join(self.config.models_dir, model_path)
        return model_path

    def process_prompt(
        self,
        model_path: str,
        prompt: str,
        callback: Optional[CompletionCallback] = None,
    ) -> "Future[CompletionResult]":
        """
        Schedule one load-if-needed + generate request

        Args:
            model_path: Model file (loaded if it is not the current model)
            prompt: Prompt text
            callback: Called as ``callback(error, result)`` on the worker thread

        Returns:
            Future resolving to a CompletionResult (never raises)
        """
        if self._closed:
            raise RuntimeError("EmbeddedBridge is closed")

        self.session_log.log("process_prompt called")
        future = self._executor.submit(self._execute, model_path, prompt)

        if callback is not None:
            def _deliver(done: "Future[CompletionResult]") -> None:
                if done.cancelled():
                    callback("Request cancelled", None)
                    return
                outcome = done.result()
                callback(outcome.error, outcome.result)

            future.add_done_callback(_deliver)

        return future

    async def process_prompt_async(self, model_path: str, prompt: str) -> CompletionResult:
        """Awaitable form of process_prompt"""
        return await asyncio.wrap_future(self.process_prompt(model_path, prompt))

    def _execute(self, model_path: str, prompt: str) -> CompletionResult:
        log = self.session_log.log
        log("Worker thread started execution")

        try:
            path = self.resolve_model_path(validate_model_path(model_path))
            prompt = validate_prompt(prompt, self.config.max_prompt_chars)
            log(f"Model path: {path}")

            # Load and generate as one unit so no other request can swap the model in between
            with self.manager.lock:
                self.manager.ensure_loaded(path)
                result = self.engine.generate(prompt)
        except BridgeError as exc:
            log(f"ERROR: {exc}")
            logger.info(f"process_prompt failed: {exc}")
            return CompletionResult(error=exc.message, result=None)
        except Exception as exc:
            log(f"ERROR: Exception: {exc}")
            logger.exception(f"Unexpected error in process_prompt: {exc}")
            return CompletionResult(error=f"Error processing prompt: {exc}", result=None)

        log("Worker thread completed successfully")
        return CompletionResult(error=None, result=result.text)

    def get_worker_log(self) -> str:
        """Full session log text"""
        return self.session_log.text()

    def close(self) -> None:
        """Wait for queued requests, then release the model if this bridge owns it"""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        if self._owns_manager:
            self.manager.shutdown()
            self.session_log.close()

    def __enter__(self) -> "EmbeddedBridge":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
