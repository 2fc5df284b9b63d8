"""
Session handler - one client connection, one command at a time

Reads newline-terminated command lines, dispatches them against the
ModelManager / GenerationEngine and writes JSON responses. Backend work runs
on worker threads via asyncio.to_thread so the event loop stays responsive;
streamed tokens travel back through a bounded asyncio.Queue.
"""

import asyncio
import concurrent.futures
import logging
import time
from typing import Optional

import protocol
from config_loader import Config
from errors import BridgeError, EmptyInputError, ProtocolError
from models.generator import GenerationEngine
from models.loader import ModelManager
from protocol import Command, CommandLine
from session_log import NullSessionLog, SessionLog

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected internal error occurred"
LINE_TOO_LONG_MESSAGE = "Command line too long"

# Marks the end of a token stream on the queue
_STREAM_DONE = object()
# Returned by _read_line when an oversized line was dropped
_SKIPPED = object()


class SessionHandler:
    """Serves one connected client until QUIT or disconnect"""

    def __init__(
        self,
        manager: ModelManager,
        engine: GenerationEngine,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: Optional[Config] = None,
        session_log: Optional[SessionLog] = None,
        peer: Optional[str] = None,
    ):
        self.manager = manager
        self.engine = engine
        self.reader = reader
        self.writer = writer
        self.config = config or manager.config
        self.session_log = session_log or manager.session_log or NullSessionLog()
        self.peer = peer or "client"
        self.commands_handled = 0
        self._disconnected = False

    async def run(self) -> None:
        """Read and handle lines until QUIT, EOF or a connection error"""
        try:
            while True:
                line = await self._read_line()
                if line is None:
                    break
                if line is _SKIPPED:
                    continue
                if not await self.handle_line(line):
                    break
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.info(f"Connection from {self.peer} lost: {exc}")
        finally:
            await self._close()

    async def _read_line(self):
        """
        Next complete line without its terminator

        Returns None at end of stream (a trailing partial line is dropped)
        and _SKIPPED after discarding a line longer than the stream limit.
        """
        try:
            raw = await self.reader.readuntil(b"\n")
        except asyncio.IncompleteReadError:
            return None
        except asyncio.LimitOverrunError:
            logger.warning(f"Oversized command line from {self.peer}, discarding")
            complete = await self._discard_oversized_line()
            await self._send(protocol.error(LINE_TOO_LONG_MESSAGE))
            return _SKIPPED if complete else None

        text = raw.decode("utf-8", errors="replace")
        text = text[:-1]
        if text.endswith("\r"):
            text = text[:-1]
        return text

    async def _discard_oversized_line(self) -> bool:
        """Consume input through the next newline; False if the stream ended first"""
        while True:
            try:
                await self.reader.readuntil(b"\n")
                return True
            except asyncio.LimitOverrunError as exc:
                await self.reader.readexactly(exc.consumed)
            except asyncio.IncompleteReadError:
                return False

    async def handle_line(self, line: str) -> bool:
        """
        Handle one command line

        Returns:
            False when the session should end (QUIT), True otherwise
        """
        if not line:
            return True
        parsed = protocol.parse_command_line(line)

        self.commands_handled += 1
        start_time = time.perf_counter()
        keep_open = True
        try:
            keep_open = await self._dispatch(parsed)
        except BridgeError as exc:
            logger.info(f"{parsed.verb} failed: {exc}")
            self.session_log.log(f"ERROR: {parsed.verb} failed: {exc}")
            await self._send(protocol.error(exc.message))
        except Exception as exc:
            logger.exception(f"Unexpected error handling {parsed.verb}: {exc}")
            self.session_log.log(f"ERROR: Unexpected error handling {parsed.verb}: {exc}")
            await self._send(protocol.error(INTERNAL_ERROR_MESSAGE))

        logger.debug(f"{parsed.verb} handled in {(time.perf_counter() - start_time) * 1000:.1f}ms")
        return keep_open

    async def _dispatch(self, parsed: CommandLine) -> bool:
        command = parsed.command

        if command is Command.PING:
            await self._send(protocol.ok("pong"))
        elif command is Command.STATUS:
            status = await asyncio.to_thread(self.manager.status)
            await self._send(protocol.ok(status.describe()))
        elif command is Command.LOAD:
            await self.load(parsed.argument)
        elif command is Command.INFER:
            await self.infer(parsed.argument)
        elif command is Command.INFER_STREAM:
            await self.infer_stream(parsed.argument)
        elif command is Command.FREE:
            await asyncio.to_thread(self.manager.unload)
            await self._send(protocol.ok("Resources freed"))
        elif command is Command.QUIT:
            await self._send(protocol.ok("Goodbye"))
            return False
        else:
            raise ProtocolError(f"Unknown command: {parsed.verb}")

        return True

    async def load(self, path: str) -> None:
        if not path:
            raise EmptyInputError("No model path provided")

        self.session_log.log(f"LOAD requested: {path}")
        await asyncio.to_thread(self.manager.load, path)
        await self._send(protocol.ok("Model loaded successfully"))

    async def infer(self, prompt: str) -> None:
        result = await asyncio.to_thread(self.engine.generate, prompt)
        logger.info(
            f"INFER completed: {result.tokens_generated} tokens, finish_reason={result.finish_reason}"
        )
        await self._send(protocol.ok("Inference completed", result.text))

    async def infer_stream(self, prompt: str) -> None:
        """
        Stream one token message per generated token

        Generation runs on a worker thread that hands tokens to this
        coroutine through a bounded queue. Errors raised before the first
        token propagate to handle_line as a single error envelope.
        """
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=self.config.stream_queue_size)
        put_timeout = self.config.queue_put_timeout_s

        def on_token(text: str, final: bool) -> None:
            # Called on the worker thread; blocks while the queue is full
            future = asyncio.run_coroutine_threadsafe(queue.put((text, final)), loop)
            try:
                future.result(timeout=put_timeout)
            except concurrent.futures.TimeoutError:
                # The token must not arrive after the worker has given up
                future.cancel()
                raise

        async def produce():
            try:
                return await asyncio.to_thread(self.engine.generate_stream, prompt, on_token)
            finally:
                await queue.put(_STREAM_DONE)

        task = asyncio.create_task(produce())
        started = False
        sent = 0

        # Drain every item even after a disconnect so the worker never blocks
        while True:
            item = await queue.get()
            if item is _STREAM_DONE:
                break
            text, final = item
            if not started:
                await self._send(protocol.stream_start())
                started = True
            await self._send(protocol.encode_token(text, final))
            sent += 1

        try:
            result = await task
        except Exception as exc:
            if not started:
                raise
            # The stream is already open; close it with an error envelope
            logger.error(f"INFER_STREAM failed after {sent} tokens: {exc}")
            self.session_log.log(f"ERROR: INFER_STREAM failed after {sent} tokens: {exc}")
            message = exc.message if isinstance(exc, BridgeError) else INTERNAL_ERROR_MESSAGE
            await self._send(protocol.error(message))
            return

        logger.info(
            f"INFER_STREAM completed: {result.tokens_generated} tokens, "
            f"finish_reason={result.finish_reason}"
        )

    async def _send(self, payload: bytes) -> None:
        """Write one response line; after a write failure further output is dropped"""
        if self._disconnected:
            return
        try:
            self.writer.write(payload)
            await self.writer.drain()
        except (ConnectionError, RuntimeError) as exc:
            self._disconnected = True
            logger.info(f"Client {self.peer} went away during write: {exc}")

    async def _close(self) -> None:
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            logger.debug(f"Error closing connection to {self.peer}: {exc}")
