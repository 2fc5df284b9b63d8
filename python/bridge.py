"""
Llama Bridge - Local inference service over a stream socket

Listens on a Unix domain socket (or loopback TCP), accepts clients and
serves one session at a time. Concurrent clients queue in the kernel
backlog and on the session gate; the model is never shared between
sessions running at the same moment.
"""

import argparse
import asyncio
import logging
import os
import signal
import stat
import sys
from typing import List, Optional, Set

from config_loader import Config, initialize_config
from models.backend import InferenceBackend, LlamaCppBackend
from models.generator import GenerationEngine
from models.loader import ModelManager
from session import SessionHandler
from session_log import SessionLog, create_session_log

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class BridgeServer:
    """Socket acceptor and session scheduler"""

    def __init__(
        self,
        manager: ModelManager,
        engine: Optional[GenerationEngine] = None,
        config: Optional[Config] = None,
    ):
        self.manager = manager
        self.config = config or manager.config
        self.engine = engine or GenerationEngine(manager, config=self.config)
        self.session_log = manager.session_log

        self._server: Optional[asyncio.AbstractServer] = None
        self._session_gate: Optional[asyncio.Lock] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._writers: Set[asyncio.StreamWriter] = set()
        self.sessions_served = 0

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def address(self):
        """Bound socket path (unix) or (host, port) tuple (tcp)"""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()

    async def start(self) -> None:
        """
        Bind and begin accepting connections

        Raises:
            OSError: If the socket cannot be created or bound
        """
        self._session_gate = asyncio.Lock()
        self._stop_event = asyncio.Event()

        if self.config.transport == "unix":
            self._remove_stale_socket()
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=self.config.socket_path,
                limit=self.config.max_line_bytes,
                backlog=self.config.backlog,
            )
        else:
            self._server = await asyncio.start_server(
                self._handle_connection,
                host=self.config.host,
                port=self.config.port,
                limit=self.config.max_line_bytes,
                backlog=self.config.backlog,
            )

        logger.info(f"Bridge listening on {self.address} ({self.config.transport})")
        self.session_log.log(f"Bridge listening on {self.address}")

    def _remove_stale_socket(self) -> None:
        path = self.config.socket_path
        try:
            mode = os.stat(path).st_mode
        except FileNotFoundError:
            return
        if not stat.S_ISSOCK(mode):
            raise OSError(f"Refusing to replace non-socket file at {path}")
        os.unlink(path)
        logger.info(f"Removed stale socket {path}")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername") or "local client"
        self._writers.add(writer)
        try:
            async with self._session_gate:
                self.sessions_served += 1
                logger.info(f"Client connected: {peer}")
                self.session_log.log("Client connected")

                handler = SessionHandler(
                    self.manager,
                    self.engine,
                    reader,
                    writer,
                    config=self.config,
                    session_log=self.session_log,
                    peer=str(peer),
                )
                await handler.run()

                logger.info(f"Client disconnected: {peer} ({handler.commands_handled} commands)")
                self.session_log.log("Client disconnected")
        finally:
            self._writers.discard(writer)

    async def preload(self, model_path: str) -> bool:
        """Load a model before accepting the first client; failure leaves the bridge unloaded"""
        try:
            await asyncio.to_thread(self.manager.load, model_path)
        except Exception as exc:
            logger.error(f"Failed to preload model {model_path}: {exc}")
            return False
        return True

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def serve_forever(self) -> None:
        """Serve until request_stop() (or a signal), then stop()"""
        if self._server is None:
            await self.start()
        await self._stop_event.wait()
        await self.stop()

    async def stop(self) -> None:
        """Close the listener, end open connections and release the model"""
        if self._server is None:
            return

        logger.info("Stopping bridge")
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None

        await asyncio.to_thread(self.manager.shutdown)

        if self.config.transport == "unix":
            try:
                os.unlink(self.config.socket_path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning(f"Failed to remove socket {self.config.socket_path}: {exc}")

        self.session_log.log("Bridge stopped")
        logger.info("Bridge stopped")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform/loop
                logger.debug(f"Signal handler for {sig.name} unavailable")

    async def run(self, preload_model: Optional[str] = None) -> None:
        await self.start()
        self.install_signal_handlers()
        if preload_model:
            await self.preload(preload_model)
        await self.serve_forever()


def build_backend() -> InferenceBackend:
    return LlamaCppBackend()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="llama-bridge",
        description="Local inference bridge serving a line protocol over a socket",
    )
    parser.add_argument("--config", help="Path to bridge.yaml")
    parser.add_argument("--env", help="Configuration environment (production/development/test)")
    parser.add_argument("--socket", help="Unix socket path (selects the unix transport)")
    parser.add_argument("--host", help="TCP host (selects the tcp transport)")
    parser.add_argument("--port", type=int, help="TCP port (selects the tcp transport)")
    parser.add_argument("--model", help="Model file to load at startup")
    parser.add_argument("--log-file", help="Session log file path")
    parser.add_argument("--log-level", help="Diagnostic log level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command-line overrides on top of the loaded configuration"""
    if args.socket:
        config.transport = "unix"
        config.socket_path = args.socket
    if args.host or args.port is not None:
        config.transport = "tcp"
        if args.host:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
    if args.log_file:
        config.session_log_path = args.log_file
        config.session_log_enabled = True
    if args.log_level:
        config.log_level = args.log_level
    config.validate()
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = parse_args(argv)

    try:
        config = apply_overrides(initialize_config(args.config, args.env), args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr, flush=True)
        return 2

    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper()),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )

    session_log: SessionLog = create_session_log()
    with session_log:
        manager = ModelManager(build_backend(), session_log=session_log, config=config)
        server = BridgeServer(manager, config=config)
        try:
            asyncio.run(server.run(preload_model=args.model))
        except OSError as exc:
            logger.error(f"Failed to start bridge: {exc}")
            return 1
        except KeyboardInterrupt:
            logger.info("Interrupted")

    return 0


if __name__ == "__main__":
    sys.exit(main())
