"""
Session log - append-only diagnostic record of bridge activity

Each line is prefixed with a local timestamp:

    2025-01-31 12:00:00 - Model loaded: /models/test.bin

Entries go to an optional file (opened in append mode, flushed per event)
and to a bounded in-memory ring so ``text()`` works without a file. Write
failures are reported by the logging machinery on stderr and never reach
request handling.
"""

import logging
from collections import deque
from typing import Deque, Optional

from config_loader import get_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
SESSION_BANNER = "==== New Session Started ===="


class _RingHandler(logging.Handler):
    """Keep formatted records in a bounded deque"""

    def __init__(self, entries: Deque[str]):
        super().__init__()
        self.entries = entries

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.entries.append(self.format(record))
        except Exception:
            self.handleError(record)


class SessionLog:
    """
    Diagnostic event log with an explicit open/close lifecycle

    Usage:
        with SessionLog("worker_log.txt") as session_log:
            session_log.log("Model loaded: /models/test.bin")
    """

    def __init__(self, path: Optional[str] = None, max_entries: int = 10000):
        self.path = path
        self._entries: Deque[str] = deque(maxlen=max_entries)
        # Standalone logger: not registered globally and never propagated to root
        self._logger = logging.Logger("llama_bridge.session", level=logging.INFO)
        self._file_handler: Optional[logging.FileHandler] = None
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> "SessionLog":
        """Attach handlers and write the session banner"""
        if self._opened:
            return self

        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

        ring = _RingHandler(self._entries)
        ring.setFormatter(formatter)
        self._logger.addHandler(ring)

        if self.path:
            try:
                handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
            except OSError as exc:
                logger.warning(f"Session log file unavailable, keeping entries in memory only: {exc}")
            else:
                handler.setFormatter(formatter)
                self._logger.addHandler(handler)
                self._file_handler = handler

        self._opened = True
        if self._file_handler is not None:
            # Blank separator between sessions, as the file is shared across runs
            self._file_handler.stream.write("\n\n")
        self.log(SESSION_BANNER)
        return self

    def log(self, message: str) -> None:
        """Record one event (no-op while closed)"""
        if not self._opened:
            return
        self._logger.info(message)

    def text(self) -> str:
        """
        Return the accumulated log

        Reads the file when one is attached (so earlier runs are included),
        otherwise joins the in-memory entries.
        """
        if self._file_handler is not None and self.path:
            self._file_handler.flush()
            try:
                with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                    return f.read()
            except OSError as exc:
                logger.warning(f"Unable to read session log {self.path}: {exc}")
                return "Unable to open log file"

        if not self._entries:
            return ""
        return "\n".join(self._entries) + "\n"

    def close(self) -> None:
        """Detach and close all handlers"""
        if not self._opened:
            return
        self._opened = False
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()
        self._file_handler = None

    def __enter__(self) -> "SessionLog":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class NullSessionLog(SessionLog):
    """Session log that records nothing (session_log_enabled: false)"""

    def __init__(self):
        super().__init__(path=None, max_entries=1)

    def log(self, message: str) -> None:
        return None


def create_session_log(
    path: Optional[str] = None,
    enabled: Optional[bool] = None,
    max_entries: Optional[int] = None,
) -> SessionLog:
    """Build a session log from configuration (not yet opened)"""
    config = get_config()
    if enabled is None:
        enabled = config.session_log_enabled
    if not enabled:
        return NullSessionLog()
    return SessionLog(
        path=path if path is not None else config.session_log_path,
        max_entries=max_entries or config.session_log_max_entries,
    )
