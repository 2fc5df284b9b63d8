"""
Wire protocol - command line parsing and JSON response envelopes

Requests are single newline-terminated lines ``COMMAND [ARGS]``.
Responses are newline-terminated JSON objects:

    {"status": "ok", "message": "pong"}
    {"status": "ok", "message": "Inference completed", "data": "..."}
    {"type": "token", "token": " world", "final": true}
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import orjson

STATUS_OK = "ok"
STATUS_ERROR = "error"

STREAM_START_MESSAGE = "Starting token generation"

# Whitespace that separates the verb from its argument
_ARG_WHITESPACE = " \t"


class Command(str, Enum):
    LOAD = "LOAD"
    INFER = "INFER"
    INFER_STREAM = "INFER_STREAM"
    STATUS = "STATUS"
    FREE = "FREE"
    PING = "PING"
    QUIT = "QUIT"


@dataclass(frozen=True)
class CommandLine:
    """One parsed request line"""

    verb: str
    argument: str
    command: Optional[Command] = None

    @property
    def is_known(self) -> bool:
        return self.command is not None


def parse_command_line(line: str) -> CommandLine:
    """
    Split a request line into verb and argument

    The verb is the first whitespace-delimited word (case-sensitive). The
    argument is the rest of the line with leading spaces and tabs removed;
    trailing text is kept as sent.

    Args:
        line: Request line without its newline terminator

    Returns:
        CommandLine (command is None for unknown verbs)
    """
    stripped = line.lstrip()
    if not stripped:
        return CommandLine(verb="", argument="")

    parts = stripped.split(None, 1)
    verb = parts[0]
    # Re-slice from the original text so inner whitespace of the argument survives
    rest = stripped[len(verb):]
    argument = rest.lstrip(_ARG_WHITESPACE)

    try:
        command: Optional[Command] = Command(verb)
    except ValueError:
        command = None

    return CommandLine(verb=verb, argument=argument, command=command)


def _dumps(payload: Dict[str, Any]) -> bytes:
    return orjson.dumps(payload) + b"\n"


def encode_response(status: str, message: str, data: Optional[str] = None) -> bytes:
    """Encode a simple response envelope (data only when non-empty)"""
    payload: Dict[str, Any] = {"status": status, "message": message}
    if data:
        payload["data"] = data
    return _dumps(payload)


def ok(message: str, data: Optional[str] = None) -> bytes:
    return encode_response(STATUS_OK, message, data)


def error(message: str) -> bytes:
    return encode_response(STATUS_ERROR, message)


def stream_start() -> bytes:
    return ok(STREAM_START_MESSAGE)


def encode_token(token: str, final: bool = False) -> bytes:
    """Encode one streamed token message; ``final`` appears only when true"""
    payload: Dict[str, Any] = {"type": "token", "token": token}
    if final:
        payload["final"] = True
    return _dumps(payload)


def decode_message(raw: bytes) -> Dict[str, Any]:
    """Parse one response line (client side and tests)"""
    return orjson.loads(raw)
