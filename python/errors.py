"""
Custom exception types for the llama bridge

Provides typed exceptions for consistent wire error mapping.
Every failure that reaches the session boundary should be one of these.
"""

from typing import Optional


class BridgeError(Exception):
    """Base exception for all bridge errors

    ``message`` is the client-facing text placed in the error envelope;
    ``detail`` carries the underlying reason for logs.
    """

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(f"{message}: {detail}" if detail else message)


class ProtocolError(BridgeError):
    """Raised for unknown commands and malformed lines"""


class EmptyInputError(BridgeError):
    """Raised when a command is missing its path or prompt argument"""


class ModelNotLoaded(BridgeError):
    """Raised when attempting to generate without a loaded model"""

    def __init__(self):
        super().__init__("No model loaded")


class LoadError(BridgeError):
    """Raised when model or context construction fails"""

    def __init__(self, path: str, reason: str):
        super().__init__("Failed to load model", reason)
        self.path = path
        self.reason = reason


class TokenizeError(BridgeError):
    """Raised when the prompt cannot be tokenized"""

    def __init__(self, reason: str):
        super().__init__("Failed to tokenize prompt", reason)
        self.reason = reason


class DecodeError(BridgeError):
    """Raised when the backend fails during prefill or the first decode step"""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, reason)
        self.reason = reason
