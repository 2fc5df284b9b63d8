"""
Input validation for bridge commands

Centralized validation of LOAD paths and prompts before any backend work
"""

from __future__ import annotations

from typing import Any, Optional

from config_loader import get_config
from errors import EmptyInputError, LoadError, TokenizeError

MAX_PATH_LENGTH = 4096


def validate_model_path(path: Any) -> str:
    """
    Validate the LOAD argument

    Existence on disk is checked by the backend adapter, not here.

    Args:
        path: Model path to validate

    Returns:
        Validated path string

    Raises:
        EmptyInputError: If no path was given
        LoadError: If the path is not usable as a file path
    """
    if path is None or (isinstance(path, str) and not path.strip()):
        raise EmptyInputError("No model path provided")

    if not isinstance(path, str):
        raise LoadError(str(path), f"model path must be a string, got {type(path).__name__}")

    if len(path) > MAX_PATH_LENGTH:
        raise LoadError(path[:64], f"model path too long ({len(path)} chars, max {MAX_PATH_LENGTH})")

    if "\x00" in path:
        raise LoadError(path, "model path contains a NUL byte")

    return path


def validate_prompt(prompt: Any, max_length: Optional[int] = None) -> str:
    """
    Validate an INFER / INFER_STREAM prompt

    Args:
        prompt: Prompt text
        max_length: Maximum allowed length in characters (defaults to config)

    Returns:
        Validated prompt string

    Raises:
        EmptyInputError: If no prompt was given
        TokenizeError: If the prompt is oversized or not text
    """
    if prompt is None or prompt == "":
        raise EmptyInputError("No prompt provided")

    if not isinstance(prompt, str):
        raise TokenizeError(f"prompt must be a string, got {type(prompt).__name__}")

    if max_length is None:
        max_length = get_config().max_prompt_chars

    if len(prompt) > max_length:
        raise TokenizeError(f"prompt too long ({len(prompt)} chars, max {max_length})")

    return prompt
