"""
Python Configuration Loader

Loads bridge configuration from YAML files so socket, model and
generation settings are not hardcoded
"""

import logging
import os
import threading
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

CONFIG_FILENAME = "bridge.yaml"


class Config:
    """Bridge configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Acceptor / wire
        bridge = config_dict.get("bridge", {})
        self.transport = bridge.get("transport", "unix")
        self.socket_path = bridge.get("socket_path", "/tmp/llama-cpp-bridge.sock")
        self.host = bridge.get("host", "127.0.0.1")
        self.port = bridge.get("port", 7437)
        self.backlog = bridge.get("backlog", 10)
        self.max_line_bytes = bridge.get("max_line_bytes", 65536)
        self.stream_queue_size = bridge.get("stream_queue_size", 100)
        self.queue_put_timeout_s = bridge.get("queue_put_timeout_s", 30.0)

        # Model and context construction
        model = config_dict.get("model", {})
        self.context_length = model.get("context_length", 2048)
        self.n_threads = model.get("n_threads", 4)
        self.n_batch = model.get("n_batch", 512)
        # mlock stays off so several bridges can share a host under memory pressure
        self.use_mmap = model.get("use_mmap", True)
        self.use_mlock = model.get("use_mlock", False)
        self.n_gpu_layers = model.get("n_gpu_layers", 0)
        self.models_dir = model.get("models_dir")

        # Generation
        generation = config_dict.get("generation", {})
        self.max_new_tokens = generation.get("max_new_tokens", 128)
        self.max_prompt_chars = generation.get("max_prompt_chars", 1_048_576)
        self.log_every_n_tokens = generation.get("log_every_n_tokens", 5)

        # Logging
        log_cfg = config_dict.get("logging", {})
        self.log_level = log_cfg.get("level", "INFO")
        self.session_log_enabled = log_cfg.get("session_log_enabled", True)
        self.session_log_path = log_cfg.get("session_log_path", "worker_log.txt")
        self.session_log_max_entries = log_cfg.get("session_log_max_entries", 10000)

    def validate(self) -> None:
        """
        Validate configuration values

        Catches invalid config values at startup instead of on the first LOAD

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.transport not in ("unix", "tcp"):
            raise ValueError(f"transport must be 'unix' or 'tcp', got {self.transport}")

        if self.transport == "unix" and not self.socket_path:
            raise ValueError("socket_path is required for the unix transport")

        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"port must be in range [0, 65535], got {self.port}")

        if self.backlog < 1:
            raise ValueError(f"backlog must be >= 1, got {self.backlog}")

        if self.max_line_bytes < 1024:
            raise ValueError(f"max_line_bytes must be >= 1024 bytes, got {self.max_line_bytes}")

        if self.stream_queue_size < 1:
            raise ValueError(f"stream_queue_size must be >= 1, got {self.stream_queue_size}")

        if self.context_length < 16:
            raise ValueError(f"context_length must be >= 16, got {self.context_length}")

        if self.n_threads < 1:
            raise ValueError(f"n_threads must be >= 1, got {self.n_threads}")

        if self.n_batch < 1 or self.n_batch > self.context_length:
            raise ValueError(
                f"n_batch must be in range [1, context_length={self.context_length}], got {self.n_batch}"
            )

        if self.max_new_tokens < 1:
            raise ValueError(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")

        if self.max_prompt_chars < 1:
            raise ValueError(f"max_prompt_chars must be >= 1, got {self.max_prompt_chars}")

        if self.log_every_n_tokens < 1:
            raise ValueError(f"log_every_n_tokens must be >= 1, got {self.log_every_n_tokens}")

        # getLevelName maps known names to their numeric level
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ValueError(f"Unknown log level: {self.log_level}")


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def find_config_file() -> Optional[str]:
    """Locate config/bridge.yaml by walking up from this file"""
    env_path = os.getenv("LLAMA_BRIDGE_CONFIG")
    if env_path:
        return env_path

    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        candidate = current / "config" / CONFIG_FILENAME
        if candidate.exists():
            return str(candidate)
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to the nearest config/bridge.yaml)
        environment: Environment name (production/development/test)

    Returns:
        Config instance (built-in defaults when no file can be found)

    Raises:
        FileNotFoundError: If an explicit config file is missing
        ValueError: If config file is invalid
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = find_config_file()

    base_config: Dict[str, Any] = {}
    if config_path is not None:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                base_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if explicit:
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            logging.warning(f"Configuration file not found, using defaults: {config_path}")
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    if not isinstance(base_config, dict):
        raise ValueError(f"Config file '{config_path}' must contain a mapping")

    # Determine environment
    env = environment or os.getenv("BRIDGE_ENV") or os.getenv("PYTHON_ENV") or "development"

    # Apply environment-specific overrides
    final_config = base_config
    if "environments" in base_config and env in base_config["environments"]:
        env_overrides = base_config["environments"][env] or {}
        final_config = deep_merge(base_config, env_overrides)

    # Remove environments section
    if "environments" in final_config:
        final_config = {k: v for k, v in final_config.items() if k != "environments"}

    config = Config(final_config)
    config.validate()
    return config


# Global config instance
_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Initialize global configuration (thread-safe)"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Get global configuration (lazy initialization)

    Double-checked locking: the session handler, the worker threads and the
    embedded bridge may all ask for the config during cold start.
    """
    global _global_config

    # First check (no lock) - fast path for already-initialized case
    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config
