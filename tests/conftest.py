"""
Pytest configuration for llama-bridge tests

Sets up Python path to allow imports from python/ directory and provides
shared fixtures built on the scripted stub backend.
"""
import sys
from pathlib import Path

import pytest

# Add python directory to path for imports
python_dir = Path(__file__).parent.parent / 'python'
sys.path.insert(0, str(python_dir))
# backend_stub lives next to this file
sys.path.insert(0, str(Path(__file__).parent))

from backend_stub import StubBackend  # noqa: E402
from config_loader import Config  # noqa: E402
from config_loader import deep_merge  # noqa: E402
from models.generator import GenerationEngine  # noqa: E402
from models.loader import ModelManager  # noqa: E402
from session_log import SessionLog  # noqa: E402

TEST_CONFIG = {
    "bridge": {
        "transport": "tcp",
        "host": "127.0.0.1",
        "port": 0,
        "max_line_bytes": 1024,
        "stream_queue_size": 4,
        "queue_put_timeout_s": 5.0,
    },
    "model": {
        "context_length": 64,
        "n_threads": 1,
        "n_batch": 32,
    },
    "generation": {
        "max_new_tokens": 8,
        "log_every_n_tokens": 1,
    },
    "logging": {
        "level": "DEBUG",
        "session_log_enabled": False,
    },
}


def make_config(overrides=None) -> Config:
    """Build a validated Config from the test defaults plus overrides"""
    config = Config(deep_merge(TEST_CONFIG, overrides or {}))
    config.validate()
    return config


@pytest.fixture(autouse=True)
def reset_config():
    """Reset global config before each test"""
    import config_loader

    # Reset global config to avoid cross-test contamination
    config_loader._global_config = None

    yield

    # Clean up after test
    config_loader._global_config = None


@pytest.fixture
def bridge_config():
    return make_config()


@pytest.fixture
def backend():
    return StubBackend()


@pytest.fixture
def session_log():
    log = SessionLog()
    log.open()
    yield log
    log.close()


@pytest.fixture
def manager(backend, session_log, bridge_config):
    return ModelManager(backend, session_log=session_log, config=bridge_config)


@pytest.fixture
def loaded_manager(manager):
    manager.load("/models/test.bin")
    return manager


@pytest.fixture
def engine(manager):
    return GenerationEngine(manager)


@pytest.fixture
def config_factory():
    """make_config as a fixture, for tests that need non-default settings"""
    return make_config
