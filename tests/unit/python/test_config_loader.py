"""
Unit tests for config_loader

Test Coverage:
- Defaults and YAML loading
- Environment overrides (deep merge)
- Validation failures
- Global config lifecycle
"""

import pytest

import config_loader
from config_loader import Config, deep_merge, get_config, initialize_config, load_config


@pytest.fixture
def temp_config(tmp_path):
    """
    Create a temporary config file for testing

    Returns:
        Path to temporary config file
    """
    config_content = """
bridge:
  transport: unix
  socket_path: /tmp/test-bridge.sock
  backlog: 4

model:
  context_length: 1024
  n_batch: 256

generation:
  max_new_tokens: 64

logging:
  level: INFO

environments:
  test:
    bridge:
      transport: tcp
      port: 0
    generation:
      max_new_tokens: 4
  production:
    logging:
      level: WARNING
"""
    path = tmp_path / "bridge.yaml"
    path.write_text(config_content)
    return str(path)


class TestConfigDefaults:
    """Test built-in defaults"""

    def test_empty_dict_uses_defaults(self):
        """Test defaults match the documented bridge settings"""
        config = Config({})

        assert config.transport == "unix"
        assert config.socket_path == "/tmp/llama-cpp-bridge.sock"
        assert config.backlog == 10
        assert config.context_length == 2048
        assert config.n_threads == 4
        assert config.n_batch == 512
        assert config.use_mmap is True
        assert config.use_mlock is False
        assert config.max_new_tokens == 128
        assert config.log_every_n_tokens == 5
        assert config.session_log_path == "worker_log.txt"

    def test_defaults_validate(self):
        """Test default configuration passes validation"""
        Config({}).validate()


class TestLoadConfig:
    """Test loading YAML files"""

    def test_base_values(self, temp_config):
        """Test base sections are read"""
        config = load_config(temp_config, environment="development")

        assert config.socket_path == "/tmp/test-bridge.sock"
        assert config.backlog == 4
        assert config.context_length == 1024
        assert config.max_new_tokens == 64

    def test_environment_override(self, temp_config):
        """Test environment section is deep-merged over base"""
        config = load_config(temp_config, environment="test")

        assert config.transport == "tcp"
        assert config.port == 0
        assert config.max_new_tokens == 4
        # Untouched keys in the same section survive the merge
        assert config.socket_path == "/tmp/test-bridge.sock"

    def test_environment_from_env_var(self, temp_config, monkeypatch):
        """Test BRIDGE_ENV selects the environment"""
        monkeypatch.setenv("BRIDGE_ENV", "production")

        config = load_config(temp_config)

        assert config.log_level == "WARNING"

    def test_missing_explicit_file_raises(self, tmp_path):
        """Test an explicit missing path is an error"""
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml_raises(self, tmp_path):
        """Test unparsable YAML is reported as ValueError"""
        path = tmp_path / "bad.yaml"
        path.write_text("bridge: [unclosed\n")

        with pytest.raises(ValueError, match="Failed to parse YAML"):
            load_config(str(path))

    def test_non_mapping_raises(self, tmp_path):
        """Test a YAML list at the top level is rejected"""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError, match="must contain a mapping"):
            load_config(str(path))

    def test_config_path_from_env(self, temp_config, monkeypatch):
        """Test LLAMA_BRIDGE_CONFIG points the loader at a file"""
        monkeypatch.setenv("LLAMA_BRIDGE_CONFIG", temp_config)

        config = load_config(environment="development")

        assert config.socket_path == "/tmp/test-bridge.sock"


class TestValidation:
    """Test Config.validate"""

    @pytest.mark.parametrize(
        "overrides,match",
        [
            ({"bridge": {"transport": "udp"}}, "transport"),
            ({"bridge": {"port": 70000}}, "port"),
            ({"bridge": {"backlog": 0}}, "backlog"),
            ({"bridge": {"max_line_bytes": 10}}, "max_line_bytes"),
            ({"model": {"n_threads": 0}}, "n_threads"),
            ({"model": {"context_length": 128, "n_batch": 256}}, "n_batch"),
            ({"generation": {"max_new_tokens": 0}}, "max_new_tokens"),
            ({"logging": {"level": "LOUD"}}, "log level"),
        ],
    )
    def test_invalid_values(self, overrides, match):
        """Test each invalid setting is rejected with a descriptive error"""
        config = Config(overrides)

        with pytest.raises(ValueError, match=match):
            config.validate()


class TestDeepMerge:
    """Test deep_merge"""

    def test_nested_merge(self):
        """Test nested dicts merge key by key"""
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        override = {"a": {"y": 3}}

        merged = deep_merge(base, override)

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}
        # Inputs are not mutated
        assert base["a"]["y"] == 2


class TestGlobalConfig:
    """Test global config lifecycle"""

    def test_initialize_sets_global(self, temp_config):
        """Test initialize_config replaces the global instance"""
        config = initialize_config(temp_config, "test")

        assert get_config() is config
        assert config_loader._global_config is config

    def test_get_config_is_cached(self):
        """Test lazy initialization happens once"""
        first = get_config()
        second = get_config()

        assert first is second
