"""
Unit tests for ModelManager lifecycle

Test Coverage:
- Load / unload / status transitions
- Free-then-load replacement (never two models resident)
- Failure paths leave nothing loaded and nothing leaked
- acquire() guarding generation
"""

import threading

import pytest

from backend_stub import StubBackend
from errors import EmptyInputError, LoadError, ModelNotLoaded
from models.loader import ContextHandle, ModelManager


class TestLoad:
    """Test loading models"""

    def test_load_sets_status(self, manager):
        """Test a successful load is reported by status()"""
        handle = manager.load("/models/test.bin")

        assert handle.path == "/models/test.bin"
        assert manager.is_loaded
        assert manager.status().describe() == "Model loaded: /models/test.bin"

    def test_load_uses_configured_params(self, manager, backend):
        """Test model and context params come from config"""
        manager.load("/models/test.bin")

        ctx = backend.contexts[-1]
        assert ctx.n_ctx == 64
        assert ctx.model.params.use_mmap is True
        assert ctx.model.params.use_mlock is False

    def test_backend_initialized_once(self, manager, backend):
        """Test backend init runs on the first load only"""
        manager.load("/models/a.bin")
        manager.load("/models/b.bin")

        assert backend.calls.count("init") == 1

    def test_reload_frees_previous_first(self, manager, backend):
        """Test loading a second model frees the first before constructing"""
        manager.load("/models/a.bin")
        manager.load("/models/b.bin")

        assert backend.max_live_models == 1
        assert backend.live_models == 1
        assert manager.status().path == "/models/b.bin"

        second_load = len(backend.calls) - 1 - backend.calls[::-1].index("load_model")
        assert "free_model" in backend.calls[:second_load]

    def test_empty_path(self, manager, backend):
        """Test an empty path is rejected without touching the backend"""
        with pytest.raises(EmptyInputError, match="No model path provided"):
            manager.load("")

        assert backend.calls == []

    def test_empty_path_keeps_current_model(self, loaded_manager):
        """Test a rejected empty LOAD does not unload the current model"""
        with pytest.raises(EmptyInputError):
            loaded_manager.load("")

        assert loaded_manager.is_loaded


class TestLoadFailures:
    """Test failure handling during load"""

    def test_missing_file(self, bridge_config, session_log):
        """Test a missing file becomes LoadError"""
        backend = StubBackend(missing_paths=["/models/missing.bin"])
        manager = ModelManager(backend, session_log=session_log, config=bridge_config)

        with pytest.raises(LoadError) as exc_info:
            manager.load("/models/missing.bin")

        assert exc_info.value.message == "Failed to load model"
        assert "not found" in exc_info.value.reason
        assert not manager.is_loaded

    def test_failed_load_unloads_previous(self, bridge_config, session_log):
        """Test a failing LOAD leaves no model loaded, not even the old one"""
        backend = StubBackend()
        manager = ModelManager(backend, session_log=session_log, config=bridge_config)
        manager.load("/models/good.bin")

        backend.fail_load = True
        with pytest.raises(LoadError):
            manager.load("/models/bad.bin")

        assert manager.status().describe() == "No model loaded"
        assert backend.live_models == 0

    def test_context_failure_frees_model(self, bridge_config, session_log):
        """Test a context failure releases the model it was built on"""
        backend = StubBackend(fail_context=True)
        manager = ModelManager(backend, session_log=session_log, config=bridge_config)

        with pytest.raises(LoadError, match="Context construction failed"):
            manager.load("/models/test.bin")

        assert backend.live_models == 0
        assert backend.live_contexts == 0
        assert not manager.is_loaded
        assert "ERROR: Failed to create context" in session_log.text()

    def test_backend_init_failure(self, bridge_config, session_log):
        """Test backend init failure is a LoadError and is retried next time"""
        backend = StubBackend(fail_init=True)
        manager = ModelManager(backend, session_log=session_log, config=bridge_config)

        with pytest.raises(LoadError, match="Backend initialization failed"):
            manager.load("/models/test.bin")

        backend.fail_init = False
        manager.load("/models/test.bin")
        assert backend.calls.count("init") == 2


class TestUnload:
    """Test unload and shutdown"""

    def test_unload_frees_context_then_model(self, loaded_manager, backend):
        """Test release order is context, then model"""
        loaded_manager.unload()

        assert backend.calls[-2:] == ["free_context", "free_model"]
        assert loaded_manager.status().describe() == "No model loaded"

    def test_unload_is_idempotent(self, manager, backend):
        """Test unloading with nothing loaded is a no-op"""
        manager.unload()
        manager.unload()

        assert backend.calls == []

    def test_shutdown_releases_backend(self, loaded_manager, backend):
        """Test shutdown unloads and releases the backend"""
        loaded_manager.shutdown()

        assert backend.shut_down
        assert backend.live_models == 0
        assert not loaded_manager.is_loaded

    def test_session_log_milestones(self, loaded_manager, session_log):
        """Test load and unload are recorded"""
        loaded_manager.unload()
        text = session_log.text()

        assert "Loading model from /models/test.bin" in text
        assert "Vocabulary size: 64" in text
        assert "Context size: 64" in text
        assert "Model unloaded: /models/test.bin" in text


class TestAcquire:
    """Test exclusive access to the loaded pair"""

    def test_acquire_without_model(self, manager, backend):
        """Test acquire raises before any backend call"""
        with pytest.raises(ModelNotLoaded, match="No model loaded"):
            with manager.acquire():
                pass

        assert backend.calls == []

    def test_acquire_yields_pair(self, loaded_manager):
        """Test acquire yields the model and its context"""
        with loaded_manager.acquire() as (model, ctx):
            assert model.path == "/models/test.bin"
            assert ctx.context_size == 64

    def test_acquire_blocks_other_threads(self, loaded_manager):
        """Test unload from another thread waits for the holder"""
        done = threading.Event()

        def unload():
            loaded_manager.unload()
            done.set()

        with loaded_manager.acquire():
            worker = threading.Thread(target=unload)
            worker.start()
            assert not done.wait(timeout=0.2)
            assert loaded_manager.is_loaded

        worker.join(timeout=5)
        assert done.is_set()
        assert not loaded_manager.is_loaded

    def test_ensure_loaded_reuses_current(self, loaded_manager, backend):
        """Test ensure_loaded skips reloading the same path"""
        loaded_manager.ensure_loaded("/models/test.bin")

        assert backend.calls.count("load_model") == 1

    def test_ensure_loaded_switches_models(self, loaded_manager, backend):
        """Test ensure_loaded loads a different path"""
        loaded_manager.ensure_loaded("/models/other.bin")

        assert backend.calls.count("load_model") == 2
        assert loaded_manager.status().path == "/models/other.bin"


class TestContextHandle:
    """Test position bookkeeping"""

    def test_advance(self):
        """Test positions only move forward"""
        ctx = ContextHandle(raw=None, context_size=16)

        assert ctx.advance(3) == 3
        assert ctx.advance(1) == 4

    @pytest.mark.parametrize("n", [0, -1])
    def test_advance_rejects_non_positive(self, n):
        """Test zero or negative steps are rejected"""
        ctx = ContextHandle(raw=None, context_size=16)

        with pytest.raises(ValueError):
            ctx.advance(n)


class TestLlamaCppBackendUnavailable:
    """Test the real adapter on hosts without llama-cpp-python"""

    def test_load_reports_load_error(self, monkeypatch, bridge_config, session_log):
        """Test LOAD fails cleanly when the native library is missing"""
        import models.backend as backend_module

        monkeypatch.setattr(backend_module, "LLAMA_CPP_AVAILABLE", False)
        monkeypatch.setattr(backend_module, "LLAMA_CPP_IMPORT_ERROR", "llama-cpp-python import failed: test")
        manager = ModelManager(backend_module.LlamaCppBackend(), session_log=session_log, config=bridge_config)

        with pytest.raises(LoadError) as exc_info:
            manager.load("/models/test.gguf")

        assert exc_info.value.message == "Failed to load model"
        assert "llama-cpp-python" in exc_info.value.reason
        assert manager.status().describe() == "No model loaded"
