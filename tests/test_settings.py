"""
Tests for YAML settings loading and env substitution.
"""
import pytest

from config.settings import (
    Settings, _coerce, _substitute_env_vars, get_settings, load_settings, reset_settings,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestDefaults:
    def test_dataclass_defaults(self):
        settings = Settings()
        assert settings.store.backend == "memory"
        assert settings.store.namespace == "ia"
        assert settings.conversation.ttl_seconds == 1800
        assert settings.worker.max_workers == 10
        assert settings.worker.poll_interval == 1.0
        assert settings.worker.batch_cap == 10
        assert settings.worker.overload_factor == 2
        assert settings.worker.generation_timeout == 60.0
        assert settings.worker.cleanup_max_age_hours == 24

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.worker.max_workers == 10
        assert settings.audit.backend == "memory"

    def test_bundled_settings_file_loads(self):
        settings = get_settings()
        assert settings.app_name == "ConverseWorker"
        assert settings.audit.endpoints["purge"] == "/ai_responses/purge"
        assert get_settings() is settings


class TestLoading:
    def test_sections_and_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6380")
        monkeypatch.setenv("TEST_WORKERS", "4")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "log_format: json\n"
            "store:\n"
            "  backend: redis\n"
            "  redis_url: ${TEST_REDIS_URL}\n"
            "  namespace: staging\n"
            "worker:\n"
            "  max_workers: ${TEST_WORKERS}\n"
            "  generation_timeout: 30\n"
            "  unknown_key: ignored\n"
            "conversation:\n"
            "  ttl_seconds: 600\n"
        )

        settings = load_settings(str(path))
        assert settings.log_format == "json"
        assert settings.store.backend == "redis"
        assert settings.store.redis_url == "redis://cache:6380"
        assert settings.store.namespace == "staging"
        assert settings.worker.max_workers == 4
        assert settings.worker.generation_timeout == 30.0
        assert settings.worker.batch_cap == 10
        assert settings.conversation.ttl_seconds == 600
        assert settings.conversation.sweep_interval == 300

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: Staging\n")
        monkeypatch.setenv("CONVERSE_CONFIG", str(path))
        assert load_settings().app_name == "Staging"

    def test_unset_env_var_left_as_is(self, monkeypatch):
        monkeypatch.delenv("DEFINITELY_UNSET_VAR", raising=False)
        assert _substitute_env_vars("x-${DEFINITELY_UNSET_VAR}") == "x-${DEFINITELY_UNSET_VAR}"


class TestCoerce:
    def test_bool_strings(self):
        assert _coerce("true", False) is True
        assert _coerce("0", True) is False

    def test_numbers(self):
        assert _coerce("7", 1) == 7
        assert _coerce("2.5", 1.0) == 2.5

    def test_none_keeps_default(self):
        assert _coerce(None, 3) == 3
