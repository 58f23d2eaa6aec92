import pytest

from core import config as config_module


def _reset_settings_cache():
    config_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_cache():
    _reset_settings_cache()
    yield
    _reset_settings_cache()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("INTERNAL_API_TOKEN", "real-token")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_requires_internal_token(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("INTERNAL_API_TOKEN", "")

    with pytest.raises(ValueError, match="INTERNAL_API_TOKEN"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.delenv("INTERNAL_API_TOKEN", raising=False)

    settings = config_module.get_settings()
    assert settings.app_env == "local"


def test_lock_ttl_is_clamped():
    assert config_module.Settings(job_task_lock_ttl_secs=5).lock_ttl_secs == 60
    assert config_module.Settings(job_task_lock_ttl_secs=600).lock_ttl_secs == 600
    assert config_module.Settings(job_task_lock_ttl_secs=99999).lock_ttl_secs == 3600


def test_worker_id_falls_back_to_host_and_pid():
    assert config_module.Settings(worker_id="w-7").resolved_worker_id == "w-7"
    assert ":" in config_module.Settings(worker_id="").resolved_worker_id


def test_youtube_oauth_configured():
    assert config_module.Settings(youtube_client_id="", youtube_client_secret="").youtube_oauth_configured is False
    assert config_module.Settings(youtube_client_id="id", youtube_client_secret="s").youtube_oauth_configured is True
