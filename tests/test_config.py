import pytest

from flowbot.config import load_settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "TESTING",
        "DATABASE_URL",
        "OPENROUTER_API_KEY",
        "OPENAI_API_KEY",
        "STEP_TIMEOUT_SECONDS",
        "SCHEDULER_ENABLED",
        "SCHEDULER_MAX_CONCURRENCY",
    ):
        # set-then-delete so teardown also removes values loaded from .env files
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


def test_defaults(clean_env, tmp_path):
    settings = load_settings(tmp_path / "missing.env")
    assert settings.testing is False
    assert settings.database_url == "sqlite:///./flowbot.db"
    assert settings.llm_api_key is None
    assert settings.scheduler_enabled is False
    assert settings.step_timeout_seconds == 60.0


def test_environment_overrides(clean_env, tmp_path):
    clean_env.setenv("TESTING", "yes")
    clean_env.setenv("OPENROUTER_API_KEY", "sk-test")
    clean_env.setenv("STEP_TIMEOUT_SECONDS", "2.5")
    clean_env.setenv("SCHEDULER_MAX_CONCURRENCY", "8")

    settings = load_settings(tmp_path / "missing.env")

    assert settings.testing is True
    assert settings.llm_api_key == "sk-test"
    assert settings.step_timeout_seconds == 2.5
    assert settings.scheduler_max_concurrency == 8


def test_env_file_is_read(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("DATABASE_URL=sqlite:///./from-file.db\n")

    assert load_settings(env_file).database_url == "sqlite:///./from-file.db"


def test_bad_number_names_the_variable(clean_env, tmp_path):
    clean_env.setenv("SCHEDULER_MAX_CONCURRENCY", "many")
    with pytest.raises(ValueError, match="SCHEDULER_MAX_CONCURRENCY"):
        load_settings(tmp_path / "missing.env")


def test_override_rejects_unknown_keys(settings):
    assert settings.override(step_timeout_seconds=1.0).step_timeout_seconds == 1.0
    with pytest.raises(AttributeError):
        settings.override(not_a_setting=True)
