import pytest

import agent.llm as llm_module
from agent.llm import get_llm
from services.config import Settings


def make_settings(**env):
    return Settings(_env_file=None, **env)


def test_readonly_url_falls_back_and_system_url_uses_asyncpg():
    settings = make_settings(DATABASE_URL="postgresql://app:secret@db:5432/spend")
    assert settings.database_readonly_url == "postgresql://app:secret@db:5432/spend"
    assert settings.system_db_url == "postgresql+asyncpg://app:secret@db:5432/spend"


def test_readonly_url_drops_driver_suffix():
    settings = make_settings(
        DATABASE_URL="postgresql://app:secret@db/spend",
        DATABASE_READONLY_URL="postgresql+asyncpg://reader:pw@replica/spend",
    )
    assert settings.database_readonly_url == "postgresql://reader:pw@replica/spend"


def test_password_with_special_characters_is_encoded():
    settings = make_settings(DATABASE_URL="postgresql://app:p@ss#1@db/spend")
    assert settings.database_readonly_url == "postgresql://app:p%40ss%231@db/spend"


def test_row_caps_are_kept_consistent():
    settings = make_settings(SQL_DEFAULT_MAX_ROWS=1000, SQL_HARD_MAX_ROWS=300)
    assert settings.sql_default_max_rows == 300

    settings = make_settings(SQL_DEFAULT_MAX_ROWS=0, SQL_HARD_MAX_ROWS=0)
    assert settings.sql_hard_max_rows == 1
    assert settings.sql_default_max_rows == 1


def test_unsupported_provider():
    with pytest.raises(ValueError, match="Supported: openrouter, openai, anthropic"):
        get_llm(provider="mistral", model="m")


def test_missing_openrouter_key(monkeypatch):
    monkeypatch.setattr(llm_module, "settings", make_settings(OPENROUTER_API_KEY=""))
    with pytest.raises(ValueError, match="OpenRouter API key not configured"):
        get_llm(provider="openrouter")
