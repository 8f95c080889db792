import pytest

from app.config.settings import Settings, clear_settings_cache, get_settings


def test_identity_token_map_parses_values() -> None:
    settings = Settings(identity_tokens="tok-a:user-a, tok-b : user-b,invalid,:user-c,tok-d:")
    assert settings.identity_token_map == {"tok-a": "user-a", "tok-b": "user-b"}


def test_backends_normalized() -> None:
    settings = Settings(store_backend=" Postgres ", identity_backend="HTTP")
    assert settings.store_backend_normalized == "postgres"
    assert settings.identity_backend_normalized == "http"


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPSAI_DEFAULT_COMPLETION_MODEL", raising=False)
    monkeypatch.delenv("OPSAI_EXPOSE_UPSTREAM_ERRORS", raising=False)
    settings = Settings()
    assert settings.default_completion_model == "gpt-4.1-mini"
    assert settings.default_embedding_model == "text-embedding-3-small"
    assert settings.provider_key == "openai"
    assert settings.secret_min_master_key_length == 32
    assert settings.expose_upstream_errors is False
    assert (settings.contracts_dir / "usage-log-entry.schema.json").exists()
    assert (settings.prompt_templates_dir / "workflow_copilot.system.md").exists()


def test_env_prefix_and_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPSAI_CHUNK_TABLE", "custom_chunks")
    clear_settings_cache()
    try:
        assert get_settings().chunk_table == "custom_chunks"
        assert get_settings() is get_settings()
    finally:
        clear_settings_cache()
