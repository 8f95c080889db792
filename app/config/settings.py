from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OPSAI_", case_sensitive=False)

    env: str = "dev"
    log_level: str = "INFO"
    metrics_enabled: bool = True

    # Secret vault
    secret_master_key: str | None = None
    secret_min_master_key_length: int = 32

    # Identity
    identity_backend: str = "static"
    identity_tokens: str = Field(default="", description="Comma separated token:user pairs")
    identity_url: str | None = None
    identity_api_key: str | None = None
    identity_timeout_s: float = 5.0

    # Datastore
    store_backend: str = "memory"
    postgres_dsn: str | None = None
    chunk_table: str = "ai_document_chunks"
    usage_log_table: str = "ai_usage_logs"

    # Upstream provider
    provider_key: str = "openai"
    openai_base_url: str = "https://api.openai.com"
    upstream_timeout_s: float = 60.0
    default_completion_model: str = "gpt-4.1-mini"
    default_embedding_model: str = "text-embedding-3-small"
    expose_upstream_errors: bool = False

    contracts_dir: Path = Path(__file__).resolve().parents[2] / "docs" / "contracts" / "v1"
    prompt_templates_dir: Path = Path(__file__).resolve().parents[1] / "prompts" / "templates"

    @property
    def identity_token_map(self) -> dict[str, str]:
        """Parse ``token:user,token:user`` into a dict."""
        result: dict[str, str] = {}
        for item in self.identity_tokens.split(","):
            item = item.strip()
            if ":" not in item:
                continue
            token, user_id = item.split(":", 1)
            token = token.strip()
            user_id = user_id.strip()
            if not token or not user_id:
                continue
            result[token] = user_id
        return result

    @property
    def identity_backend_normalized(self) -> str:
        return self.identity_backend.strip().lower()

    @property
    def store_backend_normalized(self) -> str:
        return self.store_backend.strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
