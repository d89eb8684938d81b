"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Luna configuration. All values come from environment variables."""

    # Anthropic (cloud)
    anthropic_api_key: str = Field(default="")
    claude_model: str = Field(default="claude-sonnet-4-5-20250929")

    # Ollama (local): comma-separated "adapter_id=ollama_tag" pairs
    ollama_base_url: str = Field(default="http://localhost:11434")
    ollama_models: str = Field(default="phi3-mini=phi3:mini")

    # Default model used by the CLI when --model is omitted
    default_model: str = Field(default="phi3-mini")

    # Database
    database_path: Path = Field(default=Path("data/luna.db"))

    # Turso (hosted libSQL); overrides database_path when set
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Cloud adapters allowed full record disclosure (local adapters always are)
    trusted_models: str = Field(default="")

    # Conversation memory
    memory_message_window: int = Field(default=11)
    memory_token_budget: int = Field(default=3000)
    summary_fetch_limit: int = Field(default=3)
    pin_fetch_limit: int = Field(default=5)
    persist_messages: bool = Field(default=True)

    # Record context
    record_recent_days: int = Field(default=30)

    # Brave Search (web_search tool)
    brave_search_api_key: str = Field(default="")
    search_requires_explicit_intent: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_trusted_models(self) -> frozenset[str]:
        """Parse TRUSTED_MODELS into an immutable set of adapter IDs."""
        if not self.trusted_models.strip():
            return frozenset()
        return frozenset(m.strip() for m in self.trusted_models.split(",") if m.strip())

    def get_ollama_models(self) -> dict[str, str]:
        """Parse OLLAMA_MODELS into ``{adapter_id: ollama_tag}``.

        An entry without ``=`` uses the same string for both.
        """
        models: dict[str, str] = {}
        for entry in self.ollama_models.split(","):
            entry = entry.strip()
            if not entry:
                continue
            adapter_id, _, tag = entry.partition("=")
            models[adapter_id.strip()] = (tag or adapter_id).strip()
        return models


settings = Settings()
