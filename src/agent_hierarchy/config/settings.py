"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-hierarchy"
    app_env: str = "dev"
    app_debug: bool = False
    gateway_mode: str = "deterministic"
    database_url: str = ""
    retry_base_delay_s: float = Field(default=1.0, ge=0.0)
    alternate_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    validator_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    fanout_max_concurrency: int = Field(default=4, ge=1)
    max_tree_depth: int = Field(default=64, ge=1)
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_alternate_model: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_HIERARCHY_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
