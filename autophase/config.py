"""Autophase configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so ANTHROPIC_API_KEY and AUTO_PHASE_CRON_SECRET are available
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


class GeneralSettings(BaseSettings):
    db_url: str = Field(default="postgresql+asyncpg://localhost/autophase")
    log_level: str = "INFO"


class AnthropicSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANTHROPIC_")
    api_key: str = ""
    model: str = "claude-haiku-4-5-20251001"
    base_url: str = "https://api.anthropic.com"
    timeout_seconds: float = 30.0


class ClassifierSettings(BaseSettings):
    """Settings for the phase classifier and its retry policy."""

    max_attempts: int = 3
    backoff_seconds: float = 0.25  # linear: attempt * backoff
    max_tokens: int = 750
    retag_max_tokens: int = 450
    transcript_messages: int = 45
    message_fetch_limit: int = 80
    knowledge_path: Optional[Path] = None
    knowledge_max_chars: int = 12000
    store_ai_conversations: bool = True


class RunSettings(BaseSettings):
    """Settings for orchestrated runs and the scheduled sweep."""

    lock_ttl_seconds: int = 120
    unlock_lock_ttl_seconds: int = 90
    sweep_interval_minutes: int = 15
    sweep_workspace_limit: int = 1000
    cron_secret: str = Field(
        default="",
        validation_alias=AliasChoices("cron_secret", "AUTO_PHASE_CRON_SECRET"),
    )


class RetagSettings(BaseSettings):
    batch_size: int = 20
    concurrency: int = 3
    max_rounds: int = 200
    transcript_messages: int = 40
    full_scope_cooldown_days: int = 7


class Settings(BaseSettings):
    """Top-level settings assembled from subsections."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    anthropic: AnthropicSettings = Field(default_factory=AnthropicSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    runs: RunSettings = Field(default_factory=RunSettings)
    retag: RetagSettings = Field(default_factory=RetagSettings)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from TOML config file, falling back to defaults."""
        if config_path is None:
            config_path = Path.home() / ".config/autophase/config.toml"

        if config_path.exists():
            import toml

            data = toml.load(config_path)
            return cls(
                general=GeneralSettings(**data.get("general", {})),
                anthropic=AnthropicSettings(**data.get("anthropic", {})),
                classifier=ClassifierSettings(**data.get("classifier", {})),
                runs=RunSettings(**data.get("runs", {})),
                retag=RetagSettings(**data.get("retag", {})),
            )

        return cls()


# Module-level singleton, only touched by the CLI, API and daemon entry points
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
