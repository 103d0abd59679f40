"""Configuration settings for the Personal OS AI gateway."""

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings


# __file__ = src/personal_os_ai/config.py
# .parent.parent.parent = repository root
PACKAGE_ROOT = Path(__file__).parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # OpenAI
    openai_api_key: str = ""

    # Identity (tokens are issued elsewhere, we only verify them)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Cost ceilings in USD
    daily_ai_cost_limit: float = 10.00
    monthly_ai_cost_limit: float = 100.00
    per_request_cost_limit: float = 1.00
    cost_warning_threshold: float = 0.80

    # Model selection
    default_chat_model: str = "gpt-4"
    analysis_model: str = "gpt-4"
    summary_model: str = "gpt-3.5-turbo"
    embedding_model: str = "text-embedding-3-small"
    transcription_model: str = "whisper-1"
    speech_model: str = "tts-1"
    default_max_output_tokens: int = 1000

    # Conversation memory
    context_max_messages: int = 8
    summary_min_messages: int = 5
    embedding_cache_ttl_seconds: int = 86400

    # Provider timeouts (seconds)
    llm_timeout_seconds: float = 60.0
    embedding_timeout_seconds: float = 15.0
    audio_timeout_seconds: float = 90.0

    # Storage
    database_path: Path | None = None
    usage_store_backend: str = "memory"  # 'memory' or 'sqlite'

    def model_post_init(self, __context) -> None:
        """Set default database path after initialization."""
        if self.database_path is None:
            self.database_path = PROJECT_ROOT / "personal_os.db"

    class Config:
        env_file = str(PROJECT_ROOT / ".env")
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
