"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # General
    APP_NAME: str = "Playbook Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./playbook_engine.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Execution engine defaults (used when neither step nor workflow overrides)
    ENGINE_DEFAULT_TIMEOUT_MS: int = 300_000  # 5 min
    ENGINE_DEFAULT_MAX_RETRIES: int = 0
    ENGINE_RETRY_BASE_DELAY: float = 1.0
    ENGINE_RETRY_BACKOFF_MULTIPLIER: float = 2.0
    ENGINE_RETRY_MAX_DELAY: float = 60.0
    # Hard ceiling on step visits per execution (cycle circuit breaker)
    ENGINE_MAX_STEP_VISITS: int = 1000
    # A running execution without a heartbeat for this long can be re-claimed
    ENGINE_STALE_EXECUTION_SECONDS: int = 300

    # Progress channel
    PROGRESS_QUEUE_SIZE: int = 100

    # Claude AI Settings (agent_invocation steps)
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    CLAUDE_MAX_TOKENS: int = 4096
    CLAUDE_TEMPERATURE: float = 0.3
    CLAUDE_TIMEOUT: int = 120
    CLAUDE_SYSTEM_PROMPT: str = (
        "You are an AI assistant executing one step of an automated playbook. "
        "Be precise, structured, and action-oriented in your responses."
    )

    # External call steps
    HTTP_STEP_TIMEOUT: float = 30.0
    HTTP_BLOCK_PRIVATE_NETWORKS: bool = True

    # Run completion webhooks
    RUN_WEBHOOKS_ENABLED: bool = True
    RUN_WEBHOOK_TIMEOUT: float = 10.0

    # Memory search collaborator
    MEMORY_SEARCH_URL: str = ""
    MEMORY_SEARCH_API_KEY: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
