"""Configuration settings for the application."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = True
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical
    ENVIRONMENT: str = "development"  # Options: development, production
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # LLM Configuration
    MODEL_PROVIDER: str = "openai"  # Options: openai, anthropic, tgi
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_UTILITY_MODEL: str = "gpt-4o-mini"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-sonnet-latest"
    ANTHROPIC_UTILITY_MODEL: str = "claude-3-5-haiku-latest"
    TGI_ENDPOINT: str = "http://tgi:8080"
    MODEL_TIMEOUT_SECONDS: float = 60.0

    # Tool execution
    TOOL_BACKEND: str = "http"  # Options: http, local
    TOOL_SERVICE_URL: str = "http://tools:8100"
    TOOL_TIMEOUT_SECONDS: float = 30.0

    # Orchestration
    MAX_TOOL_ATTEMPTS: int = 3
    PARALLEL_TOOL_CALLS: bool = True
    CHAIN_TOOL_CALLS: bool = False  # Re-invoke the model after a fully successful tool turn
    REUSE_DIRECT_ANSWER: bool = False  # Skip synthesis when the model answered without tools
    HISTORY_WINDOW: int = 10

    @property
    def strict_transcripts(self) -> bool:
        """Structural violations raise outside production."""
        return self.ENVIRONMENT.lower() != "production"

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
