"""
Configuration management for branchchat.

This module provides a Settings class that loads configuration from environment
variables (prefix ``BRANCHCHAT_``) and an optional ``.env`` file, allowing easy
configuration without code changes.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from branchchat.conversation.thinking import NO_BUDGET, Effort, ThinkingBudget, Tokens


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Provider settings
    provider: str = "openai"  # openai, anthropic, google, cohere, openrouter, openai_compatible, poe
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str | None = None  # None = adapter default endpoint

    # Request settings
    system_prompt: str = ""
    temperature: float | None = None
    thinking_effort: str | None = None  # e.g. low, medium, high
    thinking_tokens: int | None = Field(default=None, ge=0)
    request_timeout: float = Field(default=120.0, gt=0)

    # Tool settings
    max_tool_depth: int = Field(default=25, ge=1)
    tool_timeout: float | None = 30.0  # None = no timeout
    tool_max_retries: int = Field(default=0, ge=0)

    # REST API settings
    host: str = "127.0.0.1"
    port: int = 8765

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BRANCHCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def thinking_budget(self) -> ThinkingBudget:
        """Return the configured reasoning budget; a token count wins over an effort level."""
        if self.thinking_tokens is not None:
            return Tokens(self.thinking_tokens)
        if self.thinking_effort:
            return Effort(self.thinking_effort.lower())
        return NO_BUDGET


def get_settings() -> Settings:
    """Get the application settings instance."""
    return Settings()
