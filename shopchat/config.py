"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Shopchat API"
    api_version: str = "0.1.0"
    api_description: str = "Chat orchestration and credit gating for storefront AI chat"

    # Shopify app credentials (admin session tokens are signed with the secret)
    shopify_api_key: str = ""
    shopify_api_secret: str = ""

    # Realtime mirror (Firebase Realtime Database REST API)
    firebase_database_url: str = ""
    firebase_auth_token: str | None = None
    mirror_timeout_seconds: float = 5.0

    # Generative model
    openai_api_key: str = ""
    openai_base_url: str | None = None
    chat_model: str = "gpt-4o-mini"
    summary_model: str = "gpt-4o-mini"
    model_temperature: float = 1.0
    model_max_output_tokens: int = 2048
    model_timeout_seconds: float = 30.0
    max_history_messages: int = 12

    # Credits
    default_plan_name: str = "Free"
    default_monthly_credits: int = 1000
    usage_message_max_chars: int = 100
    fallback_message: str = "I'm currently unavailable. A team member will assist you shortly!"
    internal_error_message: str = "I encountered an internal error. Please try again."

    # Keyword replies (simple questions answered without the model)
    keyword_responses_enabled: bool = True
    keyword_response_credits: int = 0

    # Background turns
    background_shutdown_timeout: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "shopchat-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.max_history_messages < 0:
            errors.append("MAX_HISTORY_MESSAGES cannot be negative")

        if self.model_timeout_seconds <= 0:
            errors.append("MODEL_TIMEOUT_SECONDS must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
