"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Database, payment and token-signing config is validated at startup.
Optional integrations (model gateway, memory, mail) degrade when unset.
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
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Chatbot API"
    api_version: str = "0.1.0"
    api_description: str = "Credit-gated chat API with model proxying"
    cors_origins: str = "http://localhost:3000"

    # Auth tokens
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24 * 7

    # OTP
    otp_ttl_minutes: int = 10
    otp_resend_cooldown_seconds: int = 60
    expose_otp_in_response: bool = False  # development only

    # Mail (SMTP) - optional
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_use_tls: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "chatbot-api"
    trace_sample_rate: float = 1.0

    # Model gateway - OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_referer: str = "http://localhost:3000"
    openrouter_app_title: str = "Chatbot API"
    default_model: str = "openai/gpt-3.5-turbo"
    model_temperature: float = 0.7
    model_max_tokens: int = 500
    model_timeout_seconds: float = 60.0
    history_window: int = 10

    # Memory - Pinecone
    pinecone_api_key: str = ""
    pinecone_index_host: str = ""  # e.g. https://chatbot-memory-xxxx.svc.pinecone.io
    pinecone_api_url: str = "https://api.pinecone.io"
    pinecone_api_version: str = "2025-01"
    embedding_model: str = "multilingual-e5-large"
    memory_namespace: str = "chatbot"
    memory_similarity_threshold: float = 0.5
    memory_top_k: int = 5
    memory_timeout_seconds: float = 10.0

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    frontend_url: str = "http://localhost:3000"

    # Pricing Configuration
    bundle_credits: int = 20
    bundle_price_minor: int = 300  # $3.00 in cents
    bundle_currency: str = "usd"
    bundle_product_name: str = "ChatBot Credits"
    bundle_product_description: str = "20 Credits for ChatBot prompts"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start without a database, a payment key and a
        token-signing secret.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if not self.stripe_api_key:
            errors.append("STRIPE_API_KEY is required but empty or missing")
        elif not self.stripe_api_key.startswith(("sk_test_", "sk_live_")):
            errors.append("STRIPE_API_KEY must start with sk_test_ or sk_live_")

        if not self.jwt_secret:
            errors.append("JWT_SECRET is required but empty or missing")

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

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def model_gateway_configured(self) -> bool:
        return bool(self.openrouter_api_key)

    @property
    def memory_configured(self) -> bool:
        return bool(self.pinecone_api_key and self.pinecone_index_host)

    @property
    def mail_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
