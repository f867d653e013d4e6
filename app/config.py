"""
Application Configuration - Pydantic Settings for type-safe config.

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

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "StoreKit Reconciler"
    api_version: str = "0.1.0"
    api_description: str = "Reconciles App Store purchase state into CustomerInfo"

    # Database Configuration (customer store)
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    customer_store_backend: str = "sql"  # sql or memory

    # Apple App Store Server API
    apple_private_key: str = ""  # .p8 contents, PEM or base64-encoded PEM
    apple_key_id: str = ""
    apple_issuer_id: str = ""
    apple_bundle_id: str = ""
    apple_environment: str = "sandbox"  # production or sandbox
    apple_api_timeout_seconds: float = 10.0
    apple_token_ttl_seconds: int = 300  # Apple rejects anything longer for this flow

    # Apple signing keys (JWKS)
    apple_jwks_url: str = "https://appleid.apple.com/auth/keys"
    apple_jwks_cache_ttl_seconds: int = 24 * 60 * 60

    # Reconciliation
    webhook_decode_mode: str = "verified"  # verified or fast
    reconciler_enforce_ordering: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "storekit-reconciler"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        Apple credentials are checked by the token issuer when the API
        client is built, so a webhook-only deployment can still start.
        """
        errors: list[str] = []

        if self.apple_environment.lower() not in ("production", "sandbox"):
            errors.append(
                "APPLE_ENVIRONMENT must be 'production' or 'sandbox', "
                f"got: {self.apple_environment}"
            )

        if self.webhook_decode_mode.lower() not in ("verified", "fast"):
            errors.append(
                f"WEBHOOK_DECODE_MODE must be 'verified' or 'fast', got: {self.webhook_decode_mode}"
            )

        if self.customer_store_backend.lower() not in ("sql", "memory"):
            errors.append(
                "CUSTOMER_STORE_BACKEND must be 'sql' or 'memory', "
                f"got: {self.customer_store_backend}"
            )
        elif self.customer_store_backend.lower() == "sql":
            if not self.database_url:
                errors.append("DATABASE_URL is required when CUSTOMER_STORE_BACKEND=sql")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if not 0 < self.apple_token_ttl_seconds <= 300:
            errors.append("APPLE_TOKEN_TTL_SECONDS must be between 1 and 300")

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
    def is_sandbox(self) -> bool:
        """True when talking to Apple's sandbox environment."""
        return self.apple_environment.lower() == "sandbox"


# Global settings instance - validates at import time
settings = Settings()
