"""
Identity Core - Configuration Management

Centralized configuration for environment variables, CORS, and deployment settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
- Secure defaults
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="postgres")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")
    STORE_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Upper bound on a single store operation before it is treated as transient"
    )

    # ==================== IDENTITY PROVIDER ====================
    IDP_WEBHOOK_SECRET: str = Field(
        default="",
        description="Shared signing secret for identity change notifications (whsec_...)"
    )
    IDP_WEBHOOK_TOLERANCE_SECONDS: int = Field(
        default=300,
        description="Allowed skew between delivery timestamp and now; 0 disables the check"
    )
    IDP_JWT_KEY: str = Field(
        default="",
        description="Public key (PEM) or shared secret used to validate provider session tokens"
    )
    IDP_JWT_ALGORITHMS: str = Field(
        default="RS256",
        description="Comma-separated list of accepted session token algorithms"
    )
    IDP_JWT_ISSUER: str = Field(default="", description="Expected session token issuer")
    IDP_JWT_AUDIENCE: str = Field(default="", description="Expected session token audience")
    IDP_METADATA_CLAIM: str = Field(
        default="metadata",
        description="Session token claim carrying provider public metadata"
    )
    IDP_API_URL: str = Field(
        default="",
        description="Provider backend API base URL, used for lazy record creation"
    )
    IDP_SECRET_KEY: str = Field(default="", description="Provider backend API secret key")
    IDP_API_TIMEOUT_SECONDS: float = Field(default=5.0)

    # ==================== ROUTING ====================
    SITE_ROOT: str = Field(default="/")
    VENDOR_PORTAL_ROOT: str = Field(default="/vendor-portal")
    ADMIN_PANEL_ROOT: str = Field(default="/admin")
    SUB_APPLICATION_ROOTS: str = Field(
        default="/careers",
        description="Comma-separated roots of secondary sub-applications"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Identity Sync API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def is_staging(self) -> bool:
        return self.ENVIRONMENT.lower() == "staging"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Production/Staging: Only specified origins
        Development: Include localhost origins
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:3001",
            "http://localhost:3002",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def jwt_algorithms(self) -> List[str]:
        return [a.strip() for a in self.IDP_JWT_ALGORITHMS.split(",") if a.strip()]

    @property
    def sub_application_roots(self) -> List[str]:
        return [r.strip().rstrip("/") for r in self.SUB_APPLICATION_ROOTS.split(",") if r.strip()]

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.is_production:
            if not self.DATABASE_URL and not self.POSTGRES_HOST:
                errors.append("DATABASE_URL is required")

            if not self.IDP_WEBHOOK_SECRET:
                errors.append("IDP_WEBHOOK_SECRET is required")

            if not self.IDP_JWT_KEY:
                errors.append("IDP_JWT_KEY is required")

            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            return (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    has_database = bool(settings.DATABASE_URL or settings.POSTGRES_HOST)
    if not has_database:
        status["errors"].append("DATABASE_URL is not set")
        status["valid"] = False
    else:
        status["variables"]["DATABASE_URL"] = "✓ Set"

    optional_vars = [
        ("IDP_WEBHOOK_SECRET", settings.IDP_WEBHOOK_SECRET, "Identity webhooks will be rejected"),
        ("IDP_JWT_KEY", settings.IDP_JWT_KEY, "Session tokens cannot be validated; all requests are anonymous"),
        ("IDP_API_URL", settings.IDP_API_URL, "Lazy identity record creation disabled"),
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "⚠ Not set"
        else:
            status["variables"][name] = "✓ Set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
