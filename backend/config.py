"""
UMS Core - Configuration Management

Centralized configuration for environment variables and deployment settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Identifier system codes and pagination limits are injected, not global
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
        description="SQLAlchemy async connection URL (postgresql+asyncpg://...)"
    )

    # ==================== IDENTIFIERS ====================
    MRN_IDENTIFIER_SYSTEM: str = Field(
        default="MRN",
        description="Identifier system code under which MRNs are issued"
    )
    MRN_PREFIX: str = Field(
        default="",
        description="Optional prefix prepended to issued MRN values"
    )
    SSN_IDENTIFIER_SYSTEM: str = Field(
        default="SSN",
        description="Identifier system code holding the single-valued SSN"
    )

    # ==================== PAGINATION ====================
    PAGINATION_DEFAULT_SIZE: int = Field(
        default=20,
        description="Page size used when the caller gives none or an invalid one"
    )
    PAGINATION_MAX_SIZE: int = Field(
        default=100,
        description="Largest page size a caller may request"
    )

    # ==================== INTEGRATIONS ====================
    FHIR_PUBLISH_ENABLED: bool = Field(
        default=False,
        description="Publish patient records to the clinical-record server"
    )
    FHIR_SERVER_URL: str = Field(
        default="",
        description="Base URL of the FHIR server receiving Patient resources"
    )
    ACTIVATION_SERVICE_URL: str = Field(
        default="",
        description="Base URL of the external account-activation service"
    )
    EXTERNAL_CALL_TIMEOUT: float = Field(
        default=10.0,
        description="Timeout in seconds for calls to external collaborators"
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
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )
    API_TITLE: str = Field(
        default="UMS Identity Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS_ORIGINS; localhost origins are added outside production."""
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return list(all_origins)

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

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if self.PAGINATION_DEFAULT_SIZE <= 0:
            errors.append("PAGINATION_DEFAULT_SIZE must be positive")
        if self.PAGINATION_MAX_SIZE < self.PAGINATION_DEFAULT_SIZE:
            errors.append("PAGINATION_MAX_SIZE must not be smaller than PAGINATION_DEFAULT_SIZE")

        if self.MRN_IDENTIFIER_SYSTEM == self.SSN_IDENTIFIER_SYSTEM:
            errors.append("MRN_IDENTIFIER_SYSTEM and SSN_IDENTIFIER_SYSTEM must differ")

        if self.FHIR_PUBLISH_ENABLED and not self.FHIR_SERVER_URL:
            errors.append("FHIR_SERVER_URL is required when FHIR_PUBLISH_ENABLED is set")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the database URL or fail loudly."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        raise ValueError("No database configuration found. Set DATABASE_URL.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"MRN system: {settings.MRN_IDENTIFIER_SYSTEM}, SSN system: {settings.SSN_IDENTIFIER_SYSTEM}")
    logger.info(f"FHIR publishing: {'enabled' if settings.FHIR_PUBLISH_ENABLED else 'disabled'}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """Get CORS middleware configuration."""
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
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

    # Missing DATABASE_URL is reported by validate_production_config below
    status["variables"]["DATABASE_URL"] = "set" if settings.DATABASE_URL else "not set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("ACTIVATION_SERVICE_URL", settings.ACTIVATION_SERVICE_URL, "Account activation calls disabled"),
        ("FHIR_SERVER_URL", settings.FHIR_SERVER_URL, "FHIR publishing target not configured"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
