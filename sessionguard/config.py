"""
Application configuration using Pydantic Settings.
Loads from environment variables or .env file.
"""
from functools import lru_cache
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "SessionGuard"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: Literal["development", "staging", "production"] = "development"

    # API
    API_V1_PREFIX: str = "/v1"
    CORS_ORIGINS: list[str] = ["*"]

    # Identity verification (tokens are issued by the upstream identity provider)
    SECRET_KEY: str = "your-super-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    JWT_AUDIENCE: Optional[str] = None  # checked only when set

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./sessionguard.db"
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_POOL_RECYCLE_SECONDS: int = 1800

    # Tenant policy defaults (used when a tenant has not configured a value)
    DEFAULT_MAX_CONCURRENT_SESSIONS: int = 1
    DEFAULT_ENFORCE_IP_COUNTRY_CHECK: bool = True
    DEFAULT_SESSION_TIMEOUT_MINUTES: int = 15

    # IP geolocation provider
    GEOIP_API_URL: str = "http://ip-api.com/json"
    GEOIP_TIMEOUT_SECONDS: float = 3.0
    GEOIP_CACHE_ENABLED: bool = True
    GEOIP_CACHE_TTL_SECONDS: int = 600
    GEOIP_CACHE_MAX_SIZE: int = 10000
    GEOIP_CIRCUIT_FAILURE_THRESHOLD: int = 5
    GEOIP_CIRCUIT_RECOVERY_SECONDS: float = 60.0

    # Untrusted client input limits
    DEVICE_INFO_MAX_LENGTH: int = 2048
    DEVICE_INFO_MAX_KEYS: int = 32
    USER_AGENT_MAX_LENGTH: int = 512

    # Serialize eviction + insert per user within this process
    SERIALIZE_SESSION_REGISTRATION: bool = True

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "120/minute"

    # Maintenance
    ENABLE_MAINTENANCE_SCHEDULER: bool = True
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300
    AUDIT_RETENTION_DAYS: int = 365

    # Monitoring
    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
