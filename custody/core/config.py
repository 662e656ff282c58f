"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field(..., description="Database connection URL (PostgreSQL in production)")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")
    database_connect_timeout: int = Field(10, description="Connection timeout in seconds")

    # ============================================================
    # Key-Share Encryption
    # ============================================================
    keyshare_encryption_key: str = Field(
        ...,
        description="Primary Fernet key used for all new key-share encryptions"
    )
    keyshare_encryption_key_old: str = Field(
        "",
        description="Comma-separated previous keys, accepted for decryption only during rotation"
    )

    # ============================================================
    # Custody Operations
    # ============================================================
    keyshare_operation_timeout: Optional[float] = Field(
        10.0,
        description="Default per-operation timeout in seconds (unset = no timeout)"
    )
    rotation_batch_size: int = Field(100, description="Records per batch during key rotation")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def old_encryption_keys(self) -> List[str]:
        """Parse previous encryption keys into list."""
        if not self.keyshare_encryption_key_old:
            return []
        return [k.strip() for k in self.keyshare_encryption_key_old.split(",") if k.strip()]

    @property
    def database_url_sync(self) -> str:
        """Database URL for the sync engine (postgres:// normalized)."""
        # Some hosting providers still hand out postgres:// URLs
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url

    @property
    def database_url_async(self) -> str:
        """Database URL for the async engine."""
        url = self.database_url_sync
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
