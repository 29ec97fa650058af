"""Application configuration using pydantic-settings"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator
import logging

logger = logging.getLogger(__name__)

# Persistent development secret key - stable across restarts
# In production, this MUST be overridden via SECRET_KEY environment variable
_DEV_SECRET_KEY = "dev-secret-key-for-local-development-only-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "Land Registry"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API
    API_PREFIX: str = "/api"
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./land_registry.db"
    DATABASE_ECHO: bool = False

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # JWT verification (tokens are issued by the identity provider)
    SECRET_KEY: str = _DEV_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Document storage
    STORAGE_PATH: str = "./storage"
    MAX_UPLOAD_SIZE_MB: int = 25
    ALLOWED_UPLOAD_EXTENSIONS: str = ".pdf,.png,.jpg,.jpeg"
    ALLOWED_UPLOAD_MIMETYPES: str = "application/pdf,image/png,image/jpeg"

    @property
    def max_upload_size_bytes(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024

    @property
    def allowed_extensions_list(self) -> List[str]:
        return [ext.strip().lower() for ext in self.ALLOWED_UPLOAD_EXTENSIONS.split(",")]

    @property
    def allowed_mimetypes_list(self) -> List[str]:
        return [mime.strip().lower() for mime in self.ALLOWED_UPLOAD_MIMETYPES.split(",")]

    # External collaborators (document store, certificates, audit)
    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0
    FRONTEND_URL: str = "http://localhost:5173"

    # Negotiation
    OFFER_EXPIRY_HOURS: int = 72

    # Transaction economics
    ESCROW_RATE: float = 0.10
    STAMP_DUTY_RATE: float = 0.05
    REGISTRATION_FEE: float = 1000.0

    # A parcel reservation younger than this is never reconciled away
    RESERVATION_GRACE_SECONDS: int = 300

    # Certificate re-issue
    CERTIFICATE_RETRY_MAX_ATTEMPTS: int = 5
    CERTIFICATE_RETRY_DELAY_SECONDS: int = 60

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        environment = info.data.get("ENVIRONMENT", "development")
        if environment == "production":
            if v == _DEV_SECRET_KEY:
                raise ValueError(
                    "SECRET_KEY must be set via environment variable in production. "
                    "Do not use the default development key."
                )
            if len(v) < 32:
                raise ValueError("SECRET_KEY must be at least 32 characters in production")
        elif v == _DEV_SECRET_KEY:
            logger.warning(
                "Using default development SECRET_KEY. This is fine for development, "
                "but MUST be overridden in production via the SECRET_KEY environment variable."
            )
        return v

    @field_validator("COLLABORATOR_TIMEOUT_SECONDS")
    @classmethod
    def validate_collaborator_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("COLLABORATOR_TIMEOUT_SECONDS must be positive")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
