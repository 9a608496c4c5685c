import os
import logging
from pydantic_settings import BaseSettings
from typing import Optional

logger = logging.getLogger(__name__)

# Used only when QR_ENCRYPTION_KEY is not configured (local development)
DEV_QR_ENCRYPTION_KEY = "medaccess-dev-qr-key-change-me-in-production"


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL", "sqlite:///./medaccess.db")

    # Store adapter: bounded timeouts and a single retry
    STORE_TIMEOUT_SECONDS: int = int(os.getenv("STORE_TIMEOUT_SECONDS", "5"))
    STORE_RETRY_BACKOFF_SECONDS: float = float(os.getenv("STORE_RETRY_BACKOFF_SECONDS", "0.2"))

    QR_ENCRYPTION_KEY: str = os.getenv("QR_ENCRYPTION_KEY", "")
    SESSION_SECRET: Optional[str] = os.getenv("SESSION_SECRET")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")

    # Access tokens ("patient QR")
    ACCESS_TOKEN_TTL_DAYS: int = int(os.getenv("ACCESS_TOKEN_TTL_DAYS", "365"))
    TOKEN_SWEEP_ENABLED: bool = os.getenv("TOKEN_SWEEP_ENABLED", "false").lower() == "true"
    TOKEN_SWEEP_INTERVAL_MINUTES: int = int(os.getenv("TOKEN_SWEEP_INTERVAL_MINUTES", "5"))

    # Doctor sessions
    DOCTOR_SESSION_MINUTES: int = int(os.getenv("DOCTOR_SESSION_MINUTES", "30"))
    DOCTOR_SESSION_IDLE_MINUTES: int = int(os.getenv("DOCTOR_SESSION_IDLE_MINUTES", "10"))
    MAX_SESSIONS_PER_DOCTOR: int = int(os.getenv("MAX_SESSIONS_PER_DOCTOR", "3"))
    SESSION_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "60"))

    # Public emergency access
    EMERGENCY_ACCESS_MINUTES: int = int(os.getenv("EMERGENCY_ACCESS_MINUTES", "3"))

    CORS_ORIGINS: list = ["http://localhost:5000", "http://127.0.0.1:5000"]

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    def validate_database_url(self):
        if not self.DATABASE_URL:
            raise ValueError(
                "DATABASE_URL environment variable is required for database operations. "
                "Please set it to your PostgreSQL connection string."
            )

    def get_qr_encryption_key(self) -> str:
        """Codec secret, falling back to the development key outside production"""
        if self.QR_ENCRYPTION_KEY:
            return self.QR_ENCRYPTION_KEY
        if self.ENVIRONMENT == "production":
            raise ValueError("QR_ENCRYPTION_KEY is required in production")
        logger.warning("QR_ENCRYPTION_KEY not set - using development codec key")
        return DEV_QR_ENCRYPTION_KEY

    class Config:
        env_file = ".env"


settings = Settings()
