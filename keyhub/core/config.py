"""Application configuration and settings"""
from pydantic_settings import BaseSettings
from typing import List, Optional
import secrets


class Settings(BaseSettings):
    """Application settings and configuration"""

    # API Settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "KeyHub API Key Manager"
    VERSION: str = "1.0.0"
    DESCRIPTION: str = "API key issuing and subscription management service for the admin dashboard"

    # Security
    JWT_SECRET_KEY: str = secrets.token_urlsafe(32)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_SECONDS: int = 3600
    REFRESH_TOKEN_EXPIRE_SECONDS: int = 7 * 24 * 3600
    API_KEY_HEADER: str = "X-API-Key"
    API_KEY_PREFIX: str = "KH"
    API_KEY_RANDOM_LENGTH: int = 24
    CRON_SECRET: Optional[str] = None
    BOOTSTRAP_ADMIN_KEY: Optional[str] = None

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./keyhub.db"
    DATABASE_ECHO: bool = False

    # Subscriptions
    EXPIRING_THRESHOLD_DAYS: int = 7
    DEFAULT_SUBSCRIPTION_DAYS: int = 30
    DEFAULT_SUBSCRIPTION_PRICE: float = 50.0
    DEFAULT_CURRENCY: str = "BRL"
    AUTO_RENEW_WINDOW_HOURS: int = 24
    # None renews by the subscription's own duration
    AUTO_RENEW_DAYS: Optional[int] = None

    # Maintenance
    MAINTENANCE_INTERVAL_SECONDS: int = 0
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/keyhub.log"

    # Rate Limiting (requests per window, window in seconds)
    RATE_LIMIT_LOGIN_REQUESTS: int = 5
    RATE_LIMIT_LOGIN_WINDOW: int = 15 * 60
    RATE_LIMIT_ADMIN_REQUESTS: int = 500
    RATE_LIMIT_ADMIN_WINDOW: int = 60
    RATE_LIMIT_API_KEY_REQUESTS: int = 1000
    RATE_LIMIT_API_KEY_WINDOW: int = 60
    RATE_LIMIT_CLEANUP_SECONDS: int = 300

    class Config:
        case_sensitive = True
        env_file = ".env"


settings = Settings()
