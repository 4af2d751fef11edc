import os
from typing import List
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Manages application-wide settings and configurations for the TimeFlow API service."""
    # API Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "TimeFlow API"
    VERSION: str = "1.0.0"

    # Database Configuration
    # SQLite (aiosqlite) by default; point at postgresql+asyncpg://... in production.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./timeflow.sqlite")

    @property
    def SQLALCHEMY_DATABASE_URL(self) -> str:
        return self.DATABASE_URL

    @property
    def IS_SQLITE(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    # JWT Configuration
    SECRET_KEY: str = os.getenv("SECRET_KEY", "fallback-secret-change-in-production")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))

    # Accounts
    MIN_PASSWORD_LENGTH: int = 8
    DEFAULT_ACTIVITY_NAME: str = "Idle"
    DEFAULT_ACTIVITY_ICON: str = "i-lucide-coffee"
    DEFAULT_ACTIVITY_COLOR: str = "#6b7280"

    # CORS Configuration
    ALLOWED_ORIGINS_STR: str = os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000",
    )

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        """
        Returns a list of allowed origins for CORS.
        Reads from the ALLOWED_ORIGINS_STR environment variable.
        """
        if not self.ALLOWED_ORIGINS_STR:
            return []
        return [origin.strip() for origin in self.ALLOWED_ORIGINS_STR.split(",")]

    # Development settings
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"

    class Config:
        case_sensitive = True

settings = Settings()
