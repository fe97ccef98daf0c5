import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    # Application
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    port: int = int(os.getenv("PORT", "8000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    database_url: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "libraryBooks")
    database_timeout_ms: int = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))

    # Tokens
    access_token_secret: str = os.getenv("ACCESS_TOKEN_SECRET", "change-this-secret-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "60"))
    cookie_name: str = os.getenv("TOKEN_COOKIE_NAME", "token")
    cookie_secure: bool = _env_flag("COOKIE_SECURE", "False")

    # CORS
    cors_origins: List[str] = field(default_factory=lambda: _env_list(
        "CORS_ORIGINS",
        "http://localhost:5173,"
        "https://library-management-86cd6.web.app,"
        "https://library-management-86cd6.firebaseapp.com",
    ))

    # Borrowing rules
    max_return_date_edits: int = int(os.getenv("MAX_RETURN_DATE_EDITS", "2"))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
