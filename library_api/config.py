import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "30"))

    # Security
    secret_key: str = os.getenv("SECRET_KEY", "dev-secret-key-change-this-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days

    # Borrowing policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    max_active_borrows: int = int(os.getenv("MAX_ACTIVE_BORROWS", "5"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "1.0"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    graphql_ide: bool = _env_bool("GRAPHQL_IDE", "True")


settings = Settings()
