import os

from dotenv import load_dotenv

# load .env into process env vars
load_dotenv()


def _as_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _as_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except ValueError:
        return default


def _as_list(name: str, default: str) -> list:
    raw = os.getenv(name, default) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings:
    # App
    ENV: str = os.getenv("ENV", "dev")
    PORT: int = _as_int("PORT", 8000)
    CORS_ORIGINS: list = _as_list("CORS_ORIGINS", "*")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "")

    # Auth
    JWT_SECRET: str = os.getenv("JWT_SECRET", "dev_secret_key_for_testing")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_EXPIRE_DAYS: int = _as_int("JWT_EXPIRE_DAYS", 30)
    PASSWORD_HASH_ITERATIONS: int = _as_int("PASSWORD_HASH_ITERATIONS", 100_000)
    # Only honour a "role" field on signup when explicitly enabled
    ALLOW_ROLE_OVERRIDE: bool = _as_bool("ALLOW_ROLE_OVERRIDE", False)

    # Dashboard
    ACTIVITY_FEED_ENABLED: bool = _as_bool("ACTIVITY_FEED_ENABLED", True)
    DASHBOARD_WORKERS: int = _as_int("DASHBOARD_WORKERS", 8)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE: str = os.getenv("LOG_FILE", "")

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in ("prod", "production")


settings = Settings()
