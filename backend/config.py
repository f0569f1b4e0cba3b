import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:8080,http://localhost:8081"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _int_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _split_origins(raw):
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass
class Config:
    database_url: str = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_sslmode: str = "prefer"
    db_connect_timeout: int = 10
    db_lock_timeout_ms: int = 5000
    cors_origins: list = field(default_factory=lambda: _split_origins(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"
    port: int = 5000
    admin_email: str = "admin@demo.com"

    @classmethod
    def from_env(cls):
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            db_pool_min=_int_env("DB_POOL_MIN", 1),
            db_pool_max=_int_env("DB_POOL_MAX", 10),
            db_sslmode=os.getenv("DB_SSLMODE", "prefer"),
            db_connect_timeout=_int_env("DB_CONNECT_TIMEOUT", 10),
            db_lock_timeout_ms=_int_env("DB_LOCK_TIMEOUT_MS", 5000),
            cors_origins=_split_origins(os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_int_env("PORT", 5000),
            admin_email=os.getenv("ADMIN_EMAIL", "admin@demo.com").strip().lower(),
        )


def configure_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
