import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str
    db_pool_size: int
    db_max_overflow: int

    login_rate_limit: int
    login_rate_window_seconds: int

    notification_backend: str
    analytics_cache_ttl_seconds: int
    analytics_cache_serve_stale: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///orgdocs.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        db_pool_size=_getenv_int("DB_POOL_SIZE", 5),
        db_max_overflow=_getenv_int("DB_MAX_OVERFLOW", 10),
        login_rate_limit=_getenv_int("LOGIN_RATE_LIMIT", 5),
        login_rate_window_seconds=_getenv_int("LOGIN_RATE_WINDOW_SECONDS", 300),
        notification_backend=_getenv("NOTIFICATION_BACKEND", "database").lower(),
        analytics_cache_ttl_seconds=_getenv_int("ANALYTICS_CACHE_TTL_SECONDS", 300),
        analytics_cache_serve_stale=_getenv_bool("ANALYTICS_CACHE_SERVE_STALE", True),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "DB_POOL_SIZE": s.db_pool_size,
        "DB_MAX_OVERFLOW": s.db_max_overflow,
        "LOGIN_RATE_LIMIT": s.login_rate_limit,
        "LOGIN_RATE_WINDOW_SECONDS": s.login_rate_window_seconds,
        "NOTIFICATION_BACKEND": s.notification_backend,
        "ANALYTICS_CACHE_TTL_SECONDS": s.analytics_cache_ttl_seconds,
        "ANALYTICS_CACHE_SERVE_STALE": s.analytics_cache_serve_stale,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # document bodies are markdown text; 2MB leaves room for JSON overhead
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
