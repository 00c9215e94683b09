from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    dev_admin_email: str
    recaptcha_enabled: bool
    recaptcha_secret: str
    recaptcha_min_score: float
    quote_rate_limit_per_hour: int
    contact_rate_limit_per_hour: int
    analytics_batch_size: int
    analytics_dedup_window_seconds: int
    stale_quote_days: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/charterdesk.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        dev_admin_email=os.getenv("DEV_ADMIN_EMAIL", "admin@localhost").strip(),
        recaptcha_enabled=_bool_env("RECAPTCHA_ENABLED", False),
        recaptcha_secret=os.getenv("RECAPTCHA_SECRET", "").strip(),
        recaptcha_min_score=max(0.0, min(1.0, _float_env("RECAPTCHA_MIN_SCORE", 0.5))),
        quote_rate_limit_per_hour=max(1, _int_env("QUOTE_RATE_LIMIT_PER_HOUR", 7)),
        contact_rate_limit_per_hour=max(1, _int_env("CONTACT_RATE_LIMIT_PER_HOUR", 5)),
        analytics_batch_size=max(1, _int_env("ANALYTICS_BATCH_SIZE", 10)),
        analytics_dedup_window_seconds=max(0, _int_env("ANALYTICS_DEDUP_WINDOW_SECONDS", 30)),
        stale_quote_days=max(1, _int_env("STALE_QUOTE_DAYS", 7)),
    )
