import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Streak engine
    STREAK_STORAGE: str = "memory"  # memory | database
    STREAK_TIMEZONE: str = "UTC"  # IANA name used for day boundaries
    STREAK_STATE_KEY_PREFIX: str = "seek_streak_state"
    STREAK_MAX_ENGINES: int = 1024  # engines kept in memory per process

    # Debug tooling (reset / simulated qualification routes)
    DEBUG_TOOLS_ENABLED: bool = False

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("seek")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    storage = (cfg.STREAK_STORAGE or "").lower()
    if storage not in ("memory", "database"):
        problems.append(f"STREAK_STORAGE must be 'memory' or 'database' (got {cfg.STREAK_STORAGE!r})")
    if storage == "database" and not (cfg.DATABASE_URL or cfg.TEST_DATABASE_URL):
        problems.append("Missing required configuration: DATABASE_URL")

    try:
        from zoneinfo import ZoneInfo

        ZoneInfo(cfg.STREAK_TIMEZONE)
    except Exception:
        problems.append(f"STREAK_TIMEZONE is not a known timezone: {cfg.STREAK_TIMEZONE!r}")

    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
