"""Configuration for the modelhook service."""

import os

from pydantic import BaseModel, Field

ENV_FILE = ".env.modelhook"

_TRUE_VALUES = ("true", "1", "yes", "on")


class Settings(BaseModel):
    """Settings for subscription storage, delivery and operations."""

    # General
    debug: bool = Field(default=False, description="MODELHOOK_DEBUG")
    log_level: str = Field(default="INFO", description="MODELHOOK_LOG_LEVEL")

    # Database
    database_dsn: str = Field(default="sqlite:///./modelhook.db", description="MODELHOOK_DATABASE_DSN")

    # Shared secret for API keys and HMAC signatures
    api_secret: str | None = Field(default=None, description="MODELHOOK_API_SECRET")

    # Ingress rate limiting
    rate_limit_enabled: bool = Field(default=True, description="MODELHOOK_RATE_LIMIT_ENABLED")
    rate_limit_max_attempts: int = Field(default=60, ge=1, description="MODELHOOK_RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_seconds: int = Field(default=60, ge=1, description="MODELHOOK_RATE_LIMIT_WINDOW_SECONDS")

    # Outbound delivery
    delivery_timeout_seconds: float = Field(default=5.0, gt=0, description="MODELHOOK_DELIVERY_TIMEOUT")
    delivery_max_concurrency: int = Field(default=10, ge=1, description="MODELHOOK_DELIVERY_MAX_CONCURRENCY")
    delivery_total_timeout_seconds: float = Field(default=15.0, gt=0, description="MODELHOOK_DELIVERY_TOTAL_TIMEOUT")
    loop_prevention_enabled: bool = Field(default=True, description="MODELHOOK_LOOP_PREVENTION")
    timestamp_max_age_seconds: int = Field(default=300, ge=1, description="MODELHOOK_TIMESTAMP_MAX_AGE")

    # Health
    stale_threshold_hours: int = Field(default=24, ge=1, description="MODELHOOK_STALE_HOURS")

    # Cleanup
    cleanup_inactive_days: int = Field(default=30, ge=1, description="MODELHOOK_CLEANUP_INACTIVE_DAYS")
    cleanup_error_days: int = Field(default=7, ge=1, description="MODELHOOK_CLEANUP_ERROR_DAYS")
    cleanup_never_triggered_days: int = Field(default=14, ge=1, description="MODELHOOK_CLEANUP_NEVER_TRIGGERED_DAYS")
    cleanup_batch_size: int = Field(default=100, ge=1, description="MODELHOOK_CLEANUP_BATCH_SIZE")
    archiving_enabled: bool = Field(default=True, description="MODELHOOK_ARCHIVING_ENABLED")

    # Backups and recovery
    backup_enabled: bool = Field(default=True, description="MODELHOOK_BACKUP_ENABLED")
    backup_dir: str = Field(default="storage/modelhook/backups", description="MODELHOOK_BACKUP_DIR")
    export_dir: str = Field(default="storage/modelhook/exports", description="MODELHOOK_EXPORT_DIR")
    backup_retention_days: int = Field(default=30, ge=1, description="MODELHOOK_BACKUP_RETENTION_DAYS")
    legacy_cache_path: str | None = Field(default=None, description="MODELHOOK_LEGACY_CACHE_PATH")

    # Target registry
    targets_file: str | None = Field(default=None, description="MODELHOOK_TARGETS_FILE")


def _read_env_file(path: str) -> dict[str, str]:
    values: dict[str, str] = {}
    if not os.path.exists(path):
        return values
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def load_settings(env_file: str = ENV_FILE) -> Settings:
    """Load settings from ``.env.modelhook`` overlaid with the process environment."""
    env_vars = _read_env_file(env_file)
    env_vars.update({key: value for key, value in os.environ.items() if key.startswith("MODELHOOK_")})

    values = {}
    for name, field in Settings.model_fields.items():
        env_name = field.description
        if env_name not in env_vars:
            continue
        raw = env_vars[env_name]
        if field.annotation is bool:
            values[name] = raw.lower() in _TRUE_VALUES
        elif raw == "" and field.default is None:
            values[name] = None
        else:
            values[name] = raw

    return Settings(**values)


settings = load_settings()
