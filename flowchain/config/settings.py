"""Engine configuration read from the environment (or a local ``.env``)."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    environment: str = "development"
    debug: bool = True

    # --- storage ---
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "flowchain_dev"

    # --- engine bounds ---
    max_stage_visits: int = Field(10, ge=1)
    max_write_retries: int = Field(5, ge=0)

    # --- identity ---
    # Blank role_service_url means roles come from the bearer token itself
    role_service_url: str = ""
    role_service_timeout_seconds: float = 5.0
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""

    # --- halted instance alerts ---
    ops_alert_webhook_url: str = ""
    enable_halt_sweeper: bool = False
    halt_sweep_interval_seconds: int = Field(60, ge=1)

    # --- logging ---
    log_level: str = "INFO"
    log_to_file: bool = True
    logs_path: str = "./logs"
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    # Comma separated, or "*"
    cors_origins: str = "*"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
