from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Library defaults loaded from environment variables and .env files.

    The session fields describe the market used when a caller does not pass
    its own session options to the parser or the calendar.
    """

    environment: str = "dev"
    log_level: str = "INFO"
    tz: str = "America/New_York"
    security_tz: str = "America/New_York"
    open_time: str = "09:30:00"
    liquid_hours: str = "09:30:00 - 16:00:00"
    trading_hours: str = "04:00:00 - 20:00:00"
    rth: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TC_",
        extra="ignore",
    )

    def dict_for_logging(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "tz": self.tz,
            "security_tz": self.security_tz,
            "liquid_hours": self.liquid_hours,
            "trading_hours": self.trading_hours,
            "rth": self.rth,
        }

    def session_defaults(self) -> dict[str, Any]:
        return {
            "tz": self.tz,
            "security_tz": self.security_tz,
            "open_time": self.open_time,
            "liquid_hours": self.liquid_hours,
            "trading_hours": self.trading_hours,
            "rth": self.rth,
        }


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
