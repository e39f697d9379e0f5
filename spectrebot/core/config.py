"""Spectre bot configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# === Path Configuration ===
PACKAGE_DIR = Path(__file__).parent.parent
PROJECT_DIR = PACKAGE_DIR.parent

BROADCASTER_SCOPES = [
    "chat:read",  # IRC read as the broadcaster
    "chat:edit",  # IRC write as the broadcaster
    "user:read:chat",
    "user:bot",
    "channel:bot",
]


class Settings(BaseSettings):
    """Spectre bot settings"""

    model_config = SettingsConfigDict(
        env_file=PROJECT_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Twitch OAuth
    client_id: str = Field(..., description="Twitch OAuth Client ID")
    client_secret: str = Field(..., description="Twitch OAuth Client Secret")
    redirect_uri: str = Field(
        default="http://localhost:3000/callback", description="OAuth redirect URI"
    )

    # Shared bot identity (used for channels that have not authorized yet)
    bot_username: str = Field(default="", description="Bot account login")
    bot_token: str = Field(default="", description="Bot account chat token")
    owner_username: str = Field(default="antiparty", description="Bot owner login")

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")

    # External services
    stats_api_url: str = Field(
        default="https://wavescan-production.up.railway.app/api/v1",
        description="Spectre stats API base URL",
    )
    discord_webhook_url: str = Field(default="", description="Discord webhook for notices")

    # Token lifecycle (seconds)
    refresh_margin: int = Field(default=300, description="Refresh this long before expiry")
    min_refresh_delay: int = Field(default=60, description="Lower bound for refresh delay")
    refresh_retry_delay: int = Field(default=60, description="Delay after a failed refresh")
    sweep_interval: int = Field(default=300, description="Full token sweep interval")
    chat_reconnect_delay: float = Field(
        default=5, description="First delay before rejoining a dropped chat connection"
    )

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=3000, description="Server port")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL starts with postgresql://"""
        if not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @property
    def has_bot_identity(self) -> bool:
        """Whether a shared bot login is configured for chat"""
        return bool(self.bot_username and self.bot_token)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()  # type: ignore[call-arg]
