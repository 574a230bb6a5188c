"""Discord bot configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# === Path Configuration ===
DISCORD_BOT_DIR = Path(__file__).parent.parent
BACKEND_DIR = DISCORD_BOT_DIR.parent


class BotSettings(BaseSettings):
    """Discord bot settings"""

    model_config = SettingsConfigDict(
        env_file=DISCORD_BOT_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Discord
    discord_bot_token: str = Field(..., description="Discord bot token")
    discord_guild_id: int | None = Field(
        default=None, description="Guild for fast slash command sync"
    )

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")

    # Twitch (optional, notifications are disabled without them)
    twitch_client_id: str = Field(default="", description="Twitch OAuth Client ID")
    twitch_client_secret: str = Field(default="", description="Twitch OAuth Client Secret")
    twitch_poll_interval: float = Field(default=15.0, gt=0, description="Seconds between polls")
    twitch_poll_precision: float = Field(default=1.0, gt=0, description="Scheduler wake-up step")
    twitch_stall_timeout: float | None = Field(
        default=150.0, description="Cancel a poll tick running longer than this"
    )
    twitch_webhook_avatar: Path | None = Field(
        default=None, description="PNG used as avatar for new notification webhooks"
    )

    # Health server
    health_host: str = Field(default="0.0.0.0", description="Health server bind address")
    health_port: int = Field(default=8080, description="Health server port")

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

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
    def twitch_enabled(self) -> bool:
        return bool(self.twitch_client_id and self.twitch_client_secret)

    def load_webhook_avatar(self) -> bytes | None:
        if self.twitch_webhook_avatar is None:
            return None
        try:
            return self.twitch_webhook_avatar.read_bytes()
        except OSError as e:
            logger.warning(f"Cannot read webhook avatar {self.twitch_webhook_avatar}: {e}")
            return None


@lru_cache
def get_settings() -> BotSettings:
    """Get cached settings instance"""
    return BotSettings()  # type: ignore[call-arg]
