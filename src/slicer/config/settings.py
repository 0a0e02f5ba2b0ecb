"""Application settings using Pydantic."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".slicer"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Allocation settings
    max_allocations: int = Field(default=10, ge=1)

    # Rebalance settings
    slippage_bps: int = Field(default=50, ge=0, lt=10_000)
    swap_deadline_seconds: int = Field(default=300, gt=0)
    drift_threshold_bps: int = Field(default=0, ge=0, lt=10_000)
    min_trade_value: int = Field(default=0, ge=0)

    # Price settings
    max_price_age_seconds: int = Field(default=3600, ge=0)  # 0 disables

    # Share token settings
    share_decimals: int = Field(default=18, ge=0)

    # Data/storage settings
    data_dir: Path = Field(default=DEFAULT_DATA_DIR)

    # Logging settings
    log_level: str = Field(default="INFO")
    log_to_file: bool = Field(default=False)
    log_dir: Path | None = Field(default=None)  # Defaults to data_dir/logs
    log_retention_days: int = Field(default=30)

    # Notification settings
    discord_webhook_url: str | None = Field(default=None)
    notify_on_rebalance: bool = Field(default=True)
    notify_on_deposit: bool = Field(default=False)

    @property
    def has_discord_webhook(self) -> bool:
        """Check if a Discord webhook is configured."""
        return bool(self.discord_webhook_url)

    @property
    def logs_path(self) -> Path:
        """Get the logs directory path."""
        if self.log_dir:
            return self.log_dir
        return self.data_dir / "logs"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def setup_logging(settings: Settings | None = None) -> None:
    """Configure loguru for file and console logging.

    Args:
        settings: Optional settings instance. Uses default if not provided.
    """
    import sys

    from loguru import logger

    if settings is None:
        settings = get_settings()

    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )

    if settings.log_to_file:
        log_path = settings.logs_path
        log_path.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_path / "slicer_{time:YYYY-MM-DD}.log",
            level=settings.log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="00:00",  # Rotate at midnight
            retention=f"{settings.log_retention_days} days",
            compression="gz",
        )

        logger.info(f"Logging to {log_path}")
