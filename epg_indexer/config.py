from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    data_dir: str = "./data"
    epg_dir: str | None = None
    database_path: str | None = None
    log_level: str = "INFO"

    epg_refresh_cron: str = "0 */6 * * *"  # Every 6 hours
    epg_refresh_misfire_grace_sec: int = 3600  # Allow 1 hour to run missed jobs
    epg_refresh_concurrency: int = 4

    epg_fetch_timeout_sec: float = 30.0
    epg_fetch_max_attempts: int = 3
    epg_fetch_backoff_sec: float = 0.8  # Doubled on every retry
    epg_user_agent: str = "EPGIndexer/EPG"
    epg_read_chunk_size: int = 64 * 1024

    automap_min_score: float = 0.6

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("data_dir")
    @classmethod
    def validate_data_dir(cls, value: str) -> str:
        """Validate data directory is accessible."""
        try:
            Path(value).mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access data directory '{value}': {exc}") from exc

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate log level is a known logging level name."""
        normalized = value.upper()
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator("epg_refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @field_validator("epg_refresh_misfire_grace_sec")
    @classmethod
    def validate_misfire_grace(cls, value: int) -> int:
        """Validate scheduler misfire grace period (seconds)."""
        if value < 0:
            raise ValueError("epg_refresh_misfire_grace_sec must be >= 0")
        return value

    @field_validator(
        "epg_refresh_concurrency",
        "epg_fetch_max_attempts",
        "epg_read_chunk_size",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("epg_fetch_timeout_sec", "epg_fetch_backoff_sec")
    @classmethod
    def validate_positive_floats(cls, value: float, info) -> float:
        """Ensure floating-point settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("automap_min_score")
    @classmethod
    def validate_min_score(cls, value: float) -> float:
        """Similarity scores live in [0, 1]."""
        if not 0 <= value <= 1:
            raise ValueError("automap_min_score must be between 0 and 1")
        return value

    @model_validator(mode="after")
    def resolve_paths(self):
        """Derive EPG directory and database path from the data directory."""
        data_dir = Path(self.data_dir)
        if not self.epg_dir:
            self.epg_dir = str(data_dir / "epg")
        if not self.database_path:
            self.database_path = str(data_dir / "db.sqlite")

        try:
            Path(self.epg_dir).mkdir(parents=True, exist_ok=True)
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot prepare storage directories: {exc}") from exc

        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Data Directory: %s", self.data_dir)
        logger.info("  EPG Directory: %s", self.epg_dir)
        logger.info("  Database: %s", self.database_path)
        logger.info("  Refresh Schedule: %s", self.epg_refresh_cron)
        logger.info("  Refresh Misfire Grace: %ss", self.epg_refresh_misfire_grace_sec)
        logger.info("  Refresh Concurrency: %s", self.epg_refresh_concurrency)
        logger.info(
            "  Fetch: timeout=%.1fs attempts=%s backoff=%.1fs",
            self.epg_fetch_timeout_sec,
            self.epg_fetch_max_attempts,
            self.epg_fetch_backoff_sec,
        )
        logger.info("  Auto-Mapping Min Score: %.2f", self.automap_min_score)


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
