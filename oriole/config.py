"""
Oriole Configuration

Loads configuration from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Config:
    """Application configuration loaded from environment variables."""

    # Database Configuration
    # DATABASE_URL wins when set; otherwise the DSN is assembled from the DB_* parts
    # with the password resolved through the credential cache.
    DATABASE_URL: str | None = os.getenv("DATABASE_URL")
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
    DB_NAME: str = os.getenv("DB_NAME", "oriole")
    DB_USER: str = os.getenv("DB_USER", "oriole")
    DB_PASSWORD: str | None = os.getenv("DB_PASSWORD")
    # Parameter Store name holding the encrypted password (e.g. /oriole/db/password)
    DB_PASSWORD_PARAMETER: str | None = os.getenv("DB_PASSWORD_PARAMETER")
    DB_SSL: bool = os.getenv("DB_SSL", "false").lower() in ("1", "true", "yes")
    AWS_REGION: str | None = os.getenv("AWS_REGION")

    # Locking
    # Seconds to wait for an experiment lock before giving up. 0 waits forever.
    LOCK_TIMEOUT_SECONDS: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "30"))

    # Gameplay
    VISION_RANGE: int = int(os.getenv("VISION_RANGE", "3"))
    MAX_RECALL_DEPTH: int = int(os.getenv("MAX_RECALL_DEPTH", "200"))

    # Experiment budgets (checked between turns)
    MAX_MOVES: int = int(os.getenv("MAX_MOVES", "100"))
    MAX_DURATION_MINUTES: int = int(os.getenv("MAX_DURATION_MINUTES", "60"))

    # Model rate limits
    # Requests per minute when a model has no override (10 rpm = 6s between turns)
    DEFAULT_RATE_LIMIT_RPM: int = int(os.getenv("DEFAULT_RATE_LIMIT_RPM", "10"))
    # Parameter Store prefix for per-model overrides (e.g. /oriole/models).
    # Overrides live at {prefix}/{model-key}/rate-limit-rpm; unset means default only.
    RATE_LIMIT_PARAMETER_PREFIX: str | None = os.getenv("RATE_LIMIT_PARAMETER_PREFIX")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Project Paths
    PACKAGE_ROOT: Path = Path(__file__).parent
    SCHEMA_PATH: Path = PACKAGE_ROOT / "schema.sql"

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        if cls.DEFAULT_RATE_LIMIT_RPM < 1:
            raise ValueError("DEFAULT_RATE_LIMIT_RPM must be >= 1")

        if cls.DATABASE_URL:
            return

        if not cls.DB_HOST or not cls.DB_NAME or not cls.DB_USER:
            raise ValueError(
                "DB_HOST, DB_NAME and DB_USER are required when DATABASE_URL is not set"
            )

        if not cls.DB_PASSWORD and not cls.DB_PASSWORD_PARAMETER:
            raise ValueError(
                "Either DB_PASSWORD or DB_PASSWORD_PARAMETER must be set. "
                "Use DB_PASSWORD_PARAMETER to read the password from Parameter Store."
            )

        if cls.LOCK_TIMEOUT_SECONDS < 0:
            raise ValueError("LOCK_TIMEOUT_SECONDS must be >= 0")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        if cls.DATABASE_URL:
            database = "DATABASE_URL (set)"
        else:
            database = f"{cls.DB_USER}@{cls.DB_HOST}:{cls.DB_PORT}/{cls.DB_NAME}"
        lines = [
            "Oriole Configuration:",
            f"  Database: {database}",
            f"  Lock timeout: {cls.LOCK_TIMEOUT_SECONDS}s",
            f"  Vision range: {cls.VISION_RANGE}",
            f"  Max recall depth: {cls.MAX_RECALL_DEPTH}",
            f"  Max moves: {cls.MAX_MOVES}",
            f"  Max duration: {cls.MAX_DURATION_MINUTES}min",
            f"  Default rate limit: {cls.DEFAULT_RATE_LIMIT_RPM} req/min",
        ]
        return "\n".join(lines)
