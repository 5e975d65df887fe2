"""
Application settings and logging configuration.

Settings are loaded from environment variables (or a .env file) and
validated with Pydantic. Lending policy is NOT configured here: it lives in
the "setting" collection and is read per operation by policy.py.
"""

import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file if present
load_dotenv()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseModel):
    """Service configuration settings."""

    database_url: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection string"
    )

    database_name: str = Field(
        default="library",
        description="MongoDB database name"
    )

    use_transactions: bool = Field(
        default=False,
        description="Run each loan transition in a MongoDB session transaction (replica set required)"
    )

    port: int = Field(default=8000)

    log_level: str = Field(default="INFO")

    notification_workers: int = Field(
        default=2,
        ge=0,
        description="Worker threads for deferred audit/notification delivery (0 = deliver inline)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build settings from the environment."""
    values = {
        "database_url": os.getenv("DATABASE_URL"),
        "database_name": os.getenv("DATABASE_NAME"),
        "use_transactions": _env_flag("MONGO_TRANSACTIONS"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "notification_workers": os.getenv("NOTIFICATION_WORKERS"),
    }
    return Settings(**{k: v for k, v in values.items() if v is not None})


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger with a single console handler."""
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))


settings = load_settings()
