"""Configuration management for the Ampache sync application."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file from config directory or project root
config_env = Path(__file__).parent.parent.parent / "config" / ".env"
if config_env.exists():
    load_dotenv(config_env)
else:
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer setting, falling back to the default on bad input."""
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    """Read a float setting, falling back to the default on bad input."""
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    """Application configuration."""

    def __init__(self) -> None:
        """Initialize configuration from environment variables."""
        # Server settings
        self.server_url: Optional[str] = os.getenv("AMPACHE_SYNC_SERVER_URL")
        self.username: Optional[str] = os.getenv("AMPACHE_SYNC_USERNAME")
        self.password: Optional[str] = os.getenv("AMPACHE_SYNC_PASSWORD")

        # Network settings
        self.request_timeout = _env_float("AMPACHE_SYNC_REQUEST_TIMEOUT", 30.0)
        self.session_safety_margin = _env_float(
            "AMPACHE_SYNC_SESSION_SAFETY_MARGIN", 10.0
        )

        # Sync settings
        self.concurrency = max(1, _env_int("AMPACHE_SYNC_CONCURRENCY", 5))
        self.poll_count = max(1, _env_int("AMPACHE_SYNC_POLL_COUNT", 500))

        # Database settings
        default_db_path = str(Path.home() / ".ampache-sync" / "library.db")
        self.database_path = Path(
            os.getenv("AMPACHE_SYNC_DATABASE_PATH", default_db_path)
        )

        log_file = os.getenv("AMPACHE_SYNC_LOG_FILE")
        self.log_file: Optional[Path] = Path(log_file) if log_file else None

        # Ensure directories exist
        self._ensure_directories()

    @property
    def has_credentials(self) -> bool:
        """Whether server URL, username and password are all set."""
        return bool(self.server_url and self.username and self.password)

    def _ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def get_config() -> Config:
    """Get application configuration."""
    return Config()
