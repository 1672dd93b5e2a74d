# src/calmirror/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Remote calendar API (Microsoft Graph delta queries)
    graph_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Base URL of the remote calendar API"
    )
    graph_access_token: Optional[str] = Field(
        default=None,
        description="Bearer token issued by the external auth collaborator"
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Preferred delta page size (Prefer: odata.maxpagesize)"
    )
    request_timeout_seconds: int = Field(default=30, ge=5, le=300)
    retry_attempts: int = Field(default=3, ge=1, description="Attempts per page request")
    retry_delay_seconds: float = Field(default=1.0, ge=0)

    # Application Configuration
    app_name: str = Field(default="calmirror", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calmirror",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync Configuration
    max_concurrent_calendars: int = Field(
        default=4,
        ge=1,
        le=32,
        description="How many calendars one sync request fans out to at once"
    )
    shared_calendar_markers: List[str] = Field(
        default=["shared", "registration"],
        description="Calendar id substrings tagged with the shared role"
    )
    registration_calendar_markers: List[str] = Field(
        default=["registration"],
        description="Calendar id substrings whose events carry setup/teardown text"
    )
    registration_calendar_ids: List[str] = Field(default_factory=list)
    default_setup_minutes: int = Field(default=0, ge=0)
    default_teardown_minutes: int = Field(default=0, ge=0)

    # Location matching
    location_match_threshold: float = Field(default=0.6, ge=0, le=1)
    location_containment_bonus: float = Field(default=0.2, ge=0, le=1)
    location_first_word_bonus: float = Field(default=0.1, ge=0, le=1)
    location_shared_word_bonus: float = Field(default=0.1, ge=0, le=1)

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calmirror.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('shared_calendar_markers', 'registration_calendar_markers')
    def lowercase_markers(cls, v):
        return [marker.lower() for marker in v if marker]

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.graph_access_token:
            missing.append('GRAPH_ACCESS_TOKEN')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# calmirror configuration
# Copy this file to .env and fill in your actual values

# Remote calendar API
GRAPH_BASE_URL=https://graph.microsoft.com/v1.0
GRAPH_ACCESS_TOKEN=your_access_token_here
PAGE_SIZE=100
REQUEST_TIMEOUT_SECONDS=30
RETRY_ATTEMPTS=3
RETRY_DELAY_SECONDS=1

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Sync Configuration
MAX_CONCURRENT_CALENDARS=4
SHARED_CALENDAR_MARKERS=["shared", "registration"]
REGISTRATION_CALENDAR_MARKERS=["registration"]
REGISTRATION_CALENDAR_IDS=[]
DEFAULT_SETUP_MINUTES=0
DEFAULT_TEARDOWN_MINUTES=0

# Location matching (tunable heuristics)
LOCATION_MATCH_THRESHOLD=0.6
LOCATION_CONTAINMENT_BONUS=0.2
LOCATION_FIRST_WORD_BONUS=0.1
LOCATION_SHARED_WORD_BONUS=0.1

# Storage Configuration (optional)
# DATA_DIR=~/.calmirror
# DATABASE_URL=sqlite:///~/.calmirror/calmirror.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
