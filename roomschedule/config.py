"""Pipeline configuration loaded from environment variables.

Settings are created once by the caller (CLI, scheduler, tests) and passed
explicitly into the fetchers, stores and the pipeline.
"""

from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline configuration loaded from environment variables.

    For local development, create a .env file in the project root.
    """

    # Storage (no URI -> fetch-and-normalize only)
    store_uri: str | None = Field(
        default=None,
        validation_alias=AliasChoices("STORE_URI", "MONGODB_URI"),
        description="memory://, sqlite:///path.db or mongodb://... URI",
    )
    database_name: str = Field(default="uai-salas", description="MongoDB database name")
    snapshot_table: str = Field(default="eventos", description="Per-date snapshot table/collection")
    cumulative_table: str = Field(default="all_eventos", description="Deduplicated cumulative table/collection")
    connect_timeout_ms: int = Field(default=5000, description="Store connection timeout")

    # Source
    listing_url: str = Field(default="https://hoy.uai.cl/", description="Paginated listing URL")
    page_param: str = Field(default="page", description="Query parameter carrying the page number")
    page_delay_seconds: float = Field(default=1.0, ge=0, description="Fixed delay between page requests")
    fetch_attempts: int = Field(default=3, ge=1, description="Attempts per single page request")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")
    download_dir: str = Field(default="downloads", description="Where the browser drops the exported sheet")

    # Run date
    timezone: str = Field(default="UTC", description="Timezone used to compute the run date")

    # Logging
    log_json: bool = Field(default=False, description="Output logs in JSON format (for production)")
    log_level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )
