"""
Configuration management for the Site Compare Service.
Settings come from environment variables (optionally via a .env file).
"""

import os
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class ServiceConfig(BaseModel):
    """Configuration for the comparison service."""

    # Application settings
    database_url: str = Field(
        default="sqlite:///data/sitecompare.db",
        description="Database connection URL"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    port: int = Field(default=5000, description="HTTP port for the API")

    # Remote calls
    request_timeout: int = Field(default=60, description="HTTP timeout in seconds")
    page_size: int = Field(default=2000, description="Items requested per page")

    # Throttling
    throttle_max_retries: int = Field(default=7, description="Retries per throttled call")
    throttle_base_delay: float = Field(default=2.0, description="First backoff delay in seconds")
    throttle_max_delay: float = Field(default=120.0, description="Longest backoff delay in seconds")

    # Engine behaviour
    parallel_fetch: bool = Field(
        default=False,
        description="Fetch source and target catalogs of a library concurrently"
    )
    persist_scan_cache: bool = Field(
        default=True,
        description="Keep cached library scans in the database across restarts"
    )


def get_config_from_env() -> ServiceConfig:
    """Load configuration from environment variables."""
    return ServiceConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/sitecompare.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        port=int(os.getenv("PORT", "5000")),
        request_timeout=int(os.getenv("REQUEST_TIMEOUT", "60")),
        page_size=int(os.getenv("PAGE_SIZE", "2000")),
        throttle_max_retries=int(os.getenv("THROTTLE_MAX_RETRIES", "7")),
        throttle_base_delay=float(os.getenv("THROTTLE_BASE_DELAY", "2")),
        throttle_max_delay=float(os.getenv("THROTTLE_MAX_DELAY", "120")),
        parallel_fetch=_env_bool("PARALLEL_FETCH"),
        persist_scan_cache=_env_bool("PERSIST_SCAN_CACHE", "true"),
    )


_config: Optional[ServiceConfig] = None


def get_config() -> ServiceConfig:
    """Get the process configuration, loading it from the environment once."""
    global _config
    if _config is None:
        _config = get_config_from_env()
    return _config
