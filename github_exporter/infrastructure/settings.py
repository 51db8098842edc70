import logging
import os
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from github_exporter.domain.exceptions import ConfigurationError
from github_exporter.infrastructure.github_client import DEFAULT_API_URL
from github_exporter.application.scrape_cache import DEFAULT_INITIAL_CURSOR
from github_exporter.application.snapshot_builder import DEFAULT_MAX_CONCURRENT_REPOSITORIES

# Environment variable -> Settings field
REQUIRED_VARIABLES: Dict[str, str] = {
    "GITHUB_ORGANIZATION": "organization",
    "GITHUB_TOKEN": "token",
    "SCRAPE_TTL_SECONDS": "ttl_seconds",
    "LISTEN_PORT": "listen_port",
}
OPTIONAL_VARIABLES: Dict[str, str] = {
    "LISTEN_HOST": "listen_host",
    "LOG_LEVEL": "log_level",
    "LOG_FILE": "log_file",
    "MAX_CONCURRENT_REPOSITORIES": "max_concurrent_repositories",
    "GITHUB_API_URL": "github_api_url",
    "INITIAL_CURSOR": "initial_cursor",
}


class Settings(BaseModel):
    """Process configuration, read once at startup and immutable afterwards."""
    model_config = ConfigDict(frozen=True)

    organization: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1, repr=False)
    ttl_seconds: float = Field(..., gt=0)
    listen_port: int = Field(..., ge=1, le=65535)
    listen_host: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    max_concurrent_repositories: int = Field(default=DEFAULT_MAX_CONCURRENT_REPOSITORIES, ge=1)
    github_api_url: str = DEFAULT_API_URL
    initial_cursor: datetime = DEFAULT_INITIAL_CURSOR

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @field_validator("initial_cursor")
    @classmethod
    def _cursor_in_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds Settings from environment variables.

    Raises:
        ConfigurationError: Naming every missing or invalid variable.
    """
    env = os.environ if environ is None else environ

    missing = [name for name in REQUIRED_VARIABLES if not env.get(name, "").strip()]
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}.")

    field_to_variable = {field: name for name, field in {**REQUIRED_VARIABLES, **OPTIONAL_VARIABLES}.items()}
    values = {
        field: env[name].strip()
        for name, field in {**REQUIRED_VARIABLES, **OPTIONAL_VARIABLES}.items()
        if env.get(name, "").strip()
    }

    try:
        return Settings(**values)
    except ValidationError as e:
        problems = [
            f"{field_to_variable.get(error['loc'][0], error['loc'][0])}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigurationError(f"Invalid environment variables: {'; '.join(problems)}.") from e
