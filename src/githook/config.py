import asyncio
from pathlib import Path
from typing import Literal

import pydantic
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings
from sanic.log import logger

from githook.exceptions import ConfigNotAvailableError


class Config(BaseSettings):
    CONFIG_PATH: str = "/etc/githook/config.json"

    OVERRIDE_LOGGING: Literal[
        "CRITICAL",
        "FATAL",
        "ERROR",
        "WARNING",
        "WARN",
        "INFO",
        "DEBUG",
        "NOTSET",
    ] = "INFO"

    # Seconds; "none" or 0 lets an action run for as long as it takes
    ACTION_TIMEOUT: float | None = 3600.0

    CONFIG_RETRY_INTERVAL: float = 1.0

    STDERR_IGNORE_MARKERS: list[str] = ["warning", "peer dependency"]

    @field_validator("ACTION_TIMEOUT", mode="before")
    @classmethod
    def _disable_timeout(cls, value):
        if isinstance(value, str) and value.strip().lower() in ("", "none", "null"):
            return None
        if value is not None and float(value) == 0:
            return None
        return value

    def print_config(self):
        logger.info("=== Githook Configuration ===")
        for field_name, field_value in self.model_dump().items():
            logger.info(f"{field_name}: {field_value}")
        logger.info("=============================")


class ServerSection(BaseModel):
    port: int = 8080


class UriSection(BaseModel):
    domain: str


class GitHubSection(BaseModel):
    secret: str
    # app id -> "owner/repo" or "owner/repo#branch"
    sources: dict[str, str]
    # app id -> ssh host alias used in place of github.com when cloning
    ssh: dict[str, str] = {}


class SlackWebhooks(BaseModel):
    githook: str


class SlackSection(BaseModel):
    webhook: SlackWebhooks


class PathSection(BaseModel):
    cache: str
    build: str
    # app id -> checkout that is built in place instead of cloned
    install: dict[str, str] = {}


class AwsSection(BaseModel):
    region: str
    bucket_release: str
    path_release: str
    hostname: str = "s3.amazonaws.com"


class ConsulSection(BaseModel):
    url: str = "http://127.0.0.1:8500"


class BuildSection(BaseModel):
    command: str = "make githook"


class BuildConfig(BaseModel):
    """Contents of the JSON configuration file."""

    environment: str
    server: ServerSection = Field(default_factory=ServerSection)
    uri: UriSection
    github: GitHubSection
    slack: SlackSection
    path: PathSection
    aws: AwsSection
    consul: ConsulSection = Field(default_factory=ConsulSection)
    build: BuildSection = Field(default_factory=BuildSection)

    def print_config(self):
        """Print configuration values with sensitive attributes masked"""
        sensitive_attrs = {"secret", "webhook"}

        logger.info("=== Build Configuration ===")
        for section, values in self.model_dump().items():
            if not isinstance(values, dict):
                logger.info(f"{section}: {values}")
                continue
            for field_name, field_value in values.items():
                if field_name in sensitive_attrs:
                    logger.info(f"{section}.{field_name}: ***")
                else:
                    logger.info(f"{section}.{field_name}: {field_value}")
        logger.info("===========================")


def load_build_config(path: str | Path) -> BuildConfig:
    path = Path(path)
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigNotAvailableError(f"Cannot read {path}: {e}") from e

    try:
        return BuildConfig.model_validate_json(raw)
    except pydantic.ValidationError as e:
        raise ConfigNotAvailableError(f"Invalid configuration in {path}: {e}") from e


async def wait_for_build_config(path: str | Path, interval: float) -> BuildConfig:
    """Poll until the configuration file is readable, then load it."""
    while True:
        try:
            build_config = load_build_config(path)
        except ConfigNotAvailableError as e:
            logger.warning("Configuration not available: %s", e)
            await asyncio.sleep(interval)
            continue
        logger.debug("Configuration ready at %s", path)
        return build_config
