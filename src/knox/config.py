"""Configuration loading and Pydantic models for knox."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from knox.errors import ConfigurationError

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10000


class ClientConfig(BaseModel):
    """Credentials, bucket and endpoint for a client."""

    key: str = ""
    secret: str = ""
    bucket: str = ""
    endpoint: str = "s3.amazonaws.com"
    # None picks 443 when secure, otherwise 80
    port: int | None = None
    secure: bool = False
    timeout: float | None = 60.0


class MultipartConfig(BaseModel):
    """Multipart upload tuning."""

    min_part_size: int = Field(default=MIN_PART_SIZE, gt=0)
    max_parts: int = Field(default=MAX_PARTS, gt=0, le=MAX_PARTS)
    concurrency: int = Field(default=8, gt=0)
    abort_on_failure: bool = True


class LoggingConfig(BaseModel):
    """Log level and output format."""

    level: str = "INFO"
    format: str = "text"


class ObservabilityConfig(BaseModel):
    """Optional Prometheus metrics."""

    metrics: bool = False


class KnoxConfig(BaseModel):
    """Top-level knox configuration."""

    client: ClientConfig = Field(default_factory=ClientConfig)
    multipart: MultipartConfig = Field(default_factory=MultipartConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


# Environment variable -> ClientConfig field
ENV_OVERRIDES = {
    "KNOX_KEY": "key",
    "KNOX_SECRET": "secret",
    "KNOX_BUCKET": "bucket",
    "KNOX_ENDPOINT": "endpoint",
}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    """Return one top-level section of the YAML data, or {} when absent."""
    data = raw.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping.")
    return data


def load_config(path: Path) -> KnoxConfig:
    """Load a KnoxConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated KnoxConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ConfigurationError: If a section has the wrong shape or invalid values.
    """
    with open(path, "r") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping.")

    try:
        return KnoxConfig(
            client=ClientConfig(**_section(raw, "client")),
            multipart=MultipartConfig(**_section(raw, "multipart")),
            logging=LoggingConfig(**_section(raw, "logging")),
            observability=ObservabilityConfig(**_section(raw, "observability")),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc


def apply_env_overrides(config: KnoxConfig, environ: Mapping[str, str] | None = None) -> KnoxConfig:
    """Overlay ``KNOX_*`` environment variables onto the client section.

    Args:
        config: The loaded configuration; modified in place.
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        The same config object.
    """
    if environ is None:
        environ = os.environ
    for var, field in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            setattr(config.client, field, value)
    return config
