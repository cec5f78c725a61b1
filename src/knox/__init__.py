"""knox - signed-request client for S3-compatible object storage."""

from knox.client import Client, create_client
from knox.config import KnoxConfig, load_config
from knox.errors import (
    CompletionError,
    ConfigurationError,
    KnoxError,
    PartUploadError,
    ResponseError,
    TransportError,
    UploadInitiationError,
    UploadTimeoutError,
)

__version__ = "0.1.0"

__all__ = [
    "Client",
    "CompletionError",
    "ConfigurationError",
    "KnoxConfig",
    "KnoxError",
    "PartUploadError",
    "ResponseError",
    "TransportError",
    "UploadInitiationError",
    "UploadTimeoutError",
    "create_client",
    "load_config",
]
