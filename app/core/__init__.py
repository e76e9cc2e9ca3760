"""Core infrastructure: settings, security, logging, exceptions."""

from .config import settings
from .exceptions import (
    AppException,
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    UnsupportedInstrumentError,
    UpstreamUnavailableError,
    ValidationError,
)
from .security import TokenData, create_access_token, decode_access_token


__all__ = [
    "AppException",
    "AuthenticationError",
    "ConfigurationError",
    "ConflictError",
    "ExternalServiceError",
    "NotFoundError",
    "RateLimitError",
    "TokenData",
    "UnsupportedInstrumentError",
    "UpstreamUnavailableError",
    "ValidationError",
    "create_access_token",
    "decode_access_token",
    "settings",
]
