"""Configuration module for backend services."""

from src.config.settings import (
    DEFAULT_API_URL,
    DEFAULT_OAUTH_SCOPES,
    Settings,
)

__all__ = [
    "DEFAULT_API_URL",
    "DEFAULT_OAUTH_SCOPES",
    "Settings",
]
