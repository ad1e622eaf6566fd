"""
Database models for marketplace accounts.

Secret columns hold SecretCipher blobs only (see src.credentials).
"""

from src.models.base import TimestampMixin
from src.models.marketplace_account import (
    MarketplaceAccount,
    CredentialKind,
    ConnectionStatus,
)

__all__ = [
    "TimestampMixin",
    "MarketplaceAccount",
    "CredentialKind",
    "ConnectionStatus",
]
