"""
Credentials module for marketplace account secrets.

This module provides:
- SecretCipher: AES-256-GCM encryption at rest with scrypt key derivation
- Account repository and decrypted TenantCredential snapshots
- Audit logging and log redaction

SECURITY:
- Secrets are encrypted at rest using ENCRYPTION_KEY
- No plaintext secrets outside a single client build
- Secrets NEVER appear in logs or API responses
- Allowed in logs: account name, tenant id, proxy host/port

Usage:
    from src.credentials import SecretCipher, SqlAccountRepository, TenantCredential

    cipher = SecretCipher(settings.encryption_key)
    record = await repo.get(tenant_id)
    credential = await TenantCredential.from_record(record, cipher)
"""

from src.credentials.encryption import SecretCipher
from src.credentials.store import (
    AccountRepository,
    SqlAccountRepository,
    TenantCredential,
)
from src.credentials.redaction import (
    redact_credential_data,
    redact_credential_value,
    setup_credential_logging,
    CredentialAuditLogger,
    AuditEventType,
)

__all__ = [
    # Encryption
    "SecretCipher",
    # Store
    "AccountRepository",
    "SqlAccountRepository",
    "TenantCredential",
    # Redaction & Audit
    "redact_credential_data",
    "redact_credential_value",
    "setup_credential_logging",
    "CredentialAuditLogger",
    "AuditEventType",
]
