"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Secrets NEVER appear in logs (client_secret, tokens, proxy passwords)
- ALLOWED in logs: account name, tenant id, proxy host/port
- Every credential mutation is logged for the audit trail

Masking:
- full: client_secret, proxy_password, password -> "***"
- partial: tokens and Authorization headers -> first 8 chars + "...***"

Audit Events:
- credential.stored
- credential.rotated
- credential.deleted
- credential.error

Usage:
    from src.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger()
    audit.log(
        event_type=AuditEventType.CREDENTIAL_STORED,
        tenant_id=account.id,
        account_name=account.name,
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Dict

logger = logging.getLogger(__name__)

REDACTED_VALUE = "***"
PARTIAL_VISIBLE_CHARS = 8
PARTIAL_MIN_LENGTH = 10


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_ROTATED = "credential.rotated"
    CREDENTIAL_DELETED = "credential.deleted"
    CREDENTIAL_ERROR = "credential.error"


FULL_MASK_KEYS = frozenset({
    "clientsecret",
    "client_secret",
    "proxypassword",
    "proxy_password",
    "password",
    "encryption_key",
})

PARTIAL_MASK_KEYS = frozenset({
    "token",
    "accesstoken",
    "access_token",
    "refreshtoken",
    "refresh_token",
    "authorization",
    "code",
})

# Secret-looking substrings inside free-form strings (messages, errors)
SECRET_VALUE_PATTERNS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)((?:client_secret|refresh_token|access_token|password)=)[^&\s]+"),
    re.compile(r"(?i)(://[^:/@\s]+:)[^@\s]+(@)"),
]


def mask_value(value: Any, partial: bool = False) -> str:
    """
    Mask a secret value.

    Partial masking keeps a short prefix so operators can tell tokens apart.
    """
    if not value:
        return REDACTED_VALUE
    text = str(value)
    if not partial or len(text) <= PARTIAL_MIN_LENGTH:
        return REDACTED_VALUE
    return f"{text[:PARTIAL_VISIBLE_CHARS]}...{REDACTED_VALUE}"


def is_credential_secret_key(key: str) -> bool:
    """Check if a key name indicates a credential secret."""
    key_lower = key.lower()
    return key_lower in FULL_MASK_KEYS or key_lower in PARTIAL_MASK_KEYS


def redact_credential_value(value: Any) -> Any:
    """
    Redact secret patterns from a free-form string value.

    Args:
        value: The value to redact

    Returns:
        Redacted value (non-strings are returned unchanged)
    """
    if not isinstance(value, str):
        return value

    result = value
    for pattern in SECRET_VALUE_PATTERNS:
        if pattern.groups == 2:
            result = pattern.sub(rf"\g<1>{REDACTED_VALUE}\g<2>", result)
        else:
            result = pattern.sub(rf"\g<1>{REDACTED_VALUE}", result)
    return result


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact credential secrets from a data structure.

    SECURITY: always use this before logging credential-related payloads
    (token endpoint responses, account DTOs).

    Usage:
        safe_data = redact_credential_data({"client_secret": "x", "name": "test"})
        logger.info("Account payload", extra=safe_data)
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if key_lower in FULL_MASK_KEYS:
                result[key] = mask_value(value)
            elif key_lower in PARTIAL_MASK_KEYS:
                result[key] = mask_value(value, partial=True)
            else:
                result[key] = redact_credential_data(value, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_credential_data(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_credential_value(data)

    return data


class CredentialAuditLogger:
    """
    Structured audit logger for credential operations.

    SECURITY:
    - Secrets are NEVER logged
    - account_name IS logged (display metadata)
    """

    def __init__(self):
        self.logger = logging.getLogger("credentials.audit")

    def log(
        self,
        event_type: AuditEventType,
        tenant_id: Any,
        account_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            tenant_id: Marketplace account id
            account_name: Account display name (allowed in logs)
            metadata: Additional context (will be redacted)
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenant_id": tenant_id,
            "account_name": account_name,
            **safe_metadata,
        }

        self.logger.info(
            f"Credential audit: {event_type.value}",
            extra=audit_record
        )

    def log_error(
        self,
        tenant_id: Any,
        error: str,
        account_name: Optional[str] = None,
    ) -> None:
        """Log a credential error with the message redacted."""
        self.log(
            event_type=AuditEventType.CREDENTIAL_ERROR,
            tenant_id=tenant_id,
            account_name=account_name,
            metadata={"error": redact_credential_value(error)},
        )


# LogRecord attributes that must never be rewritten
_RESERVED_RECORD_KEYS = frozenset({"msg", "args", "exc_info", "exc_text", "stack_info"})


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        logger.addFilter(CredentialLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_credential_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credential_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_credential_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if key in _RESERVED_RECORD_KEYS:
                continue
            value = record.__dict__[key]
            key_lower = key.lower()
            if key_lower in FULL_MASK_KEYS:
                setattr(record, key, mask_value(value))
            elif key_lower in PARTIAL_MASK_KEYS:
                setattr(record, key, mask_value(value, partial=True))
            elif isinstance(value, str):
                setattr(record, key, redact_credential_value(value))

        return True


CREDENTIAL_LOGGERS = (
    "credentials.audit",
    "src.credentials",
    "src.integrations",
    "src.services",
    "src.workers",
    "src.api",
)


def setup_credential_logging() -> None:
    """
    Configure credential-safe logging.

    Call this during application startup to ensure all credential-handling
    loggers have the redaction filter applied.
    """
    credential_filter = CredentialLoggingFilter()

    for logger_name in CREDENTIAL_LOGGERS:
        log = logging.getLogger(logger_name)
        if not any(isinstance(f, CredentialLoggingFilter) for f in log.filters):
            log.addFilter(credential_filter)

    # Logger filters do not apply to child loggers; handler filters do
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CredentialLoggingFilter) for f in handler.filters):
            handler.addFilter(credential_filter)

    logger.info("Credential logging configured with redaction filter")
