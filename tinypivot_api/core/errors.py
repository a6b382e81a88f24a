"""
Datasource Errors

Exception hierarchy shared by the vault, registry, connectors and routers.
Every error carries the HTTP status the router should translate it to.
"""

import re


class DatasourceError(Exception):
    """Base class for all datasource subsystem errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(DatasourceError):
    """Missing or invalid server configuration."""
    status_code = 500


class TierViolationError(DatasourceError):
    """Mutation attempted against an organization datasource."""
    status_code = 403


class DatasourceNotFoundError(DatasourceError):
    """Datasource does not exist, is inactive, or belongs to someone else."""
    status_code = 404


class MissingUserKeyError(DatasourceError):
    """User identity or per-user key was not supplied for a user-tier call."""
    status_code = 400


class CredentialDecryptionError(DatasourceError):
    """Encrypted payload could not be authenticated with the supplied key."""
    status_code = 400


class QueryValidationError(DatasourceError):
    """SQL text rejected by the safety validator."""
    status_code = 400


class TableNotAllowedError(DatasourceError):
    """Table is filtered out of the default database."""
    status_code = 403


class ConnectorError(DatasourceError):
    """Failure reported by a backend connector or its driver."""
    status_code = 502


class ConnectorUnavailableError(ConnectorError):
    """Backend driver is not installed."""
    status_code = 501


class ConnectionTerminatedError(ConnectorError):
    """Pooled session was closed by the warehouse."""


class ReauthenticationRequiredError(ConnectorError):
    """Identity provider session expired; user must log in again."""
    status_code = 401


class QueryTimeoutError(ConnectorError):
    """Operation exceeded its outer timeout."""
    status_code = 504


class OAuthError(DatasourceError):
    """OAuth-related error."""
    status_code = 400


# =============================================================================
# Error message sanitizing
# =============================================================================

MAX_ERROR_LENGTH = 200

_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"postgres(?:ql)?(?:\+\w+)?://\S+", re.IGNORECASE), "[DATABASE_URL]"),
    (re.compile(r"snowflake://\S+", re.IGNORECASE), "[DATABASE_URL]"),
    (re.compile(r"/[^\s:'\"]+\.(?:py|pyc|js|ts|mjs|cjs)\b"), "[FILE]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
]


def sanitize_error_message(message: str) -> str:
    """
    Redact infrastructure details from an error message before returning it.

    Connection strings, source file paths and IPv4 addresses are replaced
    with placeholders, and the result is truncated.

    Args:
        message: Raw error text

    Returns:
        Sanitized error text
    """
    sanitized = message
    for pattern, replacement in _REDACTIONS:
        sanitized = pattern.sub(replacement, sanitized)

    if len(sanitized) > MAX_ERROR_LENGTH:
        sanitized = sanitized[:MAX_ERROR_LENGTH] + "..."

    return sanitized
