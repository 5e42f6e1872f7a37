"""Log sanitization module for preventing secret leakage.

This module provides sanitization of sensitive data in logs and error messages.
It implements pattern-based redaction for the secret types avdops handles:
- Host pool registration tokens (JWTs)
- Local administrator passwords passed to run-command scripts
- Client secrets and access tokens surfaced in SDK errors
- Authorization headers

Design Philosophy:
- Security first: err on side of over-redaction
- Pattern-based: not brittle keyword matching
- Fail-safe: if in doubt, mask it
"""

import re
from re import Pattern
from typing import Any


class LogSanitizer:
    """Sanitize sensitive data from logs and error messages.

    All methods are class methods and can be called without instantiation.
    """

    REDACTED = "[REDACTED]"

    # Order matters: more specific patterns should come first
    SECRET_PATTERNS: dict[str, Pattern] = {
        # Run-command parameters carrying secrets
        "script_parameter": re.compile(
            r"((?:LocalAdminPassword|RegistrationToken)\s*[=:]\s*[\"']?)([^\s\"'&,\)]+)",
            re.IGNORECASE,
        ),
        "client_secret_assignment": re.compile(
            r'(client[_-]?secret["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)',
            re.IGNORECASE,
        ),
        "password": re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE),
        "authorization_bearer": re.compile(r"(Authorization:\s*Bearer\s+)([^\s]+)", re.IGNORECASE),
        "access_token": re.compile(
            r'(access[_-]?token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)',
            re.IGNORECASE,
        ),
        # Token in general (but not "token" as a word)
        "token_assignment": re.compile(
            r'([^a-zA-Z]token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE
        ),
        "registration_token_arg": re.compile(r"(REGISTRATIONTOKEN=)([^\s\"']+)"),
    }

    # Bare JWTs (registration tokens are JWTs) are redacted wherever they appear
    JWT_PATTERN: Pattern = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")

    SENSITIVE_KEYS = {
        "password",
        "token",
        "secret",
        "credential",
        "authorization",
    }

    @classmethod
    def sanitize(cls, message: str) -> str:
        """Sanitize message by redacting sensitive patterns.

        Examples:
            >>> LogSanitizer.sanitize("LocalAdminPassword=abc123")
            'LocalAdminPassword=[REDACTED]'
        """
        if not isinstance(message, str):
            message = str(message)

        result = cls.JWT_PATTERN.sub(cls.REDACTED, message)
        for pattern in cls.SECRET_PATTERNS.values():
            result = pattern.sub(r"\1" + cls.REDACTED, result)
        return result

    @classmethod
    def redact_values(cls, message: str, secrets: list[str | None]) -> str:
        """Redact known secret values verbatim (e.g. a password echoed by a script)."""
        result = message
        for secret in secrets:
            if secret:
                result = result.replace(secret, cls.REDACTED)
        return result

    @classmethod
    def create_safe_error_message(cls, error: Exception, context: str = "") -> str:
        """Create error message with secrets sanitized.

        Examples:
            >>> err = ValueError("Auth failed with client_secret=abc123")
            >>> LogSanitizer.create_safe_error_message(err, "Authentication")
            'Authentication: Auth failed with client_secret=[REDACTED]'
        """
        sanitized_msg = cls.sanitize(str(error))
        if context:
            return f"{context}: {sanitized_msg}"
        return sanitized_msg

    @classmethod
    def sanitize_dict(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Sanitize dictionary values recursively, redacting sensitive keys."""
        result: dict[str, Any] = {}
        for key, value in data.items():
            key_lower = key.lower()
            if any(word in key_lower for word in cls.SENSITIVE_KEYS):
                result[key] = cls.REDACTED
            elif isinstance(value, dict):
                result[key] = cls.sanitize_dict(value)
            elif isinstance(value, str):
                result[key] = cls.sanitize(value)
            else:
                result[key] = value
        return result


__all__ = ["LogSanitizer"]
