"""Credential factory for Azure authentication.

Creates azure-identity credential objects from the configured auth method.

Supported credential types:
- AzureCliCredential: Delegate to Azure CLI login (default)
- DefaultAzureCredential: Environment, workload identity, managed identity, CLI...
- ManagedIdentityCredential: Managed identity (system or user-assigned via AZURE_CLIENT_ID)

Security:
- No token storage - delegates to Azure Identity SDK
- Log sanitization for all error messages
"""

import os
from enum import Enum
from typing import Any

from azure.identity import (
    AzureCliCredential,
    DefaultAzureCredential,
    ManagedIdentityCredential,
)

from avdops.errors import ConfigError
from avdops.log_sanitizer import LogSanitizer


class AuthMethod(str, Enum):
    """Authentication methods understood by avdops."""

    AZURE_CLI = "azure_cli"
    DEFAULT = "default"
    MANAGED_IDENTITY = "managed_identity"


class CredentialFactory:
    """Factory for creating Azure Identity credentials."""

    @staticmethod
    def create_credential(method: AuthMethod | str = AuthMethod.AZURE_CLI) -> Any:
        """Create an Azure Identity credential.

        Args:
            method: Authentication method (enum or its string value)

        Returns:
            Azure Identity credential object (TokenCredential)

        Raises:
            ConfigError: If the method is unknown or the credential cannot be built
        """
        try:
            auth_method = AuthMethod(method)
        except ValueError as e:
            raise ConfigError(f"Unsupported authentication method: {method}") from e

        try:
            if auth_method == AuthMethod.AZURE_CLI:
                return AzureCliCredential()
            if auth_method == AuthMethod.MANAGED_IDENTITY:
                client_id = os.getenv("AZURE_CLIENT_ID")
                if client_id:
                    return ManagedIdentityCredential(client_id=client_id)
                return ManagedIdentityCredential()
            return DefaultAzureCredential(exclude_interactive_browser_credential=True)
        except Exception as e:
            raise ConfigError(
                LogSanitizer.create_safe_error_message(e, "Credential creation failed")
            ) from e


__all__ = ["AuthMethod", "CredentialFactory"]
