"""Secretless credentials for provider sessions.

Every provider session authenticates with a Managed Identity. Service
principal secrets, certificates and passwords are refused outright:

1. Credential-bearing environment variables must never be present
2. ManagedIdentityCredential is the only credential type handed out
3. Sessions are keyed by the identity's client ID, never by a secret
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set. The machine controller authenticates "
    "to Azure with a Managed Identity only. Remove the variable and assign a "
    "user-assigned or system-assigned identity to the controller instead."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in the environment.

    This is fatal: no provider session may be created.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to continue when credential secrets are in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "session_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying the environment.

    This is the only way provider sessions obtain credentials.

    Args:
        client_id: Client ID of a user-assigned identity. If None, the
                   system-assigned identity is used.

    Returns:
        ManagedIdentityCredential for the requested identity.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": redact_client_id(client_id)},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def redact_client_id(client_id: str | None) -> str:
    """Shorten a client ID for logging."""
    if not client_id:
        return "system-assigned"
    return client_id[:8] + "..." if len(client_id) > 8 else client_id
