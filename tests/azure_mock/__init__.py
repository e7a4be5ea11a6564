"""Azure API Mock for Integration Testing.

This module provides mock implementations of the Azure Compute and Network
management APIs that enable integration testing without Azure connectivity.

Key Features:
- In-memory VMs and NICs
- Long-running operations that complete immediately or when the test says so
- Error injection for provider failures and failed provisioning
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext(hold_operations=True) as azure:
        # Controller code will use mocked Azure APIs
        ...
        azure.state.complete_all()
"""

from .compute import (
    SUBNET_ID,
    MockComputeClient,
    MockComputeState,
    MockLROPoller,
    MockNetworkClient,
)
from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential

__all__ = [
    "SUBNET_ID",
    "MockAzureContext",
    "MockComputeClient",
    "MockComputeState",
    "MockLROPoller",
    "MockManagedIdentityCredential",
    "MockNetworkClient",
    "create_mock_credential",
]
