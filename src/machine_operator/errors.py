"""Exception hierarchy for machine reconciliation.

Configuration errors describe a resource whose desired state can never be
satisfied as written. They are surfaced as reconcile errors so the controller
backs off and retries; they are never swallowed.
"""

from __future__ import annotations


class MachineOperatorError(Exception):
    """Base class for all operator errors."""

    pass


class MachineConfigurationError(MachineOperatorError):
    """Raised when a resource is misconfigured (not a transient condition)."""

    pass


class NetworkCountMismatchError(MachineConfigurationError):
    """Raised when the VM's NIC count differs from the configured devices."""

    def __init__(self, machine: str, expected: int, actual: int) -> None:
        self.machine = machine
        self.expected = expected
        self.actual = actual
        super().__init__(f"invalid network count for {machine}: exp={expected} act={actual}")


class InvalidNativeIDError(MachineConfigurationError):
    """Raised when the provider reports a VM ID that is not a UUID."""

    pass


class InvalidProviderIDError(MachineConfigurationError):
    """Raised when a resource carries a malformed provider ID."""

    pass


class UnknownTaskStateError(MachineConfigurationError):
    """Raised when an in-flight task reports a state we do not understand."""

    pass


class ProviderError(MachineOperatorError):
    """Raised when a call to the virtualization provider fails.

    The message names the operation and the machine so the failure can be
    diagnosed from the log line alone.
    """

    def __init__(self, operation: str, machine: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.machine = machine
        message = f"failed to {operation} for {machine}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class TaskNotFoundError(MachineOperatorError):
    """Raised by a session when a task reference is unknown."""

    pass


class PatchError(MachineOperatorError):
    """Raised when status cannot be patched back to the resource store."""

    pass


class NoMachineIPAddrError(MachineOperatorError):
    """Raised when a machine has no usable IP address."""

    pass
