"""Configuration management with validation.

Constraints are enforced at configuration load time so the controller
fails fast on a bad deployment rather than misbehaving at runtime.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum


class StoreBackend(str, Enum):
    """Supported resource store backends."""

    KUBERNETES = "kubernetes"
    MEMORY = "memory"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENT_RECONCILES = 10
MAX_CONCURRENT_RECONCILES_LIMIT = 100

# Threads for background waits; each one is held for a whole provider operation
DEFAULT_MAX_CONCURRENT_WAITS = 50
MAX_CONCURRENT_WAITS_LIMIT = 500

DEFAULT_RESYNC_INTERVAL_SECONDS = 600
MIN_RESYNC_INTERVAL_SECONDS = 30
MAX_RESYNC_INTERVAL_SECONDS = 3600

# Requeue backoff after a failed reconcile: base * 2^(failures-1), capped
DEFAULT_REQUEUE_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_REQUEUE_BACKOFF_MAX_SECONDS = 300.0

# Post-patch drift verification (fixed interval, diagnostic only)
DEFAULT_PATCH_VERIFY_ATTEMPTS = 5
MAX_PATCH_VERIFY_ATTEMPTS = 60
DEFAULT_PATCH_VERIFY_INTERVAL_SECONDS = 1.0

# Background waits on provider tasks and VM networking
DEFAULT_TASK_WAIT_TIMEOUT_SECONDS = 1800
DEFAULT_NETWORK_POLL_INTERVAL_SECONDS = 5.0

DEFAULT_PROVIDER = "azure"

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_CLIENT_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Empty means all namespaces
    watch_namespace: str = ""

    # User-assigned managed identity; system-assigned when unset
    azure_client_id: str | None = None

    provider: str = DEFAULT_PROVIDER
    store_backend: StoreBackend = StoreBackend.KUBERNETES

    # Concurrency
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    max_concurrent_waits: int = DEFAULT_MAX_CONCURRENT_WAITS

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    requeue_backoff_base_seconds: float = DEFAULT_REQUEUE_BACKOFF_BASE_SECONDS
    requeue_backoff_max_seconds: float = DEFAULT_REQUEUE_BACKOFF_MAX_SECONDS
    patch_verify_attempts: int = DEFAULT_PATCH_VERIFY_ATTEMPTS
    patch_verify_interval_seconds: float = DEFAULT_PATCH_VERIFY_INTERVAL_SECONDS
    task_wait_timeout_seconds: int = DEFAULT_TASK_WAIT_TIMEOUT_SECONDS
    network_poll_interval_seconds: float = DEFAULT_NETWORK_POLL_INTERVAL_SECONDS

    # Structured JSON logging to stdout
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.watch_namespace and not re.match(VALID_NAMESPACE_PATTERN, self.watch_namespace):
            errors.append(f"WATCH_NAMESPACE must be a valid namespace name: {self.watch_namespace}")

        if self.azure_client_id and not re.match(
            VALID_CLIENT_ID_PATTERN, self.azure_client_id.lower()
        ):
            errors.append(f"AZURE_CLIENT_ID must be a valid GUID: {self.azure_client_id}")

        if not self.provider:
            errors.append("PROVIDER is required")

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES_LIMIT}"
            )

        if not 1 <= self.max_concurrent_waits <= MAX_CONCURRENT_WAITS_LIMIT:
            errors.append(f"MAX_CONCURRENT_WAITS must be between 1 and {MAX_CONCURRENT_WAITS_LIMIT}")

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if self.requeue_backoff_base_seconds <= 0:
            errors.append("REQUEUE_BACKOFF_BASE must be positive")
        elif self.requeue_backoff_max_seconds < self.requeue_backoff_base_seconds:
            errors.append("REQUEUE_BACKOFF_MAX must not be lower than REQUEUE_BACKOFF_BASE")

        if not 0 <= self.patch_verify_attempts <= MAX_PATCH_VERIFY_ATTEMPTS:
            errors.append(f"PATCH_VERIFY_ATTEMPTS must be between 0 and {MAX_PATCH_VERIFY_ATTEMPTS}")

        if self.patch_verify_interval_seconds < 0:
            errors.append("PATCH_VERIFY_INTERVAL must not be negative")

        if self.task_wait_timeout_seconds < 1:
            errors.append("TASK_WAIT_TIMEOUT must be at least 1 second")

        if self.network_poll_interval_seconds <= 0:
            errors.append("NETWORK_POLL_INTERVAL must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace to watch (default: all namespaces)
            AZURE_CLIENT_ID: User-assigned managed identity client ID
            PROVIDER: VM service descriptor (default: azure)
            STORE_BACKEND: One of kubernetes, memory (default: kubernetes)
            MAX_CONCURRENT_RECONCILES: Worker count (default: 10)
            MAX_CONCURRENT_WAITS: Threads for background waits (default: 50)
            RESYNC_INTERVAL: Seconds between full resyncs (default: 600)
            REQUEUE_BACKOFF_BASE: Base requeue backoff in seconds (default: 1)
            REQUEUE_BACKOFF_MAX: Maximum requeue backoff in seconds (default: 300)
            PATCH_VERIFY_ATTEMPTS: Post-patch verification attempts, 0 disables (default: 5)
            PATCH_VERIFY_INTERVAL: Seconds between verification attempts (default: 1)
            TASK_WAIT_TIMEOUT: Seconds a background wait may block (default: 1800)
            NETWORK_POLL_INTERVAL: Seconds between VM network polls (default: 5)
            ENABLE_AUDIT_LOGGING: Enable JSON logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_backend(value: str | None) -> StoreBackend:
            if not value:
                return StoreBackend.KUBERNETES
            try:
                return StoreBackend(value)
            except ValueError as e:
                valid = [b.value for b in StoreBackend]
                raise ConfigurationError(f"STORE_BACKEND must be one of {valid}: {value}") from e

        return cls(
            watch_namespace=os.environ.get("WATCH_NAMESPACE", ""),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            provider=os.environ.get("PROVIDER", DEFAULT_PROVIDER),
            store_backend=get_backend(os.environ.get("STORE_BACKEND")),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            max_concurrent_waits=get_int("MAX_CONCURRENT_WAITS", DEFAULT_MAX_CONCURRENT_WAITS),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            requeue_backoff_base_seconds=get_float(
                "REQUEUE_BACKOFF_BASE", DEFAULT_REQUEUE_BACKOFF_BASE_SECONDS
            ),
            requeue_backoff_max_seconds=get_float(
                "REQUEUE_BACKOFF_MAX", DEFAULT_REQUEUE_BACKOFF_MAX_SECONDS
            ),
            patch_verify_attempts=get_int("PATCH_VERIFY_ATTEMPTS", DEFAULT_PATCH_VERIFY_ATTEMPTS),
            patch_verify_interval_seconds=get_float(
                "PATCH_VERIFY_INTERVAL", DEFAULT_PATCH_VERIFY_INTERVAL_SECONDS
            ),
            task_wait_timeout_seconds=get_int("TASK_WAIT_TIMEOUT", DEFAULT_TASK_WAIT_TIMEOUT_SECONDS),
            network_poll_interval_seconds=get_float(
                "NETWORK_POLL_INTERVAL", DEFAULT_NETWORK_POLL_INTERVAL_SECONDS
            ),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
