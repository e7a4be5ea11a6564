"""Authenticated provider sessions and the process-wide session cache.

A session bundles the Azure credential, the Compute and Network management
clients for one subscription, and the registry of long-running operations
("tasks") started through it. Sessions are expensive to build and are
shared by every reconcile that targets the same endpoint, subscription and
identity.

Task references are opaque strings stored in ``AzureMachine.status``. They
resolve only within the session that issued them; after a restart a stored
reference is simply not found, which the task tracker treats as "no task".
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

from azure.core.exceptions import AzureError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.core.tools import parse_resource_id
from azure.mgmt.network import NetworkManagementClient

from .errors import TaskNotFoundError
from .models import NetworkStatus, TaskInfo, TaskState
from .security import get_managed_identity_credential, redact_client_id
from .util import sanitize_ip_addrs

logger = logging.getLogger(__name__)

# Azure LRO statuses, lower-cased, mapped onto task states
_QUEUED_STATUSES = frozenset({"notstarted", "accepted"})
_RUNNING_STATUSES = frozenset({"inprogress", "running", "creating", "updating", "deleting"})
_SUCCESS_STATUSES = frozenset({"succeeded"})
_ERROR_STATUSES = frozenset({"failed", "canceled", "cancelled"})

# Completed tasks are kept this long so a later reconcile can observe them
COMPLETED_TASK_RETENTION_SECONDS = 3600


def task_state_from_status(status: str) -> str:
    """Map an LRO poller status to a TaskState value.

    Unrecognized statuses are returned unchanged so the caller can report
    them instead of guessing.
    """
    normalized = status.replace(" ", "").lower()
    if normalized in _QUEUED_STATUSES:
        return TaskState.QUEUED.value
    if normalized in _RUNNING_STATUSES:
        return TaskState.RUNNING.value
    if normalized in _SUCCESS_STATUSES:
        return TaskState.SUCCESS.value
    if normalized in _ERROR_STATUSES:
        return TaskState.ERROR.value
    return status


class SessionKey(NamedTuple):
    """Identity of a provider session."""

    endpoint: str
    subscription_id: str
    client_id: str | None


@dataclass
class _TrackedTask:
    poller: Any
    name: str
    entity_name: str
    description_id: str
    done_at: float | None = None


class Session:
    """An authenticated connection to one Azure subscription.

    Individual SDK clients are not assumed to be thread-safe across
    sessions; the task registry is guarded by a lock because pollers are
    read from executor threads.
    """

    def __init__(
        self,
        endpoint: str,
        subscription_id: str,
        client_id: str | None = None,
    ) -> None:
        self.key = SessionKey(endpoint, subscription_id, client_id)
        self.credential = get_managed_identity_credential(client_id)
        self.compute = ComputeManagementClient(
            credential=self.credential,
            subscription_id=subscription_id,
            base_url=endpoint,
        )
        self.network = NetworkManagementClient(
            credential=self.credential,
            subscription_id=subscription_id,
            base_url=endpoint,
        )
        self._tasks: dict[str, _TrackedTask] = {}
        self._tasks_lock = threading.Lock()

    def __str__(self) -> str:
        return f"{self.key.endpoint}/subscriptions/{self.key.subscription_id}"

    def track(
        self,
        poller: Any,
        *,
        name: str,
        entity_name: str,
        description_id: str = "",
    ) -> str:
        """Register a long-running operation and return its task reference."""
        ref = f"task-{uuid.uuid4().hex}"
        with self._tasks_lock:
            self._prune_locked()
            self._tasks[ref] = _TrackedTask(
                poller=poller,
                name=name,
                entity_name=entity_name,
                description_id=description_id or name,
            )
        logger.debug(
            "Tracking task",
            extra={"task_ref": ref, "task_name": name, "task_entity_name": entity_name},
        )
        return ref

    def _prune_locked(self) -> None:
        cutoff = time.monotonic() - COMPLETED_TASK_RETENTION_SECONDS
        for ref in [r for r, t in self._tasks.items() if t.done_at is not None and t.done_at < cutoff]:
            del self._tasks[ref]

    def _lookup(self, ref: str) -> _TrackedTask:
        with self._tasks_lock:
            tracked = self._tasks.get(ref)
        if tracked is None:
            raise TaskNotFoundError(f"task {ref} not found in session {self}")
        return tracked

    def _info(self, ref: str, tracked: _TrackedTask) -> TaskInfo:
        state = task_state_from_status(tracked.poller.status())
        if state in (TaskState.SUCCESS.value, TaskState.ERROR.value) and tracked.done_at is None:
            tracked.done_at = time.monotonic()
        return TaskInfo(
            ref=ref,
            state=state,
            name=tracked.name,
            entity_name=tracked.entity_name,
            description_id=tracked.description_id,
        )

    def get_task(self, ref: str) -> TaskInfo:
        """Return the current state of a task.

        Raises:
            TaskNotFoundError: If the reference is unknown to this session.
        """
        tracked = self._lookup(ref)
        return self._info(ref, tracked)

    def wait_for_task(self, ref: str, timeout: float | None = None) -> TaskInfo:
        """Block until a task reaches a terminal state.

        A failed operation is a terminal state, not an error; its TaskInfo
        is returned with state ``error``.

        Raises:
            TaskNotFoundError: If the reference is unknown to this session.
            TimeoutError: If the task is still running after ``timeout``.
        """
        tracked = self._lookup(ref)
        try:
            tracked.poller.wait(timeout=timeout)
        except AzureError as e:
            logger.debug("Task finished with error", extra={"task_ref": ref, "error": str(e)})
        if not tracked.poller.done():
            raise TimeoutError(f"task {ref} still running after {timeout}s")
        return self._info(ref, tracked)

    def get_network_status(self, vm: Any) -> list[NetworkStatus]:
        """Describe the NICs of an SDK VirtualMachine, in profile order."""
        statuses: list[NetworkStatus] = []
        profile = vm.network_profile
        for nic_ref in (profile.network_interfaces if profile else None) or []:
            parsed = parse_resource_id(nic_ref.id)
            nic = self.network.network_interfaces.get(parsed["resource_group"], parsed["name"])
            addrs: list[str] = []
            network_name = ""
            for ip_config in nic.ip_configurations or []:
                if ip_config.private_ip_address:
                    addrs.append(ip_config.private_ip_address)
                if not network_name and ip_config.subnet is not None and ip_config.subnet.id:
                    subnet = parse_resource_id(ip_config.subnet.id)
                    network_name = subnet.get("child_name_1") or subnet.get("name", "")
            statuses.append(
                NetworkStatus(
                    connected=(nic.provisioning_state or "").lower() == "succeeded",
                    ip_addrs=sanitize_ip_addrs(addrs),
                    mac_addr=nic.mac_address or "",
                    network_name=network_name,
                )
            )
        return statuses

    def get_vm_ip_addrs(self, resource_group: str, vm_name: str) -> list[str]:
        """Return every usable IP address reported by a VM's NICs."""
        vm = self.compute.virtual_machines.get(resource_group, vm_name)
        return [addr for status in self.get_network_status(vm) for addr in status.ip_addrs]

    def wait_for_network(
        self,
        resource_group: str,
        vm_name: str,
        *,
        timeout: float,
        poll_interval: float,
    ) -> list[str]:
        """Block until the VM reports at least one IP address.

        Raises:
            TimeoutError: If no address appears within ``timeout`` seconds.
        """
        deadline = time.monotonic() + timeout
        while True:
            addrs = self.get_vm_ip_addrs(resource_group, vm_name)
            if addrs:
                return addrs
            if time.monotonic() >= deadline:
                raise TimeoutError(f"no IP address reported for VM {vm_name} after {timeout}s")
            time.sleep(poll_interval)

    def close(self) -> None:
        """Close the SDK clients."""
        for sdk_client in (self.compute, self.network):
            close = getattr(sdk_client, "close", None)
            if close is not None:
                close()


# Called as factory(endpoint, subscription_id, client_id)
SessionFactory = Callable[..., Session]


class SessionCache:
    """Process-wide cache of provider sessions.

    ``get_or_create`` is single-flight per key: concurrent callers asking
    for the same key wait on one construction instead of racing.
    """

    def __init__(self, factory: SessionFactory = Session) -> None:
        self._factory = factory
        self._sessions: dict[SessionKey, Session] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_or_create(
        self,
        endpoint: str,
        subscription_id: str,
        client_id: str | None = None,
    ) -> Session:
        """Return the cached session for a key, creating it on first use."""
        key = SessionKey(endpoint, subscription_id, client_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            session = self._sessions.get(key)
            if session is not None:
                return session

            loop = asyncio.get_event_loop()
            session = await loop.run_in_executor(
                None, self._factory, endpoint, subscription_id, client_id
            )
            self._sessions[key] = session
            logger.info(
                "Created provider session",
                extra={
                    "endpoint": endpoint,
                    "subscription_id": subscription_id,
                    "client_id": redact_client_id(client_id),
                },
            )
            return session

    def close(self) -> None:
        """Close every session. Called once at process shutdown."""
        for key, session in self._sessions.items():
            try:
                session.close()
            except AzureError as e:
                logger.warning(
                    "Failed to close provider session",
                    extra={"endpoint": key.endpoint, "error": str(e)},
                )
        self._sessions.clear()
        self._locks.clear()
