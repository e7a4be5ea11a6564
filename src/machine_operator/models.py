"""Pydantic models for the resources the machine controller reads and writes.

These models provide:
1. Type-safe parsing of objects returned by the resource store
2. camelCase wire names (``by_alias=True``) with snake_case attributes
3. A read-only view of the provider's virtual machine

The controller owns ``AzureMachine.status`` and the ``AzureMachine``
finalizer. Everything else is read-only from its point of view.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, NamedTuple

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

# =============================================================================
# Well-known names
# =============================================================================

CLUSTER_API_GROUP = "cluster.x-k8s.io"
INFRASTRUCTURE_GROUP = "infrastructure.cluster.x-k8s.io"
API_VERSION = "v1alpha2"

# Removing this finalizer lets the store finish deleting the AzureMachine.
MACHINE_FINALIZER = "azuremachine.infrastructure.cluster.x-k8s.io"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"

# When set on an AzureMachine, status drift after a patch is dumped to the log.
DEBUG_ANNOTATION = "azuremachine.infrastructure.cluster.x-k8s.io/debug"


class GroupVersionKind(NamedTuple):
    """Identifies a resource type."""

    group: str
    version: str
    kind: str

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Kind={self.kind}"


class ObjectKey(NamedTuple):
    """Namespace-qualified name of a resource."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class WireModel(BaseModel):
    """Base model using camelCase aliases on the wire."""

    model_config = {"extra": "ignore", "populate_by_name": True, "alias_generator": to_camel}


# =============================================================================
# Metadata
# =============================================================================


class OwnerReference(WireModel):
    """Reference from an object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool | None = None


class ObjectReference(WireModel):
    """Reference to another resource, possibly in a different namespace."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    namespace: str | None = None


class ObjectMeta(WireModel):
    """Subset of Kubernetes object metadata used by the controller."""

    name: str = ""
    namespace: str = "default"
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None


class Resource(WireModel):
    """Base for every stored resource.

    Subclasses declare their group, version, kind and plural as class
    variables; the store uses them to address the resource.
    """

    GROUP: ClassVar[str] = ""
    VERSION: ClassVar[str] = API_VERSION
    KIND: ClassVar[str] = ""
    PLURAL: ClassVar[str] = ""

    api_version: str = ""
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    def model_post_init(self, __context: Any) -> None:
        if not self.api_version:
            self.api_version = f"{self.GROUP}/{self.VERSION}"
        if not self.kind:
            self.kind = self.KIND

    @classmethod
    def gvk(cls) -> GroupVersionKind:
        """Return the GroupVersionKind of this resource type."""
        return GroupVersionKind(cls.GROUP, cls.VERSION, cls.KIND)

    @property
    def key(self) -> ObjectKey:
        """Return the namespace-qualified name of this resource."""
        return ObjectKey(self.metadata.namespace, self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        """Whether a deletion timestamp has been set."""
        return self.metadata.deletion_timestamp is not None

    def __str__(self) -> str:
        return f"{self.KIND} {self.key}"


# =============================================================================
# AzureMachine (the reconciled resource)
# =============================================================================


class ImageSpec(WireModel):
    """Marketplace image reference, or a custom image ID."""

    id: str | None = None
    publisher: str | None = None
    offer: str | None = None
    sku: str | None = None
    version: str = "latest"


class NetworkDeviceSpec(WireModel):
    """A NIC the VM should be created with."""

    network_name: str = ""
    subnet_id: str
    dhcp4: bool = True
    ip_addrs: list[str] = Field(default_factory=list)


class NetworkSpec(WireModel):
    """Network configuration of a machine."""

    devices: list[NetworkDeviceSpec] = Field(default_factory=list)
    preferred_api_server_cidr: str = Field("", alias="preferredAPIServerCIDR")


class AzureMachineSpec(WireModel):
    """Desired state of an AzureMachine. Never mutated by the controller."""

    vm_size: str = "Standard_D2s_v3"
    image: ImageSpec = Field(default_factory=ImageSpec)
    location: str | None = None
    resource_group: str | None = None
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    os_disk_size_gb: int = 30
    admin_username: str = "capi"
    ssh_public_key: str = ""
    provider_id: str | None = Field(None, alias="providerID")


class MachineAddressType(str, Enum):
    """Kinds of machine addresses."""

    INTERNAL_IP = "InternalIP"
    EXTERNAL_IP = "ExternalIP"
    HOSTNAME = "Hostname"


class MachineAddress(WireModel):
    """An address reported for a machine."""

    type: MachineAddressType
    address: str


class NetworkStatus(WireModel):
    """Observed state of one of the VM's NICs."""

    connected: bool = False
    ip_addrs: list[str] = Field(default_factory=list)
    mac_addr: str = ""
    network_name: str = ""


class AzureMachineStatus(WireModel):
    """Observed state of an AzureMachine. Written only by this controller."""

    ready: bool = False
    addresses: list[MachineAddress] = Field(default_factory=list)
    network: list[NetworkStatus] = Field(default_factory=list)
    provider_id: str | None = Field(None, alias="providerID")
    task_ref: str = ""
    error_reason: str | None = None
    error_message: str | None = None


class AzureMachine(Resource):
    """Infrastructure resource backing a cluster Machine with an Azure VM."""

    GROUP: ClassVar[str] = INFRASTRUCTURE_GROUP
    KIND: ClassVar[str] = "AzureMachine"
    PLURAL: ClassVar[str] = "azuremachines"

    spec: AzureMachineSpec = Field(default_factory=AzureMachineSpec)
    status: AzureMachineStatus = Field(default_factory=AzureMachineStatus)

    @property
    def has_error(self) -> bool:
        """Whether the machine is in a terminal error state."""
        return self.status.error_reason is not None or self.status.error_message is not None


# =============================================================================
# Cluster API owners
# =============================================================================


class Bootstrap(WireModel):
    """Bootstrap configuration of a Machine."""

    config_ref: ObjectReference | None = None
    data: str | None = None


class MachineSpec(WireModel):
    """Desired state of a Machine."""

    bootstrap: Bootstrap = Field(default_factory=Bootstrap)
    infrastructure_ref: ObjectReference = Field(default_factory=ObjectReference)
    version: str | None = None


class Machine(Resource):
    """Cluster API Machine owning an AzureMachine."""

    GROUP: ClassVar[str] = CLUSTER_API_GROUP
    KIND: ClassVar[str] = "Machine"
    PLURAL: ClassVar[str] = "machines"

    spec: MachineSpec = Field(default_factory=MachineSpec)


class ClusterSpec(WireModel):
    """Desired state of a Cluster."""

    infrastructure_ref: ObjectReference | None = None


class ClusterStatus(WireModel):
    """Observed state of a Cluster."""

    infrastructure_ready: bool = False


class Cluster(Resource):
    """Cluster API Cluster."""

    GROUP: ClassVar[str] = CLUSTER_API_GROUP
    KIND: ClassVar[str] = "Cluster"
    PLURAL: ClassVar[str] = "clusters"

    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)


DEFAULT_ARM_ENDPOINT = "https://management.azure.com"


class AzureClusterSpec(WireModel):
    """Where a cluster's machines live in Azure."""

    endpoint: str = DEFAULT_ARM_ENDPOINT
    subscription_id: str = Field("", alias="subscriptionID")
    resource_group: str = ""
    location: str = ""


class AzureClusterStatus(WireModel):
    """Observed state of an AzureCluster."""

    ready: bool = False


class AzureCluster(Resource):
    """Infrastructure resource of a Cluster."""

    GROUP: ClassVar[str] = INFRASTRUCTURE_GROUP
    KIND: ClassVar[str] = "AzureCluster"
    PLURAL: ClassVar[str] = "azureclusters"

    spec: AzureClusterSpec = Field(default_factory=AzureClusterSpec)
    status: AzureClusterStatus = Field(default_factory=AzureClusterStatus)


# =============================================================================
# Provider views
# =============================================================================


class VirtualMachineState(str, Enum):
    """Lifecycle state of a VM as seen by the provider."""

    NOT_FOUND = "notfound"
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


class VirtualMachine(BaseModel):
    """Read-only snapshot of a VM returned by a VM service."""

    model_config = {"frozen": True}

    name: str
    state: VirtualMachineState = VirtualMachineState.PENDING
    native_id: str = ""
    network: list[NetworkStatus] = Field(default_factory=list)
    error_message: str | None = None


class TaskState(str, Enum):
    """Known states of a provider task."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class TaskInfo(BaseModel):
    """Snapshot of an asynchronous provider operation.

    ``state`` is a plain string so that states the provider reports but we
    do not recognize can be surfaced rather than coerced.
    """

    ref: str
    state: str
    name: str = ""
    entity_name: str = ""
    description_id: str = ""
