"""
Indirect Agent LB Types

Type definitions shared by the indirect-agent load-balancing service:
- Host inventory enums (hypervisor, resource state, host type)
- Read-only host identity records supplied by the inventory collaborator
- The algorithm selector and immutable endpoint snapshots
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from agentlb.exceptions import InvalidAlgorithmError


# =============================================================================
# Host Inventory Types
# =============================================================================


class HypervisorType(str, Enum):
    """Hypervisor running on a host."""
    KVM = "KVM"
    LXC = "LXC"
    XEN_SERVER = "XenServer"
    VMWARE = "VMware"
    HYPERV = "Hyperv"
    SIMULATOR = "Simulator"
    EXTERNAL = "External"


class ResourceState(str, Enum):
    """Administrative resource state of a host."""
    CREATING = "Creating"
    ENABLED = "Enabled"
    DISABLED = "Disabled"
    PREPARE_FOR_MAINTENANCE = "PrepareForMaintenance"
    ERROR_IN_MAINTENANCE = "ErrorInMaintenance"
    MAINTENANCE = "Maintenance"
    ERROR = "Error"


class HostType(str, Enum):
    """Kind of agent-bearing host."""
    ROUTING = "Routing"                          # Hypervisor host
    CONSOLE_PROXY = "ConsoleProxy"               # Console proxy system VM
    SECONDARY_STORAGE_VM = "SecondaryStorageVM"  # Secondary storage system VM
    STORAGE = "Storage"
    EXTERNAL_LOAD_BALANCER = "ExternalLoadBalancer"


# Hosts whose agents take part in indirect-agent load balancing
AGENT_RESOURCE_STATES: Tuple[ResourceState, ...] = (
    ResourceState.ENABLED,
    ResourceState.DISABLED,
    ResourceState.MAINTENANCE,
    ResourceState.PREPARE_FOR_MAINTENANCE,
    ResourceState.ERROR_IN_MAINTENANCE,
)

AGENT_HYPERVISOR_TYPES: Tuple[HypervisorType, ...] = (
    HypervisorType.KVM,
    HypervisorType.LXC,
)

SYSTEM_VM_HOST_TYPES: Tuple[HostType, ...] = (
    HostType.CONSOLE_PROXY,
    HostType.SECONDARY_STORAGE_VM,
)


@dataclass(frozen=True)
class HostIdentity:
    """
    Read-only view of a host as reported by the inventory.

    The core never persists or mutates these records; they only feed the
    host ordering used by round-robin assignment.
    """
    id: int
    data_center_id: int
    cluster_id: Optional[int] = None
    hypervisor_type: Optional[HypervisorType] = HypervisorType.KVM
    resource_state: ResourceState = ResourceState.ENABLED
    type: HostType = HostType.ROUTING
    management_server_id: Optional[int] = None
    removed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "data_center_id": self.data_center_id,
            "cluster_id": self.cluster_id,
            "hypervisor_type": self.hypervisor_type.value if self.hypervisor_type else None,
            "resource_state": self.resource_state.value,
            "type": self.type.value,
            "management_server_id": self.management_server_id,
            "removed": self.removed,
        }


# =============================================================================
# Algorithm Selector
# =============================================================================


class LBAlgorithm(str, Enum):
    """Management server list ordering algorithms."""
    STATIC = "static"            # Configured order, identical for every host
    ROUND_ROBIN = "roundrobin"   # Rotated by host rank within the zone
    SHUFFLE = "shuffle"          # Random permutation per call

    @classmethod
    def parse(cls, value: Any) -> "LBAlgorithm":
        """Resolve a configuration value to an algorithm.

        Raises:
            InvalidAlgorithmError: If *value* names no known algorithm.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        raise InvalidAlgorithmError(value)


# =============================================================================
# Endpoint Snapshots
# =============================================================================


@dataclass(frozen=True)
class EndpointSnapshot:
    """An immutable view of the registry content for one scope."""
    endpoints: Tuple[str, ...] = field(default_factory=tuple)
    epoch: int = 0

    def __len__(self) -> int:
        return len(self.endpoints)

    def to_dict(self) -> Dict[str, Any]:
        return {"endpoints": list(self.endpoints), "epoch": self.epoch}
