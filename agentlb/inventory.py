"""
Indirect Agent LB - Host Inventory

Boundary to the host inventory.  The service asks for host ids matching a
zone / cluster / resource-state / type / hypervisor filter, and for the
cluster of a host so that cluster-scoped settings apply when lists are
pushed.  The order of the answer is not relied upon.

:class:`InMemoryHostInventory` is a reference implementation of the filter
semantics, used for embedding and tests.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import structlog

from agentlb.types import HostIdentity, HostType, HypervisorType, ResourceState

logger = structlog.get_logger(__name__)


class HostInventory(Protocol):
    """Protocol for the host inventory query collaborator."""

    def find_host_ids(
        self,
        zone_id: Optional[int],
        cluster_id: Optional[int],
        management_server_id: Optional[int],
        resource_states: Sequence[ResourceState],
        types: Sequence[HostType],
        hypervisor_types: Sequence[HypervisorType],
    ) -> List[int]:
        ...

    def list_data_center_ids(self) -> List[int]:
        ...

    def get_cluster_id(self, host_id: int) -> Optional[int]:
        ...


class InMemoryHostInventory:
    """
    Thread-safe in-memory host inventory.

    Filter semantics:
        * ``None`` zone, cluster or management server id matches any host.
        * ``resource_states`` and ``types`` are membership filters.
        * A non-empty ``hypervisor_types`` matches hosts with one of those
          hypervisors *or* with no hypervisor at all (system VM hosts).
        * Removed hosts never match.

    Results come back in insertion order, not sorted.
    """

    def __init__(self, hosts: Optional[Iterable[HostIdentity]] = None) -> None:
        self._hosts: Dict[int, HostIdentity] = {}
        self._lock = threading.Lock()
        for host in hosts or ():
            self._hosts[host.id] = host

    def add_host(self, host: HostIdentity) -> None:
        with self._lock:
            self._hosts[host.id] = host
        logger.debug("inventory_host_added", host_id=host.id, data_center_id=host.data_center_id)

    def remove_host(self, host_id: int) -> Optional[HostIdentity]:
        with self._lock:
            host = self._hosts.pop(host_id, None)
        if host is not None:
            logger.debug("inventory_host_removed", host_id=host_id)
        return host

    def get_host(self, host_id: int) -> Optional[HostIdentity]:
        return self._hosts.get(host_id)

    def __len__(self) -> int:
        return len(self._hosts)

    def find_host_ids(
        self,
        zone_id: Optional[int],
        cluster_id: Optional[int],
        management_server_id: Optional[int],
        resource_states: Sequence[ResourceState],
        types: Sequence[HostType],
        hypervisor_types: Sequence[HypervisorType],
    ) -> List[int]:
        with self._lock:
            hosts = list(self._hosts.values())

        states = set(resource_states)
        host_types = set(types)
        hypervisors = set(hypervisor_types)

        matched: List[int] = []
        for host in hosts:
            if host.removed:
                continue
            if zone_id is not None and host.data_center_id != zone_id:
                continue
            if cluster_id is not None and host.cluster_id != cluster_id:
                continue
            if management_server_id is not None and host.management_server_id != management_server_id:
                continue
            if host.resource_state not in states:
                continue
            if host.type not in host_types:
                continue
            if hypervisors and host.hypervisor_type is not None and host.hypervisor_type not in hypervisors:
                continue
            matched.append(host.id)
        return matched

    def list_data_center_ids(self) -> List[int]:
        with self._lock:
            return sorted({h.data_center_id for h in self._hosts.values() if not h.removed})

    def get_cluster_id(self, host_id: int) -> Optional[int]:
        host = self._hosts.get(host_id)
        return host.cluster_id if host is not None else None
