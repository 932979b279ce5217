"""
Indirect Agent LB - Coordinator

Hands every indirect agent the ordered list of management servers it should
connect to.  Ties together live configuration, the host inventory and the
assignment algorithms:
- Per-call algorithm resolution (changes apply on the next call)
- Stable host ranking per zone for round-robin rotation
- Detection of agents holding an outdated list
- Fire-and-forget propagation of new lists to connected agents
"""

from __future__ import annotations

import random
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

import structlog

from agentlb.balancing.strategies import AssignmentAlgorithm, get_algorithm
from agentlb.config import LB_ALGORITHM, LB_CHECK_INTERVAL, ConfigProvider
from agentlb.events import TOPIC_CONFIG_CHANGED, TOPIC_ENDPOINTS_CHANGED, EventBus
from agentlb.exceptions import ConfigurationError
from agentlb.inventory import HostInventory
from agentlb.registry import EndpointRegistry
from agentlb.types import (
    AGENT_HYPERVISOR_TYPES,
    AGENT_RESOURCE_STATES,
    SYSTEM_VM_HOST_TYPES,
    HostType,
    LBAlgorithm,
)

logger = structlog.get_logger(__name__)


class AgentNotifier(Protocol):
    """Protocol for pushing management server lists to connected agents."""

    def send_management_server_list(
        self,
        host_id: int,
        endpoints: List[str],
        algorithm: str,
        check_interval: int,
    ) -> None:
        ...


class IndirectAgentLBService:
    """Management server list assignment for indirect agents.

    The service holds no per-host state: a host's list is recomputed on
    every call from the configured endpoints, the configured algorithm and
    the host's rank among the agent hosts of its zone.  All public reads are
    safe to call concurrently.

    Args:
        config: Live configuration provider.
        inventory: Host inventory query collaborator.
        registry: Endpoint registry; built over *config* when omitted.
        event_bus: Bus to listen on for endpoint / algorithm changes.
        agent_notifier: Receives lists pushed by
            :meth:`propagate_ms_list_to_agents`.  Changes are only pushed
            automatically when both a bus and a notifier are given.
        rng: Random source for the shuffle algorithm.
    """

    def __init__(
        self,
        config: ConfigProvider,
        inventory: HostInventory,
        *,
        registry: Optional[EndpointRegistry] = None,
        event_bus: Optional[EventBus] = None,
        agent_notifier: Optional[AgentNotifier] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._inventory = inventory
        self._registry = registry or EndpointRegistry(config, event_bus=event_bus)
        self._event_bus = event_bus
        self._agent_notifier = agent_notifier
        self._rng = rng

        if event_bus is not None and agent_notifier is not None:
            event_bus.subscribe(TOPIC_ENDPOINTS_CHANGED, self._on_endpoints_changed)
            event_bus.subscribe(TOPIC_CONFIG_CHANGED, self._on_config_changed)

        logger.info(
            "indirect_agent_lb_init",
            auto_propagate=event_bus is not None and agent_notifier is not None,
        )

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    # -----------------------------------------------------------------
    # Algorithm resolution
    # -----------------------------------------------------------------

    def get_lb_algorithm(
        self,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> LBAlgorithm:
        """Resolve the configured algorithm for a scope.

        Raises:
            InvalidAlgorithmError: If the configured value is not recognised.
        """
        return self._algorithm_for(data_center_id, cluster_id).algorithm

    def get_lb_algorithm_name(
        self,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> str:
        return self.get_lb_algorithm(data_center_id, cluster_id).value

    def _algorithm_for(
        self,
        data_center_id: Optional[int],
        cluster_id: Optional[int],
    ) -> AssignmentAlgorithm:
        value = self._config.get_value(
            LB_ALGORITHM,
            data_center_id=data_center_id,
            cluster_id=cluster_id,
        )
        return get_algorithm(value or "", rng=self._rng)

    def get_lb_preferred_host_check_interval(self, cluster_id: Optional[int] = None) -> int:
        """Seconds between agent checks for their preferred server (0 = off).

        Raises:
            ConfigurationError: If the configured value is not a
                non-negative integer.
        """
        value = self._config.get_value(LB_CHECK_INTERVAL, cluster_id=cluster_id)
        if value is None or not str(value).strip():
            return 0
        try:
            interval = int(str(value).strip())
        except ValueError:
            raise ConfigurationError(
                f"Invalid '{LB_CHECK_INTERVAL}' value {value!r}",
                key=LB_CHECK_INTERVAL,
            ) from None
        if interval < 0:
            raise ConfigurationError(
                f"'{LB_CHECK_INTERVAL}' must not be negative, got {interval}",
                key=LB_CHECK_INTERVAL,
            )
        return interval

    # -----------------------------------------------------------------
    # Host ordering
    # -----------------------------------------------------------------

    def get_ordered_host_id_list(
        self,
        data_center_id: Optional[int],
        include_system_vms: bool = False,
    ) -> List[int]:
        """Ids of the agent hosts of a zone, ascending.

        Args:
            data_center_id: Zone to list.
            include_system_vms: Also rank console proxy and secondary
                storage VM agents, not just hypervisor hosts.
        """
        types: List[HostType] = [HostType.ROUTING]
        if include_system_vms:
            types.extend(SYSTEM_VM_HOST_TYPES)

        host_ids = self._inventory.find_host_ids(
            data_center_id,
            None,
            None,
            list(AGENT_RESOURCE_STATES),
            types,
            list(AGENT_HYPERVISOR_TYPES),
        )
        return sorted(set(host_ids or ()))

    @staticmethod
    def _rank(host_id: Optional[int], ordered_host_ids: Sequence[int]) -> int:
        if host_id is None:
            return 0
        try:
            return list(ordered_host_ids).index(host_id)
        except ValueError:
            return 0

    # -----------------------------------------------------------------
    # Core assignment API
    # -----------------------------------------------------------------

    def get_management_server_list(
        self,
        host_id: Optional[int],
        data_center_id: Optional[int],
        host_order_index: Optional[int] = None,
        *,
        cluster_id: Optional[int] = None,
        ordered_host_ids: Optional[Sequence[int]] = None,
    ) -> List[str]:
        """Ordered management server list for one host's agent.

        Args:
            host_id: Host asking; ``None`` for a host not yet registered.
            data_center_id: Zone of the host.
            host_order_index: Use this rank instead of looking the host up.
            cluster_id: Cluster of the host, for cluster-scoped settings.
            ordered_host_ids: Agent host ids of the zone, typically the result
                of :meth:`get_ordered_host_id_list`; sorted before ranking.

        Raises:
            ConfigurationError: If no management server address is configured.
            InvalidAlgorithmError: If the configured algorithm is unknown.
        """
        endpoints = self._registry.current_endpoints(data_center_id, cluster_id)
        algorithm = self._algorithm_for(data_center_id, cluster_id)

        rank = host_order_index
        if rank is None:
            if host_id is None:
                rank = 0
            else:
                if ordered_host_ids is None:
                    ordered_host_ids = self.get_ordered_host_id_list(data_center_id, False)
                else:
                    ordered_host_ids = sorted(set(ordered_host_ids))
                rank = self._rank(host_id, ordered_host_ids)

        ordered = algorithm.order(endpoints, rank)
        logger.debug(
            "management_server_list",
            host_id=host_id,
            data_center_id=data_center_id,
            algorithm=algorithm.name,
            rank=rank,
            primary=ordered[0],
        )
        return ordered

    def compare_management_server_list(
        self,
        host_id: Optional[int],
        data_center_id: Optional[int],
        received_endpoints: Optional[Sequence[str]],
        received_algorithm: Optional[str],
        *,
        cluster_id: Optional[int] = None,
    ) -> bool:
        """Whether an agent's reported list and algorithm are current.

        Returns ``False`` when the agent reported nothing or uses a
        different algorithm; otherwise compares against the expected list
        (order-insensitive for shuffle).
        """
        if not received_endpoints:
            return False

        algorithm = self._algorithm_for(data_center_id, cluster_id)
        if (received_algorithm or "").strip().lower() != algorithm.name:
            return False

        expected = self.get_management_server_list(
            host_id, data_center_id, cluster_id=cluster_id,
        )
        return algorithm.compare(expected, received_endpoints)

    # -----------------------------------------------------------------
    # Propagation
    # -----------------------------------------------------------------

    def propagate_ms_list_to_agents(
        self,
        data_center_ids: Optional[Iterable[int]] = None,
        *,
        cluster_id: Optional[int] = None,
    ) -> int:
        """Push freshly computed lists to the agents of the given zones.

        Zones default to every zone known to the inventory.  Each host's
        list, algorithm and check interval are resolved for its own cluster.
        When *cluster_id* is given only the hosts of that cluster are
        notified.  A failure to notify one host is logged and does not stop
        the others.

        Returns:
            Number of hosts notified successfully.

        Raises:
            ConfigurationError: If no management server address is configured.
            InvalidAlgorithmError: If the configured algorithm is unknown.
        """
        if self._agent_notifier is None:
            logger.debug("propagation_skipped_no_notifier")
            return 0

        zones = list(data_center_ids) if data_center_ids is not None else self._inventory.list_data_center_ids()
        check_intervals: Dict[Optional[int], int] = {}
        notified = 0
        for dc_id in zones:
            host_ids = self.get_ordered_host_id_list(dc_id, False)
            for rank, host_id in enumerate(host_ids):
                host_cluster_id = self._inventory.get_cluster_id(host_id)
                if cluster_id is not None and host_cluster_id != cluster_id:
                    continue
                if host_cluster_id not in check_intervals:
                    check_intervals[host_cluster_id] = self.get_lb_preferred_host_check_interval(host_cluster_id)
                endpoints = self.get_management_server_list(
                    host_id, dc_id, rank, cluster_id=host_cluster_id,
                )
                algorithm_name = self.get_lb_algorithm_name(dc_id, host_cluster_id)
                try:
                    self._agent_notifier.send_management_server_list(
                        host_id,
                        endpoints,
                        algorithm_name,
                        check_intervals[host_cluster_id],
                    )
                    notified += 1
                except Exception:
                    logger.warning(
                        "ms_list_propagation_failed",
                        host_id=host_id,
                        data_center_id=dc_id,
                        cluster_id=host_cluster_id,
                        exc_info=True,
                    )

        logger.info("ms_list_propagated", zones=len(zones), cluster_id=cluster_id, hosts=notified)
        return notified

    def _propagate_scope(self, data: Dict[str, Any]) -> None:
        dc_id = data.get("data_center_id")
        self.propagate_ms_list_to_agents(
            [dc_id] if dc_id is not None else None,
            cluster_id=data.get("cluster_id"),
        )

    def _on_endpoints_changed(self, topic: str, data: Dict[str, Any]) -> None:
        self._propagate_scope(data)

    def _on_config_changed(self, topic: str, data: Dict[str, Any]) -> None:
        if data.get("key") not in (LB_ALGORITHM, LB_CHECK_INTERVAL):
            return
        self._propagate_scope(data)
