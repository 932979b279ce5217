"""
Indirect Agent Load Balancing

Decides, for every host whose agent connects indirectly, the ordered list of
management servers the agent should connect to and fail over through.

- **Endpoint Registry**: configured management server addresses, with
  change detection and notification
- **Host Inventory**: boundary to the host inventory, ranked per zone
- **Assignment Algorithms**: static, round-robin and shuffle orderings
- **Coordinator**: per-call algorithm resolution, list comparison and
  propagation to connected agents

Architecture:
    The service is stateless.  Round-robin stickiness comes from each host's
    rank among the ascending host ids of its zone, recomputed on every call,
    so no session table is persisted.  Configuration is injected through a
    provider and read live, so changes apply on the next call.
"""

from agentlb.balancing import (
    AgentNotifier,
    AssignmentAlgorithm,
    IndirectAgentLBService,
    RoundRobinAlgorithm,
    ShuffleAlgorithm,
    StaticAlgorithm,
    assign,
    available_algorithms,
    get_algorithm,
)
from agentlb.config import (
    LB_ALGORITHM,
    LB_CHECK_INTERVAL,
    MANAGEMENT_SERVER_ADDRESSES,
    AgentLBSettings,
    ConfigProvider,
    ScopedConfigProvider,
    get_settings,
    reset_settings,
    set_settings,
)
from agentlb.events import (
    TOPIC_CONFIG_CHANGED,
    TOPIC_ENDPOINTS_CHANGED,
    EventBus,
)
from agentlb.exceptions import (
    AgentLBError,
    ConfigurationError,
    InvalidAlgorithmError,
    NoEndpointsError,
)
from agentlb.inventory import HostInventory, InMemoryHostInventory
from agentlb.registry import EndpointRegistry, is_valid_endpoint, parse_endpoints
from agentlb.types import (
    EndpointSnapshot,
    HostIdentity,
    HostType,
    HypervisorType,
    LBAlgorithm,
    ResourceState,
)

__version__ = "1.0.0"

__all__ = [
    # Coordinator and algorithms
    "IndirectAgentLBService",
    "AgentNotifier",
    "AssignmentAlgorithm",
    "StaticAlgorithm",
    "RoundRobinAlgorithm",
    "ShuffleAlgorithm",
    "assign",
    "available_algorithms",
    "get_algorithm",
    # Configuration
    "AgentLBSettings",
    "ConfigProvider",
    "ScopedConfigProvider",
    "MANAGEMENT_SERVER_ADDRESSES",
    "LB_ALGORITHM",
    "LB_CHECK_INTERVAL",
    "get_settings",
    "set_settings",
    "reset_settings",
    # Registry and inventory
    "EndpointRegistry",
    "parse_endpoints",
    "is_valid_endpoint",
    "HostInventory",
    "InMemoryHostInventory",
    # Events
    "EventBus",
    "TOPIC_ENDPOINTS_CHANGED",
    "TOPIC_CONFIG_CHANGED",
    # Errors
    "AgentLBError",
    "ConfigurationError",
    "InvalidAlgorithmError",
    "NoEndpointsError",
    # Types
    "EndpointSnapshot",
    "HostIdentity",
    "HostType",
    "HypervisorType",
    "LBAlgorithm",
    "ResourceState",
]
