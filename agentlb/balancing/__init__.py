"""
Indirect Agent LB - Balancing

Management server list ordering for indirect agents:
- Pluggable ordering algorithms (static, round-robin, shuffle)
- Stateless per-zone host ranking for deterministic rotation
- Outdated-list detection and propagation to connected agents
"""

from agentlb.balancing.coordinator import AgentNotifier, IndirectAgentLBService
from agentlb.balancing.strategies import (
    AssignmentAlgorithm,
    RoundRobinAlgorithm,
    ShuffleAlgorithm,
    StaticAlgorithm,
    assign,
    available_algorithms,
    get_algorithm,
)

__all__ = [
    "AgentNotifier",
    "IndirectAgentLBService",
    "AssignmentAlgorithm",
    "StaticAlgorithm",
    "RoundRobinAlgorithm",
    "ShuffleAlgorithm",
    "assign",
    "available_algorithms",
    "get_algorithm",
]
