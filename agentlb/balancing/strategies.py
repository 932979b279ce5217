"""
Indirect Agent LB - Assignment Algorithms

Orders the management server list handed to an indirect agent.  The first
entry is the agent's preferred server, the rest are its fail-over order.

- Static: configured order, identical for every host
- Round-robin: configured order rotated by the host's rank in its zone
- Shuffle: uniformly random permutation on every call
"""

from __future__ import annotations

import abc
import random
from collections import Counter
from typing import Dict, List, Optional, Sequence, Type

import structlog

from agentlb.exceptions import InvalidAlgorithmError, NoEndpointsError
from agentlb.types import LBAlgorithm

logger = structlog.get_logger(__name__)


# =============================================================================
# Abstract Base Algorithm
# =============================================================================


class AssignmentAlgorithm(abc.ABC):
    """Abstract base class for management server ordering algorithms.

    Concrete algorithms implement :meth:`_order`, which receives a non-empty
    endpoint list and the host's zero-based rank.  Implementations must
    never mutate the list they are given.
    """

    algorithm: LBAlgorithm

    def order(self, endpoints: Sequence[str], host_order_index: int = 0) -> List[str]:
        """Return a new, ordered copy of *endpoints* for one host.

        Raises:
            NoEndpointsError: If *endpoints* is empty.
            ValueError: If *host_order_index* is negative.
        """
        if not endpoints:
            raise NoEndpointsError()
        if host_order_index < 0:
            raise ValueError(f"host_order_index must be >= 0, got {host_order_index}")
        return self._order(list(endpoints), host_order_index)

    @abc.abstractmethod
    def _order(self, endpoints: List[str], host_order_index: int) -> List[str]:
        """Order a validated copy of the endpoint list."""

    def compare(self, expected: Sequence[str], received: Sequence[str]) -> bool:
        """Whether an agent holding *received* is up to date with *expected*."""
        return list(expected) == list(received)

    @property
    def name(self) -> str:
        return self.algorithm.value

    def __repr__(self) -> str:  # pragma: no cover
        return f"<{self.__class__.__name__}>"


# =============================================================================
# Static Algorithm
# =============================================================================


class StaticAlgorithm(AssignmentAlgorithm):
    """Hand every host the configured order unchanged.

    Lets operators pin one primary / secondary order cluster-wide.
    """

    algorithm = LBAlgorithm.STATIC

    def _order(self, endpoints: List[str], host_order_index: int) -> List[str]:
        return endpoints


# =============================================================================
# Round-Robin Algorithm
# =============================================================================


class RoundRobinAlgorithm(AssignmentAlgorithm):
    """Rotate the configured order left by ``rank mod n``.

    Any *n* consecutive ranks see each endpoint exactly once as primary, and
    a host keeps its list for as long as its rank and the endpoint list are
    unchanged.  No per-host state is stored.
    """

    algorithm = LBAlgorithm.ROUND_ROBIN

    def _order(self, endpoints: List[str], host_order_index: int) -> List[str]:
        shift = host_order_index % len(endpoints)
        rotated = endpoints[shift:] + endpoints[:shift]
        logger.debug(
            "round_robin_rotated",
            rank=host_order_index,
            shift=shift,
            primary=rotated[0],
            total=len(rotated),
        )
        return rotated


# =============================================================================
# Shuffle Algorithm
# =============================================================================


class ShuffleAlgorithm(AssignmentAlgorithm):
    """Uniformly random permutation on every call.

    Uses :class:`random.SystemRandom` by default, which draws from the OS
    and is safe to share between threads.  Agents holding any permutation of
    the configured endpoints are considered up to date.
    """

    algorithm = LBAlgorithm.SHUFFLE

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.SystemRandom()

    def _order(self, endpoints: List[str], host_order_index: int) -> List[str]:
        self._rng.shuffle(endpoints)
        return endpoints

    def compare(self, expected: Sequence[str], received: Sequence[str]) -> bool:
        return Counter(expected) == Counter(received)


# =============================================================================
# Algorithm Registry
# =============================================================================


_ALGORITHM_REGISTRY: Dict[LBAlgorithm, Type[AssignmentAlgorithm]] = {
    LBAlgorithm.STATIC: StaticAlgorithm,
    LBAlgorithm.ROUND_ROBIN: RoundRobinAlgorithm,
    LBAlgorithm.SHUFFLE: ShuffleAlgorithm,
}


def available_algorithms() -> List[str]:
    """Names accepted by :func:`get_algorithm`."""
    return [a.value for a in _ALGORITHM_REGISTRY]


def get_algorithm(
    algorithm: str | LBAlgorithm,
    *,
    rng: Optional[random.Random] = None,
) -> AssignmentAlgorithm:
    """Instantiate an algorithm by name.

    Args:
        algorithm: Selector value such as ``"roundrobin"``.
        rng: Random source for the shuffle algorithm.

    Raises:
        InvalidAlgorithmError: If *algorithm* is not recognised.
    """
    try:
        selector = LBAlgorithm.parse(algorithm)
    except InvalidAlgorithmError:
        logger.warning("unknown_lb_algorithm", algorithm=algorithm)
        raise InvalidAlgorithmError(algorithm, available_algorithms()) from None

    cls = _ALGORITHM_REGISTRY[selector]
    if cls is ShuffleAlgorithm:
        return ShuffleAlgorithm(rng)
    return cls()


def assign(
    host_id: Optional[int],
    endpoints: Sequence[str],
    algorithm: str | LBAlgorithm,
    host_order_index: int = 0,
    *,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """Order *endpoints* for one host.

    Args:
        host_id: Host the list is for; ``None`` for an anonymous host.
            Only used for logging, the ordering depends on the rank alone.
        endpoints: Configured endpoints in configured order.
        algorithm: Selector value.
        host_order_index: Zero-based rank of the host within its zone.
        rng: Random source for the shuffle algorithm.

    Raises:
        InvalidAlgorithmError: If *algorithm* is not recognised.
        NoEndpointsError: If *endpoints* is empty.
    """
    impl = get_algorithm(algorithm, rng=rng)
    ordered = impl.order(endpoints, host_order_index)
    logger.debug(
        "endpoints_assigned",
        host_id=host_id,
        algorithm=impl.name,
        rank=host_order_index,
        primary=ordered[0],
    )
    return ordered
