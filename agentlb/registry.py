"""
Indirect Agent LB - Endpoint Registry

Holds the ordered management server addresses handed to indirect agents.
The list is always read live from configuration; the registry additionally
keeps the last observed snapshot per scope so that changes can be detected
and announced on the event bus.
"""

from __future__ import annotations

import re
import threading
from typing import Any, Dict, List, Optional, Tuple

import structlog

from agentlb.config import MANAGEMENT_SERVER_ADDRESSES, ConfigProvider
from agentlb.events import TOPIC_CONFIG_CHANGED, TOPIC_ENDPOINTS_CHANGED, EventBus
from agentlb.exceptions import ConfigurationError
from agentlb.types import EndpointSnapshot

logger = structlog.get_logger(__name__)

# Hostnames, IPv4 and IPv6 literals, optionally with a port.  Anything else
# would end up verbatim in agent properties.
_SAFE_ADDRESS_REGEX = re.compile(r"^[a-zA-Z0-9_.:\-\[\]]+$")

_Scope = Tuple[Optional[int], Optional[int]]


def _validate_port(port: str) -> bool:
    return port.isdigit() and 0 < int(port) <= 65535


def is_valid_endpoint(address: str) -> bool:
    """Check that *address* is ``host``, ``host:port`` or an IPv6 literal."""
    if not address or not _SAFE_ADDRESS_REGEX.match(address):
        return False

    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep or not host:
            return False
        if not rest:
            return True
        return rest.startswith(":") and _validate_port(rest[1:])

    if "[" in address or "]" in address:
        return False

    if address.count(":") == 1:
        host, _, port = address.partition(":")
        return bool(host) and _validate_port(port)

    # Bare hostname / IPv4, or a bare IPv6 literal
    return True


def parse_endpoints(value: Optional[str]) -> List[str]:
    """Parse a comma-separated address list.

    Blank entries are dropped and duplicates keep their first position.

    Raises:
        ConfigurationError: If the value is missing, blank or malformed.
    """
    if value is None or not value.strip():
        raise ConfigurationError(
            f"No management server addresses are defined in '{MANAGEMENT_SERVER_ADDRESSES}' setting",
            key=MANAGEMENT_SERVER_ADDRESSES,
        )

    endpoints: List[str] = []
    seen = set()
    for raw in value.split(","):
        entry = raw.strip()
        if not entry:
            continue
        if not is_valid_endpoint(entry):
            raise ConfigurationError(
                f"Invalid management server address {entry!r} in '{MANAGEMENT_SERVER_ADDRESSES}' setting",
                key=MANAGEMENT_SERVER_ADDRESSES,
            )
        if entry in seen:
            continue
        seen.add(entry)
        endpoints.append(entry)

    if not endpoints:
        raise ConfigurationError(
            f"No management server addresses are defined in '{MANAGEMENT_SERVER_ADDRESSES}' setting",
            key=MANAGEMENT_SERVER_ADDRESSES,
        )
    return endpoints


class EndpointRegistry:
    """
    Ordered management server endpoints, per configuration scope.

    Reads never mutate state.  :meth:`refresh` compares the live value with
    the last snapshot for a scope and, when it differs, advances the epoch
    and publishes :data:`TOPIC_ENDPOINTS_CHANGED`.

    Args:
        config: Configuration provider holding the address list.
        event_bus: Optional bus for change notifications.  When given, the
            registry also refreshes itself on address configuration changes.
    """

    def __init__(
        self,
        config: ConfigProvider,
        *,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._config = config
        self._event_bus = event_bus
        self._snapshots: Dict[_Scope, EndpointSnapshot] = {}
        self._epoch: int = 0
        self._lock = threading.Lock()

        if event_bus is not None:
            event_bus.subscribe(TOPIC_CONFIG_CHANGED, self._on_config_changed)

    @property
    def epoch(self) -> int:
        """Number of endpoint list changes observed so far."""
        return self._epoch

    def current_endpoints(
        self,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> List[str]:
        """Return the live, ordered, non-empty endpoint list for a scope.

        Raises:
            ConfigurationError: If no usable address is configured.
        """
        value = self._config.get_value(
            MANAGEMENT_SERVER_ADDRESSES,
            data_center_id=data_center_id,
            cluster_id=cluster_id,
        )
        return parse_endpoints(value)

    def snapshot(
        self,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> EndpointSnapshot:
        """Return the last observed snapshot, observing it first if needed."""
        existing = self._snapshots.get((data_center_id, cluster_id))
        if existing is not None:
            return existing
        self.refresh(data_center_id, cluster_id)
        return self._snapshots[(data_center_id, cluster_id)]

    def refresh(
        self,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> bool:
        """Re-read the endpoint list for a scope.

        The first observation of a scope is not treated as a change.

        Returns:
            ``True`` if the list differs from the previous snapshot.

        Raises:
            ConfigurationError: If no usable address is configured.
        """
        scope = (data_center_id, cluster_id)

        with self._lock:
            current = tuple(self.current_endpoints(data_center_id, cluster_id))
            previous = self._snapshots.get(scope)
            if previous is not None and previous.endpoints == current:
                return False
            if previous is None:
                self._snapshots[scope] = EndpointSnapshot(current, self._epoch)
                return False
            self._epoch += 1
            epoch = self._epoch
            self._snapshots[scope] = EndpointSnapshot(current, epoch)

        logger.info(
            "endpoints_changed",
            data_center_id=data_center_id,
            cluster_id=cluster_id,
            previous=list(previous.endpoints),
            current=list(current),
            epoch=epoch,
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                TOPIC_ENDPOINTS_CHANGED,
                {
                    "data_center_id": data_center_id,
                    "cluster_id": cluster_id,
                    "previous": list(previous.endpoints),
                    "current": list(current),
                    "epoch": epoch,
                },
            )
        return True

    def refresh_all(self) -> int:
        """Refresh every scope observed so far.  Returns the number changed."""
        changed = 0
        for data_center_id, cluster_id in list(self._snapshots):
            if self.refresh(data_center_id, cluster_id):
                changed += 1
        return changed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "epoch": self._epoch,
            "scopes": [
                {
                    "data_center_id": dc,
                    "cluster_id": cluster,
                    **snapshot.to_dict(),
                }
                for (dc, cluster), snapshot in list(self._snapshots.items())
            ],
        }

    def _seed(self, scope: _Scope, previous_value: Optional[str]) -> None:
        """Record what a not yet observed scope resolved to before a change."""
        endpoints: Tuple[str, ...] = ()
        if previous_value:
            try:
                endpoints = tuple(parse_endpoints(previous_value))
            except ConfigurationError:
                endpoints = ()
        with self._lock:
            if scope not in self._snapshots:
                self._snapshots[scope] = EndpointSnapshot(endpoints, self._epoch)

    def _on_config_changed(self, topic: str, data: Dict[str, Any]) -> None:
        if data.get("key") != MANAGEMENT_SERVER_ADDRESSES:
            return
        changed_scope = (data.get("data_center_id"), data.get("cluster_id"))
        previous = data.get("previous")
        self._seed(changed_scope, previous if previous is not None else data.get("inherited"))
        for data_center_id, cluster_id in list(self._snapshots):
            try:
                self.refresh(data_center_id, cluster_id)
            except ConfigurationError as exc:
                logger.warning(
                    "endpoints_refresh_rejected",
                    data_center_id=data_center_id,
                    cluster_id=cluster_id,
                    error=str(exc),
                )
