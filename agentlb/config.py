"""
Indirect Agent LB Configuration

Configuration for the indirect-agent load-balancing service:
- Environment-backed global defaults via Pydantic settings
- Per-zone and per-cluster overrides (cluster > zone > global)
- Runtime updates announced on the event bus
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from agentlb.events import TOPIC_CONFIG_CHANGED, EventBus

logger = structlog.get_logger(__name__)


# Configuration keys
MANAGEMENT_SERVER_ADDRESSES = "host"
LB_ALGORITHM = "indirect.agent.lb.algorithm"
LB_CHECK_INTERVAL = "indirect.agent.lb.check.interval"

_KEY_TO_FIELD: Dict[str, str] = {
    MANAGEMENT_SERVER_ADDRESSES: "management_server_addresses",
    LB_ALGORITHM: "lb_algorithm",
    LB_CHECK_INTERVAL: "lb_check_interval",
}


class ConfigProvider(Protocol):
    """Protocol for reading live, possibly scoped, configuration values."""

    def get_value(
        self,
        key: str,
        *,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> Optional[str]:
        ...


class AgentLBSettings(BaseSettings):
    """
    Global defaults for the indirect-agent LB service.

    Environment variables are prefixed with AGENTLB_
    (e.g., AGENTLB_LB_ALGORITHM=roundrobin).
    """

    management_server_addresses: str = Field(
        default="",
        description="Comma-separated management server addresses handed to agents",
    )
    lb_algorithm: str = Field(
        default="static",
        description="One of static, roundrobin, shuffle",
    )
    lb_check_interval: int = Field(
        default=0,
        description="Seconds between agent checks for their preferred server, 0 disables",
    )

    model_config = {
        "env_prefix": "AGENTLB_",
        "case_sensitive": False,
    }

    @field_validator("management_server_addresses", "lb_algorithm", mode="before")
    @classmethod
    def strip_value(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    def get(self, key: str) -> Optional[str]:
        """Return the value for a configuration *key* as a string."""
        field_name = _KEY_TO_FIELD.get(key)
        if field_name is None:
            return None
        return str(getattr(self, field_name))


_ScopeKey = Tuple[str, Optional[int], Optional[int]]


class ScopedConfigProvider:
    """
    Configuration provider layering scoped overrides over global settings.

    Lookups resolve the most specific scope first: cluster, then zone,
    then the global value.  Writes swap an immutable override map under a
    lock so concurrent readers never observe a partial update.
    """

    def __init__(
        self,
        settings: Optional[AgentLBSettings] = None,
        *,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._event_bus = event_bus
        self._overrides: Dict[_ScopeKey, str] = {}
        self._lock = threading.Lock()

    @property
    def settings(self) -> AgentLBSettings:
        return self._settings

    def get_value(
        self,
        key: str,
        *,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> Optional[str]:
        overrides = self._overrides
        if cluster_id is not None and (key, None, cluster_id) in overrides:
            return overrides[(key, None, cluster_id)]
        if data_center_id is not None and (key, data_center_id, None) in overrides:
            return overrides[(key, data_center_id, None)]
        if (key, None, None) in overrides:
            return overrides[(key, None, None)]
        return self._settings.get(key)

    def set_value(
        self,
        key: str,
        value: Any,
        *,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> None:
        """Set *key* at the given scope and announce the change.

        A cluster scope takes precedence over a zone scope when both are
        passed.
        """
        scope = self._scope(key, data_center_id, cluster_id)
        text = "" if value is None else str(value)
        with self._lock:
            previous = self._overrides.get(scope)
            updated = dict(self._overrides)
            updated[scope] = text
            self._overrides = updated

        logger.info(
            "config_value_set",
            key=key,
            data_center_id=scope[1],
            cluster_id=scope[2],
        )
        self._announce(key, scope, previous, text)

    def unset_value(
        self,
        key: str,
        *,
        data_center_id: Optional[int] = None,
        cluster_id: Optional[int] = None,
    ) -> None:
        """Remove the override for *key* at the given scope, if any."""
        scope = self._scope(key, data_center_id, cluster_id)
        with self._lock:
            if scope not in self._overrides:
                return
            updated = dict(self._overrides)
            previous = updated.pop(scope)
            self._overrides = updated

        logger.info(
            "config_value_unset",
            key=key,
            data_center_id=scope[1],
            cluster_id=scope[2],
        )
        self._announce(key, scope, previous, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global": self._settings.model_dump(),
            "overrides": [
                {
                    "key": key,
                    "data_center_id": dc,
                    "cluster_id": cluster,
                    "value": value,
                }
                for (key, dc, cluster), value in sorted(
                    self._overrides.items(), key=lambda item: repr(item[0]),
                )
            ],
        }

    @staticmethod
    def _scope(
        key: str,
        data_center_id: Optional[int],
        cluster_id: Optional[int],
    ) -> _ScopeKey:
        if cluster_id is not None:
            return (key, None, cluster_id)
        return (key, data_center_id, None)

    def _inherited(self, scope: _ScopeKey) -> Optional[str]:
        """Value *scope* resolves to when it holds no override of its own."""
        key, data_center_id, cluster_id = scope
        if data_center_id is not None or cluster_id is not None:
            global_scope = (key, None, None)
            if global_scope in self._overrides:
                return self._overrides[global_scope]
        return self._settings.get(key)

    def _announce(
        self,
        key: str,
        scope: _ScopeKey,
        previous: Optional[str],
        current: Optional[str],
    ) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            TOPIC_CONFIG_CHANGED,
            {
                "key": key,
                "data_center_id": scope[1],
                "cluster_id": scope[2],
                "previous": previous,
                "current": current,
                "inherited": self._inherited(scope),
            },
        )


# Global settings instance (lazy loaded)
_settings: Optional[AgentLBSettings] = None


def get_settings() -> AgentLBSettings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = AgentLBSettings()
    return _settings


def set_settings(settings: AgentLBSettings) -> None:
    """Set the global settings instance."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset the global settings to be re-read from the environment."""
    global _settings
    _settings = None
