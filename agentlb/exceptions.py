"""
Indirect Agent LB Errors

All errors propagate synchronously to the immediate caller; the service
never retries on its own.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional


class AgentLBError(Exception):
    """Base class for indirect-agent load-balancing errors."""
    pass


class ConfigurationError(AgentLBError):
    """Raised when the management server configuration is unusable."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class NoEndpointsError(ConfigurationError):
    """Raised when an algorithm is handed an empty endpoint list."""

    def __init__(self, message: str = "No management server endpoints to order"):
        super().__init__(message)


class InvalidAlgorithmError(AgentLBError):
    """Raised when the configured algorithm is not recognised."""

    def __init__(self, value: Any, valid: Optional[Iterable[str]] = None):
        self.value = value
        self.valid = list(valid) if valid is not None else ["static", "roundrobin", "shuffle"]
        super().__init__(
            f"Invalid indirect agent LB algorithm {value!r}, "
            f"expected one of: {', '.join(self.valid)}"
        )
