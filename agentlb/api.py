"""
Indirect Agent LB Diagnostics API

Read-only REST endpoints for inspecting what the load balancer hands out:
configured endpoints, the active algorithm, zone host ordering and the list
a given host would receive.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from fastapi import APIRouter, HTTPException, Query

from agentlb.exceptions import ConfigurationError, InvalidAlgorithmError

if TYPE_CHECKING:
    from agentlb.balancing.coordinator import IndirectAgentLBService

logger = structlog.get_logger(__name__)


def create_lb_router(service: "IndirectAgentLBService") -> APIRouter:
    """
    Create FastAPI router for load balancer diagnostics.

    Args:
        service: The indirect agent LB service instance.

    Returns:
        FastAPI APIRouter mounted under ``/agent-lb``.
    """
    router = APIRouter(prefix="/agent-lb", tags=["agent-lb"])

    def _fail(exc: Exception) -> HTTPException:
        if isinstance(exc, InvalidAlgorithmError):
            return HTTPException(status_code=400, detail=str(exc))
        return HTTPException(status_code=503, detail=str(exc))

    @router.get("/endpoints")
    async def get_endpoints(
        data_center_id: Optional[int] = Query(None, description="Zone scope"),
    ) -> Dict[str, Any]:
        """Configured management server endpoints, in configured order."""
        try:
            endpoints = service.registry.current_endpoints(data_center_id)
        except ConfigurationError as exc:
            raise _fail(exc)
        return {
            "data_center_id": data_center_id,
            "endpoints": endpoints,
            "epoch": service.registry.epoch,
        }

    @router.get("/algorithm")
    async def get_algorithm(
        data_center_id: Optional[int] = Query(None, description="Zone scope"),
        cluster_id: Optional[int] = Query(None, description="Cluster scope"),
    ) -> Dict[str, Any]:
        """Active ordering algorithm and agent check interval."""
        try:
            name = service.get_lb_algorithm_name(data_center_id, cluster_id)
            interval = service.get_lb_preferred_host_check_interval(cluster_id)
        except (ConfigurationError, InvalidAlgorithmError) as exc:
            raise _fail(exc)
        return {"algorithm": name, "check_interval": interval}

    @router.get("/zones/{data_center_id}/hosts")
    async def get_ordered_hosts(
        data_center_id: int,
        include_system_vms: bool = Query(False, description="Also rank system VM agents"),
    ) -> Dict[str, Any]:
        """Agent hosts of a zone in round-robin rank order."""
        host_ids = service.get_ordered_host_id_list(data_center_id, include_system_vms)
        return {"data_center_id": data_center_id, "host_ids": host_ids, "count": len(host_ids)}

    @router.get("/zones/{data_center_id}/hosts/{host_id}/endpoints")
    async def get_host_endpoints(
        data_center_id: int,
        host_id: int,
        host_order_index: Optional[int] = Query(None, ge=0, description="Rank override"),
    ) -> Dict[str, Any]:
        """The management server list a host's agent would receive."""
        try:
            endpoints = service.get_management_server_list(
                host_id, data_center_id, host_order_index,
            )
            algorithm = service.get_lb_algorithm_name(data_center_id)
        except (ConfigurationError, InvalidAlgorithmError) as exc:
            logger.warning(
                "diagnostics_assignment_failed",
                host_id=host_id,
                data_center_id=data_center_id,
                error=str(exc),
            )
            raise _fail(exc)
        return {
            "host_id": host_id,
            "data_center_id": data_center_id,
            "algorithm": algorithm,
            "endpoints": endpoints,
        }

    return router
