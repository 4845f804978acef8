"""Health check endpoint.

Verifies the persistence backend and the chain client, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from secure_ops import __version__
from secure_ops.api.deps import get_container
from secure_ops.container import WorkflowContainer
from secure_ops.domain.models import ZERO_ADDRESS
from secure_ops.domain.protocols import ChainQuery
from secure_ops.logging_config import get_logger
from secure_ops.schemas.operations import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(container: WorkflowContainer = Depends(get_container)) -> HealthResponse:
    """Round-trip the key-value store and read the chain id."""
    storage_status = "unknown"
    chain_status = "unknown"

    probe_key = f"{container.settings.storage_key_prefix}:health"
    try:
        await container.store.set(probe_key, "1")
        await container.store.delete(probe_key)
        storage_status = "healthy"
    except Exception as exc:
        storage_status = f"unhealthy: {exc}"
        logger.error("health.storage_check_failed", error=str(exc))

    try:
        await container.chain.read(ChainQuery(ZERO_ADDRESS, "chain_id"))
        chain_status = "healthy"
    except Exception as exc:
        chain_status = f"unhealthy: {exc}"
        logger.error("health.chain_check_failed", error=str(exc))

    overall = "ok" if storage_status == chain_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        version=__version__,
        storage=storage_status,
        chain=chain_status,
    )
