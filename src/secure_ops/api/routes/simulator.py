"""Development-only routes driving the SimulatedChainClient.

Mounted only when ``simulate_chain`` is enabled, so a deployment against a
real chain never exposes them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from secure_ops.api.deps import get_container
from secure_ops.config import SECONDS_PER_DAY
from secure_ops.container import WorkflowContainer
from secure_ops.domain.exceptions import InvalidOperationParams
from secure_ops.infrastructure.simulated_chain import SimulatedChainClient
from secure_ops.logging_config import get_logger
from secure_ops.schemas.operations import DeployContractBody, DeployContractResponse, GasPriceBody

router = APIRouter(prefix="/api/v1/simulator", tags=["Simulator"])
logger = get_logger(__name__)


def _simulated_chain(container: WorkflowContainer) -> SimulatedChainClient:
    if not isinstance(container.chain, SimulatedChainClient):
        raise InvalidOperationParams("The configured chain client is not simulated")
    return container.chain


@router.post(
    "/contracts",
    response_model=DeployContractResponse,
    status_code=201,
    summary="Deploy a simulated secure vault",
)
async def deploy_contract(
    body: DeployContractBody,
    container: WorkflowContainer = Depends(get_container),
) -> DeployContractResponse:
    low, high = container.settings.timelock_bounds_seconds
    period = body.timelock_period_days * SECONDS_PER_DAY
    if not low <= period <= high:
        raise InvalidOperationParams(
            f"Time-lock period must be between {container.settings.timelock_min_days} "
            f"and {container.settings.timelock_max_days} days"
        )
    address = _simulated_chain(container).deploy(
        owner=body.owner,
        broadcaster=body.broadcaster,
        recovery=body.recovery,
        timelock_period_seconds=period,
        balance=body.balance_wei,
    )
    return DeployContractResponse(address=address)


@router.put(
    "/gas-price",
    response_model=GasPriceBody,
    summary="Set the simulated network gas price",
)
async def set_gas_price(
    body: GasPriceBody,
    container: WorkflowContainer = Depends(get_container),
) -> GasPriceBody:
    _simulated_chain(container).set_gas_price(body.gas_price_wei)
    logger.info("simulator.gas_price_set", gas_price_wei=body.gas_price_wei)
    return body
