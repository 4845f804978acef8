"""Secure operation REST API routes.

Every route goes through the WorkflowManager, so authorization, dispatch by
workflow kind and outcome notifications are identical to any other surface.

Routes:
    GET    /api/v1/operation-types                              Registry listing
    GET    /api/v1/notifications                                Recent outcome events
    GET    /api/v1/contracts/{address}/info                     Roles + time-lock
    GET    /api/v1/contracts/{address}/operations               Refreshed records
    GET    /api/v1/contracts/{address}/pending                  Records + signed meta-txs
    POST   /api/v1/contracts/{address}/operations               Request or build meta-tx
    POST   /api/v1/contracts/{address}/operations/{tx_id}/approve
    POST   /api/v1/contracts/{address}/operations/{tx_id}/cancel
    POST   /api/v1/contracts/{address}/operations/{tx_id}/meta  Build meta approve/cancel
    GET    /api/v1/contracts/{address}/meta-transactions
    POST   /api/v1/contracts/{address}/meta-transactions        Attach signature + store
    POST   /api/v1/contracts/{address}/meta-transactions/{id}/broadcast
    POST   /api/v1/contracts/{address}/meta-transactions/purge
    GET    /api/v1/contracts/{address}/meta-tx-settings
    PUT    /api/v1/contracts/{address}/meta-tx-settings
    GET    /api/v1/contracts/{address}/tokens
    POST   /api/v1/contracts/{address}/tokens
    DELETE /api/v1/contracts/{address}/tokens/{token}
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Path, Query

from secure_ops.api.deps import get_container, get_manager
from secure_ops.container import WorkflowContainer
from secure_ops.domain.exceptions import InvalidOperationParams
from secure_ops.domain.models import MetaTransactionPayload, TxRecord, decode_big_ints
from secure_ops.domain.signing import typed_data_to_json
from secure_ops.logging_config import get_logger
from secure_ops.schemas.operations import (
    ADDRESS_PATTERN,
    BroadcastBody,
    BuiltMetaTxResponse,
    ContractInfoResponse,
    MetaSettlementBody,
    MetaTxOptionsBody,
    MetaTxPayloadSchema,
    MetaTxSettingsResponse,
    NotificationResponse,
    OperationRequestBody,
    OperationRequestResponse,
    OperationTypeResponse,
    PendingViewResponse,
    SettleBody,
    SignatureBody,
    SignedMetaTxResponse,
    TokenBody,
    TokenListResponse,
    TxRecordResponse,
)
from secure_ops.services.workflow_manager import WorkflowManager

router = APIRouter(prefix="/api/v1", tags=["Operations"])
logger = get_logger(__name__)


def _built(manager: WorkflowManager, payload: MetaTransactionPayload) -> BuiltMetaTxResponse:
    return BuiltMetaTxResponse(
        payload=MetaTxPayloadSchema.from_payload(payload),
        typed_data=typed_data_to_json(manager.engine.typed_data(payload)),
    )


def _record(record: TxRecord, container: WorkflowContainer) -> TxRecordResponse:
    return TxRecordResponse.from_record(record, container.clock())


# ---------------------------------------------------------------------------
# Registry + notifications
# ---------------------------------------------------------------------------


@router.get(
    "/operation-types",
    response_model=list[OperationTypeResponse],
    summary="List registered operation types",
)
async def list_operation_types(
    container: WorkflowContainer = Depends(get_container),
) -> list[OperationTypeResponse]:
    return [OperationTypeResponse.from_spec(spec) for spec in container.registry.all()]


@router.get(
    "/notifications",
    response_model=list[NotificationResponse],
    summary="Recent outcome notifications, oldest first",
)
async def list_notifications(
    container: WorkflowContainer = Depends(get_container),
) -> list[NotificationResponse]:
    return [NotificationResponse.from_notification(n) for n in container.recent.items()]


# ---------------------------------------------------------------------------
# Contract views
# ---------------------------------------------------------------------------


@router.get(
    "/contracts/{contract_address}/info",
    response_model=ContractInfoResponse,
    summary="Contract roles and time-lock period",
)
async def get_contract_info(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    refresh: bool = Query(default=False, description="Re-read roles from the chain"),
    manager: WorkflowManager = Depends(get_manager),
) -> ContractInfoResponse:
    info = await manager.contract_info(contract_address, refresh=refresh)
    return ContractInfoResponse.from_info(info)


@router.get(
    "/contracts/{contract_address}/operations",
    response_model=list[TxRecordResponse],
    summary="Refresh and list operations",
)
async def list_operations(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    scope: Literal["all", "core", "domain"] = Query(
        default="all", description="core security operations, domain vault operations, or all"
    ),
    container: WorkflowContainer = Depends(get_container),
) -> list[TxRecordResponse]:
    records = await container.manager.visible_operations(contract_address, scope)
    return [_record(r, container) for r in records]


@router.get(
    "/contracts/{contract_address}/pending",
    response_model=PendingViewResponse,
    summary="Pending records and signed meta-transactions awaiting broadcast",
)
async def get_pending(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    container: WorkflowContainer = Depends(get_container),
) -> PendingViewResponse:
    view = await container.manager.snapshot(contract_address)
    return PendingViewResponse(
        records=[_record(r, container) for r in view.pending_records],
        meta_transactions=[SignedMetaTxResponse.from_signed(m) for m in view.meta_transactions],
    )


# ---------------------------------------------------------------------------
# Request / approve / cancel
# ---------------------------------------------------------------------------


@router.post(
    "/contracts/{contract_address}/operations",
    response_model=OperationRequestResponse,
    status_code=201,
    summary="Request a temporal operation or build a meta-transaction",
)
async def request_operation(
    body: OperationRequestBody,
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    container: WorkflowContainer = Depends(get_container),
) -> OperationRequestResponse:
    manager = container.manager
    result = await manager.request(
        contract_address,
        body.operation_type,
        decode_big_ints(body.params),
        body.requester,
        options=body.to_options(),
    )
    if isinstance(result, TxRecord):
        return OperationRequestResponse(
            workflow_kind="TEMPORAL", record=_record(result, container)
        )
    return OperationRequestResponse(
        workflow_kind="META_TX", meta_transaction=_built(manager, result)
    )


@router.post(
    "/contracts/{contract_address}/operations/{tx_id}/approve",
    response_model=TxRecordResponse,
    summary="Approve a pending operation after its time-lock",
)
async def approve_operation(
    body: SettleBody,
    tx_id: int = Path(..., ge=0),
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    container: WorkflowContainer = Depends(get_container),
) -> TxRecordResponse:
    record = await container.manager.approve(contract_address, tx_id, body.caller)
    return _record(record, container)


@router.post(
    "/contracts/{contract_address}/operations/{tx_id}/cancel",
    response_model=TxRecordResponse,
    summary="Cancel a pending operation",
)
async def cancel_operation(
    body: SettleBody,
    tx_id: int = Path(..., ge=0),
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    container: WorkflowContainer = Depends(get_container),
) -> TxRecordResponse:
    record = await container.manager.cancel(contract_address, tx_id, body.caller)
    return _record(record, container)


@router.post(
    "/contracts/{contract_address}/operations/{tx_id}/meta",
    response_model=BuiltMetaTxResponse,
    status_code=201,
    summary="Build a meta-transaction approving or cancelling a pending operation",
)
async def prepare_meta_settlement(
    body: MetaSettlementBody,
    tx_id: int = Path(..., ge=0),
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> BuiltMetaTxResponse:
    if body.phase == "meta-cancel":
        prepare = manager.prepare_meta_cancellation
    else:
        prepare = manager.prepare_meta_approval
    payload = await prepare(
        contract_address, tx_id, options=body.to_options(), requester=body.requester
    )
    return _built(manager, payload)


# ---------------------------------------------------------------------------
# Meta-transactions
# ---------------------------------------------------------------------------


@router.get(
    "/contracts/{contract_address}/meta-transactions",
    response_model=list[SignedMetaTxResponse],
    summary="Stored signed meta-transactions",
)
async def list_meta_transactions(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> list[SignedMetaTxResponse]:
    signed = await manager.list_signed(contract_address)
    return [SignedMetaTxResponse.from_signed(m) for m in signed]


@router.post(
    "/contracts/{contract_address}/meta-transactions",
    response_model=SignedMetaTxResponse,
    status_code=201,
    summary="Attach a signature to a built payload and store it for broadcast",
)
async def submit_signature(
    body: SignatureBody,
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> SignedMetaTxResponse:
    payload = body.payload.to_payload()
    if payload.contract_address.lower() != contract_address.lower():
        logger.warning(
            "api.payload_contract_mismatch",
            contract=contract_address,
            payload_contract=payload.contract_address,
        )
        raise InvalidOperationParams("Payload belongs to a different contract")
    signed = await manager.submit_signature(payload, body.signature)
    return SignedMetaTxResponse.from_signed(signed)


@router.post(
    "/contracts/{contract_address}/meta-transactions/purge",
    response_model=list[SignedMetaTxResponse],
    summary="Remove expired, never-broadcast meta-transactions",
)
async def purge_expired(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> list[SignedMetaTxResponse]:
    purged = await manager.purge_expired(contract_address)
    return [SignedMetaTxResponse.from_signed(m) for m in purged]


@router.post(
    "/contracts/{contract_address}/meta-transactions/{meta_tx_id}/broadcast",
    response_model=SignedMetaTxResponse,
    summary="Broadcast a stored meta-transaction",
)
async def broadcast_meta_transaction(
    body: BroadcastBody,
    meta_tx_id: str = Path(..., pattern=r"^0x[0-9a-fA-F]{64}$"),
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> SignedMetaTxResponse:
    signed = await manager.broadcast(
        contract_address, meta_tx_id, body.broadcaster, body.current_gas_price
    )
    return SignedMetaTxResponse.from_signed(signed)


# ---------------------------------------------------------------------------
# Settings + tokens
# ---------------------------------------------------------------------------


@router.get(
    "/contracts/{contract_address}/meta-tx-settings",
    response_model=MetaTxSettingsResponse,
    summary="Deadline buffer and gas ceiling used for new meta-transactions",
)
async def get_meta_tx_settings(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> MetaTxSettingsResponse:
    return MetaTxSettingsResponse.from_options(await manager.get_meta_tx_settings(contract_address))


@router.put(
    "/contracts/{contract_address}/meta-tx-settings",
    response_model=MetaTxSettingsResponse,
    summary="Save meta-transaction defaults for a contract",
)
async def save_meta_tx_settings(
    body: MetaTxOptionsBody,
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> MetaTxSettingsResponse:
    saved = await manager.save_meta_tx_settings(contract_address, body.to_options())
    return MetaTxSettingsResponse.from_options(saved)


@router.get(
    "/contracts/{contract_address}/tokens",
    response_model=TokenListResponse,
    summary="Tokens tracked for a vault",
)
async def list_tokens(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> TokenListResponse:
    return TokenListResponse(tokens=await manager.list_tokens(contract_address))


@router.post(
    "/contracts/{contract_address}/tokens",
    response_model=TokenListResponse,
    status_code=201,
    summary="Track a token",
)
async def add_token(
    body: TokenBody,
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> TokenListResponse:
    tokens = await manager.add_token(contract_address, body.address, body.metadata())
    return TokenListResponse(tokens=tokens)


@router.delete(
    "/contracts/{contract_address}/tokens/{token_address}",
    response_model=TokenListResponse,
    summary="Stop tracking a token",
)
async def remove_token(
    contract_address: str = Path(..., pattern=ADDRESS_PATTERN),
    token_address: str = Path(..., pattern=ADDRESS_PATTERN),
    manager: WorkflowManager = Depends(get_manager),
) -> TokenListResponse:
    return TokenListResponse(tokens=await manager.remove_token(contract_address, token_address))
