"""Pydantic schemas for the secure operations API.

Request bodies validate addresses and bounds before anything reaches the
services; responses render domain records. Large integers (amounts, gas
prices, nonces, deadlines inside meta-transaction payloads) travel as
decimal strings so JavaScript clients never lose precision.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from secure_ops.domain.enums import OperationPhase
from secure_ops.domain.models import (
    ContractInfo,
    MetaTransactionPayload,
    MetaTxOptions,
    Notification,
    SignedMetaTransaction,
    TxRecord,
    encode_big_ints,
)
from secure_ops.domain.registry import OperationSpec

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
HEX_PATTERN = r"^0x[0-9a-fA-F]*$"


def _address(description: str) -> Any:
    return Field(
        ...,
        pattern=ADDRESS_PATTERN,
        description=description,
        examples=["0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18"],
    )


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class MetaTxOptionsBody(BaseModel):
    """Optional overrides for a meta-transaction's deadline buffer and gas ceiling."""

    deadline_seconds: int | None = Field(
        default=None,
        gt=0,
        description="Seconds from build time until the signature expires",
    )
    max_gas_price_wei: int | None = Field(
        default=None,
        gt=0,
        description="Highest gas price (wei) the broadcaster may pay",
    )

    def to_options(self) -> MetaTxOptions:
        return MetaTxOptions(
            deadline_seconds=self.deadline_seconds,
            max_gas_price_wei=self.max_gas_price_wei,
        )


class OperationRequestBody(MetaTxOptionsBody):
    """Request body for starting an operation (temporal request or meta-tx build)."""

    operation_type: str = Field(
        ...,
        description="Operation name (e.g. OWNERSHIP_TRANSFER) or its keccak hash",
        examples=["WITHDRAW_ETH"],
    )
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Operation parameters, e.g. {\"to\": \"0x...\", \"amount\": \"1000\"}",
    )
    requester: str = _address("Address initiating the request")


class SettleBody(BaseModel):
    """Request body for approving or cancelling a temporal operation."""

    caller: str = _address("Address approving or cancelling")


class MetaSettlementBody(MetaTxOptionsBody):
    """Request body for preparing a meta-tx approval or cancellation."""

    phase: Literal["meta-approve", "meta-cancel"] = Field(
        default="meta-approve",
        description="meta-approve or meta-cancel",
    )
    requester: str | None = Field(default=None, pattern=ADDRESS_PATTERN)

    @property
    def operation_phase(self) -> OperationPhase:
        return OperationPhase(self.phase)


class MetaTxPayloadSchema(BaseModel):
    """Canonical meta-transaction payload; integers as decimal strings."""

    id: str = Field(..., pattern=HEX_PATTERN)
    contract_address: str = Field(..., pattern=ADDRESS_PATTERN)
    chain_id: str
    operation_type: str
    phase: str
    nonce: str
    handler_selector: str = Field(..., pattern=HEX_PATTERN)
    params_hash: str = Field(..., pattern=HEX_PATTERN)
    deadline: str
    max_gas_price: str
    signer: str = Field(..., pattern=ADDRESS_PATTERN)
    created_at: str
    tx_id: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: MetaTransactionPayload) -> MetaTxPayloadSchema:
        return cls.model_validate(payload.to_dict())

    def to_payload(self) -> MetaTransactionPayload:
        return MetaTransactionPayload.from_dict(self.model_dump())


class SignatureBody(BaseModel):
    """Request body for attaching a signature to a built payload."""

    payload: MetaTxPayloadSchema
    signature: str = Field(
        ...,
        pattern=HEX_PATTERN,
        min_length=132,
        max_length=132,
        description="65-byte signature, 0x-prefixed hex",
    )


class BroadcastBody(BaseModel):
    """Request body for broadcasting a stored meta-transaction."""

    broadcaster: str = _address("Broadcaster address submitting the transaction")
    current_gas_price: int | None = Field(
        default=None,
        ge=0,
        description="Gas price (wei) to check against the ceiling; read from chain if omitted",
    )


class TokenBody(BaseModel):
    """Request body for tracking an ERC20 token on a vault."""

    address: str = _address("Token contract address")
    symbol: str | None = Field(default=None, max_length=32)
    name: str | None = Field(default=None, max_length=128)
    decimals: int | None = Field(default=None, ge=0, le=36)

    def metadata(self) -> dict:
        return self.model_dump(exclude={"address"}, exclude_none=True)


class DeployContractBody(BaseModel):
    """Request body for deploying a simulated secure vault."""

    owner: str = _address("Owner address")
    broadcaster: str = _address("Broadcaster address")
    recovery: str = _address("Recovery address")
    timelock_period_days: int = Field(default=7, ge=1)
    balance_wei: int = Field(default=0, ge=0)


class GasPriceBody(BaseModel):
    gas_price_wei: int = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class RoleSetResponse(BaseModel):
    owner: str
    broadcaster: str
    recovery: str


class ContractInfoResponse(BaseModel):
    """Roles and time-lock configuration of a secure contract."""

    address: str
    roles: RoleSetResponse
    timelock_period_seconds: int
    chain_id: int

    @classmethod
    def from_info(cls, info: ContractInfo) -> ContractInfoResponse:
        return cls(
            address=info.address,
            roles=RoleSetResponse(**info.roles.to_dict()),
            timelock_period_seconds=info.timelock_period_seconds,
            chain_id=info.chain_id,
        )


class TxRecordResponse(BaseModel):
    """A tracked operation plus values derived at response time."""

    tx_id: int
    contract_address: str
    operation_type: str
    status: str
    requested_at: int
    release_time: int
    params: dict[str, Any]
    requester: str | None
    ready: bool = Field(description="Whether the time-lock has elapsed")
    time_remaining: int = Field(description="Seconds until approval becomes valid")
    progress: float = Field(description="Percentage of the time-lock elapsed (0-100)")

    @classmethod
    def from_record(cls, record: TxRecord, now: int) -> TxRecordResponse:
        return cls(
            tx_id=record.tx_id,
            contract_address=record.contract_address,
            operation_type=record.operation_type.value,
            status=record.status.value,
            requested_at=record.requested_at,
            release_time=record.release_time,
            params=encode_big_ints(record.params),
            requester=record.requester,
            ready=record.is_ready(now),
            time_remaining=record.time_remaining(now),
            progress=record.progress(now),
        )


class BuiltMetaTxResponse(BaseModel):
    """An unsigned payload and the EIP-712 typed data to sign."""

    payload: MetaTxPayloadSchema
    typed_data: dict[str, Any]


class SignedMetaTxResponse(BaseModel):
    id: str
    payload: MetaTxPayloadSchema
    signature: str
    signed_at: str
    broadcast_status: str
    tx_hash: str | None

    @classmethod
    def from_signed(cls, signed: SignedMetaTransaction) -> SignedMetaTxResponse:
        return cls(id=signed.id, **signed.to_dict())


class OperationRequestResponse(BaseModel):
    """Outcome of starting an operation; exactly one of the two bodies is set."""

    workflow_kind: str
    record: TxRecordResponse | None = None
    meta_transaction: BuiltMetaTxResponse | None = None


class PendingViewResponse(BaseModel):
    records: list[TxRecordResponse]
    meta_transactions: list[SignedMetaTxResponse]


class MetaTxSettingsResponse(BaseModel):
    deadline_seconds: int
    max_gas_price_wei: str

    @classmethod
    def from_options(cls, options: MetaTxOptions) -> MetaTxSettingsResponse:
        return cls(
            deadline_seconds=options.deadline_seconds,
            max_gas_price_wei=str(options.max_gas_price_wei),
        )


class TokenListResponse(BaseModel):
    tokens: list[dict[str, Any]]


class OperationTypeResponse(BaseModel):
    """Registry metadata for one operation type."""

    operation_type: str
    name: str
    type_hash: str
    workflow_kind: str
    description: str
    is_core: bool
    allows_concurrent: bool
    param_keys: list[str]
    required_roles: dict[str, list[str]]

    @classmethod
    def from_spec(cls, spec: OperationSpec) -> OperationTypeResponse:
        return cls(
            operation_type=spec.operation_type.value,
            name=spec.name,
            type_hash=spec.type_hash,
            workflow_kind=spec.workflow_kind.value,
            description=spec.description,
            is_core=spec.is_core,
            allows_concurrent=spec.allows_concurrent,
            param_keys=list(spec.param_keys),
            required_roles={
                phase.value: sorted(role.value for role in roles)
                for phase, roles in spec.required_roles.items()
            },
        )


class NotificationResponse(BaseModel):
    type: str
    title: str
    description: str

    @classmethod
    def from_notification(cls, notification: Notification) -> NotificationResponse:
        return cls(**notification.to_dict())


class DeployContractResponse(BaseModel):
    address: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    storage: str = "unknown"
    chain: str = "unknown"
