"""Pydantic API schemas."""

from secure_ops.schemas.operations import (
    BroadcastBody,
    BuiltMetaTxResponse,
    ContractInfoResponse,
    HealthResponse,
    MetaSettlementBody,
    MetaTxOptionsBody,
    MetaTxPayloadSchema,
    MetaTxSettingsResponse,
    OperationRequestBody,
    OperationRequestResponse,
    PendingViewResponse,
    SettleBody,
    SignatureBody,
    SignedMetaTxResponse,
    TokenBody,
    TokenListResponse,
    TxRecordResponse,
)

__all__ = [
    "BroadcastBody",
    "BuiltMetaTxResponse",
    "ContractInfoResponse",
    "HealthResponse",
    "MetaSettlementBody",
    "MetaTxOptionsBody",
    "MetaTxPayloadSchema",
    "MetaTxSettingsResponse",
    "OperationRequestBody",
    "OperationRequestResponse",
    "PendingViewResponse",
    "SettleBody",
    "SignatureBody",
    "SignedMetaTxResponse",
    "TokenBody",
    "TokenListResponse",
    "TxRecordResponse",
]
