"""Domain layer: pure business logic with zero framework dependencies."""

from secure_ops.domain.enums import (
    BroadcastStatus,
    NotificationLevel,
    OperationPhase,
    OperationType,
    Role,
    TxStatus,
    WorkflowKind,
)
from secure_ops.domain.exceptions import (
    AlreadySettled,
    ChainCallFailed,
    DuplicateMetaTransaction,
    DuplicatePendingOperation,
    Expired,
    GasPriceExceeded,
    InvalidSignature,
    InvalidStateTransitionError,
    NotReady,
    SecureOpsError,
    SignerMismatch,
    Unauthorized,
    UnknownOperationType,
)
from secure_ops.domain.models import (
    RoleSet,
    SignedMetaTransaction,
    TxRecord,
)
from secure_ops.domain.registry import OperationRegistry, OperationSpec
from secure_ops.domain.role_guard import RoleGuard

__all__ = [
    "BroadcastStatus",
    "NotificationLevel",
    "OperationPhase",
    "OperationType",
    "Role",
    "TxStatus",
    "WorkflowKind",
    "AlreadySettled",
    "ChainCallFailed",
    "DuplicateMetaTransaction",
    "DuplicatePendingOperation",
    "Expired",
    "GasPriceExceeded",
    "InvalidSignature",
    "InvalidStateTransitionError",
    "NotReady",
    "SecureOpsError",
    "SignerMismatch",
    "Unauthorized",
    "UnknownOperationType",
    "RoleSet",
    "SignedMetaTransaction",
    "TxRecord",
    "OperationRegistry",
    "OperationSpec",
    "RoleGuard",
]
