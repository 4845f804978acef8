"""Domain enumerations for the secure operations engine.

These enums define the canonical tags used throughout the system.
They are framework-agnostic (no FastAPI, no web3 imports).
"""

import enum


class OperationType(enum.StrEnum):
    """Closed set of security actions the engine knows how to drive.

    Anything the chain reports outside this set is filtered out at the
    registry boundary, never dispatched by string comparison.
    """

    # Core secure-ownable operations
    OWNERSHIP_TRANSFER = "OWNERSHIP_TRANSFER"
    BROADCASTER_UPDATE = "BROADCASTER_UPDATE"
    RECOVERY_UPDATE = "RECOVERY_UPDATE"
    TIMELOCK_UPDATE = "TIMELOCK_UPDATE"

    # Domain vault operations
    WITHDRAW_ETH = "WITHDRAW_ETH"
    WITHDRAW_TOKEN = "WITHDRAW_TOKEN"

    # Domain token-issuance operations
    MINT_TOKENS = "MINT_TOKENS"
    BURN_TOKENS = "BURN_TOKENS"


class WorkflowKind(enum.StrEnum):
    """Which security model drives an operation."""

    TEMPORAL = "TEMPORAL"  # request -> wait -> approve/cancel
    META_TX = "META_TX"  # single signed request-and-approve


class OperationPhase(enum.StrEnum):
    """Phases a caller can attempt; each is role-gated per operation."""

    REQUEST = "request"
    APPROVE = "approve"
    CANCEL = "cancel"
    META_APPROVE = "meta-approve"
    META_CANCEL = "meta-cancel"
    META_REQUEST_AND_APPROVE = "meta-request-and-approve"
    BROADCAST = "broadcast"

    @property
    def is_meta(self) -> bool:
        return self in (
            OperationPhase.META_APPROVE,
            OperationPhase.META_CANCEL,
            OperationPhase.META_REQUEST_AND_APPROVE,
        )


class Role(enum.StrEnum):
    """Roles of a secure contract. Each address may hold several."""

    OWNER = "owner"
    BROADCASTER = "broadcaster"
    RECOVERY = "recovery"


class TxStatus(enum.StrEnum):
    """Lifecycle of a TxRecord. NONE exists only before the request lands."""

    NONE = "NONE"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TxStatus.COMPLETED, TxStatus.CANCELLED)


class BroadcastStatus(enum.StrEnum):
    """Lifecycle of a signed meta-transaction once handed to the broadcaster."""

    UNBROADCAST = "UNBROADCAST"
    BROADCASTED = "BROADCASTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class NotificationLevel(enum.StrEnum):
    """Severity of an outcome event sent to the NotificationSink."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"
