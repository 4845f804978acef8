"""Domain exceptions for the secure operations engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware,
and published verbatim to the NotificationSink by the WorkflowManager.
"""

from __future__ import annotations


class SecureOpsError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "SECURE_OPS_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidStateTransitionError(SecureOpsError):
    """Raised when an attempted state transition is not allowed."""

    def __init__(
        self,
        current_state: str,
        attempted: str,
        message: str | None = None,
        code: str = "INVALID_STATE_TRANSITION",
    ) -> None:
        super().__init__(
            message=message or f"Invalid state transition: {current_state} -> {attempted}",
            code=code,
        )
        self.current_state = current_state
        self.attempted = attempted


class AlreadySettled(InvalidStateTransitionError):
    """Raised when approving/cancelling a record that is no longer PENDING."""

    def __init__(self, tx_id: int | str, status: str) -> None:
        super().__init__(
            current_state=status,
            attempted="settle",
            message=f"Operation {tx_id} is already settled ({status})",
            code="ALREADY_SETTLED",
        )
        self.tx_id = tx_id


# --- Authorization / Validation Errors ---


class Unauthorized(SecureOpsError):
    """Raised when the caller's role may not perform the attempted action."""

    def __init__(self, action: str, caller: str) -> None:
        super().__init__(
            message=f"{caller} is not authorized to {action}",
            code="UNAUTHORIZED",
        )
        self.action = action
        self.caller = caller


class NotReady(SecureOpsError):
    """Raised when approving before the time-lock has elapsed."""

    def __init__(self, tx_id: int, release_time: int, now: int) -> None:
        super().__init__(
            message=(
                f"Operation {tx_id} is not ready for approval: "
                f"{release_time - now}s of time-lock remaining"
            ),
            code="NOT_READY",
        )
        self.tx_id = tx_id
        self.release_time = release_time
        self.now = now


class DuplicatePendingOperation(SecureOpsError):
    """Raised when a non-concurrent operation slot already holds a PENDING record."""

    def __init__(self, contract_address: str, operation_type: str, tx_id: int | None) -> None:
        held_by = f"pending operation {tx_id}" if tx_id is not None else "a request in flight"
        super().__init__(
            message=f"{operation_type} already has {held_by} on {contract_address}",
            code="DUPLICATE_PENDING_OPERATION",
        )
        self.contract_address = contract_address
        self.operation_type = operation_type
        self.tx_id = tx_id


class InvalidOperationParams(SecureOpsError):
    """Raised when operation parameters violate policy (e.g. time-lock bounds)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_OPERATION_PARAMS")


class OperationNotFound(SecureOpsError):
    """Raised when a txId or meta-transaction id is not known for a contract."""

    def __init__(self, contract_address: str, identifier: int | str) -> None:
        super().__init__(
            message=f"Operation {identifier} not found on {contract_address}",
            code="OPERATION_NOT_FOUND",
        )
        self.contract_address = contract_address
        self.identifier = identifier


class UnknownOperationType(SecureOpsError):
    """Raised by the registry for ids it does not know.

    Filtering layers swallow this: unknown ids usually come from domain
    contracts outside the registry's knowledge.
    """

    def __init__(self, operation_type_id: str) -> None:
        super().__init__(
            message=f"Unknown operation type: {operation_type_id}",
            code="UNKNOWN_OPERATION_TYPE",
        )
        self.operation_type_id = operation_type_id


# --- Meta-transaction Errors ---


class MetaTransactionError(SecureOpsError):
    """Base exception for meta-transaction capability failures."""


class InvalidSignature(MetaTransactionError):
    """Raised when a signature is malformed or cannot be recovered."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=f"Invalid signature: {reason}", code="INVALID_SIGNATURE")


class SignerMismatch(MetaTransactionError):
    """Raised when the recovered signer does not hold the required role."""

    def __init__(self, expected: str, recovered: str) -> None:
        super().__init__(
            message=f"Signature recovered to {recovered}, expected {expected}",
            code="SIGNER_MISMATCH",
        )
        self.expected = expected
        self.recovered = recovered


class Expired(MetaTransactionError):
    """Raised when a meta-transaction is broadcast after its deadline."""

    def __init__(self, meta_tx_id: str, deadline: int, now: int) -> None:
        super().__init__(
            message=f"Meta-transaction {meta_tx_id} expired at {deadline} (now {now})",
            code="EXPIRED",
        )
        self.meta_tx_id = meta_tx_id
        self.deadline = deadline
        self.now = now


class GasPriceExceeded(MetaTransactionError):
    """Raised when the network gas price is above the signed ceiling."""

    def __init__(self, current_gas_price: int, max_gas_price: int) -> None:
        super().__init__(
            message=(
                f"Current gas price {current_gas_price} wei exceeds "
                f"signed maximum {max_gas_price} wei"
            ),
            code="GAS_PRICE_EXCEEDED",
        )
        self.current_gas_price = current_gas_price
        self.max_gas_price = max_gas_price


class DuplicateMetaTransaction(MetaTransactionError):
    """Raised when an equivalent unexpired meta-transaction is already stored."""

    def __init__(self, contract_address: str, meta_tx_id: str) -> None:
        super().__init__(
            message=f"Equivalent meta-transaction {meta_tx_id} already stored for {contract_address}",
            code="DUPLICATE_META_TRANSACTION",
        )
        self.contract_address = contract_address
        self.meta_tx_id = meta_tx_id


# --- Chain Errors ---


class ChainCallFailed(SecureOpsError):
    """Wraps any transport, timeout or revert failure at the ChainClient boundary."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message=message, code="CHAIN_CALL_FAILED")
        self.tx_hash = tx_hash
