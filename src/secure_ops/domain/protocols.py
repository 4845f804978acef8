"""Boundary protocols for the external collaborators.

These are Protocols (structural subtyping): the simulated chain, a real RPC
client, Redis, or a test double only need to match the shape. The domain
layer never inspects ABI encoding or transport details.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from secure_ops.domain.enums import OperationType
    from secure_ops.domain.models import Notification


@dataclass(frozen=True)
class CallDescriptor:
    """A state-changing contract call, opaque to the workflow.

    Attributes:
        contract_address: Target secure contract.
        function: Logical function name (e.g. "request", "approve", "execute_meta_tx").
        sender: Address submitting the transaction.
        operation_type: Operation the call belongs to, if any.
        args: Call arguments; large integers stay Python ints.
    """

    contract_address: str
    function: str
    sender: str
    operation_type: OperationType | None = None
    args: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ChainQuery:
    """A read-only contract query."""

    contract_address: str
    name: str
    args: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Receipt:
    """Outcome of a mined transaction.

    Attributes:
        tx_hash: Transaction hash.
        success: False when the call reverted.
        tx_id: Operation id assigned by the contract, when the call created one.
        block_timestamp: Timestamp of the including block.
        error: Revert reason, if any.
    """

    tx_hash: str
    success: bool
    tx_id: int | None = None
    block_timestamp: int | None = None
    error: str | None = None


@runtime_checkable
class TransactionHandle(Protocol):
    """Handle to a submitted transaction."""

    tx_hash: str

    async def wait(self) -> Receipt:
        """Wait for the transaction to be mined and return its receipt."""
        ...


@runtime_checkable
class ChainClient(Protocol):
    """Opaque request/response boundary to the chain."""

    async def submit(self, call: CallDescriptor) -> TransactionHandle:
        """Sign and send a call, returning a handle to await its receipt."""
        ...

    async def read(self, query: ChainQuery) -> Any:
        """Execute a read-only query.

        The ``receipt`` query (args: ``tx_hash``) returns the Receipt of a
        mined transaction, or None while it is still unknown.
        """
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Persistence boundary. Values are JSON strings."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> list[str]: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget receiver of outcome events."""

    def notify(self, notification: Notification) -> None: ...
