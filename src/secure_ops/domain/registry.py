"""Operation registry: the single place operation ids become typed specs.

Every operation id the engine encounters (enum member, canonical name, or the
contract-level keccak hash reported in operation history) is resolved here.
The table is built once at startup and is read-only afterwards.

Usage:
    registry = OperationRegistry()
    spec = registry.resolve("0x...")          # contract-level hash
    spec = registry.resolve("WITHDRAW_ETH")   # canonical name
    spec.workflow_kind                        # WorkflowKind.TEMPORAL
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType

from web3 import Web3

from secure_ops.domain.enums import OperationPhase, OperationType, Role, WorkflowKind
from secure_ops.domain.exceptions import UnknownOperationType


def operation_type_hash(operation_type: OperationType) -> str:
    """Contract-level identifier: keccak256 of the canonical name, 0x-prefixed."""
    return Web3.to_hex(Web3.keccak(text=operation_type.value))


def function_selector(signature: str) -> str:
    """First four bytes of keccak256(signature), 0x-prefixed."""
    return Web3.to_hex(Web3.keccak(text=signature))[:10]


@dataclass(frozen=True)
class OperationSpec:
    """Static metadata for one operation type.

    Attributes:
        required_roles: Phase -> roles allowed to perform it. A phase absent
            from the mapping is not supported for this operation.
        allows_concurrent: Whether several PENDING records of this type may
            coexist on one contract (domain vaults) or not (core operations).
        param_keys: Parameters a request must carry.
        handler_signatures: Phase -> contract function signature.
    """

    operation_type: OperationType
    name: str
    workflow_kind: WorkflowKind
    required_roles: Mapping[OperationPhase, frozenset[Role]]
    description: str
    is_core: bool = True
    allows_concurrent: bool = False
    param_keys: tuple[str, ...] = ()
    handler_signatures: Mapping[OperationPhase, str] = field(default_factory=dict)

    @cached_property
    def type_hash(self) -> str:
        return operation_type_hash(self.operation_type)

    def supports(self, phase: OperationPhase) -> bool:
        return phase in self.required_roles

    def roles_for(self, phase: OperationPhase) -> frozenset[Role]:
        return self.required_roles.get(phase, frozenset())

    def selector(self, phase: OperationPhase) -> str:
        signature = self.handler_signatures.get(phase)
        if signature is None:
            raise UnknownOperationType(f"{self.operation_type}:{phase}")
        return function_selector(signature)


_OWNER = frozenset({Role.OWNER})
_RECOVERY = frozenset({Role.RECOVERY})
_BROADCASTER = frozenset({Role.BROADCASTER})

DEFAULT_OPERATIONS: tuple[OperationSpec, ...] = (
    OperationSpec(
        operation_type=OperationType.OWNERSHIP_TRANSFER,
        name="Ownership Transfer",
        workflow_kind=WorkflowKind.TEMPORAL,
        description="Transfer ownership to the recovery address after the time-lock",
        required_roles={
            OperationPhase.REQUEST: _RECOVERY,
            OperationPhase.APPROVE: _OWNER,
            OperationPhase.CANCEL: _RECOVERY,
            OperationPhase.META_APPROVE: _OWNER,
            OperationPhase.META_CANCEL: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.REQUEST: "transferOwnershipRequest()",
            OperationPhase.APPROVE: "transferOwnershipDelayedApproval(uint256)",
            OperationPhase.CANCEL: "transferOwnershipCancellation(uint256)",
            OperationPhase.META_APPROVE: "transferOwnershipApprovalWithMetaTx(bytes)",
            OperationPhase.META_CANCEL: "transferOwnershipCancellationWithMetaTx(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.BROADCASTER_UPDATE,
        name="Broadcaster Update",
        workflow_kind=WorkflowKind.TEMPORAL,
        description="Rotate the broadcaster address after the time-lock",
        param_keys=("new_broadcaster",),
        required_roles={
            OperationPhase.REQUEST: _OWNER,
            OperationPhase.APPROVE: _OWNER,
            OperationPhase.CANCEL: _OWNER,
            OperationPhase.META_APPROVE: _OWNER,
            OperationPhase.META_CANCEL: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.REQUEST: "updateBroadcasterRequest(address)",
            OperationPhase.APPROVE: "updateBroadcasterDelayedApproval(uint256)",
            OperationPhase.CANCEL: "updateBroadcasterCancellation(uint256)",
            OperationPhase.META_APPROVE: "updateBroadcasterApprovalWithMetaTx(bytes)",
            OperationPhase.META_CANCEL: "updateBroadcasterCancellationWithMetaTx(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.RECOVERY_UPDATE,
        name="Recovery Update",
        workflow_kind=WorkflowKind.META_TX,
        description="Change the recovery address with an owner-signed meta-transaction",
        param_keys=("new_recovery",),
        required_roles={
            OperationPhase.META_REQUEST_AND_APPROVE: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.META_REQUEST_AND_APPROVE: "updateRecoveryRequestAndApprove(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.TIMELOCK_UPDATE,
        name="TimeLock Update",
        workflow_kind=WorkflowKind.META_TX,
        description="Change the time-lock period with an owner-signed meta-transaction",
        param_keys=("new_timelock_period_seconds",),
        required_roles={
            OperationPhase.META_REQUEST_AND_APPROVE: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.META_REQUEST_AND_APPROVE: "updateTimeLockRequestAndApprove(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.WITHDRAW_ETH,
        name="Withdraw ETH",
        workflow_kind=WorkflowKind.TEMPORAL,
        description="Withdraw ETH from the vault to a specified address",
        is_core=False,
        allows_concurrent=True,
        param_keys=("to", "amount"),
        required_roles={
            OperationPhase.REQUEST: _OWNER,
            OperationPhase.APPROVE: _OWNER,
            OperationPhase.CANCEL: _OWNER,
            OperationPhase.META_APPROVE: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.REQUEST: "withdrawEthRequest(address,uint256)",
            OperationPhase.APPROVE: "approveWithdrawalAfterDelay(uint256)",
            OperationPhase.CANCEL: "cancelWithdrawal(uint256)",
            OperationPhase.META_APPROVE: "approveWithdrawalWithMetaTx(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.WITHDRAW_TOKEN,
        name="Withdraw Token",
        workflow_kind=WorkflowKind.TEMPORAL,
        description="Withdraw ERC20 tokens from the vault to a specified address",
        is_core=False,
        allows_concurrent=True,
        param_keys=("token", "to", "amount"),
        required_roles={
            OperationPhase.REQUEST: _OWNER,
            OperationPhase.APPROVE: _OWNER,
            OperationPhase.CANCEL: _OWNER,
            OperationPhase.META_APPROVE: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.REQUEST: "withdrawTokenRequest(address,address,uint256)",
            OperationPhase.APPROVE: "approveWithdrawalAfterDelay(uint256)",
            OperationPhase.CANCEL: "cancelWithdrawal(uint256)",
            OperationPhase.META_APPROVE: "approveWithdrawalWithMetaTx(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.MINT_TOKENS,
        name="Mint Tokens",
        workflow_kind=WorkflowKind.META_TX,
        description="Mint tokens to a specified address",
        is_core=False,
        allows_concurrent=True,
        param_keys=("to", "amount"),
        required_roles={
            OperationPhase.META_REQUEST_AND_APPROVE: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.META_REQUEST_AND_APPROVE: "mintWithMetaTx(bytes)",
        },
    ),
    OperationSpec(
        operation_type=OperationType.BURN_TOKENS,
        name="Burn Tokens",
        workflow_kind=WorkflowKind.META_TX,
        description="Burn tokens from a specified address",
        is_core=False,
        allows_concurrent=True,
        param_keys=("from", "amount"),
        required_roles={
            OperationPhase.META_REQUEST_AND_APPROVE: _OWNER,
            OperationPhase.BROADCAST: _BROADCASTER,
        },
        handler_signatures={
            OperationPhase.META_REQUEST_AND_APPROVE: "burnWithMetaTx(bytes)",
        },
    ),
)


class OperationRegistry:
    """Read-only lookup from operation ids to OperationSpec."""

    def __init__(self, specs: Iterable[OperationSpec] = DEFAULT_OPERATIONS) -> None:
        by_type: dict[OperationType, OperationSpec] = {}
        by_key: dict[str, OperationSpec] = {}
        for spec in specs:
            if spec.operation_type in by_type:
                raise ValueError(f"Duplicate registration for {spec.operation_type}")
            by_type[spec.operation_type] = spec
            by_key[spec.operation_type.value.lower()] = spec
            by_key[spec.type_hash.lower()] = spec
        self._by_type = MappingProxyType(by_type)
        self._by_key = MappingProxyType(by_key)

    def resolve(self, operation_type_id: OperationType | str) -> OperationSpec:
        """Resolve an enum member, canonical name, or keccak hash.

        Raises:
            UnknownOperationType: For ids outside the registry's knowledge.
                Filtering callers should skip the item rather than fail.
        """
        if isinstance(operation_type_id, OperationType):
            return self._by_type[operation_type_id]
        spec = self._by_key.get(str(operation_type_id).strip().lower())
        if spec is None:
            raise UnknownOperationType(str(operation_type_id))
        return spec

    def all(self) -> list[OperationSpec]:
        return list(self._by_type.values())

    def by_workflow_kind(self, kind: WorkflowKind) -> list[OperationSpec]:
        return [spec for spec in self._by_type.values() if spec.workflow_kind == kind]

    def requires_time_delay(self, operation_type_id: OperationType | str) -> bool:
        try:
            return self.resolve(operation_type_id).workflow_kind == WorkflowKind.TEMPORAL
        except UnknownOperationType:
            return False

    def __contains__(self, operation_type_id: object) -> bool:
        if not isinstance(operation_type_id, str):
            return False
        try:
            self.resolve(operation_type_id)
        except UnknownOperationType:
            return False
        return True
