"""TemporalWorkflow: the two-phase, time-locked request/approve/cancel model.

This is the application layer that coordinates between:
    - RoleGuard (who may act)
    - TxLifecycleMachine (which transitions are legal)
    - ChainClient (where the operation actually lives)
    - PendingOperationTracker (the local view)

State is only mutated after the chain has confirmed the call. A failed or
abandoned chain call leaves the local view untouched.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from secure_ops.clock import system_clock
from secure_ops.domain.enums import OperationPhase, OperationType, TxStatus, WorkflowKind
from secure_ops.domain.exceptions import (
    AlreadySettled,
    ChainCallFailed,
    DuplicatePendingOperation,
    InvalidOperationParams,
    NotReady,
)
from secure_ops.domain.models import TxRecord, normalize_address
from secure_ops.domain.protocols import CallDescriptor
from secure_ops.domain.role_guard import GuardedAction
from secure_ops.domain.state_machine import TxLifecycleMachine, fire_transition
from secure_ops.logging_config import get_logger
from secure_ops.services.chain_calls import submit_and_wait
from secure_ops.services.params import validate_params

if TYPE_CHECKING:
    from secure_ops.clock import Clock
    from secure_ops.config import Settings
    from secure_ops.domain.protocols import ChainClient
    from secure_ops.domain.registry import OperationRegistry
    from secure_ops.domain.role_guard import RoleGuard
    from secure_ops.services.pending_tracker import PendingOperationTracker

logger = get_logger(__name__)

# Settling these changes the contract's RoleSet or time-lock period
ROLE_CHANGING_OPERATIONS = frozenset(
    {
        OperationType.OWNERSHIP_TRANSFER,
        OperationType.BROADCASTER_UPDATE,
        OperationType.RECOVERY_UPDATE,
        OperationType.TIMELOCK_UPDATE,
    }
)


class TemporalWorkflow:
    """Drives TEMPORAL operations through NONE -> PENDING -> COMPLETED | CANCELLED."""

    def __init__(
        self,
        chain: ChainClient,
        registry: OperationRegistry,
        guard: RoleGuard,
        tracker: PendingOperationTracker,
        settings: Settings,
        clock: Clock = system_clock,
    ) -> None:
        self._chain = chain
        self._registry = registry
        self._guard = guard
        self._tracker = tracker
        self._settings = settings
        self._clock = clock
        self._inflight: set[tuple[str, OperationType]] = set()

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request(
        self,
        contract_address: str,
        operation_type: OperationType | str,
        params: dict | None,
        requester: str,
    ) -> TxRecord:
        """Open a time-locked request; returns the PENDING record."""
        spec = self._registry.resolve(operation_type)
        if spec.workflow_kind != WorkflowKind.TEMPORAL:
            raise InvalidOperationParams(f"{spec.name} is not a two-phase operation")

        info = await self._tracker.get_contract_info(contract_address)
        self._guard.require(
            GuardedAction(spec.operation_type, OperationPhase.REQUEST), requester, info.roles
        )

        params = dict(params or {})
        if spec.operation_type == OperationType.OWNERSHIP_TRANSFER:
            params.setdefault("new_owner", info.roles.recovery)
            params.setdefault("old_owner", info.roles.owner)
        params = validate_params(spec, params, self._settings)

        slot = (normalize_address(contract_address), spec.operation_type)
        if not spec.allows_concurrent:
            existing = self._tracker.find_pending(contract_address, spec.operation_type)
            if existing is not None:
                raise DuplicatePendingOperation(contract_address, spec.operation_type, existing.tx_id)
            if slot in self._inflight:
                raise DuplicatePendingOperation(contract_address, spec.operation_type, None)

        # Validates NONE -> PENDING before anything is sent
        status = fire_transition(TxLifecycleMachine, TxStatus.NONE.value, "open_request")

        self._inflight.add(slot)
        try:
            receipt = await submit_and_wait(
                self._chain,
                CallDescriptor(
                    contract_address=contract_address,
                    function="request",
                    sender=requester,
                    operation_type=spec.operation_type,
                    args={"params": params, "selector": spec.selector(OperationPhase.REQUEST)},
                ),
                self._settings.broadcast_timeout_seconds,
            )
        finally:
            self._inflight.discard(slot)

        if receipt.tx_id is None:
            raise ChainCallFailed("Request receipt carried no operation id", tx_hash=receipt.tx_hash)

        requested_at = receipt.block_timestamp if receipt.block_timestamp is not None else self._clock()
        record = TxRecord(
            tx_id=receipt.tx_id,
            contract_address=contract_address,
            operation_type=spec.operation_type,
            status=TxStatus(status),
            requested_at=requested_at,
            release_time=requested_at + info.timelock_period_seconds,
            params=params,
            requester=requester,
        )
        self._tracker.track(record)

        logger.info(
            "temporal.requested",
            contract=contract_address,
            operation=spec.operation_type.value,
            tx_id=record.tx_id,
            release_time=record.release_time,
        )
        return record

    # ------------------------------------------------------------------
    # Approve / Cancel
    # ------------------------------------------------------------------

    async def approve(self, contract_address: str, tx_id: int, approver: str) -> TxRecord:
        """Approve a PENDING record once its time-lock has elapsed."""
        record = self._tracker.get(contract_address, tx_id)
        await self._check_settleable(record, OperationPhase.APPROVE, approver)

        now = self._clock()
        if not record.is_ready(now):
            raise NotReady(tx_id, record.release_time, now)

        return await self._settle(record, OperationPhase.APPROVE, "approve_after_delay", approver)

    async def cancel(self, contract_address: str, tx_id: int, canceller: str) -> TxRecord:
        """Cancel a PENDING record; allowed at any time before settlement."""
        record = self._tracker.get(contract_address, tx_id)
        await self._check_settleable(record, OperationPhase.CANCEL, canceller)
        return await self._settle(record, OperationPhase.CANCEL, "cancel_request", canceller)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _check_settleable(self, record: TxRecord, phase: OperationPhase, caller: str) -> None:
        if record.status != TxStatus.PENDING:
            raise AlreadySettled(record.tx_id, record.status.value)
        info = await self._tracker.get_contract_info(record.contract_address)
        self._guard.require(GuardedAction(record.operation_type, phase), caller, info.roles)

    async def _settle(
        self, record: TxRecord, phase: OperationPhase, event_name: str, caller: str
    ) -> TxRecord:
        new_status = TxStatus(fire_transition(TxLifecycleMachine, record.status.value, event_name))
        spec = self._registry.resolve(record.operation_type)

        receipt = await submit_and_wait(
            self._chain,
            CallDescriptor(
                contract_address=record.contract_address,
                function=phase.value,
                sender=caller,
                operation_type=record.operation_type,
                args={"tx_id": record.tx_id, "selector": spec.selector(phase)},
            ),
            self._settings.broadcast_timeout_seconds,
        )

        settled = self._tracker.settle(record.contract_address, record.tx_id, new_status)
        if new_status == TxStatus.COMPLETED and record.operation_type in ROLE_CHANGING_OPERATIONS:
            self._tracker.invalidate_contract_info(record.contract_address)

        logger.info(
            f"temporal.{new_status.value.lower()}",
            contract=record.contract_address,
            operation=record.operation_type.value,
            tx_id=record.tx_id,
            tx_hash=receipt.tx_hash,
        )
        return settled or record.with_status(new_status)
