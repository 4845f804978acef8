"""WorkflowManager: the single entry point surfaces call into.

Coordinates between:
    - OperationRegistry (which workflow model applies)
    - TemporalWorkflow / MetaTransactionEngine (the models themselves)
    - PendingOperationTracker (the merged local view)
    - NotificationSink (outcome events)

Every outcome is published: successes as ``success`` notifications, domain
errors verbatim as ``error`` notifications. A ChainCallFailed first triggers
a refresh, since the chain may have diverged from the local view.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, TypeVar

from secure_ops.domain.enums import NotificationLevel, OperationPhase, WorkflowKind
from secure_ops.domain.exceptions import ChainCallFailed, OperationNotFound, SecureOpsError
from secure_ops.domain.models import MetaTxOptions, Notification
from secure_ops.logging_config import get_logger
from secure_ops.services.meta_tx_engine import validate_options
from secure_ops.services.params import require_address

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from secure_ops.config import Settings
    from secure_ops.domain.enums import OperationType
    from secure_ops.domain.models import (
        ContractInfo,
        MetaTransactionPayload,
        SignedMetaTransaction,
        TxRecord,
    )
    from secure_ops.domain.protocols import NotificationSink
    from secure_ops.domain.registry import OperationRegistry
    from secure_ops.domain.role_guard import GuardedAction, RoleGuard
    from secure_ops.infrastructure.repositories import (
        MetaTxSettingsRepository,
        TokenListRepository,
    )
    from secure_ops.services.meta_tx_engine import MetaTransactionEngine
    from secure_ops.services.pending_tracker import PendingOperationTracker, PendingView
    from secure_ops.services.temporal_workflow import TemporalWorkflow

logger = get_logger(__name__)

T = TypeVar("T")

OperationScope = Literal["all", "core", "domain"]


class WorkflowManager:
    """Authorize, dispatch by workflow kind, and report the outcome."""

    def __init__(
        self,
        registry: OperationRegistry,
        guard: RoleGuard,
        tracker: PendingOperationTracker,
        temporal: TemporalWorkflow,
        engine: MetaTransactionEngine,
        notifier: NotificationSink,
        settings_repository: MetaTxSettingsRepository,
        token_repository: TokenListRepository,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.guard = guard
        self.tracker = tracker
        self.temporal = temporal
        self.engine = engine
        self._notifier = notifier
        self._settings_repo = settings_repository
        self._tokens = token_repository
        self._settings = settings

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def contract_info(self, contract_address: str, refresh: bool = False) -> ContractInfo:
        require_address(contract_address, "contract_address")
        return await self.tracker.get_contract_info(contract_address, refresh=refresh)

    async def can_execute(
        self, contract_address: str, action: GuardedAction | str, address: str
    ) -> bool:
        info = await self.contract_info(contract_address)
        return self.guard.authorize_address(action, address, info.roles)

    async def refresh(self, contract_address: str) -> list[TxRecord]:
        """Resolve outstanding broadcasts, then re-read operation history."""
        require_address(contract_address, "contract_address")
        await self.engine.reconcile_broadcasts(contract_address)
        return await self.tracker.refresh(contract_address)

    async def snapshot(self, contract_address: str) -> PendingView:
        require_address(contract_address, "contract_address")
        await self.engine.reconcile_broadcasts(contract_address)
        return await self.tracker.snapshot(contract_address)

    async def visible_operations(
        self, contract_address: str, scope: OperationScope = "all"
    ) -> list[TxRecord]:
        """Refreshed records, narrowed to core or domain operations."""
        records = await self.refresh(contract_address)
        if scope == "core":
            return self.tracker.core_operations(records)
        if scope == "domain":
            return self.tracker.domain_operations(records)
        return records

    # ------------------------------------------------------------------
    # Temporal + meta request
    # ------------------------------------------------------------------

    async def request(
        self,
        contract_address: str,
        operation_type: OperationType | str,
        params: dict | None,
        requester: str,
        options: MetaTxOptions | None = None,
    ) -> TxRecord | MetaTransactionPayload:
        """Start an operation with whichever model the registry assigns it.

        TEMPORAL operations return the PENDING TxRecord; META_TX operations
        return the unsigned payload to be signed externally.
        """
        async def _dispatch() -> TxRecord | MetaTransactionPayload:
            require_address(contract_address, "contract_address")
            spec = self.registry.resolve(operation_type)
            if spec.workflow_kind == WorkflowKind.TEMPORAL:
                return await self.temporal.request(
                    contract_address, spec.operation_type, params, requester
                )
            return await self.engine.build(
                contract_address,
                spec.operation_type,
                params,
                options=options,
                requester=requester,
            )

        return await self._run(
            "Request operation",
            contract_address,
            _dispatch(),
            lambda result: f"{result.operation_type} prepared on {contract_address}",
        )

    async def approve(self, contract_address: str, tx_id: int, approver: str) -> TxRecord:
        async def _approve() -> TxRecord:
            await self._ensure_record(contract_address, tx_id)
            return await self.temporal.approve(contract_address, tx_id, approver)

        return await self._run(
            "Approve operation",
            contract_address,
            _approve(),
            lambda record: f"{record.operation_type} {tx_id} approved",
        )

    async def cancel(self, contract_address: str, tx_id: int, canceller: str) -> TxRecord:
        async def _cancel() -> TxRecord:
            await self._ensure_record(contract_address, tx_id)
            return await self.temporal.cancel(contract_address, tx_id, canceller)

        return await self._run(
            "Cancel operation",
            contract_address,
            _cancel(),
            lambda record: f"{record.operation_type} {tx_id} cancelled",
        )

    # ------------------------------------------------------------------
    # Meta-transactions
    # ------------------------------------------------------------------

    async def prepare_meta_approval(
        self,
        contract_address: str,
        tx_id: int,
        options: MetaTxOptions | None = None,
        requester: str | None = None,
    ) -> MetaTransactionPayload:
        return await self._prepare_meta_settlement(
            contract_address, tx_id, OperationPhase.META_APPROVE, options, requester
        )

    async def prepare_meta_cancellation(
        self,
        contract_address: str,
        tx_id: int,
        options: MetaTxOptions | None = None,
        requester: str | None = None,
    ) -> MetaTransactionPayload:
        return await self._prepare_meta_settlement(
            contract_address, tx_id, OperationPhase.META_CANCEL, options, requester
        )

    async def _prepare_meta_settlement(
        self,
        contract_address: str,
        tx_id: int,
        phase: OperationPhase,
        options: MetaTxOptions | None,
        requester: str | None,
    ) -> MetaTransactionPayload:
        async def _build() -> MetaTransactionPayload:
            record = await self._ensure_record(contract_address, tx_id)
            return await self.engine.build(
                contract_address,
                record.operation_type,
                phase=phase,
                tx_id=tx_id,
                options=options,
                requester=requester,
            )

        return await self._run(
            "Prepare meta-transaction",
            contract_address,
            _build(),
            lambda payload: f"{phase} for operation {tx_id} ready to sign",
        )

    async def submit_signature(
        self, payload: MetaTransactionPayload, signature: str
    ) -> SignedMetaTransaction:
        """Verify and store a signature; the entry then awaits broadcast."""

        async def _attach_and_store() -> SignedMetaTransaction:
            signed = await self.engine.attach_signature(payload, signature)
            return await self.engine.store(signed)

        return await self._run(
            "Sign meta-transaction",
            payload.contract_address,
            _attach_and_store(),
            lambda signed: f"Meta-transaction {signed.id} stored for broadcast",
        )

    async def broadcast(
        self,
        contract_address: str,
        meta_tx_id: str,
        broadcaster: str,
        current_gas_price: int | None = None,
    ) -> SignedMetaTransaction:
        async def _broadcast() -> SignedMetaTransaction:
            signed = await self.engine.get_signed(contract_address, meta_tx_id)
            return await self.engine.broadcast(signed, broadcaster, current_gas_price)

        return await self._run(
            "Broadcast meta-transaction",
            contract_address,
            _broadcast(),
            lambda signed: f"Meta-transaction {signed.id} confirmed in {signed.tx_hash}",
        )

    async def list_signed(self, contract_address: str) -> list[SignedMetaTransaction]:
        require_address(contract_address, "contract_address")
        return await self.engine.list_signed(contract_address)

    async def purge_expired(self, contract_address: str) -> list[SignedMetaTransaction]:
        require_address(contract_address, "contract_address")
        return await self.engine.purge_expired(contract_address)

    # ------------------------------------------------------------------
    # Settings + tokens
    # ------------------------------------------------------------------

    async def get_meta_tx_settings(self, contract_address: str) -> MetaTxOptions:
        stored = await self._settings_repo.get(contract_address)
        return MetaTxOptions(
            deadline_seconds=stored.deadline_seconds or self._settings.meta_tx_deadline_seconds,
            max_gas_price_wei=stored.max_gas_price_wei or self._settings.meta_tx_max_gas_price_wei,
        )

    async def save_meta_tx_settings(
        self, contract_address: str, options: MetaTxOptions
    ) -> MetaTxOptions:
        require_address(contract_address, "contract_address")
        validate_options(options, self._settings)
        await self._settings_repo.save(contract_address, options)
        logger.info(
            "metatx.settings_saved",
            contract=contract_address,
            deadline_seconds=options.deadline_seconds,
            max_gas_price_wei=options.max_gas_price_wei,
        )
        return await self.get_meta_tx_settings(contract_address)

    async def list_tokens(self, contract_address: str) -> list[dict]:
        return await self._tokens.list(contract_address)

    async def add_token(
        self, contract_address: str, token_address: str, metadata: dict | None = None
    ) -> list[dict]:
        require_address(token_address, "token")
        return await self._tokens.add(contract_address, token_address, metadata)

    async def remove_token(self, contract_address: str, token_address: str) -> list[dict]:
        return await self._tokens.remove(contract_address, token_address)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _ensure_record(self, contract_address: str, tx_id: int) -> TxRecord:
        """Return the record, fetching history once if it is not known locally."""
        try:
            return self.tracker.get(contract_address, tx_id)
        except OperationNotFound:
            await self.tracker.refresh(contract_address)
            return self.tracker.get(contract_address, tx_id)

    async def _run(
        self,
        title: str,
        contract_address: str,
        operation: Awaitable[T],
        describe: Callable[[T], str],
    ) -> T:
        try:
            result = await operation
        except ChainCallFailed as exc:
            await self._refresh_after_failure(contract_address)
            self._publish(NotificationLevel.ERROR, title, exc.message)
            raise
        except SecureOpsError as exc:
            self._publish(NotificationLevel.ERROR, title, exc.message)
            raise
        self._publish(NotificationLevel.SUCCESS, title, describe(result))
        return result

    async def _refresh_after_failure(self, contract_address: str) -> None:
        self.tracker.invalidate_contract_info(contract_address)
        try:
            await self.engine.reconcile_broadcasts(contract_address)
            await self.tracker.refresh(contract_address)
        except SecureOpsError as exc:
            logger.warning("workflow.refresh_failed", contract=contract_address, error=exc.message)

    def _publish(self, level: NotificationLevel, title: str, description: str) -> None:
        self._notifier.notify(Notification(level=level, title=title, description=description))
