"""MetaTransactionEngine: build, sign, store, and broadcast meta-transactions.

A meta-transaction replaces the temporal delay with an explicit capability
check at broadcast time:
    - the signature recovers to the holder of the required role,
    - the deadline has not passed,
    - the network gas price is within the signed ceiling.

Signing itself is external. The engine hands out EIP-712 typed data and
accepts either a typed-data signature or a personal-sign signature over the
typed-data digest.

Broadcast lifecycle (BroadcastMachine):
    UNBROADCAST -> BROADCASTED -> CONFIRMED | FAILED
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hexbytes import HexBytes
from web3 import Web3

from secure_ops.clock import system_clock
from secure_ops.domain.enums import (
    BroadcastStatus,
    NotificationLevel,
    OperationPhase,
    TxStatus,
)
from secure_ops.domain.exceptions import (
    AlreadySettled,
    ChainCallFailed,
    DuplicateMetaTransaction,
    Expired,
    GasPriceExceeded,
    InvalidOperationParams,
    InvalidSignature,
    OperationNotFound,
    SignerMismatch,
    Unauthorized,
)
from secure_ops.domain.models import (
    MetaTransactionPayload,
    MetaTxOptions,
    Notification,
    SignedMetaTransaction,
    same_address,
)
from secure_ops.domain.protocols import CallDescriptor, ChainQuery
from secure_ops.domain.role_guard import GuardedAction
from secure_ops.domain.signing import build_typed_data, hash_params, meta_tx_id, recover_signers
from secure_ops.domain.state_machine import BroadcastMachine, TxLifecycleMachine, fire_transition
from secure_ops.logging_config import get_logger
from secure_ops.services.chain_calls import read_with_retry, submit_call, wait_receipt
from secure_ops.services.params import require_address, validate_params
from secure_ops.services.temporal_workflow import ROLE_CHANGING_OPERATIONS

if TYPE_CHECKING:
    from secure_ops.clock import Clock
    from secure_ops.config import Settings
    from secure_ops.domain.enums import OperationType, Role
    from secure_ops.domain.protocols import ChainClient, NotificationSink, Receipt
    from secure_ops.domain.registry import OperationRegistry, OperationSpec
    from secure_ops.domain.role_guard import RoleGuard
    from secure_ops.infrastructure.repositories import (
        MetaTxSettingsRepository,
        NonceRepository,
        SignedMetaTxRepository,
    )
    from secure_ops.services.pending_tracker import PendingOperationTracker

logger = get_logger(__name__)

# Settlement a confirmed meta-tx applies to an existing temporal record
_SETTLEMENT_EVENTS = {
    OperationPhase.META_APPROVE: "approve_with_signature",
    OperationPhase.META_CANCEL: "cancel_request",
}


class MetaTransactionEngine:
    """Owns the off-chain half of the META_TX workflow model."""

    def __init__(
        self,
        chain: ChainClient,
        registry: OperationRegistry,
        guard: RoleGuard,
        tracker: PendingOperationTracker,
        meta_tx_repository: SignedMetaTxRepository,
        nonce_repository: NonceRepository,
        settings_repository: MetaTxSettingsRepository,
        notifier: NotificationSink,
        settings: Settings,
        clock: Clock = system_clock,
    ) -> None:
        self._chain = chain
        self._registry = registry
        self._guard = guard
        self._tracker = tracker
        self._repo = meta_tx_repository
        self._nonces = nonce_repository
        self._settings_repo = settings_repository
        self._notifier = notifier
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(
        self,
        contract_address: str,
        operation_type: OperationType | str,
        params: dict | None = None,
        *,
        phase: OperationPhase | None = None,
        tx_id: int | None = None,
        signer_role: Role | None = None,
        options: MetaTxOptions | None = None,
        requester: str | None = None,
    ) -> MetaTransactionPayload:
        """Construct an unsigned payload with a fresh nonce.

        Without ``tx_id`` the payload requests and approves a new operation in
        one step. With ``tx_id`` it approves (default) or cancels an existing
        PENDING record, bypassing the time-lock once confirmed.
        """
        require_address(contract_address, "contract_address")
        spec = self._registry.resolve(operation_type)
        phase = self._resolve_phase(spec, phase, tx_id)

        if tx_id is not None:
            record = self._tracker.get(contract_address, tx_id)
            if record.operation_type != spec.operation_type:
                raise InvalidOperationParams(
                    f"Operation {tx_id} is {record.operation_type}, not {spec.operation_type}"
                )
            if record.status != TxStatus.PENDING:
                raise AlreadySettled(tx_id, record.status.value)
            params = dict(record.params)
        else:
            params = validate_params(spec, params, self._settings)

        info = await self._tracker.get_contract_info(contract_address)
        required = spec.roles_for(phase)
        if signer_role is not None and signer_role not in required:
            raise Unauthorized(GuardedAction(spec.operation_type, phase).slug, str(signer_role))
        role = signer_role or sorted(required)[0]
        signer = info.roles.address_of(role)
        if not info.roles.is_assigned(role):
            raise Unauthorized(GuardedAction(spec.operation_type, phase).slug, signer)
        if requester is not None:
            self._guard.require(GuardedAction(spec.operation_type, phase), requester, info.roles)

        deadline_seconds, max_gas_price = await self._resolve_options(contract_address, options)

        chain_nonce = await read_with_retry(
            self._chain,
            ChainQuery(contract_address, "nonce", {"operation_type": spec.operation_type}),
            self._settings.chain_read_attempts,
        )
        nonce = await self._nonces.reserve(contract_address, spec.operation_type, int(chain_nonce))

        now = self._clock()
        payload = MetaTransactionPayload(
            id=meta_tx_id(contract_address, nonce, spec.type_hash),
            contract_address=contract_address,
            chain_id=info.chain_id,
            operation_type=spec.operation_type,
            phase=phase,
            nonce=nonce,
            handler_selector=spec.selector(phase),
            params_hash=hash_params(params),
            deadline=now + deadline_seconds,
            max_gas_price=max_gas_price,
            signer=signer,
            created_at=now,
            tx_id=tx_id,
            params=params,
        )
        logger.info(
            "metatx.built",
            contract=contract_address,
            operation=spec.operation_type.value,
            phase=phase.value,
            meta_tx_id=payload.id,
            nonce=nonce,
        )
        return payload

    def typed_data(self, payload: MetaTransactionPayload) -> dict:
        spec = self._registry.resolve(payload.operation_type)
        return build_typed_data(
            payload,
            spec.type_hash,
            self._settings.eip712_domain_name,
            self._settings.eip712_domain_version,
        )

    @staticmethod
    def _resolve_phase(
        spec: OperationSpec, phase: OperationPhase | None, tx_id: int | None
    ) -> OperationPhase:
        if tx_id is None:
            phase = phase or OperationPhase.META_REQUEST_AND_APPROVE
            if phase != OperationPhase.META_REQUEST_AND_APPROVE:
                raise InvalidOperationParams(f"{phase} requires an existing tx_id")
        else:
            phase = phase or OperationPhase.META_APPROVE
            if phase not in _SETTLEMENT_EVENTS:
                raise InvalidOperationParams(f"{phase} cannot act on existing operation {tx_id}")
        if not spec.supports(phase):
            raise InvalidOperationParams(f"{spec.name} does not support {phase}")
        return phase

    async def _resolve_options(
        self, contract_address: str, options: MetaTxOptions | None
    ) -> tuple[int, int]:
        """Caller options, then stored per-contract settings, then defaults."""
        stored = await self._settings_repo.get(contract_address)
        options = options or MetaTxOptions()
        deadline_seconds = _first_set(
            options.deadline_seconds,
            stored.deadline_seconds,
            self._settings.meta_tx_deadline_seconds,
        )
        max_gas_price = _first_set(
            options.max_gas_price_wei,
            stored.max_gas_price_wei,
            self._settings.meta_tx_max_gas_price_wei,
        )
        validate_options(MetaTxOptions(deadline_seconds, max_gas_price), self._settings)
        return deadline_seconds, max_gas_price

    # ------------------------------------------------------------------
    # Sign / store
    # ------------------------------------------------------------------

    async def attach_signature(
        self, payload: MetaTransactionPayload, signature: str | bytes
    ) -> SignedMetaTransaction:
        """Verify ``signature`` against the payload's expected signer.

        Payloads round-trip through external signers, so the derived fields
        (id, params hash) are recomputed before anything is recovered.
        """
        spec = self._registry.resolve(payload.operation_type)
        if payload.id.lower() != meta_tx_id(payload.contract_address, payload.nonce, spec.type_hash):
            raise InvalidSignature("payload id does not match its contract, nonce and operation")
        if payload.params_hash.lower() != hash_params(payload.params):
            raise InvalidSignature("payload params do not match the signed params hash")

        candidates = recover_signers(self.typed_data(payload), signature)
        recovered = next((c for c in candidates if same_address(c, payload.signer)), None)
        if recovered is None:
            raise SignerMismatch(payload.signer, candidates[0])

        # The role may have moved since the payload was built
        info = await self._tracker.get_contract_info(payload.contract_address)
        action = GuardedAction(payload.operation_type, payload.phase)
        if not self._guard.authorize_address(action, recovered, info.roles):
            raise SignerMismatch(payload.signer, recovered)

        signed = SignedMetaTransaction(
            payload=payload,
            signature=Web3.to_hex(HexBytes(signature)),
            signed_at=self._clock(),
        )
        logger.info("metatx.signed", contract=payload.contract_address, meta_tx_id=payload.id)
        return signed

    async def store(self, signed: SignedMetaTransaction) -> SignedMetaTransaction:
        """Persist a signed meta-transaction awaiting broadcast.

        Raises:
            DuplicateMetaTransaction: If an equivalent entry is still live.
        """
        await self.reconcile_broadcasts(signed.contract_address)
        now = self._clock()
        for existing in await self._repo.list(signed.contract_address):
            if not self._is_equivalent(existing, signed):
                continue
            if self._is_live(existing, now):
                raise DuplicateMetaTransaction(signed.contract_address, existing.id)
            await self._repo.delete(existing.contract_address, existing.id)

        await self._repo.put(signed)
        logger.info(
            "metatx.stored",
            contract=signed.contract_address,
            meta_tx_id=signed.id,
            deadline=signed.deadline,
        )
        return signed

    def _is_equivalent(self, a: SignedMetaTransaction, b: SignedMetaTransaction) -> bool:
        if a.id == b.id:
            return True
        if a.payload.operation_type != b.payload.operation_type:
            return False
        if a.payload.tx_id is not None or b.payload.tx_id is not None:
            return a.payload.tx_id == b.payload.tx_id
        return not self._registry.resolve(a.payload.operation_type).allows_concurrent

    @staticmethod
    def _is_live(signed: SignedMetaTransaction, now: int) -> bool:
        if signed.broadcast_status == BroadcastStatus.BROADCASTED:
            return True
        return signed.broadcast_status == BroadcastStatus.UNBROADCAST and not signed.is_expired(now)

    async def list_signed(self, contract_address: str) -> list[SignedMetaTransaction]:
        return await self._repo.list(contract_address)

    async def get_signed(self, contract_address: str, signed_id: str) -> SignedMetaTransaction:
        signed = await self._repo.get(contract_address, signed_id)
        if signed is None:
            raise OperationNotFound(contract_address, signed_id)
        return signed

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        signed: SignedMetaTransaction,
        broadcaster: str,
        current_gas_price: int | None = None,
    ) -> SignedMetaTransaction:
        """Hand a signed meta-transaction to the chain as ``broadcaster``.

        Checks run before anything is sent, so a rejected broadcast leaves the
        stored entry untouched.

        Raises:
            Expired: ``now > deadline``.
            GasPriceExceeded: ``current_gas_price > max_gas_price``.
            ChainCallFailed: Submission failed, the receipt timed out (entry
                stays BROADCASTED until reconcile_broadcasts sees its
                receipt), or the transaction reverted (FAILED).
        """
        stored = await self._repo.get(signed.contract_address, signed.id) or signed
        if stored.broadcast_status != BroadcastStatus.UNBROADCAST:
            raise AlreadySettled(stored.id, stored.broadcast_status.value)

        info = await self._tracker.get_contract_info(stored.contract_address)
        self._guard.require(
            GuardedAction(stored.payload.operation_type, OperationPhase.BROADCAST),
            broadcaster,
            info.roles,
        )

        now = self._clock()
        if stored.is_expired(now):
            raise Expired(stored.id, stored.deadline, now)

        if current_gas_price is None:
            current_gas_price = int(
                await read_with_retry(
                    self._chain,
                    ChainQuery(stored.contract_address, "gas_price"),
                    self._settings.chain_read_attempts,
                )
            )
        if current_gas_price > stored.max_gas_price:
            raise GasPriceExceeded(current_gas_price, stored.max_gas_price)

        settlement = None
        if stored.payload.tx_id is not None:
            record = self._tracker.get(stored.contract_address, stored.payload.tx_id)
            if record.status != TxStatus.PENDING:
                raise AlreadySettled(record.tx_id, record.status.value)
            settlement = TxStatus(
                fire_transition(
                    TxLifecycleMachine,
                    record.status.value,
                    _SETTLEMENT_EVENTS[stored.payload.phase],
                )
            )

        handle = await submit_call(
            self._chain,
            CallDescriptor(
                contract_address=stored.contract_address,
                function="execute_meta_tx",
                sender=broadcaster,
                operation_type=stored.payload.operation_type,
                args={"meta_transaction": stored, "gas_price": current_gas_price},
            ),
            self._settings.broadcast_timeout_seconds,
        )
        stored = self._advance(stored, "accept_broadcast", handle.tx_hash)
        await self._repo.put(stored)
        logger.info(
            "metatx.broadcasted",
            contract=stored.contract_address,
            meta_tx_id=stored.id,
            tx_hash=handle.tx_hash,
        )

        receipt = await wait_receipt(
            handle, self._settings.broadcast_timeout_seconds, require_success=False
        )

        if not receipt.success:
            stored = await self._record_failure(stored, receipt)
            raise ChainCallFailed(
                f"Meta-transaction {stored.id} reverted: {receipt.error or 'no reason given'}",
                tx_hash=receipt.tx_hash,
            )
        return await self._record_confirmation(stored, receipt, settlement)

    async def reconcile_broadcasts(self, contract_address: str) -> list[SignedMetaTransaction]:
        """Resolve BROADCASTED entries whose receipt the chain now reports.

        A broadcast whose receipt wait timed out is left BROADCASTED. Once the
        chain has a receipt for its tx hash, the entry is confirmed (removed,
        linked record settled) or marked FAILED. Entries still unmined stay
        as they are.
        """
        resolved = []
        for stored in await self._repo.list(contract_address):
            if stored.broadcast_status != BroadcastStatus.BROADCASTED or not stored.tx_hash:
                continue
            receipt = await read_with_retry(
                self._chain,
                ChainQuery(stored.contract_address, "receipt", {"tx_hash": stored.tx_hash}),
                self._settings.chain_read_attempts,
            )
            if receipt is None:
                continue

            if receipt.success:
                stored = await self._record_confirmation(
                    stored, receipt, self._settlement_for(stored)
                )
                level, title = NotificationLevel.SUCCESS, "Meta-transaction confirmed"
                description = f"Meta-transaction {stored.id} confirmed in {receipt.tx_hash}"
            else:
                stored = await self._record_failure(stored, receipt)
                level, title = NotificationLevel.ERROR, "Meta-transaction failed"
                description = (
                    f"Meta-transaction {stored.id} reverted: {receipt.error or 'no reason given'}"
                )
            resolved.append(stored)
            self._notifier.notify(Notification(level=level, title=title, description=description))

        if resolved:
            logger.info("metatx.reconciled", contract=contract_address, count=len(resolved))
        return resolved

    @staticmethod
    def _settlement_for(signed: SignedMetaTransaction) -> TxStatus | None:
        if signed.payload.tx_id is None:
            return None
        return TxStatus(
            fire_transition(
                TxLifecycleMachine,
                TxStatus.PENDING.value,
                _SETTLEMENT_EVENTS[signed.payload.phase],
            )
        )

    async def _record_failure(
        self, stored: SignedMetaTransaction, receipt: Receipt
    ) -> SignedMetaTransaction:
        stored = self._advance(stored, "fail_receipt", receipt.tx_hash)
        await self._repo.put(stored)
        logger.warning(
            "metatx.broadcast_failed",
            contract=stored.contract_address,
            meta_tx_id=stored.id,
            error=receipt.error,
        )
        return stored

    async def _record_confirmation(
        self, stored: SignedMetaTransaction, receipt: Receipt, settlement: TxStatus | None
    ) -> SignedMetaTransaction:
        stored = self._advance(stored, "confirm_receipt", receipt.tx_hash)
        await self._repo.delete(stored.contract_address, stored.id)

        if settlement is not None:
            self._tracker.settle(stored.contract_address, stored.payload.tx_id, settlement)
        if (
            settlement in (None, TxStatus.COMPLETED)
            and stored.payload.operation_type in ROLE_CHANGING_OPERATIONS
        ):
            self._tracker.invalidate_contract_info(stored.contract_address)

        logger.info(
            "metatx.broadcast_confirmed",
            contract=stored.contract_address,
            meta_tx_id=stored.id,
            tx_hash=receipt.tx_hash,
        )
        return stored

    @staticmethod
    def _advance(
        signed: SignedMetaTransaction, event_name: str, tx_hash: str
    ) -> SignedMetaTransaction:
        status = fire_transition(BroadcastMachine, signed.broadcast_status.value, event_name)
        return signed.with_broadcast_status(BroadcastStatus(status), tx_hash)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def purge_expired(self, contract_address: str) -> list[SignedMetaTransaction]:
        """Remove never-broadcast entries whose deadline has passed."""
        now = self._clock()
        purged = []
        for signed in await self._repo.list(contract_address):
            if signed.broadcast_status != BroadcastStatus.UNBROADCAST or not signed.is_expired(now):
                continue
            await self._repo.delete(contract_address, signed.id)
            purged.append(signed)
            self._notifier.notify(
                Notification(
                    level=NotificationLevel.WARNING,
                    title="Meta-transaction expired",
                    description=(
                        f"{signed.payload.operation_type} meta-transaction {signed.id} "
                        f"passed its deadline unbroadcast and was removed"
                    ),
                )
            )
        if purged:
            logger.info("metatx.purged", contract=contract_address, count=len(purged))
        return purged


def _first_set(*values: int | None) -> int:
    return next(v for v in values if v is not None)


def validate_options(options: MetaTxOptions, settings: Settings) -> MetaTxOptions:
    """Check a deadline buffer and gas ceiling against policy."""
    if options.deadline_seconds is not None and not (
        0 < options.deadline_seconds <= settings.meta_tx_signature_validity_seconds
    ):
        raise InvalidOperationParams(
            f"Deadline must be between 1 and {settings.meta_tx_signature_validity_seconds} seconds"
        )
    if options.max_gas_price_wei is not None and options.max_gas_price_wei <= 0:
        raise InvalidOperationParams("Max gas price must be positive")
    return options
