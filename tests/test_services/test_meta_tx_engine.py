"""Tests for the MetaTransactionEngine build/sign/store/broadcast pipeline.

Signatures are produced with real keys, and broadcasts execute against the
simulated chain, which re-verifies the signature, deadline and gas ceiling.
"""

from __future__ import annotations

import asyncio
import dataclasses

import pytest

from secure_ops.config import GWEI, SECONDS_PER_DAY
from secure_ops.container import build_container
from secure_ops.domain.enums import (
    BroadcastStatus,
    NotificationLevel,
    OperationPhase,
    OperationType,
    Role,
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
from secure_ops.domain.models import MetaTxOptions
from secure_ops.domain.protocols import ChainQuery

ETHER = 10**18


@pytest.fixture
def engine(manager):
    return manager.engine


@pytest.fixture
def new_recovery(outsider) -> str:
    return outsider.address


async def _signed_and_stored(engine, payload, account, sign, personal=False):
    signature = sign(account, engine.typed_data(payload), personal=personal)
    signed = await engine.attach_signature(payload, signature)
    return await engine.store(signed)


@dataclasses.dataclass
class _UnminedHandle:
    """A handle whose receipt does not arrive within the broadcast timeout."""

    tx_hash: str

    async def wait(self):
        await asyncio.sleep(1)
        raise AssertionError("receipt wait should have timed out")


class _SlowReceiptChain:
    """Simulated chain whose meta-tx receipts arrive after the caller gave up.

    The transaction is still executed; ``mined=False`` also hides it from
    receipt lookups, as for a transaction sitting in the mempool.
    """

    def __init__(self, chain) -> None:
        self._chain = chain
        self.mined = True

    async def submit(self, call):
        handle = await self._chain.submit(call)
        if call.function == "execute_meta_tx":
            return _UnminedHandle(handle.tx_hash)
        return handle

    async def read(self, query: ChainQuery):
        if query.name == "receipt" and not self.mined:
            return None
        return await self._chain.read(query)


@pytest.fixture
def slow_chain(chain) -> _SlowReceiptChain:
    return _SlowReceiptChain(chain)


@pytest.fixture
def slow_container(settings, slow_chain, clock):
    impatient = settings.model_copy(update={"broadcast_timeout_seconds": 0.05})
    return build_container(impatient, chain=slow_chain, clock=clock)


class TestBuild:
    @pytest.mark.asyncio
    async def test_request_and_approve_payload(
        self, engine, clock, contract_address, owner, new_recovery
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )

        assert payload.phase == OperationPhase.META_REQUEST_AND_APPROVE
        assert payload.signer == owner.address
        assert payload.nonce == 0
        assert payload.chain_id == 31337
        assert payload.deadline == clock() + 3600
        assert payload.max_gas_price == 50 * GWEI
        assert payload.tx_id is None
        assert payload.id.startswith("0x") and len(payload.id) == 66

    @pytest.mark.asyncio
    async def test_nonces_are_reserved_locally(self, engine, contract_address, new_recovery) -> None:
        first = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        second = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        other = await engine.build(
            contract_address,
            OperationType.TIMELOCK_UPDATE,
            {"new_timelock_period_seconds": 3 * SECONDS_PER_DAY},
        )

        assert (first.nonce, second.nonce, other.nonce) == (0, 1, 0)
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_timelock_bounds_enforced(self, engine, contract_address) -> None:
        with pytest.raises(InvalidOperationParams, match="between 1 and 30 days"):
            await engine.build(
                contract_address,
                OperationType.TIMELOCK_UPDATE,
                {"new_timelock_period_seconds": 31 * SECONDS_PER_DAY},
            )

    @pytest.mark.asyncio
    async def test_new_request_needs_request_and_approve_support(
        self, engine, contract_address, beneficiary
    ) -> None:
        with pytest.raises(InvalidOperationParams, match="does not support"):
            await engine.build(
                contract_address, OperationType.WITHDRAW_ETH, {"to": beneficiary, "amount": 1}
            )

    @pytest.mark.asyncio
    async def test_settlement_phase_requires_tx_id(self, engine, contract_address) -> None:
        with pytest.raises(InvalidOperationParams, match="requires an existing tx_id"):
            await engine.build(
                contract_address, OperationType.OWNERSHIP_TRANSFER, phase=OperationPhase.META_APPROVE
            )

    @pytest.mark.asyncio
    async def test_signer_role_must_be_required(self, engine, contract_address, new_recovery) -> None:
        with pytest.raises(Unauthorized):
            await engine.build(
                contract_address,
                OperationType.RECOVERY_UPDATE,
                {"new_recovery": new_recovery},
                signer_role=Role.BROADCASTER,
            )

    @pytest.mark.asyncio
    async def test_requester_must_hold_role(
        self, engine, contract_address, broadcaster, new_recovery
    ) -> None:
        with pytest.raises(Unauthorized):
            await engine.build(
                contract_address,
                OperationType.RECOVERY_UPDATE,
                {"new_recovery": new_recovery},
                requester=broadcaster.address,
            )

    @pytest.mark.asyncio
    async def test_options_override_and_validation(
        self, engine, manager, clock, contract_address, new_recovery
    ) -> None:
        await manager.save_meta_tx_settings(
            contract_address, MetaTxOptions(deadline_seconds=600, max_gas_price_wei=30 * GWEI)
        )
        stored = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        assert stored.deadline == clock() + 600
        assert stored.max_gas_price == 30 * GWEI

        overridden = await engine.build(
            contract_address,
            OperationType.RECOVERY_UPDATE,
            {"new_recovery": new_recovery},
            options=MetaTxOptions(deadline_seconds=120),
        )
        assert overridden.deadline == clock() + 120
        assert overridden.max_gas_price == 30 * GWEI

        with pytest.raises(InvalidOperationParams, match="Deadline"):
            await engine.build(
                contract_address,
                OperationType.RECOVERY_UPDATE,
                {"new_recovery": new_recovery},
                options=MetaTxOptions(deadline_seconds=2 * SECONDS_PER_DAY),
            )
        with pytest.raises(InvalidOperationParams, match="gas price"):
            await engine.build(
                contract_address,
                OperationType.RECOVERY_UPDATE,
                {"new_recovery": new_recovery},
                options=MetaTxOptions(max_gas_price_wei=0),
            )


class TestAttachSignature:
    @pytest.mark.asyncio
    async def test_typed_signature_accepted(
        self, engine, contract_address, owner, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await engine.attach_signature(payload, sign(owner, engine.typed_data(payload)))

        assert signed.broadcast_status == BroadcastStatus.UNBROADCAST
        assert signed.signature.startswith("0x") and len(signed.signature) == 132

    @pytest.mark.asyncio
    async def test_personal_signature_accepted(
        self, engine, contract_address, owner, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signature = sign(owner, engine.typed_data(payload), personal=True)

        signed = await engine.attach_signature(payload, signature)
        assert signed.id == payload.id

    @pytest.mark.asyncio
    async def test_wrong_signer(self, engine, contract_address, outsider, new_recovery, sign) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        with pytest.raises(SignerMismatch):
            await engine.attach_signature(payload, sign(outsider, engine.typed_data(payload)))

    @pytest.mark.asyncio
    async def test_tampered_params(
        self, engine, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signature = sign(owner, engine.typed_data(payload))
        tampered = dataclasses.replace(payload, params={"new_recovery": broadcaster.address})

        with pytest.raises(InvalidSignature, match="params hash"):
            await engine.attach_signature(tampered, signature)

    @pytest.mark.asyncio
    async def test_tampered_nonce(self, engine, contract_address, owner, new_recovery, sign) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signature = sign(owner, engine.typed_data(payload))

        with pytest.raises(InvalidSignature, match="payload id"):
            await engine.attach_signature(dataclasses.replace(payload, nonce=7), signature)

    @pytest.mark.asyncio
    async def test_signer_lost_role_since_build(
        self, engine, manager, chain, contract_address, owner, outsider, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        chain.contract(contract_address).owner = outsider.address
        manager.tracker.invalidate_contract_info(contract_address)

        with pytest.raises(SignerMismatch):
            await engine.attach_signature(payload, sign(owner, engine.typed_data(payload)))


class TestStore:
    @pytest.mark.asyncio
    async def test_equivalent_live_entry_is_rejected(
        self, engine, contract_address, owner, new_recovery, sign
    ) -> None:
        first = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        second = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        await _signed_and_stored(engine, first, owner, sign)

        with pytest.raises(DuplicateMetaTransaction) as exc_info:
            await _signed_and_stored(engine, second, owner, sign)
        assert exc_info.value.meta_tx_id == first.id

    @pytest.mark.asyncio
    async def test_expired_equivalent_is_replaced(
        self, engine, clock, contract_address, owner, new_recovery, sign
    ) -> None:
        first = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        await _signed_and_stored(engine, first, owner, sign)
        clock.advance(3601)

        second = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        await _signed_and_stored(engine, second, owner, sign)

        assert [s.id for s in await engine.list_signed(contract_address)] == [second.id]

    @pytest.mark.asyncio
    async def test_different_operations_coexist(
        self, engine, contract_address, owner, new_recovery, sign
    ) -> None:
        recovery_update = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        timelock_update = await engine.build(
            contract_address,
            OperationType.TIMELOCK_UPDATE,
            {"new_timelock_period_seconds": 2 * SECONDS_PER_DAY},
        )
        await _signed_and_stored(engine, recovery_update, owner, sign)
        await _signed_and_stored(engine, timelock_update, owner, sign)

        assert len(await engine.list_signed(contract_address)) == 2

    @pytest.mark.asyncio
    async def test_get_unknown(self, engine, contract_address) -> None:
        with pytest.raises(OperationNotFound):
            await engine.get_signed(contract_address, "0x" + "00" * 32)


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_recovery_update_end_to_end(
        self, engine, manager, chain, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)

        confirmed = await engine.broadcast(signed, broadcaster.address)

        assert confirmed.broadcast_status == BroadcastStatus.CONFIRMED
        assert confirmed.tx_hash is not None
        assert await engine.list_signed(contract_address) == []
        assert chain.contract(contract_address).recovery == new_recovery
        info = await manager.tracker.get_contract_info(contract_address)
        assert info.roles.recovery == new_recovery

        records = await manager.tracker.refresh(contract_address)
        assert records[-1].operation_type == OperationType.RECOVERY_UPDATE
        assert records[-1].status == TxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_timelock_update_changes_period(
        self, engine, manager, contract_address, owner, broadcaster, sign
    ) -> None:
        payload = await engine.build(
            contract_address,
            OperationType.TIMELOCK_UPDATE,
            {"new_timelock_period_seconds": 14 * SECONDS_PER_DAY},
        )
        signed = await _signed_and_stored(engine, payload, owner, sign, personal=True)
        await engine.broadcast(signed, broadcaster.address)

        info = await manager.tracker.get_contract_info(contract_address)
        assert info.timelock_period_seconds == 14 * SECONDS_PER_DAY

    @pytest.mark.asyncio
    async def test_broadcast_at_deadline_succeeds(
        self, engine, clock, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)
        clock.now = payload.deadline

        confirmed = await engine.broadcast(signed, broadcaster.address)
        assert confirmed.broadcast_status == BroadcastStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_broadcast_after_deadline_expires(
        self, engine, clock, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)
        clock.now = payload.deadline + 1

        with pytest.raises(Expired):
            await engine.broadcast(signed, broadcaster.address)
        stored = await engine.get_signed(contract_address, signed.id)
        assert stored.broadcast_status == BroadcastStatus.UNBROADCAST

    @pytest.mark.asyncio
    async def test_gas_price_ceiling(
        self, engine, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address,
            OperationType.RECOVERY_UPDATE,
            {"new_recovery": new_recovery},
            options=MetaTxOptions(max_gas_price_wei=30 * GWEI),
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)

        with pytest.raises(GasPriceExceeded):
            await engine.broadcast(signed, broadcaster.address, current_gas_price=30 * GWEI + 1)

        confirmed = await engine.broadcast(signed, broadcaster.address, current_gas_price=30 * GWEI)
        assert confirmed.broadcast_status == BroadcastStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_gas_price_read_from_chain(
        self, engine, chain, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)
        chain.set_gas_price(payload.max_gas_price + 1)

        with pytest.raises(GasPriceExceeded) as exc_info:
            await engine.broadcast(signed, broadcaster.address)
        assert exc_info.value.current_gas_price == payload.max_gas_price + 1

    @pytest.mark.asyncio
    async def test_only_broadcaster_may_broadcast(
        self, engine, contract_address, owner, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)

        with pytest.raises(Unauthorized):
            await engine.broadcast(signed, owner.address)

    @pytest.mark.asyncio
    async def test_reverted_broadcast_is_terminal(
        self, engine, chain, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)
        chain.fail_next("out of gas")

        with pytest.raises(ChainCallFailed, match="out of gas"):
            await engine.broadcast(signed, broadcaster.address)

        stored = await engine.get_signed(contract_address, signed.id)
        assert stored.broadcast_status == BroadcastStatus.FAILED
        assert stored.tx_hash is not None
        with pytest.raises(AlreadySettled):
            await engine.broadcast(stored, broadcaster.address)


class TestSettleExistingOperation:
    @pytest.mark.asyncio
    async def test_meta_approval_bypasses_timelock(
        self, engine, manager, chain, contract_address, owner, broadcaster, beneficiary, sign
    ) -> None:
        record = await manager.temporal.request(
            contract_address,
            OperationType.WITHDRAW_ETH,
            {"to": beneficiary, "amount": ETHER},
            owner.address,
        )
        before = chain.contract(contract_address).balance

        payload = await engine.build(contract_address, OperationType.WITHDRAW_ETH, tx_id=record.tx_id)
        assert payload.phase == OperationPhase.META_APPROVE
        assert payload.params == record.params

        signed = await _signed_and_stored(engine, payload, owner, sign)
        await engine.broadcast(signed, broadcaster.address)

        assert manager.tracker.get(contract_address, record.tx_id).status == TxStatus.COMPLETED
        assert chain.contract(contract_address).balance == before - ETHER

    @pytest.mark.asyncio
    async def test_meta_cancellation(
        self, engine, manager, contract_address, owner, recovery, broadcaster, sign
    ) -> None:
        record = await manager.temporal.request(
            contract_address, OperationType.OWNERSHIP_TRANSFER, None, recovery.address
        )
        payload = await engine.build(
            contract_address,
            OperationType.OWNERSHIP_TRANSFER,
            phase=OperationPhase.META_CANCEL,
            tx_id=record.tx_id,
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)
        await engine.broadcast(signed, broadcaster.address)

        assert manager.tracker.get(contract_address, record.tx_id).status == TxStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_settled_record_cannot_be_targeted(
        self, engine, manager, contract_address, owner, beneficiary
    ) -> None:
        record = await manager.temporal.request(
            contract_address,
            OperationType.WITHDRAW_ETH,
            {"to": beneficiary, "amount": ETHER},
            owner.address,
        )
        await manager.temporal.cancel(contract_address, record.tx_id, owner.address)

        with pytest.raises(AlreadySettled):
            await engine.build(contract_address, OperationType.WITHDRAW_ETH, tx_id=record.tx_id)

    @pytest.mark.asyncio
    async def test_operation_type_must_match_record(
        self, engine, manager, contract_address, owner, beneficiary
    ) -> None:
        record = await manager.temporal.request(
            contract_address,
            OperationType.WITHDRAW_ETH,
            {"to": beneficiary, "amount": ETHER},
            owner.address,
        )
        with pytest.raises(InvalidOperationParams, match="not BROADCASTER_UPDATE"):
            await engine.build(
                contract_address, OperationType.BROADCASTER_UPDATE, tx_id=record.tx_id
            )

    @pytest.mark.asyncio
    async def test_record_settled_before_broadcast(
        self, engine, manager, clock, contract_address, owner, broadcaster, beneficiary, sign
    ) -> None:
        record = await manager.temporal.request(
            contract_address,
            OperationType.WITHDRAW_ETH,
            {"to": beneficiary, "amount": ETHER},
            owner.address,
        )
        payload = await engine.build(contract_address, OperationType.WITHDRAW_ETH, tx_id=record.tx_id)
        signed = await _signed_and_stored(engine, payload, owner, sign)
        await manager.temporal.cancel(contract_address, record.tx_id, owner.address)

        with pytest.raises(AlreadySettled):
            await engine.broadcast(signed, broadcaster.address)


class TestPurge:
    @pytest.mark.asyncio
    async def test_expired_entries_removed_with_warning(
        self, engine, container, clock, contract_address, owner, new_recovery, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        await _signed_and_stored(engine, payload, owner, sign)

        assert await engine.purge_expired(contract_address) == []

        clock.advance(3601)
        purged = await engine.purge_expired(contract_address)

        assert [p.id for p in purged] == [payload.id]
        assert await engine.list_signed(contract_address) == []
        warning = container.recent.items()[-1]
        assert warning.level == NotificationLevel.WARNING
        assert payload.id in warning.description


class TestReceiptTimeout:
    @pytest.mark.asyncio
    async def test_landed_broadcast_is_confirmed_on_reconcile(
        self, slow_container, chain, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        engine = slow_container.manager.engine
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)

        with pytest.raises(ChainCallFailed, match="No receipt"):
            await engine.broadcast(signed, broadcaster.address)
        stored = await engine.get_signed(contract_address, signed.id)
        assert stored.broadcast_status == BroadcastStatus.BROADCASTED
        assert chain.contract(contract_address).recovery == new_recovery

        resolved = await engine.reconcile_broadcasts(contract_address)

        assert [r.broadcast_status for r in resolved] == [BroadcastStatus.CONFIRMED]
        assert resolved[0].tx_hash == stored.tx_hash
        assert await engine.list_signed(contract_address) == []
        info = await slow_container.manager.tracker.get_contract_info(contract_address)
        assert info.roles.recovery == new_recovery
        note = slow_container.recent.items()[-1]
        assert note.level == NotificationLevel.SUCCESS
        assert note.title == "Meta-transaction confirmed"
        assert await engine.reconcile_broadcasts(contract_address) == []

    @pytest.mark.asyncio
    async def test_store_is_not_blocked_by_landed_broadcast(
        self, slow_container, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        engine = slow_container.manager.engine
        first = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, first, owner, sign)
        with pytest.raises(ChainCallFailed):
            await engine.broadcast(signed, broadcaster.address)

        second = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": owner.address}
        )
        await _signed_and_stored(engine, second, owner, sign)

        assert [s.id for s in await engine.list_signed(contract_address)] == [second.id]

    @pytest.mark.asyncio
    async def test_unmined_broadcast_stays_live(
        self, slow_container, slow_chain, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        engine = slow_container.manager.engine
        slow_chain.mined = False
        first = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, first, owner, sign)
        with pytest.raises(ChainCallFailed):
            await engine.broadcast(signed, broadcaster.address)

        assert await engine.reconcile_broadcasts(contract_address) == []
        second = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": owner.address}
        )
        with pytest.raises(DuplicateMetaTransaction):
            await _signed_and_stored(engine, second, owner, sign)

        slow_chain.mined = True
        view = await slow_container.manager.snapshot(contract_address)
        assert view.meta_transactions == []

    @pytest.mark.asyncio
    async def test_reverted_broadcast_is_marked_failed(
        self, slow_container, chain, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        engine = slow_container.manager.engine
        payload = await engine.build(
            contract_address, OperationType.RECOVERY_UPDATE, {"new_recovery": new_recovery}
        )
        signed = await _signed_and_stored(engine, payload, owner, sign)
        chain.fail_next("out of gas")
        with pytest.raises(ChainCallFailed, match="No receipt"):
            await engine.broadcast(signed, broadcaster.address)

        resolved = await engine.reconcile_broadcasts(contract_address)

        assert [r.broadcast_status for r in resolved] == [BroadcastStatus.FAILED]
        stored = await engine.get_signed(contract_address, signed.id)
        assert stored.broadcast_status == BroadcastStatus.FAILED
        note = slow_container.recent.items()[-1]
        assert note.level == NotificationLevel.ERROR
        assert "out of gas" in note.description

    @pytest.mark.asyncio
    async def test_meta_approval_settles_record_after_refresh(
        self, slow_container, chain, contract_address, owner, broadcaster, beneficiary, sign
    ) -> None:
        manager = slow_container.manager
        record = await manager.temporal.request(
            contract_address,
            OperationType.WITHDRAW_ETH,
            {"to": beneficiary, "amount": ETHER},
            owner.address,
        )
        before = chain.contract(contract_address).balance
        payload = await manager.engine.build(
            contract_address, OperationType.WITHDRAW_ETH, tx_id=record.tx_id
        )
        signed = await _signed_and_stored(manager.engine, payload, owner, sign)

        with pytest.raises(ChainCallFailed):
            await manager.engine.broadcast(signed, broadcaster.address)
        assert manager.tracker.get(contract_address, record.tx_id).status == TxStatus.PENDING

        await manager.refresh(contract_address)

        assert manager.tracker.get(contract_address, record.tx_id).status == TxStatus.COMPLETED
        assert await manager.list_signed(contract_address) == []
        assert chain.contract(contract_address).balance == before - ETHER

    @pytest.mark.asyncio
    async def test_manager_broadcast_failure_reconciles(
        self, slow_container, contract_address, owner, broadcaster, new_recovery, sign
    ) -> None:
        manager = slow_container.manager
        payload = await manager.request(
            contract_address, "RECOVERY_UPDATE", {"new_recovery": new_recovery}, owner.address
        )
        signed = await manager.submit_signature(
            payload, sign(owner, manager.engine.typed_data(payload))
        )

        with pytest.raises(ChainCallFailed):
            await manager.broadcast(contract_address, signed.id, broadcaster.address)

        assert await manager.list_signed(contract_address) == []
        titles = [n.title for n in slow_container.recent.items()]
        assert "Meta-transaction confirmed" in titles


class TestTokenIssuance:
    @pytest.mark.asyncio
    async def test_concurrent_mints_coexist(
        self, engine, contract_address, owner, beneficiary, sign
    ) -> None:
        first = await engine.build(
            contract_address, OperationType.MINT_TOKENS, {"to": beneficiary, "amount": 500}
        )
        second = await engine.build(
            contract_address, OperationType.MINT_TOKENS, {"to": beneficiary, "amount": 500}
        )
        assert first.phase == OperationPhase.META_REQUEST_AND_APPROVE
        assert first.nonce != second.nonce

        await _signed_and_stored(engine, first, owner, sign)
        await _signed_and_stored(engine, second, owner, sign)

        assert {s.id for s in await engine.list_signed(contract_address)} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_mint_then_burn(
        self, engine, manager, chain, contract_address, owner, broadcaster, beneficiary, sign
    ) -> None:
        mints = [
            await engine.build(
                contract_address, OperationType.MINT_TOKENS, {"to": beneficiary, "amount": 300}
            )
            for _ in range(2)
        ]
        for payload in mints:
            signed = await _signed_and_stored(engine, payload, owner, sign)
            await engine.broadcast(signed, broadcaster.address)

        holding = ChainQuery(contract_address, "issued_balance", {"holder": beneficiary})
        assert await chain.read(holding) == 600
        assert await chain.read(ChainQuery(contract_address, "total_supply")) == 600

        burn = await engine.build(
            contract_address, OperationType.BURN_TOKENS, {"from": beneficiary, "amount": "200"}
        )
        signed = await _signed_and_stored(engine, burn, owner, sign)
        await engine.broadcast(signed, broadcaster.address)
        assert await chain.read(holding) == 400

        records = await manager.tracker.refresh(contract_address)
        assert [r.operation_type for r in records] == [
            OperationType.MINT_TOKENS,
            OperationType.MINT_TOKENS,
            OperationType.BURN_TOKENS,
        ]
        assert all(r.status == TxStatus.COMPLETED for r in records)
        assert manager.tracker.domain_operations(records) == records

    @pytest.mark.asyncio
    async def test_burn_beyond_balance_reverts(
        self, engine, chain, contract_address, owner, broadcaster, beneficiary, sign
    ) -> None:
        burn = await engine.build(
            contract_address, OperationType.BURN_TOKENS, {"from": beneficiary, "amount": 1}
        )
        signed = await _signed_and_stored(engine, burn, owner, sign)

        with pytest.raises(ChainCallFailed, match="exceeds balance"):
            await engine.broadcast(signed, broadcaster.address)
        assert chain.contract(contract_address).total_supply == 0

    @pytest.mark.asyncio
    async def test_only_owner_signs_mints(
        self, engine, contract_address, owner, recovery, beneficiary, sign
    ) -> None:
        payload = await engine.build(
            contract_address, OperationType.MINT_TOKENS, {"to": beneficiary, "amount": 1}
        )
        assert payload.signer == owner.address
        with pytest.raises(SignerMismatch):
            await _signed_and_stored(engine, payload, recovery, sign)
