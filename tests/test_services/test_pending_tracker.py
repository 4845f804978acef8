"""Tests for the PendingOperationTracker reconciliation rules."""

from __future__ import annotations

import pytest
from web3 import Web3

from secure_ops.domain.enums import BroadcastStatus, OperationPhase, OperationType, TxStatus
from secure_ops.domain.exceptions import AlreadySettled, ChainCallFailed, OperationNotFound
from secure_ops.domain.models import MetaTransactionPayload, SignedMetaTransaction, TxRecord
from secure_ops.infrastructure.repositories import SignedMetaTxRepository
from secure_ops.services.pending_tracker import PendingOperationTracker, filter_by_kind

ETHER = 10**18


@pytest.fixture
def tracker(manager) -> PendingOperationTracker:
    return manager.tracker


async def _request_withdrawal(manager, contract_address, owner, beneficiary, amount=ETHER):
    return await manager.temporal.request(
        contract_address,
        OperationType.WITHDRAW_ETH,
        {"to": beneficiary, "amount": amount},
        owner.address,
    )


def _signed(contract_address: str, status: BroadcastStatus, nonce: int = 0) -> SignedMetaTransaction:
    payload = MetaTransactionPayload(
        id=Web3.to_hex(Web3.keccak(text=f"meta:{nonce}")),
        contract_address=contract_address,
        chain_id=31337,
        operation_type=OperationType.RECOVERY_UPDATE,
        phase=OperationPhase.META_REQUEST_AND_APPROVE,
        nonce=nonce,
        handler_selector="0x12345678",
        params_hash="0x" + "00" * 32,
        deadline=2_000_000_000,
        max_gas_price=10**10,
        signer=contract_address,
        created_at=1_700_000_000,
    )
    return SignedMetaTransaction(
        payload=payload, signature="0x" + "00" * 65, signed_at=1_700_000_000, broadcast_status=status
    )


class TestContractInfo:
    @pytest.mark.asyncio
    async def test_cached_until_refreshed(self, tracker, chain, contract_address, owner, outsider) -> None:
        info = await tracker.get_contract_info(contract_address)
        assert info.roles.owner == owner.address
        assert info.timelock_period_seconds == 7 * 86_400
        assert info.chain_id == 31337

        chain.contract(contract_address).owner = outsider.address
        assert (await tracker.get_contract_info(contract_address)).roles.owner == owner.address

        refreshed = await tracker.get_contract_info(contract_address, refresh=True)
        assert refreshed.roles.owner == outsider.address

    @pytest.mark.asyncio
    async def test_invalidate(self, tracker, chain, contract_address, outsider) -> None:
        await tracker.get_contract_info(contract_address)
        chain.contract(contract_address).broadcaster = outsider.address
        tracker.invalidate_contract_info(contract_address.lower())

        info = await tracker.get_contract_info(contract_address)
        assert info.roles.broadcaster == outsider.address

    @pytest.mark.asyncio
    async def test_unknown_contract(self, tracker) -> None:
        with pytest.raises(ChainCallFailed, match="No contract deployed"):
            await tracker.get_contract_info("0x000000000000000000000000000000000000dEaD")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(
        self, manager, tracker, contract_address, owner, beneficiary
    ) -> None:
        await _request_withdrawal(manager, contract_address, owner, beneficiary)
        await _request_withdrawal(manager, contract_address, owner, beneficiary, 2 * ETHER)

        first = await tracker.refresh(contract_address)
        second = await tracker.refresh(contract_address)

        assert first == second
        assert [r.tx_id for r in first] == [1, 2]

    @pytest.mark.asyncio
    async def test_fetches_records_created_elsewhere(
        self, tracker, chain, clock, contract_address
    ) -> None:
        chain.inject_history(
            contract_address,
            {
                "operation_type": Web3.to_hex(Web3.keccak(text="BROADCASTER_UPDATE")),
                "status": "PENDING",
                "requested_at": clock(),
                "release_time": clock() + 100,
                "params": {"new_broadcaster": contract_address},
            },
        )

        records = await tracker.refresh(contract_address)
        assert len(records) == 1
        assert records[0].operation_type == OperationType.BROADCASTER_UPDATE
        assert tracker.find_pending(contract_address, OperationType.BROADCASTER_UPDATE) == records[0]

    @pytest.mark.asyncio
    async def test_unknown_operation_types_are_skipped(
        self, tracker, chain, clock, contract_address
    ) -> None:
        chain.inject_history(
            contract_address,
            {
                "operation_type": Web3.to_hex(Web3.keccak(text="MINT_NFT")),
                "status": "PENDING",
                "requested_at": clock(),
                "release_time": clock(),
            },
        )

        assert await tracker.refresh(contract_address) == []

    @pytest.mark.asyncio
    async def test_terminal_status_never_regresses(
        self, manager, tracker, contract_address, owner, beneficiary
    ) -> None:
        record = await _request_withdrawal(manager, contract_address, owner, beneficiary)
        # Local view learned of the settlement before the chain read caught up
        tracker.settle(contract_address, record.tx_id, TxStatus.CANCELLED)

        records = await tracker.refresh(contract_address)
        assert records[0].status == TxStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_chain_state_wins_for_non_terminal_records(
        self, manager, tracker, chain, contract_address, owner, beneficiary
    ) -> None:
        record = await _request_withdrawal(manager, contract_address, owner, beneficiary)
        chain.contract(contract_address).history[record.tx_id]["status"] = "CANCELLED"

        records = await tracker.refresh(contract_address)
        assert records[0].status == TxStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_local_records_missing_from_fetch_are_kept(
        self, tracker, clock, contract_address
    ) -> None:
        local = TxRecord(
            tx_id=99,
            contract_address=contract_address,
            operation_type=OperationType.WITHDRAW_TOKEN,
            status=TxStatus.PENDING,
            requested_at=clock(),
            release_time=clock() + 10,
        )
        tracker.track(local)

        assert await tracker.refresh(contract_address) == [local]


class TestLocalView:
    def test_get_unknown(self, tracker, contract_address) -> None:
        with pytest.raises(OperationNotFound):
            tracker.get(contract_address, 1)

    @pytest.mark.asyncio
    async def test_settle_rules(self, manager, tracker, contract_address, owner, beneficiary) -> None:
        record = await _request_withdrawal(manager, contract_address, owner, beneficiary)

        settled = tracker.settle(contract_address, record.tx_id, TxStatus.COMPLETED)
        assert settled.status == TxStatus.COMPLETED
        assert tracker.settle(contract_address, record.tx_id, TxStatus.COMPLETED) == settled
        with pytest.raises(AlreadySettled):
            tracker.settle(contract_address, record.tx_id, TxStatus.CANCELLED)
        assert tracker.settle(contract_address, 404, TxStatus.CANCELLED) is None

    @pytest.mark.asyncio
    async def test_core_and_domain_filters(
        self, manager, tracker, contract_address, owner, recovery, beneficiary
    ) -> None:
        await manager.temporal.request(
            contract_address, OperationType.OWNERSHIP_TRANSFER, None, recovery.address
        )
        await _request_withdrawal(manager, contract_address, owner, beneficiary)
        records = tracker.records(contract_address)

        assert [r.operation_type for r in tracker.core_operations(records)] == [
            OperationType.OWNERSHIP_TRANSFER
        ]
        assert [r.operation_type for r in tracker.domain_operations(records)] == [
            OperationType.WITHDRAW_ETH
        ]

    def test_filter_by_kind_preserves_order(self) -> None:
        assert filter_by_kind([3, 1, 4, 1, 5], lambda n: n != 1) == [3, 4, 5]


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_merges_records_and_unconfirmed_meta_transactions(
        self, manager, tracker, container, contract_address, owner, beneficiary
    ) -> None:
        repo = SignedMetaTxRepository(container.store, container.settings.storage_key_prefix)
        await repo.put(_signed(contract_address, BroadcastStatus.UNBROADCAST, nonce=0))
        await repo.put(_signed(contract_address, BroadcastStatus.CONFIRMED, nonce=1))
        await _request_withdrawal(manager, contract_address, owner, beneficiary)

        view = await tracker.snapshot(contract_address)

        assert len(view.pending_records) == 1
        assert [m.payload.nonce for m in view.meta_transactions] == [0]
