"""PendingOperationTracker: the per-contract view of outstanding operations.

Merges two sources of truth:
    - on-chain operation history, fetched through the ChainClient;
    - locally stored signed meta-transactions awaiting broadcast.

Reconciliation rules:
    - the last fetched chain state wins for a record's status,
    - except that a record already known to be COMPLETED or CANCELLED is
      never regressed to PENDING by a stale read,
    - records known locally but absent from the fetch are kept,
    - operation types the registry does not know are skipped.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from secure_ops.domain.enums import BroadcastStatus, OperationType, TxStatus
from secure_ops.domain.exceptions import AlreadySettled, OperationNotFound, UnknownOperationType
from secure_ops.domain.models import ContractInfo, RoleSet, TxRecord, normalize_address
from secure_ops.domain.protocols import ChainQuery
from secure_ops.logging_config import get_logger
from secure_ops.services.chain_calls import read_with_retry

if TYPE_CHECKING:
    from secure_ops.domain.models import SignedMetaTransaction
    from secure_ops.domain.protocols import ChainClient
    from secure_ops.domain.registry import OperationRegistry
    from secure_ops.infrastructure.repositories import SignedMetaTxRepository

logger = get_logger(__name__)


def filter_by_kind(
    operations: Iterable[TxRecord], predicate: Callable[[TxRecord], bool]
) -> list[TxRecord]:
    """Pure filter preserving order."""
    return [op for op in operations if predicate(op)]


@dataclass(frozen=True)
class PendingView:
    """Everything a surface needs to render one contract's outstanding work."""

    records: list[TxRecord] = field(default_factory=list)
    meta_transactions: list[SignedMetaTransaction] = field(default_factory=list)

    @property
    def pending_records(self) -> list[TxRecord]:
        return [r for r in self.records if r.status == TxStatus.PENDING]


class PendingOperationTracker:
    """In-memory index of TxRecords per contract, reconciled against the chain."""

    def __init__(
        self,
        chain: ChainClient,
        registry: OperationRegistry,
        meta_tx_repository: SignedMetaTxRepository,
        read_attempts: int = 3,
    ) -> None:
        self._chain = chain
        self._registry = registry
        self._meta_tx_repo = meta_tx_repository
        self._read_attempts = read_attempts
        self._records: dict[str, dict[int, TxRecord]] = {}
        self._contract_info: dict[str, ContractInfo] = {}

    # ------------------------------------------------------------------
    # Contract info
    # ------------------------------------------------------------------

    async def get_contract_info(self, contract_address: str, refresh: bool = False) -> ContractInfo:
        """Roles and time-lock period, cached until invalidated."""
        key = normalize_address(contract_address)
        if refresh or key not in self._contract_info:
            roles = await self._read(contract_address, "roles")
            timelock = await self._read(contract_address, "timelock_period")
            chain_id = await self._read(contract_address, "chain_id")
            self._contract_info[key] = ContractInfo(
                address=contract_address,
                roles=RoleSet.from_dict(roles),
                timelock_period_seconds=int(timelock),
                chain_id=int(chain_id),
            )
            logger.debug("tracker.contract_info_loaded", contract=contract_address)
        return self._contract_info[key]

    def invalidate_contract_info(self, contract_address: str) -> None:
        """Drop cached roles; the next read refetches them from the chain."""
        self._contract_info.pop(normalize_address(contract_address), None)

    # ------------------------------------------------------------------
    # Refresh / reconcile
    # ------------------------------------------------------------------

    async def refresh(self, contract_address: str) -> list[TxRecord]:
        """Re-fetch operation history and reconcile it with the local view.

        Idempotent: with no chain change in between, two calls return equal lists.
        """
        rows = await self._read(contract_address, "operation_history")
        fetched = [r for r in (self._parse_row(contract_address, row) for row in rows) if r]

        # Merge against the view as it is *now*; local mutations may have
        # landed while the read was in flight.
        current = self._records.setdefault(normalize_address(contract_address), {})
        for record in fetched:
            local = current.get(record.tx_id)
            if local is not None and local.status.is_terminal and not record.status.is_terminal:
                continue
            current[record.tx_id] = record

        logger.info(
            "tracker.refreshed",
            contract=contract_address,
            fetched=len(fetched),
            skipped=len(rows) - len(fetched),
        )
        return self.records(contract_address)

    def _parse_row(self, contract_address: str, row: dict) -> TxRecord | None:
        try:
            spec = self._registry.resolve(row["operation_type"])
        except UnknownOperationType:
            logger.debug(
                "tracker.unknown_operation_skipped",
                contract=contract_address,
                operation_type=row.get("operation_type"),
            )
            return None
        return TxRecord(
            tx_id=int(row["tx_id"]),
            contract_address=contract_address,
            operation_type=spec.operation_type,
            status=TxStatus(row["status"]),
            requested_at=int(row["requested_at"]),
            release_time=int(row["release_time"]),
            params=dict(row.get("params") or {}),
            requester=row.get("requester"),
        )

    async def _read(self, contract_address: str, name: str):
        return await read_with_retry(
            self._chain, ChainQuery(contract_address, name), self._read_attempts
        )

    # ------------------------------------------------------------------
    # Local view
    # ------------------------------------------------------------------

    def records(self, contract_address: str) -> list[TxRecord]:
        """All known records for a contract ordered by tx_id."""
        current = self._records.get(normalize_address(contract_address), {})
        return [current[tx_id] for tx_id in sorted(current)]

    def get(self, contract_address: str, tx_id: int) -> TxRecord:
        record = self._records.get(normalize_address(contract_address), {}).get(tx_id)
        if record is None:
            raise OperationNotFound(contract_address, tx_id)
        return record

    def find_pending(self, contract_address: str, operation_type: OperationType) -> TxRecord | None:
        """First PENDING record occupying the (contract, operation_type) slot."""
        for record in self.records(contract_address):
            if record.operation_type == operation_type and record.status == TxStatus.PENDING:
                return record
        return None

    def track(self, record: TxRecord) -> None:
        """Add a record created by a confirmed request."""
        self._records.setdefault(normalize_address(record.contract_address), {})[
            record.tx_id
        ] = record

    def settle(self, contract_address: str, tx_id: int, status: TxStatus) -> TxRecord | None:
        """Apply a confirmed settlement to the local view.

        Returns None when the record has not been fetched yet; the next
        refresh picks it up from the chain.
        """
        current = self._records.get(normalize_address(contract_address), {})
        record = current.get(tx_id)
        if record is None:
            return None
        if record.status.is_terminal:
            if record.status == status:
                return record
            raise AlreadySettled(tx_id, record.status.value)
        updated = record.with_status(status)
        current[tx_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Merged views
    # ------------------------------------------------------------------

    async def pending_meta_transactions(self, contract_address: str) -> list[SignedMetaTransaction]:
        """Locally known signatures not yet confirmed on chain."""
        return [
            m
            for m in await self._meta_tx_repo.list(contract_address)
            if m.broadcast_status != BroadcastStatus.CONFIRMED
        ]

    async def snapshot(self, contract_address: str, refresh: bool = True) -> PendingView:
        records = (
            await self.refresh(contract_address) if refresh else self.records(contract_address)
        )
        return PendingView(
            records=records,
            meta_transactions=await self.pending_meta_transactions(contract_address),
        )

    def is_core(self, record: TxRecord) -> bool:
        return self._registry.resolve(record.operation_type).is_core

    def core_operations(self, operations: Iterable[TxRecord]) -> list[TxRecord]:
        return filter_by_kind(operations, self.is_core)

    def domain_operations(self, operations: Iterable[TxRecord]) -> list[TxRecord]:
        return filter_by_kind(operations, lambda r: not self.is_core(r))
