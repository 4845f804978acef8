"""SimulatedChainClient: an in-memory secure-ownable vault behind the ChainClient boundary.

The simulated contract enforces the same rules the real one does:
role checks per phase, one PENDING request per core operation type,
time-lock release, meta-transaction signature/deadline/gas checks and
replay protection. A rule violation does not raise; it produces a reverted
receipt, exactly as a mined transaction would.

Used as the default ChainClient in development and throughout the tests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from web3 import Web3

from secure_ops.clock import system_clock
from secure_ops.domain.enums import OperationPhase, OperationType, TxStatus
from secure_ops.domain.exceptions import ChainCallFailed, SecureOpsError
from secure_ops.domain.models import RoleSet, normalize_address, same_address
from secure_ops.domain.protocols import Receipt
from secure_ops.domain.role_guard import GuardedAction, RoleGuard
from secure_ops.domain.signing import build_typed_data, recover_signers
from secure_ops.logging_config import get_logger

if TYPE_CHECKING:
    from secure_ops.clock import Clock
    from secure_ops.domain.models import SignedMetaTransaction
    from secure_ops.domain.protocols import CallDescriptor, ChainQuery
    from secure_ops.domain.registry import OperationRegistry

logger = get_logger(__name__)

DEFAULT_GAS_PRICE = 20 * 10**9


class Revert(SecureOpsError):
    """A contract-level rule violation; becomes a failed receipt."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=reason, code="REVERTED")


@dataclass
class SimulatedContract:
    address: str
    owner: str
    broadcaster: str
    recovery: str
    timelock_period: int
    balance: int = 0
    token_balances: dict[str, int] = field(default_factory=dict)
    history: dict[int, dict] = field(default_factory=dict)
    next_tx_id: int = 1
    nonces: dict[OperationType, int] = field(default_factory=dict)
    executed_meta_txs: set[str] = field(default_factory=set)
    # Holdings of the token the contract itself issues
    issued: dict[str, int] = field(default_factory=dict)

    @property
    def total_supply(self) -> int:
        return sum(self.issued.values())

    @property
    def roles(self) -> RoleSet:
        return RoleSet(owner=self.owner, broadcaster=self.broadcaster, recovery=self.recovery)


@dataclass
class SimulatedTransaction:
    """TransactionHandle whose receipt is known at submission time."""

    tx_hash: str
    receipt: Receipt

    async def wait(self) -> Receipt:
        await asyncio.sleep(0)
        return self.receipt


class SimulatedChainClient:
    """Deterministic in-memory chain hosting any number of vault contracts."""

    def __init__(
        self,
        registry: OperationRegistry,
        clock: Clock = system_clock,
        chain_id: int = 31337,
        gas_price: int = DEFAULT_GAS_PRICE,
        domain_name: str = "SecureOperation",
        domain_version: str = "1",
    ) -> None:
        self._registry = registry
        self._guard = RoleGuard(registry)
        self._clock = clock
        self.chain_id = chain_id
        self.gas_price = gas_price
        self._domain = (domain_name, domain_version)
        self._contracts: dict[str, SimulatedContract] = {}
        self._tx_count = 0
        self._fail_next: str | None = None
        self._receipts: dict[str, Receipt] = {}

    # ------------------------------------------------------------------
    # Test / development controls
    # ------------------------------------------------------------------

    def deploy(
        self,
        owner: str,
        broadcaster: str,
        recovery: str,
        timelock_period_seconds: int,
        balance: int = 0,
        address: str | None = None,
    ) -> str:
        """Create a contract and return its checksummed address."""
        if address is None:
            digest = Web3.to_hex(Web3.keccak(text=f"secure-ops:{len(self._contracts)}"))
            address = "0x" + digest[-40:]
        address = Web3.to_checksum_address(address)
        self._contracts[normalize_address(address)] = SimulatedContract(
            address=address,
            owner=owner,
            broadcaster=broadcaster,
            recovery=recovery,
            timelock_period=timelock_period_seconds,
            balance=balance,
        )
        logger.info("simchain.deployed", contract=address, owner=owner)
        return address

    def contract(self, address: str) -> SimulatedContract:
        contract = self._contracts.get(normalize_address(address))
        if contract is None:
            raise ChainCallFailed(f"No contract deployed at {address}")
        return contract

    def fund_token(self, address: str, token: str, amount: int) -> None:
        balances = self.contract(address).token_balances
        key = normalize_address(token)
        balances[key] = balances.get(key, 0) + amount

    def set_gas_price(self, wei: int) -> None:
        self.gas_price = wei

    def fail_next(self, reason: str = "execution reverted") -> None:
        """Make the next submitted transaction revert with ``reason``."""
        self._fail_next = reason

    def inject_history(self, address: str, row: dict) -> None:
        """Append a raw history row, e.g. an operation type unknown to the registry."""
        contract = self.contract(address)
        tx_id = int(row.get("tx_id", contract.next_tx_id))
        contract.history[tx_id] = {**row, "tx_id": tx_id}
        contract.next_tx_id = max(contract.next_tx_id, tx_id + 1)

    # ------------------------------------------------------------------
    # ChainClient
    # ------------------------------------------------------------------

    async def submit(self, call: CallDescriptor) -> SimulatedTransaction:
        await asyncio.sleep(0)
        self._tx_count += 1
        tx_hash = Web3.to_hex(Web3.keccak(text=f"tx:{self._tx_count}"))
        receipt = self._mine(call, tx_hash, self._clock())
        self._receipts[tx_hash] = receipt
        return SimulatedTransaction(tx_hash, receipt)

    def _mine(self, call: CallDescriptor, tx_hash: str, now: int) -> Receipt:
        if self._fail_next is not None:
            reason, self._fail_next = self._fail_next, None
            return Receipt(tx_hash, False, error=reason)

        handler = {
            "request": self._request,
            "approve": self._approve,
            "cancel": self._cancel,
            "execute_meta_tx": self._execute_meta_tx,
        }.get(call.function)
        if handler is None:
            raise ChainCallFailed(f"Unknown function {call.function}")

        contract = self.contract(call.contract_address)
        try:
            tx_id = handler(contract, call, now)
        except Revert as exc:
            logger.info("simchain.reverted", function=call.function, reason=exc.message)
            return Receipt(tx_hash, False, error=exc.message)
        return Receipt(tx_hash, True, tx_id=tx_id, block_timestamp=now)

    async def read(self, query: ChainQuery) -> Any:
        await asyncio.sleep(0)
        if query.name == "gas_price":
            return self.gas_price
        if query.name == "chain_id":
            return self.chain_id
        if query.name == "receipt":
            return self._receipts.get(query.args["tx_hash"])

        contract = self.contract(query.contract_address)
        if query.name == "roles":
            return contract.roles.to_dict()
        if query.name == "timelock_period":
            return contract.timelock_period
        if query.name == "operation_history":
            return [
                {**row, "params": dict(row.get("params") or {})}
                for _, row in sorted(contract.history.items())
            ]
        if query.name == "nonce":
            return contract.nonces.get(OperationType(query.args["operation_type"]), 0)
        if query.name == "balance":
            return contract.balance
        if query.name == "token_balance":
            return contract.token_balances.get(normalize_address(query.args["token"]), 0)
        if query.name == "issued_balance":
            return contract.issued.get(normalize_address(query.args["holder"]), 0)
        if query.name == "total_supply":
            return contract.total_supply
        raise ChainCallFailed(f"Unknown query {query.name}")

    # ------------------------------------------------------------------
    # Contract logic
    # ------------------------------------------------------------------

    def _require_role(
        self, contract: SimulatedContract, operation: OperationType, phase: OperationPhase, sender: str
    ) -> None:
        if not self._guard.authorize_address(GuardedAction(operation, phase), sender, contract.roles):
            raise Revert(f"{sender} lacks the role for {phase} {operation}")

    def _pending_row(self, contract: SimulatedContract, tx_id: int) -> dict:
        row = contract.history.get(tx_id)
        if row is None:
            raise Revert(f"Unknown operation {tx_id}")
        if row["status"] != TxStatus.PENDING:
            raise Revert(f"Operation {tx_id} is {row['status']}")
        return row

    def _open(
        self,
        contract: SimulatedContract,
        operation: OperationType,
        params: dict,
        requester: str,
        now: int,
        release_time: int,
        status: TxStatus,
    ) -> int:
        tx_id = contract.next_tx_id
        contract.next_tx_id += 1
        contract.history[tx_id] = {
            "tx_id": tx_id,
            "operation_type": self._registry.resolve(operation).type_hash,
            "status": status.value,
            "requested_at": now,
            "release_time": release_time,
            "params": dict(params),
            "requester": requester,
        }
        return tx_id

    def _request(self, contract: SimulatedContract, call: CallDescriptor, now: int) -> int:
        spec = self._registry.resolve(call.operation_type)
        self._require_role(contract, spec.operation_type, OperationPhase.REQUEST, call.sender)
        if not spec.allows_concurrent:
            for row in contract.history.values():
                if (
                    row["operation_type"] == spec.type_hash
                    and row["status"] == TxStatus.PENDING
                ):
                    raise Revert(f"{spec.operation_type} request already pending")
        return self._open(
            contract,
            spec.operation_type,
            call.args.get("params") or {},
            call.sender,
            now,
            now + contract.timelock_period,
            TxStatus.PENDING,
        )

    def _approve(self, contract: SimulatedContract, call: CallDescriptor, now: int) -> int:
        row = self._pending_row(contract, call.args["tx_id"])
        operation = self._registry.resolve(row["operation_type"]).operation_type
        self._require_role(contract, operation, OperationPhase.APPROVE, call.sender)
        if now < row["release_time"]:
            raise Revert(f"Time-lock on operation {row['tx_id']} has not elapsed")
        self._apply(contract, operation, row["params"])
        row["status"] = TxStatus.COMPLETED.value
        return row["tx_id"]

    def _cancel(self, contract: SimulatedContract, call: CallDescriptor, now: int) -> int:
        row = self._pending_row(contract, call.args["tx_id"])
        operation = self._registry.resolve(row["operation_type"]).operation_type
        self._require_role(contract, operation, OperationPhase.CANCEL, call.sender)
        row["status"] = TxStatus.CANCELLED.value
        return row["tx_id"]

    def _execute_meta_tx(self, contract: SimulatedContract, call: CallDescriptor, now: int) -> int:
        signed: SignedMetaTransaction = call.args["meta_transaction"]
        payload = signed.payload
        spec = self._registry.resolve(payload.operation_type)

        self._require_role(contract, spec.operation_type, OperationPhase.BROADCAST, call.sender)
        if signed.id in contract.executed_meta_txs:
            raise Revert(f"Meta-transaction {signed.id} already executed")
        if now > payload.deadline:
            raise Revert("Meta-transaction expired")
        if call.args.get("gas_price", self.gas_price) > payload.max_gas_price:
            raise Revert("Gas price above signed maximum")
        if payload.chain_id != self.chain_id:
            raise Revert(f"Signed for chain {payload.chain_id}")
        current_nonce = contract.nonces.get(spec.operation_type, 0)
        if payload.nonce < current_nonce:
            raise Revert(f"Nonce {payload.nonce} already used")

        typed = build_typed_data(payload, spec.type_hash, *self._domain)
        try:
            candidates = recover_signers(typed, signed.signature)
        except SecureOpsError as exc:
            raise Revert(exc.message) from exc
        action = GuardedAction(spec.operation_type, payload.phase)
        if not any(self._guard.authorize_address(action, c, contract.roles) for c in candidates):
            raise Revert("Signer does not hold the required role")
        if not any(same_address(c, payload.signer) for c in candidates):
            raise Revert("Signature does not match declared signer")

        if payload.tx_id is None:
            self._apply(contract, spec.operation_type, payload.params)
            tx_id = self._open(
                contract,
                spec.operation_type,
                payload.params,
                payload.signer,
                now,
                now,
                TxStatus.COMPLETED,
            )
        else:
            row = self._pending_row(contract, payload.tx_id)
            if row["operation_type"] != spec.type_hash:
                raise Revert(f"Operation {payload.tx_id} is not {spec.operation_type}")
            if payload.phase == OperationPhase.META_CANCEL:
                row["status"] = TxStatus.CANCELLED.value
            else:
                self._apply(contract, spec.operation_type, row["params"])
                row["status"] = TxStatus.COMPLETED.value
            tx_id = row["tx_id"]

        contract.nonces[spec.operation_type] = payload.nonce + 1
        contract.executed_meta_txs.add(signed.id)
        return tx_id

    def _apply(self, contract: SimulatedContract, operation: OperationType, params: dict) -> None:
        """Effects of a settled operation on contract state."""
        if operation == OperationType.OWNERSHIP_TRANSFER:
            contract.owner = params.get("new_owner") or contract.recovery
        elif operation == OperationType.BROADCASTER_UPDATE:
            contract.broadcaster = params["new_broadcaster"]
        elif operation == OperationType.RECOVERY_UPDATE:
            contract.recovery = params["new_recovery"]
        elif operation == OperationType.TIMELOCK_UPDATE:
            contract.timelock_period = int(params["new_timelock_period_seconds"])
        elif operation == OperationType.WITHDRAW_ETH:
            amount = int(params["amount"])
            if amount > contract.balance:
                raise Revert("Insufficient balance")
            contract.balance -= amount
        elif operation == OperationType.WITHDRAW_TOKEN:
            token = normalize_address(params["token"])
            amount = int(params["amount"])
            if amount > contract.token_balances.get(token, 0):
                raise Revert("Insufficient token balance")
            contract.token_balances[token] -= amount
        elif operation == OperationType.MINT_TOKENS:
            holder = normalize_address(params["to"])
            contract.issued[holder] = contract.issued.get(holder, 0) + int(params["amount"])
        elif operation == OperationType.BURN_TOKENS:
            holder = normalize_address(params["from"])
            amount = int(params["amount"])
            if amount > contract.issued.get(holder, 0):
                raise Revert("Burn amount exceeds balance")
            contract.issued[holder] -= amount
