"""Domain records for security operations.

Plain frozen dataclasses: every state change produces a new record through
``dataclasses.replace`` after the lifecycle machine has validated it. All
monetary and time values are Python ints; they are rendered as decimal
strings only at the serialization boundary (``to_dict``/``from_dict``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any

from secure_ops.domain.enums import (
    BroadcastStatus,
    NotificationLevel,
    OperationPhase,
    OperationType,
    Role,
    TxStatus,
)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_BIG_INT_RE = re.compile(r"^-?\d+n$")


def normalize_address(address: str) -> str:
    """Lowercase an address for comparisons and storage keys."""
    return address.strip().lower()


def same_address(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return normalize_address(a) == normalize_address(b)


def encode_big_ints(value: Any) -> Any:
    """Recursively render ints as ``"<digits>n"`` strings for JSON transport."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return f"{value}n"
    if isinstance(value, dict):
        return {k: encode_big_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_big_ints(v) for v in value]
    return value


def decode_big_ints(value: Any) -> Any:
    """Inverse of encode_big_ints."""
    if isinstance(value, str) and _BIG_INT_RE.match(value):
        return int(value[:-1])
    if isinstance(value, dict):
        return {k: decode_big_ints(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_big_ints(v) for v in value]
    return value


@dataclass(frozen=True)
class RoleSet:
    """Read-only snapshot of a contract's role holders."""

    owner: str
    broadcaster: str
    recovery: str

    def address_of(self, role: Role) -> str:
        return {
            Role.OWNER: self.owner,
            Role.BROADCASTER: self.broadcaster,
            Role.RECOVERY: self.recovery,
        }[role]

    def is_assigned(self, role: Role) -> bool:
        address = self.address_of(role)
        return bool(address) and not same_address(address, ZERO_ADDRESS)

    def to_dict(self) -> dict:
        return {"owner": self.owner, "broadcaster": self.broadcaster, "recovery": self.recovery}

    @classmethod
    def from_dict(cls, data: dict) -> RoleSet:
        return cls(owner=data["owner"], broadcaster=data["broadcaster"], recovery=data["recovery"])


@dataclass(frozen=True)
class ContractInfo:
    """Roles and time-lock configuration of one secure contract."""

    address: str
    roles: RoleSet
    timelock_period_seconds: int
    chain_id: int


@dataclass(frozen=True)
class TxRecord:
    """One in-flight or settled operation on a single contract.

    Readiness and progress are derived from the fields alone, so any client
    can recompute them locally without hidden timers.
    """

    tx_id: int
    contract_address: str
    operation_type: OperationType
    status: TxStatus
    requested_at: int
    release_time: int
    params: dict = field(default_factory=dict)
    requester: str | None = None

    def __post_init__(self) -> None:
        if self.release_time < self.requested_at:
            raise ValueError(
                f"release_time {self.release_time} precedes requested_at {self.requested_at}"
            )

    @property
    def lock_duration(self) -> int:
        return self.release_time - self.requested_at

    def is_ready(self, now: int) -> bool:
        return now >= self.release_time

    def time_remaining(self, now: int) -> int:
        """Seconds until approval becomes valid, never negative."""
        return max(0, self.release_time - now)

    def progress(self, now: int, lock_duration: int | None = None) -> float:
        """Percentage of the time-lock elapsed, clamped to [0, 100]."""
        duration = self.lock_duration if lock_duration is None else lock_duration
        if duration <= 0:
            return 100.0
        started = self.release_time - duration
        pct = (now - started) / duration * 100
        return max(0.0, min(100.0, pct))

    def with_status(self, status: TxStatus) -> TxRecord:
        return replace(self, status=status)

    def to_dict(self) -> dict:
        return {
            "tx_id": str(self.tx_id),
            "contract_address": self.contract_address,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "requested_at": str(self.requested_at),
            "release_time": str(self.release_time),
            "params": encode_big_ints(self.params),
            "requester": self.requester,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TxRecord:
        return cls(
            tx_id=int(data["tx_id"]),
            contract_address=data["contract_address"],
            operation_type=OperationType(data["operation_type"]),
            status=TxStatus(data["status"]),
            requested_at=int(data["requested_at"]),
            release_time=int(data["release_time"]),
            params=decode_big_ints(data.get("params") or {}),
            requester=data.get("requester"),
        )


@dataclass(frozen=True)
class MetaTxOptions:
    """Caller overrides for a meta-transaction; None means use stored/default settings."""

    deadline_seconds: int | None = None
    max_gas_price_wei: int | None = None


@dataclass(frozen=True)
class MetaTransactionPayload:
    """Unsigned, canonical meta-transaction fields handed to an external signer.

    Attributes:
        id: keccak of (contract, nonce, operation type hash); unique per contract.
        phase: META_REQUEST_AND_APPROVE for new operations, META_APPROVE /
            META_CANCEL when acting on an existing temporal record.
        tx_id: The existing TxRecord being approved/cancelled, if any.
        signer: Address expected to sign (holder of the required role at build time).
    """

    id: str
    contract_address: str
    chain_id: int
    operation_type: OperationType
    phase: OperationPhase
    nonce: int
    handler_selector: str
    params_hash: str
    deadline: int
    max_gas_price: int
    signer: str
    created_at: int
    tx_id: int | None = None
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contract_address": self.contract_address,
            "chain_id": str(self.chain_id),
            "operation_type": self.operation_type.value,
            "phase": self.phase.value,
            "nonce": str(self.nonce),
            "handler_selector": self.handler_selector,
            "params_hash": self.params_hash,
            "deadline": str(self.deadline),
            "max_gas_price": str(self.max_gas_price),
            "signer": self.signer,
            "created_at": str(self.created_at),
            "tx_id": None if self.tx_id is None else str(self.tx_id),
            "params": encode_big_ints(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MetaTransactionPayload:
        return cls(
            id=data["id"],
            contract_address=data["contract_address"],
            chain_id=int(data["chain_id"]),
            operation_type=OperationType(data["operation_type"]),
            phase=OperationPhase(data["phase"]),
            nonce=int(data["nonce"]),
            handler_selector=data["handler_selector"],
            params_hash=data["params_hash"],
            deadline=int(data["deadline"]),
            max_gas_price=int(data["max_gas_price"]),
            signer=data["signer"],
            created_at=int(data["created_at"]),
            tx_id=None if data.get("tx_id") is None else int(data["tx_id"]),
            params=decode_big_ints(data.get("params") or {}),
        )


@dataclass(frozen=True)
class SignedMetaTransaction:
    """A payload plus a verified signature, tracked through broadcast."""

    payload: MetaTransactionPayload
    signature: str
    signed_at: int
    broadcast_status: BroadcastStatus = BroadcastStatus.UNBROADCAST
    tx_hash: str | None = None

    @property
    def id(self) -> str:
        return self.payload.id

    @property
    def contract_address(self) -> str:
        return self.payload.contract_address

    @property
    def signer(self) -> str:
        return self.payload.signer

    @property
    def deadline(self) -> int:
        return self.payload.deadline

    @property
    def max_gas_price(self) -> int:
        return self.payload.max_gas_price

    def is_expired(self, now: int) -> bool:
        return now > self.payload.deadline

    def with_broadcast_status(
        self, status: BroadcastStatus, tx_hash: str | None = None
    ) -> SignedMetaTransaction:
        return replace(self, broadcast_status=status, tx_hash=tx_hash or self.tx_hash)

    def to_dict(self) -> dict:
        return {
            "payload": self.payload.to_dict(),
            "signature": self.signature,
            "signed_at": str(self.signed_at),
            "broadcast_status": self.broadcast_status.value,
            "tx_hash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SignedMetaTransaction:
        return cls(
            payload=MetaTransactionPayload.from_dict(data["payload"]),
            signature=data["signature"],
            signed_at=int(data["signed_at"]),
            broadcast_status=BroadcastStatus(data["broadcast_status"]),
            tx_hash=data.get("tx_hash"),
        )


@dataclass(frozen=True)
class Notification:
    """Structured outcome event for the NotificationSink."""

    level: NotificationLevel
    title: str
    description: str

    def to_dict(self) -> dict:
        return {"type": self.level.value, "title": self.title, "description": self.description}
