"""Repository classes over the key-value persistence boundary.

Repositories encapsulate key layout and JSON encoding and give the services
a typed interface. Every key is namespaced by the configured prefix and the
lowercased contract address. Large integers are stored as decimal strings.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import TYPE_CHECKING

from secure_ops.domain.models import (
    MetaTxOptions,
    SignedMetaTransaction,
    normalize_address,
)

if TYPE_CHECKING:
    from secure_ops.domain.enums import OperationType
    from secure_ops.domain.protocols import KeyValueStore


class _KeyspaceRepository:
    def __init__(self, store: KeyValueStore, prefix: str, namespace: str) -> None:
        self._store = store
        self._prefix = prefix
        self._namespace = namespace

    def _key(self, contract_address: str, *parts: str) -> str:
        return ":".join(
            [self._prefix, self._namespace, normalize_address(contract_address), *parts]
        )

    async def _load(self, key: str, default):
        raw = await self._store.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    async def _save(self, key: str, value) -> None:
        await self._store.set(key, json.dumps(value, sort_keys=True))


class SignedMetaTxRepository(_KeyspaceRepository):
    """Signed-but-not-yet-confirmed meta-transactions, one map per contract."""

    def __init__(self, store: KeyValueStore, prefix: str) -> None:
        super().__init__(store, prefix, "metatx")
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def list(self, contract_address: str) -> list[SignedMetaTransaction]:
        """All stored entries for a contract, oldest first."""
        entries = await self._load(self._key(contract_address), {})
        records = [SignedMetaTransaction.from_dict(v) for v in entries.values()]
        return sorted(records, key=lambda r: (r.payload.created_at, r.payload.nonce, r.id))

    async def get(self, contract_address: str, meta_tx_id: str) -> SignedMetaTransaction | None:
        entries = await self._load(self._key(contract_address), {})
        data = entries.get(meta_tx_id)
        return SignedMetaTransaction.from_dict(data) if data else None

    async def put(self, signed: SignedMetaTransaction) -> None:
        key = self._key(signed.contract_address)
        async with self._locks[key]:
            entries = await self._load(key, {})
            entries[signed.id] = signed.to_dict()
            await self._save(key, entries)

    async def delete(self, contract_address: str, meta_tx_id: str) -> None:
        key = self._key(contract_address)
        async with self._locks[key]:
            entries = await self._load(key, {})
            if entries.pop(meta_tx_id, None) is None:
                return
            if entries:
                await self._save(key, entries)
            else:
                await self._store.delete(key)

    async def clear(self, contract_address: str) -> None:
        await self._store.delete(self._key(contract_address))


class NonceRepository(_KeyspaceRepository):
    """Locally reserved meta-transaction nonces per (contract, operation)."""

    def __init__(self, store: KeyValueStore, prefix: str) -> None:
        super().__init__(store, prefix, "nonce")
        self._lock = asyncio.Lock()

    async def reserve(
        self, contract_address: str, operation_type: OperationType, chain_nonce: int
    ) -> int:
        """Return a nonce never handed out before for this slot.

        The result is at least the chain's current nonce and strictly greater
        than any nonce previously reserved locally.
        """
        key = self._key(contract_address, operation_type.value)
        async with self._lock:
            next_local = int(await self._load(key, "0"))
            nonce = max(chain_nonce, next_local)
            await self._save(key, str(nonce + 1))
        return nonce


class MetaTxSettingsRepository(_KeyspaceRepository):
    """User-chosen deadline buffer and gas ceiling per contract."""

    def __init__(self, store: KeyValueStore, prefix: str) -> None:
        super().__init__(store, prefix, "metatx-settings")

    async def get(self, contract_address: str) -> MetaTxOptions:
        data = await self._load(self._key(contract_address), {})
        return MetaTxOptions(
            deadline_seconds=int(data["deadline_seconds"]) if "deadline_seconds" in data else None,
            max_gas_price_wei=(
                int(data["max_gas_price_wei"]) if "max_gas_price_wei" in data else None
            ),
        )

    async def save(self, contract_address: str, options: MetaTxOptions) -> None:
        data = {}
        if options.deadline_seconds is not None:
            data["deadline_seconds"] = str(options.deadline_seconds)
        if options.max_gas_price_wei is not None:
            data["max_gas_price_wei"] = str(options.max_gas_price_wei)
        await self._save(self._key(contract_address), data)


class TokenListRepository(_KeyspaceRepository):
    """User-added ERC20 tokens tracked for a vault contract."""

    def __init__(self, store: KeyValueStore, prefix: str) -> None:
        super().__init__(store, prefix, "tokens")

    async def list(self, contract_address: str) -> list[dict]:
        return await self._load(self._key(contract_address), [])

    async def add(self, contract_address: str, token_address: str, metadata: dict | None = None) -> list[dict]:
        """Add a token (idempotent on address) and return the updated list."""
        tokens = await self.list(contract_address)
        normalized = normalize_address(token_address)
        tokens = [t for t in tokens if t["address"] != normalized]
        tokens.append({"address": normalized, **(metadata or {})})
        await self._save(self._key(contract_address), tokens)
        return tokens

    async def remove(self, contract_address: str, token_address: str) -> list[dict]:
        normalized = normalize_address(token_address)
        tokens = [t for t in await self.list(contract_address) if t["address"] != normalized]
        await self._save(self._key(contract_address), tokens)
        return tokens
