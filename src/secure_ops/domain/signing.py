"""EIP-712 rendering and signer recovery for meta-transaction payloads.

Both ends of the boundary use these helpers: the engine to verify a
signature before storing it, and a contract implementation to verify it
again on execution.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from hexbytes import HexBytes
from web3 import Web3

from secure_ops.domain.exceptions import InvalidSignature
from secure_ops.domain.models import encode_big_ints

if TYPE_CHECKING:
    from secure_ops.domain.models import MetaTransactionPayload

SIGNATURE_LENGTH = 65

EIP712_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "MetaTransaction": [
        {"name": "txId", "type": "uint256"},
        {"name": "operationType", "type": "bytes32"},
        {"name": "phase", "type": "string"},
        {"name": "paramsHash", "type": "bytes32"},
        {"name": "params", "type": "MetaTxParams"},
    ],
    "MetaTxParams": [
        {"name": "chainId", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "handlerContract", "type": "address"},
        {"name": "handlerSelector", "type": "bytes4"},
        {"name": "deadline", "type": "uint256"},
        {"name": "maxGasPrice", "type": "uint256"},
        {"name": "signer", "type": "address"},
    ],
}


def hash_params(params: dict) -> str:
    """keccak256 of the canonical JSON rendering of ``params``."""
    canonical = json.dumps(encode_big_ints(params), sort_keys=True, separators=(",", ":"))
    return Web3.to_hex(Web3.keccak(text=canonical))


def meta_tx_id(contract_address: str, nonce: int, type_hash: str) -> str:
    """Unique per contract: keccak256(contract, nonce, operation type hash)."""
    return Web3.to_hex(
        Web3.solidity_keccak(
            ["address", "uint256", "bytes32"],
            [Web3.to_checksum_address(contract_address), nonce, HexBytes(type_hash)],
        )
    )


def build_typed_data(
    payload: MetaTransactionPayload,
    type_hash: str,
    domain_name: str = "SecureOperation",
    domain_version: str = "1",
) -> dict:
    """Render a payload as an EIP-712 ``full_message`` for external signers."""
    contract = Web3.to_checksum_address(payload.contract_address)
    return {
        "types": EIP712_TYPES,
        "primaryType": "MetaTransaction",
        "domain": {
            "name": domain_name,
            "version": domain_version,
            "chainId": payload.chain_id,
            "verifyingContract": contract,
        },
        "message": {
            "txId": payload.tx_id or 0,
            "operationType": HexBytes(type_hash),
            "phase": payload.phase.value,
            "paramsHash": HexBytes(payload.params_hash),
            "params": {
                "chainId": payload.chain_id,
                "nonce": payload.nonce,
                "handlerContract": contract,
                "handlerSelector": HexBytes(payload.handler_selector),
                "deadline": payload.deadline,
                "maxGasPrice": payload.max_gas_price,
                "signer": Web3.to_checksum_address(payload.signer),
            },
        },
    }


def typed_data_digest(typed_data: dict) -> bytes:
    """The 32-byte EIP-712 digest a raw-message signer signs over."""
    signable = encode_typed_data(full_message=typed_data)
    return bytes(Web3.keccak(b"\x19" + signable.version + signable.header + signable.body))


def recover_signers(typed_data: dict, signature: str | bytes) -> list[str]:
    """Candidate signer addresses for ``signature``.

    The first entry assumes an EIP-712 signature; the second assumes a
    personal-sign signature over the typed-data digest.

    Raises:
        InvalidSignature: If the signature is malformed or unrecoverable.
    """
    try:
        raw = HexBytes(signature)
    except (TypeError, ValueError) as exc:
        raise InvalidSignature("signature is not hex encoded") from exc
    if len(raw) != SIGNATURE_LENGTH:
        raise InvalidSignature(f"expected {SIGNATURE_LENGTH} bytes, got {len(raw)}")

    try:
        typed = Account.recover_message(encode_typed_data(full_message=typed_data), signature=raw)
        personal = Account.recover_message(
            encode_defunct(primitive=typed_data_digest(typed_data)), signature=raw
        )
    except Exception as exc:
        raise InvalidSignature(str(exc) or type(exc).__name__) from exc
    return [typed, personal]


def typed_data_to_json(typed_data: dict) -> dict:
    """Render byte fields as 0x-hex so typed data can cross a JSON boundary."""

    def _render(value):
        if isinstance(value, bytes):
            return Web3.to_hex(value)
        if isinstance(value, dict):
            return {k: _render(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_render(v) for v in value]
        return value

    return _render(typed_data)
