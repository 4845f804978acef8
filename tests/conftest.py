"""Shared test fixtures for the secure operations test suite.

Provides:
    - A controllable clock so time-locks and deadlines are deterministic
    - Role-holder accounts with real keys for signing meta-transactions
    - A simulated chain with one deployed vault and the full object graph
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

from collections.abc import Callable

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from secure_ops.config import SECONDS_PER_DAY, Settings
from secure_ops.container import WorkflowContainer, build_container
from secure_ops.domain.registry import OperationRegistry
from secure_ops.domain.signing import typed_data_digest
from secure_ops.infrastructure.simulated_chain import SimulatedChainClient
from secure_ops.services.workflow_manager import WorkflowManager

GENESIS = 1_700_000_000
VAULT_BALANCE = 10 * 10**18


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: int = GENESIS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Configuration + time
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env, with a single read attempt."""
    return Settings(
        _env_file=None,
        app_log_level="WARNING",
        storage_backend="memory",
        simulate_chain=True,
        chain_read_attempts=1,
        broadcast_timeout_seconds=5.0,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@pytest.fixture
def owner() -> LocalAccount:
    return Account.from_key("0x" + "11" * 32)


@pytest.fixture
def broadcaster() -> LocalAccount:
    return Account.from_key("0x" + "22" * 32)


@pytest.fixture
def recovery() -> LocalAccount:
    return Account.from_key("0x" + "33" * 32)


@pytest.fixture
def outsider() -> LocalAccount:
    return Account.from_key("0x" + "44" * 32)


@pytest.fixture
def beneficiary() -> str:
    return Web3.to_checksum_address("0x742d35cc6634c0532925a3b844bc9e7595f2bd18")


@pytest.fixture
def sign() -> Callable[..., str]:
    """Sign EIP-712 typed data the way a wallet would.

    ``personal=True`` signs the typed-data digest as a personal message
    instead, the fallback some wallets use.
    """

    def _sign(account: LocalAccount, typed_data: dict, personal: bool = False) -> str:
        if personal:
            message = encode_defunct(primitive=typed_data_digest(typed_data))
        else:
            message = encode_typed_data(full_message=typed_data)
        return Web3.to_hex(Account.sign_message(message, private_key=account.key).signature)

    return _sign


# ---------------------------------------------------------------------------
# Chain + object graph
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> OperationRegistry:
    return OperationRegistry()


@pytest.fixture
def chain(registry: OperationRegistry, clock: FakeClock) -> SimulatedChainClient:
    return SimulatedChainClient(registry, clock=clock)


@pytest.fixture
def contract_address(
    chain: SimulatedChainClient,
    owner: LocalAccount,
    broadcaster: LocalAccount,
    recovery: LocalAccount,
) -> str:
    """A vault with a 7-day time-lock holding 10 ETH."""
    return chain.deploy(
        owner=owner.address,
        broadcaster=broadcaster.address,
        recovery=recovery.address,
        timelock_period_seconds=7 * SECONDS_PER_DAY,
        balance=VAULT_BALANCE,
    )


@pytest.fixture
def container(
    settings: Settings, chain: SimulatedChainClient, clock: FakeClock
) -> WorkflowContainer:
    return build_container(settings, chain=chain, clock=clock)


@pytest.fixture
def manager(container: WorkflowContainer) -> WorkflowManager:
    return container.manager
