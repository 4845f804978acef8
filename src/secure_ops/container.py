"""Object graph for one process.

Builds the registry, guard, persistence, chain client and services once and
hands them to the API layer through ``app.state``. Tests build their own
container around an in-memory store, a simulated chain and a fake clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from secure_ops.clock import system_clock
from secure_ops.domain.registry import OperationRegistry
from secure_ops.domain.role_guard import RoleGuard
from secure_ops.infrastructure.kv_store import InMemoryKeyValueStore
from secure_ops.infrastructure.notifications import (
    LoggingNotificationSink,
    NotificationHub,
    RecentNotifications,
)
from secure_ops.infrastructure.repositories import (
    MetaTxSettingsRepository,
    NonceRepository,
    SignedMetaTxRepository,
    TokenListRepository,
)
from secure_ops.infrastructure.simulated_chain import SimulatedChainClient
from secure_ops.services.meta_tx_engine import MetaTransactionEngine
from secure_ops.services.pending_tracker import PendingOperationTracker
from secure_ops.services.temporal_workflow import TemporalWorkflow
from secure_ops.services.workflow_manager import WorkflowManager

if TYPE_CHECKING:
    from secure_ops.clock import Clock
    from secure_ops.config import Settings
    from secure_ops.domain.protocols import ChainClient, KeyValueStore


@dataclass
class WorkflowContainer:
    settings: Settings
    registry: OperationRegistry
    chain: ChainClient
    store: KeyValueStore
    notifications: NotificationHub
    recent: RecentNotifications
    manager: WorkflowManager
    clock: Clock


def build_container(
    settings: Settings,
    store: KeyValueStore | None = None,
    chain: ChainClient | None = None,
    clock: Clock = system_clock,
) -> WorkflowContainer:
    """Wire every component; ``store`` and ``chain`` default to in-process ones."""
    registry = OperationRegistry()
    guard = RoleGuard(registry)
    if store is None:
        store = InMemoryKeyValueStore()
    if chain is None:
        if not settings.simulate_chain:
            raise ValueError("simulate_chain is disabled and no ChainClient was provided")
        chain = SimulatedChainClient(
            registry,
            clock=clock,
            chain_id=settings.chain_id,
            domain_name=settings.eip712_domain_name,
            domain_version=settings.eip712_domain_version,
        )

    hub = NotificationHub()
    hub.subscribe(LoggingNotificationSink().notify)
    recent = RecentNotifications()
    hub.subscribe(recent)

    prefix = settings.storage_key_prefix
    meta_tx_repo = SignedMetaTxRepository(store, prefix)
    settings_repo = MetaTxSettingsRepository(store, prefix)

    tracker = PendingOperationTracker(
        chain, registry, meta_tx_repo, read_attempts=settings.chain_read_attempts
    )
    temporal = TemporalWorkflow(chain, registry, guard, tracker, settings, clock=clock)
    engine = MetaTransactionEngine(
        chain,
        registry,
        guard,
        tracker,
        meta_tx_repo,
        NonceRepository(store, prefix),
        settings_repo,
        hub,
        settings,
        clock=clock,
    )
    manager = WorkflowManager(
        registry,
        guard,
        tracker,
        temporal,
        engine,
        hub,
        settings_repo,
        TokenListRepository(store, prefix),
        settings,
    )
    return WorkflowContainer(
        settings=settings,
        registry=registry,
        chain=chain,
        store=store,
        notifications=hub,
        recent=recent,
        manager=manager,
        clock=clock,
    )
