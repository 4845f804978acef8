"""Application services: use case orchestration."""

from secure_ops.services.meta_tx_engine import MetaTransactionEngine
from secure_ops.services.pending_tracker import PendingOperationTracker, PendingView
from secure_ops.services.temporal_workflow import TemporalWorkflow
from secure_ops.services.workflow_manager import WorkflowManager

__all__ = [
    "MetaTransactionEngine",
    "PendingOperationTracker",
    "PendingView",
    "TemporalWorkflow",
    "WorkflowManager",
]
