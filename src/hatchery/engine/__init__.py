"""Lifecycle reconciliation and batch orchestration."""

from hatchery.engine.orchestrator import Orchestrator, describe_batch, run_batch
from hatchery.engine.reconciler import LifecycleReconciler, ReconcileResult

__all__ = [
    "LifecycleReconciler",
    "Orchestrator",
    "ReconcileResult",
    "describe_batch",
    "run_batch",
]
