"""WBS tree construction, flattening and reconciliation."""

from .flatten import TreeFlattener, preferred_ref
from .reconcile import ReconcilePlan, Reconciler, ReconcileResult, RemoteSyncResult
from .tree import HierarchyBuilder, WbsNode, WbsTree, find_cycle

__all__ = [
    "TreeFlattener",
    "preferred_ref",
    "ReconcilePlan",
    "Reconciler",
    "ReconcileResult",
    "RemoteSyncResult",
    "HierarchyBuilder",
    "WbsNode",
    "WbsTree",
    "find_cycle",
]
