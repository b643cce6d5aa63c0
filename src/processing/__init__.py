"""Target reconciliation engine."""
from .matrix import TargetMatrix, TargetCell, CellState, ChangeEntry
from .reconciliation import TargetReconciler, TargetEditingSession, SaveResult
from .adapters import get_adapter

__all__ = [
    "TargetMatrix",
    "TargetCell",
    "CellState",
    "ChangeEntry",
    "TargetReconciler",
    "TargetEditingSession",
    "SaveResult",
    "get_adapter",
]
