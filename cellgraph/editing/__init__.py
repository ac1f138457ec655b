"""External editor sessions and reconciliation."""

from .reconciler import EditOutcome, EditSession, ExternalEditReconciler
from .watcher import EditFinished, ProcessWatcher

__all__ = ["EditFinished", "EditOutcome", "EditSession", "ExternalEditReconciler", "ProcessWatcher"]
