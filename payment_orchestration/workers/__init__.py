"""Background workers."""
from .reconciliation_worker import main, start_reconciliation_worker

__all__ = ["main", "start_reconciliation_worker"]
