# Application Sync Package
from .ledger import LocalWriteLedger
from .reconciler import SyncReconciler

__all__ = ["LocalWriteLedger", "SyncReconciler"]
