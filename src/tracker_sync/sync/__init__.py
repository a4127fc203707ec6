"""Reconciliation of tracker issues into local storage."""

from .database import Database
from .memory_store import InMemoryStore
from .public_api import (
    IssueRecord,
    ReconcileReport,
    SyncStore,
    TrackerRecord,
)
from .reconciler import SyncReconciler, issue_record_from

__all__ = [
    # Models
    "IssueRecord",
    "ReconcileReport",
    "TrackerRecord",
    # Storage
    "SyncStore",
    "InMemoryStore",
    "Database",
    # Reconciliation
    "SyncReconciler",
    "issue_record_from",
]
