"""Public API for the sync module.

This module defines the persisted tracker and issue records, the reconcile
report and the storage interface the reconciler writes through.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..trackers.public_api import (
    CredentialConfig,
    IssueStatus,
    SyncResult,
    TrackerConfig,
    TrackerType,
    utc_now,
)

# =============================================================================
# Models
# =============================================================================


class TrackerRecord(BaseModel):
    """A registered external tracker."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    tracker_type: TrackerType
    base_url: str | None = None
    credentials: CredentialConfig = Field(exclude=True)
    project_key: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_config(self, **overrides: Any) -> TrackerConfig:
        """Build the client configuration for this tracker."""
        return TrackerConfig(
            tracker_type=self.tracker_type,
            credentials=self.credentials,
            base_url=self.base_url,
            project_key=self.project_key,
            **overrides,
        )


class IssueRecord(BaseModel):
    """Local copy of one external issue, unique per (tracker_id, external_key)."""

    id: UUID = Field(default_factory=uuid4)
    tracker_id: UUID
    external_key: str
    key: str
    title: str
    description: str | None = None
    status: IssueStatus = IssueStatus.OPEN
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    synced_at: datetime = Field(default_factory=utc_now)


class ReconcileReport(BaseModel):
    """Outcome of reconciling one batch of issues into local storage."""

    tracker_id: UUID
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def to_sync_result(self, last_sync_time: datetime | None = None) -> SyncResult:
        return SyncResult(
            success=self.failed == 0,
            processed=self.total,
            created=self.created,
            updated=self.updated,
            errors=list(self.errors),
            last_sync_time=last_sync_time or utc_now(),
        )


# =============================================================================
# Storage Interface (ABC)
# =============================================================================


class SyncStore(ABC):
    """Persistence for trackers and their reconciled issues."""

    async def connect(self) -> None:
        """Open connections. Stores without connections do nothing."""

    @abstractmethod
    async def create_tracker(self, tracker: TrackerRecord) -> TrackerRecord:
        pass

    @abstractmethod
    async def get_tracker(self, tracker_id: UUID) -> TrackerRecord | None:
        pass

    @abstractmethod
    async def list_trackers(self) -> list[TrackerRecord]:
        pass

    @abstractmethod
    async def delete_tracker(self, tracker_id: UUID) -> bool:
        """
        Delete a tracker.

        Returns:
            True if a tracker was deleted, False if none existed.
        """
        pass

    @abstractmethod
    async def mark_synced(self, tracker_id: UUID, synced_at: datetime) -> None:
        """Stamp the tracker's last successful sync time."""
        pass

    @abstractmethod
    async def upsert_issue(self, tracker_id: UUID, issue: IssueRecord) -> bool:
        """
        Insert an issue or overwrite the one with the same external key.

        On conflict only title, description, status, updated_at, payload and
        synced_at are overwritten; the local id and created_at are kept.

        Returns:
            True if a new record was created, False if an existing one was updated.
        """
        pass

    @abstractmethod
    async def get_issue(self, tracker_id: UUID, external_key: str) -> IssueRecord | None:
        pass

    @abstractmethod
    async def list_issues(
        self,
        tracker_id: UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> list[IssueRecord]:
        pass

    @abstractmethod
    async def count_issues(self, tracker_id: UUID) -> int:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
