"""In-memory SyncStore for development and tests."""

from datetime import datetime
from uuid import UUID

from .public_api import IssueRecord, SyncStore, TrackerRecord


class InMemoryStore(SyncStore):
    """Keeps trackers and issues in dicts; issues are keyed by (tracker_id, external_key)."""

    def __init__(self):
        self._trackers: dict[UUID, TrackerRecord] = {}
        self._issues: dict[tuple[UUID, str], IssueRecord] = {}

    async def create_tracker(self, tracker: TrackerRecord) -> TrackerRecord:
        self._trackers[tracker.id] = tracker
        return tracker

    async def get_tracker(self, tracker_id: UUID) -> TrackerRecord | None:
        return self._trackers.get(tracker_id)

    async def list_trackers(self) -> list[TrackerRecord]:
        return sorted(self._trackers.values(), key=lambda t: t.created_at, reverse=True)

    async def delete_tracker(self, tracker_id: UUID) -> bool:
        return self._trackers.pop(tracker_id, None) is not None

    async def mark_synced(self, tracker_id: UUID, synced_at: datetime) -> None:
        tracker = self._trackers.get(tracker_id)
        if tracker is not None:
            self._trackers[tracker_id] = tracker.model_copy(
                update={"last_synced_at": synced_at, "updated_at": synced_at}
            )

    async def upsert_issue(self, tracker_id: UUID, issue: IssueRecord) -> bool:
        key = (tracker_id, issue.external_key)
        existing = self._issues.get(key)
        if existing is None:
            self._issues[key] = issue.model_copy(update={"tracker_id": tracker_id})
            return True

        self._issues[key] = existing.model_copy(
            update={
                "title": issue.title,
                "description": issue.description,
                "status": issue.status,
                "updated_at": issue.updated_at,
                "payload": issue.payload,
                "synced_at": issue.synced_at,
            }
        )
        return False

    async def get_issue(self, tracker_id: UUID, external_key: str) -> IssueRecord | None:
        return self._issues.get((tracker_id, external_key))

    async def list_issues(
        self,
        tracker_id: UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> list[IssueRecord]:
        issues = [issue for (tid, _), issue in self._issues.items() if tid == tracker_id]
        issues.sort(key=lambda i: i.updated_at, reverse=True)
        return issues[offset : offset + limit]

    async def count_issues(self, tracker_id: UUID) -> int:
        return sum(1 for tid, _ in self._issues if tid == tracker_id)

    async def close(self) -> None:
        pass
