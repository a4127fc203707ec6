"""Reconciles fetched tracker issues into local storage."""

import asyncio
import logging
from collections import defaultdict
from uuid import UUID

from ..config import settings
from ..trackers.public_api import (
    IssueQuery,
    NormalizedIssue,
    SyncResult,
    TrackerClient,
    TrackerError,
    utc_now,
)
from .public_api import IssueRecord, ReconcileReport, SyncStore, TrackerRecord

logger = logging.getLogger("tracker_sync.sync")


def issue_record_from(tracker_id: UUID, issue: NormalizedIssue) -> IssueRecord:
    """Build the local record for a normalized issue."""
    return IssueRecord(
        tracker_id=tracker_id,
        external_key=issue.id,
        key=issue.key,
        title=issue.title,
        description=issue.description,
        status=issue.status,
        created_at=issue.created_at,
        updated_at=issue.updated_at,
        payload=issue.model_dump(mode="json"),
    )


class SyncReconciler:
    """
    Upserts normalized issues keyed on (tracker_id, external_key).

    Issues are processed in provider order. A failing issue is logged and
    reported without aborting the rest of the batch. Reconciliations for the
    same tracker never overlap; different trackers proceed independently.
    """

    def __init__(self, store: SyncStore, page_size: int | None = None):
        self._store = store
        self._page_size = page_size or settings.sync_page_size
        self._locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def reconcile(self, tracker_id: UUID, issues: list[NormalizedIssue]) -> ReconcileReport:
        """Write a batch of issues for one tracker."""
        report = ReconcileReport(tracker_id=tracker_id, total=len(issues))

        async with self._locks[tracker_id]:
            for issue in issues:
                try:
                    created = await self._store.upsert_issue(tracker_id, issue_record_from(tracker_id, issue))
                except Exception as e:
                    report.failed += 1
                    report.errors.append(f"Failed to reconcile issue {issue.key}: {e}")
                    logger.exception(f"Failed to reconcile issue {issue.key} for tracker {tracker_id}")
                    continue

                if created:
                    report.created += 1
                else:
                    report.updated += 1

        logger.info(
            f"Reconciled {report.total} issues for tracker {tracker_id}: "
            f"{report.created} created, {report.updated} updated, {report.failed} failed"
        )
        return report

    async def sync_tracker(
        self,
        tracker: TrackerRecord,
        client: TrackerClient,
        project_key: str | None = None,
    ) -> SyncResult:
        """
        Fetch issues changed since the tracker's last sync and reconcile them.

        The tracker's ``last_synced_at`` is stamped with the time the fetch
        started, and only when the fetch succeeded.

        Returns:
            A SyncResult with the reconciled create/update counts. Fetch
            failures are reported in ``errors`` rather than raised.
        """
        started_at = utc_now()
        project_key = project_key or tracker.project_key
        query = IssueQuery(limit=self._page_size, updated_since=tracker.last_synced_at)

        try:
            issues = await client.get_issues(project_key, query)
        except TrackerError as e:
            logger.error(f"Sync of tracker {tracker.name} ({tracker.id}) failed: {e.message}")
            return SyncResult(success=False, errors=[e.message], last_sync_time=started_at)

        report = await self.reconcile(tracker.id, issues)
        await self._store.mark_synced(tracker.id, started_at)
        return report.to_sync_result(started_at)
