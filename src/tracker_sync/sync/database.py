"""PostgreSQL persistence for trackers and reconciled issues."""

import json
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from ..config import settings
from .public_api import IssueRecord, SyncStore, TrackerRecord


def _json_value(value: Any) -> Any:
    # asyncpg returns JSONB as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class Database(SyncStore):
    """PostgreSQL implementation of the sync store."""

    def __init__(self, database_url: str | None = None):
        self._database_url = database_url or settings.database_url
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Establish database connection pool.

        Note: Schema is managed by Alembic migrations. Run migrations before
        starting the application:
            alembic upgrade head
        """
        self._pool = await asyncpg.create_pool(
            self._database_url,
            min_size=2,
            max_size=10,
        )

    async def close(self) -> None:
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def _get_pool(self) -> asyncpg.Pool:
        """Get the connection pool, connecting if needed."""
        if self._pool is None:
            await self.connect()
        return self._pool  # type: ignore

    # Tracker operations

    async def create_tracker(self, tracker: TrackerRecord) -> TrackerRecord:
        """Insert a new tracker record."""
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO trackers
            (id, name, tracker_type, base_url, credentials, project_key,
             last_synced_at, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            tracker.id,
            tracker.name,
            tracker.tracker_type.value,
            tracker.base_url,
            json.dumps(tracker.credentials.model_dump(mode="json")),
            tracker.project_key,
            tracker.last_synced_at,
            tracker.created_at,
            tracker.updated_at,
        )
        return tracker

    async def get_tracker(self, tracker_id: UUID) -> TrackerRecord | None:
        """Get a tracker by ID."""
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT * FROM trackers WHERE id = $1", tracker_id)
        if row:
            return self._row_to_tracker(row)
        return None

    async def list_trackers(self) -> list[TrackerRecord]:
        """List all trackers, newest first."""
        pool = await self._get_pool()
        rows = await pool.fetch("SELECT * FROM trackers ORDER BY created_at DESC")
        return [self._row_to_tracker(row) for row in rows]

    async def delete_tracker(self, tracker_id: UUID) -> bool:
        """Delete a tracker. Linked issues block the delete via the foreign key."""
        pool = await self._get_pool()
        result = await pool.execute("DELETE FROM trackers WHERE id = $1", tracker_id)
        return result.endswith(" 1")

    async def mark_synced(self, tracker_id: UUID, synced_at: datetime) -> None:
        """Stamp the last successful sync time."""
        pool = await self._get_pool()
        await pool.execute(
            """
            UPDATE trackers
            SET last_synced_at = $2, updated_at = NOW()
            WHERE id = $1
            """,
            tracker_id,
            synced_at,
        )

    def _row_to_tracker(self, row: asyncpg.Record) -> TrackerRecord:
        """Convert a database row to a TrackerRecord."""
        return TrackerRecord.model_validate(
            {
                "id": row["id"],
                "name": row["name"],
                "tracker_type": row["tracker_type"],
                "base_url": row["base_url"],
                "credentials": _json_value(row["credentials"]),
                "project_key": row["project_key"],
                "last_synced_at": row["last_synced_at"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
        )

    # Issue operations

    async def upsert_issue(self, tracker_id: UUID, issue: IssueRecord) -> bool:
        """Insert or update an issue keyed on (tracker_id, external_key).

        ``xmax = 0`` holds only for rows inserted by this statement, which
        tells a create apart from an update in one round trip.
        """
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            INSERT INTO issues
            (id, tracker_id, external_key, key, title, description, status,
             created_at, updated_at, payload, synced_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (tracker_id, external_key) DO UPDATE SET
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                status = EXCLUDED.status,
                updated_at = EXCLUDED.updated_at,
                payload = EXCLUDED.payload,
                synced_at = EXCLUDED.synced_at
            RETURNING (xmax = 0) AS inserted
            """,
            issue.id,
            tracker_id,
            issue.external_key,
            issue.key,
            issue.title,
            issue.description,
            issue.status.value,
            issue.created_at,
            issue.updated_at,
            json.dumps(issue.payload, default=str),
            issue.synced_at,
        )
        return bool(inserted)

    async def get_issue(self, tracker_id: UUID, external_key: str) -> IssueRecord | None:
        """Get an issue by its external key."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "SELECT * FROM issues WHERE tracker_id = $1 AND external_key = $2",
            tracker_id,
            external_key,
        )
        if row:
            return self._row_to_issue(row)
        return None

    async def list_issues(
        self,
        tracker_id: UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> list[IssueRecord]:
        """List a tracker's issues, most recently updated first."""
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM issues
            WHERE tracker_id = $1
            ORDER BY updated_at DESC
            LIMIT $2 OFFSET $3
            """,
            tracker_id,
            limit,
            offset,
        )
        return [self._row_to_issue(row) for row in rows]

    async def count_issues(self, tracker_id: UUID) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval("SELECT COUNT(*) FROM issues WHERE tracker_id = $1", tracker_id)
        return int(count or 0)

    def _row_to_issue(self, row: asyncpg.Record) -> IssueRecord:
        """Convert a database row to an IssueRecord."""
        return IssueRecord(
            id=row["id"],
            tracker_id=row["tracker_id"],
            external_key=row["external_key"],
            key=row["key"],
            title=row["title"],
            description=row["description"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            payload=_json_value(row["payload"]) or {},
            synced_at=row["synced_at"],
        )
