"""API routes for tracker registration, reads and sync.

Reads go through the per-tracker caching service; sync goes through the
reconciler so created/updated counts reflect local state.
"""

import logging
from datetime import datetime
from typing import NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from ..context import IntegrationContext
from ..sync import TrackerRecord
from .public_api import (
    CredentialConfig,
    IssueQuery,
    NormalizedIssue,
    NormalizedProject,
    OAuth2Credentials,
    RateLimitExceededError,
    SyncResult,
    TrackerError,
    TrackerType,
)

logger = logging.getLogger("tracker_sync.api")

trackers_router = APIRouter(prefix="/api/trackers", tags=["trackers"])


def get_context(request: Request) -> IntegrationContext:
    """Return the integration context built at startup."""
    return request.app.state.context


class CreateTrackerRequest(BaseModel):
    """Request to register a tracker."""

    name: str
    tracker_type: TrackerType
    base_url: str | None = None
    credentials: CredentialConfig
    project_key: str | None = None


class TrackerInfo(BaseModel):
    """A registered tracker as returned by the API, without credentials."""

    id: UUID
    name: str
    tracker_type: TrackerType
    base_url: str | None = None
    project_key: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, tracker: TrackerRecord) -> "TrackerInfo":
        return cls.model_validate(tracker.model_dump())


class ConnectionStatus(BaseModel):
    connected: bool
    tracker_type: TrackerType
    base_url: str | None = None
    last_synced_at: datetime | None = None


class OAuthCallbackRequest(BaseModel):
    code: str


def _raise_for_tracker_error(e: TrackerError) -> NoReturn:
    if isinstance(e, RateLimitExceededError):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": e.code, "message": e.message, "retry_after": e.retry_after},
            headers={"Retry-After": str(e.retry_after)},
        ) from e
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message) from e


def _awaiting_authorization(tracker: TrackerRecord) -> bool:
    creds = tracker.credentials
    return isinstance(creds, OAuth2Credentials) and creds.token() is None


async def _get_tracker_or_404(context: IntegrationContext, tracker_id: UUID) -> TrackerRecord:
    tracker = await context.store.get_tracker(tracker_id)
    if tracker is None:
        raise HTTPException(status_code=404, detail=f"Tracker {tracker_id} not found")
    return tracker


@trackers_router.post("", status_code=status.HTTP_201_CREATED)
async def create_tracker(
    request: CreateTrackerRequest,
    context: IntegrationContext = Depends(get_context),
) -> TrackerInfo:
    """
    Register a tracker after checking its credentials.

    OAuth trackers that hold no token yet are registered without a
    connection test; they connect once the authorization flow completes.

    Raises:
        HTTPException: 400 if the credentials are rejected.
    """
    tracker = TrackerRecord(
        name=request.name,
        tracker_type=request.tracker_type,
        base_url=request.base_url,
        credentials=request.credentials,
        project_key=request.project_key,
    )

    try:
        async with context.open_client(tracker) as client:
            if not _awaiting_authorization(tracker) and not await client.test_connection():
                raise HTTPException(
                    status_code=400,
                    detail="Failed to connect to tracker with provided credentials",
                )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    created = await context.store.create_tracker(tracker)
    logger.info(f"Registered {created.tracker_type.value} tracker {created.name} ({created.id})")
    return TrackerInfo.from_record(created)


@trackers_router.get("")
async def list_trackers(context: IntegrationContext = Depends(get_context)) -> list[TrackerInfo]:
    """List registered trackers, newest first."""
    return [TrackerInfo.from_record(tracker) for tracker in await context.store.list_trackers()]


@trackers_router.get("/{tracker_id}")
async def get_tracker(
    tracker_id: UUID,
    context: IntegrationContext = Depends(get_context),
) -> TrackerInfo:
    return TrackerInfo.from_record(await _get_tracker_or_404(context, tracker_id))


@trackers_router.delete("/{tracker_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tracker(
    tracker_id: UUID,
    context: IntegrationContext = Depends(get_context),
) -> None:
    """
    Delete a tracker.

    Raises:
        HTTPException: 404 if the tracker does not exist, 409 if issues are
            still linked to it.
    """
    tracker = await _get_tracker_or_404(context, tracker_id)
    linked = await context.store.count_issues(tracker.id)
    if linked:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot delete tracker with {linked} linked issues",
        )
    await context.store.delete_tracker(tracker.id)
    context.cache.invalidate_prefix(f"{tracker.tracker_type.value}:{tracker.id}:")


@trackers_router.post("/{tracker_id}/test")
async def test_tracker_connection(
    tracker_id: UUID,
    context: IntegrationContext = Depends(get_context),
) -> ConnectionStatus:
    tracker = await _get_tracker_or_404(context, tracker_id)
    async with context.open_client(tracker) as client:
        connected = await client.test_connection()
    return ConnectionStatus(
        connected=connected,
        tracker_type=tracker.tracker_type,
        base_url=tracker.base_url,
        last_synced_at=tracker.last_synced_at,
    )


@trackers_router.post("/{tracker_id}/sync")
async def sync_tracker(
    tracker_id: UUID,
    project_key: str | None = None,
    context: IntegrationContext = Depends(get_context),
) -> SyncResult:
    """Fetch changed issues and reconcile them into local storage."""
    tracker = await _get_tracker_or_404(context, tracker_id)
    async with context.open_client(tracker) as client:
        result = await context.reconciler.sync_tracker(tracker, client, project_key)
        if result.success:
            context.service_for(tracker, client).clear_cache()
    return result


@trackers_router.get("/{tracker_id}/projects")
async def get_projects(
    tracker_id: UUID,
    context: IntegrationContext = Depends(get_context),
) -> list[NormalizedProject]:
    tracker = await _get_tracker_or_404(context, tracker_id)
    async with context.open_client(tracker) as client:
        try:
            return await context.service_for(tracker, client).get_projects()
        except TrackerError as e:
            _raise_for_tracker_error(e)


@trackers_router.get("/{tracker_id}/issues")
async def get_issues(
    tracker_id: UUID,
    project_key: str | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    updated_since: datetime | None = None,
    status_filter: list[str] | None = Query(default=None, alias="status"),
    context: IntegrationContext = Depends(get_context),
) -> list[NormalizedIssue]:
    """List issues of a project, defaulting to the tracker's configured project."""
    tracker = await _get_tracker_or_404(context, tracker_id)
    query = IssueQuery(limit=limit, offset=offset, updated_since=updated_since, status=status_filter)
    async with context.open_client(tracker) as client:
        try:
            return await context.service_for(tracker, client).get_issues(
                project_key or tracker.project_key, query
            )
        except TrackerError as e:
            _raise_for_tracker_error(e)


@trackers_router.get("/{tracker_id}/issues/{issue_key}")
async def get_issue(
    tracker_id: UUID,
    issue_key: str,
    context: IntegrationContext = Depends(get_context),
) -> NormalizedIssue:
    tracker = await _get_tracker_or_404(context, tracker_id)
    async with context.open_client(tracker) as client:
        try:
            issue = await context.service_for(tracker, client).get_issue(issue_key)
        except TrackerError as e:
            _raise_for_tracker_error(e)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue {issue_key} not found")
    return issue


@trackers_router.delete("/{tracker_id}/cache")
async def clear_tracker_cache(
    tracker_id: UUID,
    context: IntegrationContext = Depends(get_context),
) -> dict[str, int]:
    tracker = await _get_tracker_or_404(context, tracker_id)
    removed = context.cache.invalidate_prefix(f"{tracker.tracker_type.value}:{tracker.id}:")
    return {"removed": removed}


async def _get_jira_tracker(context: IntegrationContext, tracker_id: UUID) -> TrackerRecord:
    tracker = await _get_tracker_or_404(context, tracker_id)
    if tracker.tracker_type != TrackerType.JIRA:
        raise HTTPException(status_code=400, detail="OAuth authorization is only available for Jira trackers")
    return tracker


@trackers_router.get("/{tracker_id}/oauth/authorize")
async def oauth_authorize(
    tracker_id: UUID,
    context: IntegrationContext = Depends(get_context),
) -> dict[str, str]:
    """Return the URL the user visits to authorize Jira access."""
    tracker = await _get_jira_tracker(context, tracker_id)
    async with context.open_client(tracker) as client:
        return {"authorization_url": client.authorization_url(state=str(tracker.id))}


@trackers_router.post("/{tracker_id}/oauth/callback")
async def oauth_callback(
    tracker_id: UUID,
    request: OAuthCallbackRequest,
    context: IntegrationContext = Depends(get_context),
) -> dict[str, bool]:
    """Exchange the authorization code; the token is persisted for the tracker."""
    tracker = await _get_jira_tracker(context, tracker_id)
    async with context.open_client(tracker) as client:
        if not await client.exchange_code(request.code):
            raise HTTPException(status_code=400, detail="Authorization code exchange failed")
    return {"authenticated": True}
