"""Caching read service over one tracker client."""

import logging
from typing import Any, Awaitable, Callable

from ..common import ResponseCache
from .public_api import (
    IssueQuery,
    NormalizedIssue,
    NormalizedProject,
    NormalizedUser,
    TrackerClient,
)

logger = logging.getLogger("tracker_sync.service")


class TrackerService:
    """
    Serves idempotent reads of one tracker through the shared response cache.

    Keys are namespaced ``<tracker_type>:<tracker_id>:`` so one tracker's
    cache can be cleared without touching the others. Failures are never
    cached.
    """

    def __init__(
        self,
        client: TrackerClient,
        cache: ResponseCache,
        tracker_id: str,
        projects_ttl_seconds: float = 600.0,
        issues_ttl_seconds: float = 120.0,
    ):
        self._client = client
        self._cache = cache
        self._namespace = f"{client.tracker_type.value}:{tracker_id}:"
        self._projects_ttl = projects_ttl_seconds
        self._issues_ttl = issues_ttl_seconds

    @property
    def client(self) -> TrackerClient:
        return self._client

    @property
    def namespace(self) -> str:
        return self._namespace

    async def _cached(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_seconds: float | None = None,
    ) -> Any:
        full_key = f"{self._namespace}{key}"
        cached = self._cache.get(full_key)
        if cached is not None:
            logger.debug(f"Cache hit for {full_key}")
            return cached

        value = await fetch()
        if value is not None:
            self._cache.set(full_key, value, ttl_seconds)
        return value

    async def get_projects(self) -> list[NormalizedProject]:
        return await self._cached("projects", self._client.get_projects, self._projects_ttl)

    async def get_issues(
        self,
        project_key: str | None,
        query: IssueQuery | None = None,
    ) -> list[NormalizedIssue]:
        query = query or IssueQuery()
        key = f"issues:{project_key or '*'}:{query.model_dump_json()}"
        return await self._cached(
            key,
            lambda: self._client.get_issues(project_key, query),
            self._issues_ttl,
        )

    async def get_issue(self, issue_key: str) -> NormalizedIssue | None:
        return await self._cached(f"issue:{issue_key}", lambda: self._client.get_issue(issue_key))

    async def get_users(self, project_key: str | None = None) -> list[NormalizedUser]:
        return await self._cached(
            f"users:{project_key or '*'}",
            lambda: self._client.get_users(project_key),
        )

    def clear_cache(self) -> int:
        """Drop every cached read of this tracker."""
        removed = self._cache.invalidate_prefix(self._namespace)
        logger.info(f"Cleared {removed} cached entries for {self._namespace.rstrip(':')}")
        return removed
