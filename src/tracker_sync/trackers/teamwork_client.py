"""Teamwork Projects REST API (v3) implementation of the tracker client."""

import base64
import logging
from collections.abc import Mapping
from datetime import datetime
from functools import partial
from typing import Any

import httpx

from ..common import RateLimiter
from ..config import settings
from .http import TrackerHttp, retry_with_backoff
from .normalization import (
    as_str,
    build_model,
    first_of,
    format_date,
    label_names,
    normalize_issue,
    normalize_teamwork_status,
    person_from,
    to_teamwork_status,
)
from .public_api import (
    ApiKeyCredentials,
    IssueQuery,
    NormalizedIssue,
    NormalizedProject,
    NormalizedUser,
    RateLimitExceededError,
    SyncResult,
    TrackerClient,
    TrackerConfig,
    TrackerError,
    TrackerPayloadError,
    TrackerRequestError,
    TrackerType,
)

logger = logging.getLogger("tracker_sync.teamwork")

API_PREFIX = "/projects/api/v3"


def site_base_url(site: str) -> str:
    """Turn ``acme`` or ``acme.teamwork.com`` into the site's base URL."""
    host = site.strip().removeprefix("https://").removeprefix("http://").rstrip("/")
    if "." not in host:
        host = f"{host}.teamwork.com"
    return f"https://{host}"


class TeamworkClient(TrackerClient):
    """
    Teamwork implementation of the tracker client interface.

    Authenticates with the API key as the Basic auth username and ``x`` as
    the password. Every call is admitted by the shared rate limiter first,
    keyed by the API key so trackers sharing a key share the budget.
    """

    tracker_type = TrackerType.TEAMWORK

    MAX_PAGE_SIZE = 250

    def __init__(
        self,
        config: TrackerConfig,
        rate_limiter: RateLimiter,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not isinstance(config.credentials, ApiKeyCredentials):
            raise ValueError("Teamwork trackers require api_key credentials")

        self._api_key = config.credentials.api_key
        self._rate_limiter = rate_limiter
        self._rate_limit_key = f"teamwork:{self._api_key}"
        self._retry_attempts = config.retry_attempts
        self._retry_delay = config.retry_base_delay_seconds
        self._http = TrackerHttp(
            config.base_url or site_base_url(config.credentials.site),
            self._auth_headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._http.base_url

    async def _auth_headers(self) -> dict[str, str]:
        encoded = base64.b64encode(f"{self._api_key}:x".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}

    async def _request(self, path: str, params: Any = None) -> Any:
        """Rate-limited GET against the v3 API."""
        decision = self._rate_limiter.check(self._rate_limit_key)
        if not decision.allowed:
            wait = decision.retry_after(self._rate_limiter.now())
            logger.warning(f"Teamwork API rate limit exceeded for {path}, retry in {wait}s")
            raise RateLimitExceededError(
                f"Teamwork API rate limit exceeded. Please try again in {wait} seconds.",
                retry_after=wait,
                endpoint=path,
            )
        return await self._http.request("GET", f"{API_PREFIX}{path}", params=params)

    async def _with_retry(self, path: str, params: Any = None) -> Any:
        return await retry_with_backoff(
            partial(self._request, path, params),
            max_attempts=self._retry_attempts,
            base_delay=self._retry_delay,
        )

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def authenticate(self) -> bool:
        # API keys do not expire; a successful call is all there is to check
        return await self.test_connection()

    async def test_connection(self) -> bool:
        try:
            await self._request("/projects.json", {"pageSize": 1})
            return True
        except TrackerError as e:
            logger.error(f"Teamwork connection test failed: {e.message}")
            return False

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_projects(self) -> list[NormalizedProject]:
        try:
            data = await self._with_retry("/projects.json")
            return [self._parse_project(project) for project in _list_field(data, "projects")]
        except TrackerError as e:
            logger.error(f"Failed to fetch Teamwork projects: {e.message}")
            raise

    async def get_project(self, project_key: str) -> NormalizedProject | None:
        try:
            data = await self._request(f"/projects/{project_key}.json")
        except TrackerRequestError as e:
            if e.not_found:
                logger.info(f"Teamwork project {project_key} not found")
                return None
            raise

        return self._parse_project(_object_field(data, "project"))

    async def get_issues(
        self,
        project_key: str | None,
        query: IssueQuery | None = None,
    ) -> list[NormalizedIssue]:
        query = query or IssueQuery()
        path = f"/projects/{project_key}/tasks.json" if project_key else "/tasks.json"

        page_size = min(self.MAX_PAGE_SIZE, query.limit)
        # Teamwork pages are 1-based; the offset is rounded down to a page
        page = query.offset // page_size + 1
        skip = query.offset % page_size

        tasks: list[Any] = []
        try:
            while len(tasks) < query.limit + skip:
                params: list[tuple[str, Any]] = [("pageSize", page_size), ("page", page)]
                if query.updated_since:
                    params.append(("updatedAfter", format_date(query.updated_since)))
                for status in query.status or []:
                    params.append(("status[]", to_teamwork_status(status)))

                data = await self._with_retry(path, params)
                batch = _list_field(data, "tasks")
                tasks.extend(batch)

                has_more = ((data.get("meta") or {}).get("page") or {}).get("hasMore")
                if not batch or not has_more:
                    break
                page += 1
        except TrackerError as e:
            logger.error(f"Failed to fetch Teamwork tasks for {project_key or 'all projects'}: {e.message}")
            raise

        return [self._parse_task(task) for task in tasks[skip : skip + query.limit]]

    async def get_issue(self, issue_key: str) -> NormalizedIssue | None:
        try:
            data = await self._request(f"/tasks/{issue_key}.json")
        except TrackerRequestError as e:
            if e.not_found:
                logger.info(f"Teamwork task {issue_key} not found")
                return None
            raise

        return self._parse_task(_object_field(data, "task"))

    async def get_users(self, project_key: str | None = None) -> list[NormalizedUser]:
        path = f"/projects/{project_key}/people.json" if project_key else "/people.json"
        try:
            data = await self._with_retry(path)
            people = _list_field(data, "people")
        except TrackerError as e:
            logger.error(f"Failed to fetch Teamwork people: {e.message}")
            raise

        users = []
        for person in people:
            parsed = person_from(person)
            if parsed is None:
                continue
            users.append(
                build_model(
                    NormalizedUser,
                    id=parsed.id,
                    name=parsed.name,
                    email=parsed.email,
                    display_name=parsed.name,
                )
            )
        return users

    async def sync_issues(
        self,
        project_key: str | None,
        last_sync_time: datetime | None = None,
    ) -> SyncResult:
        result = SyncResult()
        try:
            tasks = await self.get_issues(
                project_key,
                IssueQuery(limit=settings.sync_page_size, updated_since=last_sync_time),
            )
        except TrackerError as e:
            result.errors.append(e.message)
            logger.error(f"Teamwork sync failed: {e.message}")
            return result

        result.success = True
        result.processed = len(tasks)
        result.created = len(tasks)
        scope = f"project {project_key}" if project_key else "(all projects)"
        logger.info(f"Fetched {len(tasks)} tasks from Teamwork {scope}")
        return result

    async def close(self) -> None:
        await self._http.close()

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def _parse_project(self, data: Any) -> NormalizedProject:
        if not isinstance(data, Mapping) or data.get("id") is None:
            raise TrackerPayloadError("Teamwork project payload has no id")
        project_id = str(data["id"])
        return build_model(
            NormalizedProject,
            id=project_id,
            key=project_id,
            name=data.get("name") or project_id,
            description=data.get("description") or None,
            url=f"{self.base_url}/app/projects/{project_id}",
        )

    def _parse_task(self, task: Any) -> NormalizedIssue:
        """Parse a Teamwork task into the shared shape."""
        if not isinstance(task, Mapping):
            raise TrackerPayloadError("Teamwork task payload is not an object")

        task_id = as_str(task.get("id"))
        return normalize_issue(
            task,
            id=task_id,
            key=task_id,
            title=task.get("name") or "",
            description=task.get("description") or None,
            status=normalize_teamwork_status(task.get("status")),
            assignee=person_from(task.get("assignedTo")),
            reporter=person_from(task.get("createdBy")),
            priority=task.get("priority") or None,
            labels=label_names(task.get("tags")),
            created_at=first_of(task, "createdOn", "createdAt"),
            updated_at=first_of(task, "lastChangedOn", "updatedAt"),
            url=f"{self.base_url}/app/tasks/{task_id}" if task_id else None,
        )


def _list_field(data: Any, field: str) -> list[Any]:
    if not isinstance(data, Mapping):
        raise TrackerPayloadError(f"Teamwork response for {field} is not an object")
    items = data.get(field) or []
    if not isinstance(items, list):
        raise TrackerPayloadError(f"Teamwork response field {field!r} is not a list")
    return items


def _object_field(data: Any, field: str) -> Mapping:
    item = data.get(field) if isinstance(data, Mapping) else None
    if not isinstance(item, Mapping):
        raise TrackerPayloadError(f"Teamwork response field {field!r} is not an object")
    return item
