"""Jira Cloud REST API (v3) implementation of the tracker client."""

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from functools import partial
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from ..config import settings
from .http import TrackerHttp, retry_with_backoff
from .normalization import (
    as_str,
    build_model,
    format_date,
    label_names,
    normalize_issue,
    normalize_jira_status,
    person_from,
    to_jira_status,
)
from .public_api import (
    AuthenticationRequiredError,
    IssueQuery,
    NormalizedIssue,
    NormalizedProject,
    NormalizedUser,
    OAuth2Credentials,
    OAuthToken,
    SyncResult,
    TrackerClient,
    TrackerConfig,
    TrackerError,
    TrackerPayloadError,
    TrackerRequestError,
    TrackerType,
    utc_now,
)
from .token_store import TokenStore

logger = logging.getLogger("tracker_sync.jira")

BLOCK_NODE_TYPES = frozenset({"paragraph", "heading"})


def adf_to_text(content: list[Any]) -> str:
    """
    Flatten Atlassian Document Format nodes to plain text.

    Text nodes are concatenated in document order; a line break follows every
    paragraph and heading, and hard breaks become line breaks.
    """
    parts: list[str] = []

    def walk(nodes: list[Any]) -> None:
        for node in nodes:
            if not isinstance(node, Mapping):
                continue
            node_type = node.get("type")
            if node_type == "text":
                parts.append(node.get("text") or "")
            elif node_type == "hardBreak":
                parts.append("\n")
            elif isinstance(node.get("content"), list):
                walk(node["content"])

            if node_type in BLOCK_NODE_TYPES:
                parts.append("\n")

    walk(content)
    return "".join(parts).strip()


class JiraClient(TrackerClient):
    """
    Jira implementation of the tracker client interface.

    Authenticates with OAuth 2.0 bearer tokens. The token record is held on
    the instance and, when a token store is given, loaded from and saved to
    it so refreshed tokens survive restarts. A 401 during a call triggers one
    refresh and one replay of the call.
    """

    tracker_type = TrackerType.JIRA

    SEARCH_PATH = "/rest/api/3/search"
    MAX_PAGE_SIZE = 100
    SEARCH_FIELDS = [
        "summary",
        "description",
        "status",
        "assignee",
        "reporter",
        "priority",
        "labels",
        "created",
        "updated",
    ]

    def __init__(
        self,
        config: TrackerConfig,
        token_store: TokenStore | None = None,
        token_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not isinstance(config.credentials, OAuth2Credentials):
            raise ValueError("Jira trackers require oauth2 credentials")
        if not config.base_url:
            raise ValueError("Jira trackers require a base_url")

        self._credentials = config.credentials
        self._token = config.credentials.token()
        self._token_store = token_store
        self._token_name = token_name
        self._token_loaded = token_store is None or token_name is None
        self._retry_attempts = config.retry_attempts
        self._retry_delay = config.retry_base_delay_seconds
        self._http = TrackerHttp(
            config.base_url,
            self._auth_headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    @property
    def token(self) -> OAuthToken | None:
        """The current token record."""
        return self._token

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def authenticate(self) -> bool:
        await self._load_stored_token()

        if self._token and self._token.access_token and not self._token.is_expired():
            if await self.test_connection():
                return True

        if self._token and self._token.refresh_token:
            return await self._refresh_access_token()

        logger.warning("No valid Jira access token available. OAuth authorization flow required.")
        return False

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/rest/api/3/myself")
            return True
        except TrackerError as e:
            logger.error(f"Jira connection test failed: {e.message}")
            return False

    def authorization_url(self, state: str | None = None) -> str:
        """Build the URL the user visits to grant access."""
        params = {
            "audience": settings.jira_oauth_audience,
            "client_id": self._credentials.client_id,
            "scope": settings.jira_oauth_scope,
            "redirect_uri": self._credentials.redirect_uri,
            "response_type": "code",
        }
        if state:
            params["state"] = state
        return f"{settings.jira_auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> bool:
        """Exchange an authorization code for an access/refresh token pair."""
        return await self._request_token(
            {
                "grant_type": "authorization_code",
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "code": code,
                "redirect_uri": self._credentials.redirect_uri,
            },
            action="exchange",
        )

    async def _refresh_access_token(self) -> bool:
        if not self._token or not self._token.refresh_token:
            logger.error("Cannot refresh Jira access token: no refresh token available")
            return False
        return await self._request_token(
            {
                "grant_type": "refresh_token",
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "refresh_token": self._token.refresh_token,
            },
            action="refresh",
        )

    async def _request_token(self, payload: dict[str, str], action: str) -> bool:
        try:
            data = await self._http.request(
                "POST",
                settings.jira_token_url,
                json=payload,
                authenticated=False,
            )
        except TrackerError as e:
            logger.error(f"Jira token {action} failed: {e.message}")
            return False

        if not isinstance(data, Mapping) or not data.get("access_token"):
            logger.error(f"Jira token {action} returned no access token")
            return False

        expires_at: datetime | None = None
        if data.get("expires_in"):
            expires_at = utc_now() + timedelta(seconds=int(data["expires_in"]))

        refresh_token = data.get("refresh_token") or (self._token.refresh_token if self._token else None)
        self._token = OAuthToken(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        if self._token_store is not None and self._token_name:
            await self._token_store.save(self._token_name, self._token)

        logger.info(f"Jira OAuth token {action} successful")
        return True

    async def _load_stored_token(self) -> None:
        if self._token_loaded:
            return
        self._token_loaded = True
        stored = await self._token_store.load(self._token_name)
        if stored is not None:
            self._token = stored

    async def _auth_headers(self) -> dict[str, str]:
        await self._load_stored_token()
        if not self._token or not self._token.access_token:
            raise AuthenticationRequiredError("No Jira access token available; OAuth authorization required")
        return {"Authorization": f"Bearer {self._token.access_token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Authenticated request with at most one token refresh.

        A client holding only a refresh token refreshes before the first
        call; otherwise a 401 triggers the refresh and a single replay.
        """
        await self._load_stored_token()
        refreshed = False
        if self._token and not self._token.access_token and self._token.refresh_token:
            logger.info(f"No Jira access token for {path}, refreshing before the request")
            if not await self._refresh_access_token():
                raise AuthenticationRequiredError(
                    "Jira authentication required: token refresh failed", endpoint=path
                )
            refreshed = True

        try:
            return await self._http.request(method, path, **kwargs)
        except TrackerRequestError as e:
            if e.status_code != 401:
                raise
            if refreshed or not self._token or not self._token.refresh_token:
                raise AuthenticationRequiredError(
                    f"Jira rejected the access token for {path}", endpoint=path
                ) from e
            logger.info(f"Jira returned 401 for {path}, refreshing access token")
            if not await self._refresh_access_token():
                raise AuthenticationRequiredError(
                    "Jira authentication required: token refresh failed", endpoint=path
                ) from e

        try:
            return await self._http.request(method, path, **kwargs)
        except TrackerRequestError as e:
            if e.status_code == 401:
                raise AuthenticationRequiredError(
                    f"Jira rejected the refreshed access token for {path}", endpoint=path
                ) from e
            raise

    async def _with_retry(self, method: str, path: str, **kwargs: Any) -> Any:
        return await retry_with_backoff(
            partial(self._request, method, path, **kwargs),
            max_attempts=self._retry_attempts,
            base_delay=self._retry_delay,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_projects(self) -> list[NormalizedProject]:
        try:
            data = await self._with_retry("GET", "/rest/api/3/project")
            if not isinstance(data, list):
                raise TrackerPayloadError("Jira project list response is not a list")
            return [self._parse_project(project) for project in data]
        except TrackerError as e:
            logger.error(f"Failed to fetch Jira projects: {e.message}")
            raise

    async def get_project(self, project_key: str) -> NormalizedProject | None:
        try:
            data = await self._request("GET", f"/rest/api/3/project/{quote(project_key)}")
        except TrackerRequestError as e:
            if e.not_found:
                logger.info(f"Jira project {project_key} not found")
                return None
            raise
        return self._parse_project(data)

    async def get_issues(
        self,
        project_key: str | None,
        query: IssueQuery | None = None,
    ) -> list[NormalizedIssue]:
        query = query or IssueQuery()
        jql = self.build_jql(project_key, query.updated_since, query.status)

        issues: list[NormalizedIssue] = []
        start_at = query.offset
        try:
            while len(issues) < query.limit:
                page_size = min(self.MAX_PAGE_SIZE, query.limit - len(issues))
                data = await self._with_retry(
                    "POST",
                    self.SEARCH_PATH,
                    json={
                        "jql": jql,
                        "startAt": start_at,
                        "maxResults": page_size,
                        "fields": self.SEARCH_FIELDS,
                    },
                )
                if not isinstance(data, Mapping) or not isinstance(data.get("issues"), list):
                    raise TrackerPayloadError("Jira search response has no issues list")

                page = data["issues"]
                issues.extend(self._parse_issue(item) for item in page)
                start_at += len(page)

                total = data.get("total")
                if len(page) < page_size or (isinstance(total, int) and start_at >= total):
                    break
        except TrackerError as e:
            logger.error(f"Failed to fetch Jira issues for {project_key or 'all projects'}: {e.message}")
            raise

        return issues[: query.limit]

    async def get_issue(self, issue_key: str) -> NormalizedIssue | None:
        try:
            data = await self._request("GET", f"/rest/api/3/issue/{quote(issue_key)}")
        except TrackerRequestError as e:
            if e.not_found:
                logger.info(f"Jira issue {issue_key} not found")
                return None
            raise
        return self._parse_issue(data)

    async def get_users(self, project_key: str | None = None) -> list[NormalizedUser]:
        if project_key:
            path, params = "/rest/api/3/user/assignable/search", {"project": project_key}
        else:
            path, params = "/rest/api/3/users/search", None

        try:
            data = await self._with_retry("GET", path, params=params)
            if not isinstance(data, list):
                raise TrackerPayloadError("Jira user search response is not a list")
        except TrackerError as e:
            logger.error(f"Failed to fetch Jira users: {e.message}")
            raise

        users = []
        for user in data:
            if not isinstance(user, Mapping) or not user.get("accountId"):
                continue
            users.append(
                build_model(
                    NormalizedUser,
                    id=str(user["accountId"]),
                    name=user.get("displayName") or str(user["accountId"]),
                    email=user.get("emailAddress"),
                    display_name=user.get("displayName"),
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
            issues = await self.get_issues(
                project_key,
                IssueQuery(limit=settings.sync_page_size, updated_since=last_sync_time),
            )
        except TrackerError as e:
            result.errors.append(e.message)
            logger.error(f"Jira sync failed: {e.message}")
            return result

        result.success = True
        result.processed = len(issues)
        result.created = len(issues)
        logger.info(f"Fetched {len(issues)} issues from Jira project {project_key or '(all projects)'}")
        return result

    async def close(self) -> None:
        await self._http.close()

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    @staticmethod
    def build_jql(
        project_key: str | None,
        updated_since: datetime | None = None,
        status: list[str] | None = None,
    ) -> str:
        """Build the JQL filter for issue search."""
        clauses = []
        if project_key:
            clauses.append(f'project = "{_escape_jql(project_key)}"')
        if updated_since:
            clauses.append(f'updated >= "{format_date(updated_since)}"')
        if status:
            names = ",".join(f'"{_escape_jql(to_jira_status(s))}"' for s in status)
            clauses.append(f"status IN ({names})")

        jql = " AND ".join(clauses)
        return f"{jql} ORDER BY updated DESC" if jql else "ORDER BY updated DESC"

    def _parse_project(self, data: Any) -> NormalizedProject:
        if not isinstance(data, Mapping):
            raise TrackerPayloadError("Jira project payload is not an object")
        return build_model(
            NormalizedProject,
            id=as_str(data.get("id")),
            key=data.get("key"),
            name=data.get("name"),
            description=data.get("description") or None,
            url=data.get("self"),
        )

    def _parse_issue(self, data: Any) -> NormalizedIssue:
        """Parse a Jira issue into the shared shape."""
        if not isinstance(data, Mapping) or not isinstance(data.get("fields"), Mapping):
            key = data.get("key") if isinstance(data, Mapping) else None
            raise TrackerPayloadError(f"Jira issue {key or '?'} has no fields")

        fields = data["fields"]
        status = fields.get("status") or {}
        category = (status.get("statusCategory") or {}).get("key")

        description = fields.get("description")
        if isinstance(description, Mapping):
            description = adf_to_text(description.get("content") or []) or None
        elif not isinstance(description, str):
            description = None

        key = data.get("key")
        return normalize_issue(
            data,
            id=as_str(data.get("id")),
            key=key,
            title=fields.get("summary") or "",
            description=description,
            status=normalize_jira_status(status.get("name"), category),
            assignee=person_from(fields.get("assignee")),
            reporter=person_from(fields.get("reporter")),
            priority=(fields.get("priority") or {}).get("name"),
            labels=label_names(fields.get("labels")),
            created_at=fields.get("created"),
            updated_at=fields.get("updated"),
            url=f"{self._http.base_url}/browse/{key}" if key else data.get("self"),
        )


def _escape_jql(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')
