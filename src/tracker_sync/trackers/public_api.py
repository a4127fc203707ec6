"""Public API for the trackers module.

This module defines the common issue model, the error hierarchy, and the
capability interface every external tracker provider implements.
Implementation modules import from here, not the other way around.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    import httpx

    from ..common import RateLimiter
    from .token_store import TokenStore


# =============================================================================
# Utilities
# =============================================================================

def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Errors
# =============================================================================

class TrackerError(Exception):
    """Base class for failures talking to an external tracker."""

    def __init__(self, message: str, endpoint: str | None = None):
        super().__init__(message)
        self.message = message
        self.endpoint = endpoint


class TrackerRequestError(TrackerError):
    """Network error, timeout or non-2xx response."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        reason: str | None = None,
    ):
        super().__init__(message, endpoint)
        self.status_code = status_code
        self.reason = reason

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class RateLimitExceededError(TrackerError):
    """Raised before a call when the provider's request budget is spent."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, retry_after: int, endpoint: str | None = None):
        super().__init__(message, endpoint)
        self.retry_after = retry_after


class AuthenticationRequiredError(TrackerError):
    """Credentials are missing or could not be refreshed."""


class TrackerPayloadError(TrackerError):
    """The provider returned data that does not have the expected shape."""


# =============================================================================
# Models
# =============================================================================

class TrackerType(str, Enum):
    """Supported external tracker providers."""

    JIRA = "jira"
    TEAMWORK = "teamwork"


class IssueStatus(str, Enum):
    """Shared status vocabulary every provider maps onto."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class Person(BaseModel):
    """An assignee or reporter."""

    id: str
    name: str
    email: str | None = None


class NormalizedIssue(BaseModel):
    """An issue from any provider in the shared shape."""

    id: str = Field(min_length=1)
    key: str = Field(min_length=1)
    title: str
    description: str | None = None
    status: IssueStatus = IssueStatus.OPEN
    assignee: Person | None = None
    reporter: Person | None = None
    priority: str | None = None
    labels: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    url: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "NormalizedIssue":
        if self.created_at > self.updated_at:
            raise ValueError("created_at must not be later than updated_at")
        return self


class NormalizedProject(BaseModel):
    """A project (Jira project, Teamwork project)."""

    id: str
    key: str
    name: str
    description: str | None = None
    url: str | None = None


class NormalizedUser(BaseModel):
    """A user visible to the tracker credentials."""

    id: str
    name: str
    email: str | None = None
    display_name: str | None = None


class IssueQuery(BaseModel):
    """Filters and paging for issue listing."""

    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)
    updated_since: datetime | None = None
    status: list[str] | None = None


class SyncResult(BaseModel):
    """Summary of a sync run. Errors are collected, not raised."""

    success: bool = False
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: list[str] = Field(default_factory=list)
    last_sync_time: datetime = Field(default_factory=utc_now)


class OAuthToken(BaseModel):
    """Access/refresh token pair that can be persisted across restarts."""

    access_token: str = ""
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at


class OAuth2Credentials(BaseModel):
    type: Literal["oauth2"] = "oauth2"
    client_id: str
    client_secret: str
    redirect_uri: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def token(self) -> OAuthToken | None:
        if not self.access_token and not self.refresh_token:
            return None
        return OAuthToken(
            access_token=self.access_token or "",
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
        )


class ApiKeyCredentials(BaseModel):
    type: Literal["api_key"] = "api_key"
    api_key: str = Field(min_length=1)
    site: str = Field(min_length=1)


class BasicCredentials(BaseModel):
    type: Literal["basic"] = "basic"
    username: str
    password: str


CredentialConfig = Annotated[
    Union[OAuth2Credentials, ApiKeyCredentials, BasicCredentials],
    Field(discriminator="type"),
]


class TrackerConfig(BaseModel):
    """Everything needed to construct a provider client."""

    tracker_type: TrackerType
    credentials: CredentialConfig
    base_url: str | None = None
    project_key: str | None = None
    timeout_seconds: float = 30.0
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = 1.0


# =============================================================================
# Service Interface (ABC)
# =============================================================================

class TrackerClient(ABC):
    """Capability interface for external issue trackers."""

    tracker_type: TrackerType

    @abstractmethod
    async def authenticate(self) -> bool:
        """
        Make sure the held credentials are usable.

        Returns:
            True when calls can be made, False when an out-of-band
            authorization step is required.
        """
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """Return whether a cheap authenticated call succeeds."""
        pass

    @abstractmethod
    async def get_projects(self) -> list[NormalizedProject]:
        """List all projects visible to the credentials."""
        pass

    @abstractmethod
    async def get_project(self, project_key: str) -> NormalizedProject | None:
        """
        Get a single project.

        Returns:
            The project, or None if the provider reports it does not exist.
        """
        pass

    @abstractmethod
    async def get_issues(
        self,
        project_key: str | None,
        query: IssueQuery | None = None,
    ) -> list[NormalizedIssue]:
        """
        List issues of a project.

        Args:
            project_key: Project to list; providers that support it fall back
                to all issues when None or empty.
            query: Paging and filters.

        Returns:
            Normalized issues, most recently updated first where the provider
            supports ordering.
        """
        pass

    @abstractmethod
    async def get_issue(self, issue_key: str) -> NormalizedIssue | None:
        """
        Get a single issue.

        Returns:
            The issue, or None if the provider reports it does not exist.
        """
        pass

    @abstractmethod
    async def get_users(self, project_key: str | None = None) -> list[NormalizedUser]:
        """List users, optionally scoped to a project."""
        pass

    @abstractmethod
    async def sync_issues(
        self,
        project_key: str | None,
        last_sync_time: datetime | None = None,
    ) -> SyncResult:
        """
        Fetch issues updated since ``last_sync_time`` and report the count.

        Nothing is persisted here; counts are fetch-only.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass


# =============================================================================
# Provider Factory
# =============================================================================

def create_tracker_client(
    config: TrackerConfig,
    *,
    rate_limiter: "RateLimiter | None" = None,
    token_store: "TokenStore | None" = None,
    token_name: str | None = None,
    transport: "httpx.AsyncBaseTransport | None" = None,
) -> TrackerClient:
    """Build the provider client selected by ``config.tracker_type``."""
    if config.tracker_type == TrackerType.JIRA:
        from .jira_client import JiraClient

        return JiraClient(
            config,
            token_store=token_store,
            token_name=token_name,
            transport=transport,
        )

    if config.tracker_type == TrackerType.TEAMWORK:
        from .teamwork_client import TeamworkClient

        if rate_limiter is None:
            raise ValueError("Teamwork clients require a rate limiter")
        return TeamworkClient(config, rate_limiter=rate_limiter, transport=transport)

    raise ValueError(f"Unsupported tracker type: {config.tracker_type}")
