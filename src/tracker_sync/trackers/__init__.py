"""External issue tracker clients."""

from .http import TrackerHttp, retry_with_backoff
from .jira_client import JiraClient
from .public_api import (
    # Credentials and config
    ApiKeyCredentials,
    AuthenticationRequiredError,
    BasicCredentials,
    CredentialConfig,
    # Models
    IssueQuery,
    IssueStatus,
    NormalizedIssue,
    NormalizedProject,
    NormalizedUser,
    OAuth2Credentials,
    OAuthToken,
    Person,
    RateLimitExceededError,
    SyncResult,
    # ABC interface
    TrackerClient,
    TrackerConfig,
    # Errors
    TrackerError,
    TrackerPayloadError,
    TrackerRequestError,
    TrackerType,
    # Factory
    create_tracker_client,
    utc_now,
)
from .service import TrackerService
from .teamwork_client import TeamworkClient
from .token_store import InMemoryTokenStore, TokenStore, YamlTokenStore

__all__ = [
    # Public API - Models
    "IssueQuery",
    "IssueStatus",
    "NormalizedIssue",
    "NormalizedProject",
    "NormalizedUser",
    "OAuthToken",
    "Person",
    "SyncResult",
    "TrackerType",
    "utc_now",
    # Credentials and config
    "ApiKeyCredentials",
    "BasicCredentials",
    "CredentialConfig",
    "OAuth2Credentials",
    "TrackerConfig",
    # Errors
    "AuthenticationRequiredError",
    "RateLimitExceededError",
    "TrackerError",
    "TrackerPayloadError",
    "TrackerRequestError",
    # Public API - Interface and factory
    "TrackerClient",
    "create_tracker_client",
    # Implementations
    "JiraClient",
    "TeamworkClient",
    # Helpers
    "TrackerHttp",
    "TrackerService",
    "retry_with_backoff",
    # Token persistence
    "TokenStore",
    "InMemoryTokenStore",
    "YamlTokenStore",
]
