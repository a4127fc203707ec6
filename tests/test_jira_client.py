"""Tests for the Jira client."""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from tracker_sync.trackers import (
    ApiKeyCredentials,
    AuthenticationRequiredError,
    InMemoryTokenStore,
    IssueQuery,
    IssueStatus,
    JiraClient,
    OAuth2Credentials,
    OAuthToken,
    TrackerConfig,
    TrackerType,
    create_tracker_client,
)
from tracker_sync.trackers.jira_client import adf_to_text

BASE_URL = "https://acme.atlassian.net"
TOKEN_URL = "https://auth.atlassian.com/oauth/token"


def _config(**credential_overrides) -> TrackerConfig:
    credentials = {
        "client_id": "client-123",
        "client_secret": "client-secret",
        "redirect_uri": "https://app.example.com/oauth/callback",
        "access_token": "old-token",
        "refresh_token": "refresh-1",
    }
    credentials.update(credential_overrides)
    return TrackerConfig(
        tracker_type=TrackerType.JIRA,
        base_url=BASE_URL,
        credentials=OAuth2Credentials(**credentials),
        retry_attempts=2,
        retry_base_delay_seconds=0.0,
    )


def _jira_issue(number: int, **fields) -> dict:
    base_fields = {
        "summary": f"Issue {number}",
        "description": None,
        "status": {"name": "To Do", "statusCategory": {"key": "new"}},
        "assignee": None,
        "reporter": None,
        "priority": {"name": "Medium"},
        "labels": [],
        "created": "2024-01-15T10:30:00.000+0000",
        "updated": "2024-01-16T10:30:00.000+0000",
    }
    base_fields.update(fields)
    return {
        "id": str(10000 + number),
        "key": f"PROJ-{number}",
        "self": f"{BASE_URL}/rest/api/3/issue/{10000 + number}",
        "fields": base_fields,
    }


class TestAdfToText:
    """Tests for Atlassian Document Format flattening."""

    def test_paragraphs_headings_and_breaks(self):
        """Test block nodes end lines and hard breaks become newlines."""
        content = [
            {"type": "heading", "content": [{"type": "text", "text": "Steps"}]},
            {
                "type": "paragraph",
                "content": [
                    {"type": "text", "text": "Open the app"},
                    {"type": "hardBreak"},
                    {"type": "text", "text": "Click "},
                    {"type": "text", "text": "login", "marks": [{"type": "strong"}]},
                ],
            },
            {"type": "paragraph", "content": [{"type": "text", "text": "It crashes"}]},
        ]
        assert adf_to_text(content) == "Steps\nOpen the app\nClick login\nIt crashes"

    def test_nested_lists(self):
        """Test text inside nested containers is kept in order."""
        content = [
            {
                "type": "bulletList",
                "content": [
                    {"type": "listItem", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "one"}]}]},
                    {"type": "listItem", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "two"}]}]},
                ],
            }
        ]
        assert adf_to_text(content) == "one\ntwo"

    def test_empty(self):
        """Test empty documents flatten to an empty string."""
        assert adf_to_text([]) == ""


class TestBuildJql:
    """Tests for JQL construction."""

    def test_full_query(self):
        """Test project, date and translated status clauses."""
        jql = JiraClient.build_jql(
            "PROJ",
            datetime(2024, 1, 15, 23, 0, tzinfo=timezone.utc),
            ["open", "in_progress"],
        )
        assert jql == (
            'project = "PROJ" AND updated >= "2024-01-15" '
            'AND status IN ("To Do","In Progress") ORDER BY updated DESC'
        )

    def test_no_filters(self):
        """Test an unfiltered query only orders."""
        assert JiraClient.build_jql(None) == "ORDER BY updated DESC"

    def test_quotes_are_escaped(self):
        """Test quotes in values cannot break out of the string."""
        assert JiraClient.build_jql('A"B').startswith('project = "A\\"B"')

    def test_native_status_passes_through(self):
        """Test statuses outside the shared vocabulary are used as given."""
        assert 'status IN ("QA")' in JiraClient.build_jql("P", status=["QA"])


class TestJiraClient:
    """Tests for JiraClient calls against a mocked Jira."""

    def test_requires_oauth_credentials(self):
        """Test Jira rejects non-OAuth credentials."""
        config = TrackerConfig(
            tracker_type=TrackerType.JIRA,
            base_url=BASE_URL,
            credentials=ApiKeyCredentials(api_key="k", site="acme"),
        )
        with pytest.raises(ValueError):
            JiraClient(config)

    def test_requires_base_url(self):
        """Test Jira needs a site URL."""
        config = _config().model_copy(update={"base_url": None})
        with pytest.raises(ValueError):
            JiraClient(config)

    def test_factory_builds_jira_client(self):
        """Test the factory dispatches on tracker type."""
        client = create_tracker_client(_config())
        assert isinstance(client, JiraClient)
        assert client.tracker_type == TrackerType.JIRA

    @pytest.mark.asyncio
    async def test_get_issue_normalizes_fields(self):
        """Test Jira fields map onto the shared issue shape."""
        payload = _jira_issue(
            1,
            summary="Login fails",
            description={
                "type": "doc",
                "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Stack trace attached"}]}],
            },
            status={"name": "In Review", "statusCategory": {"key": "indeterminate"}},
            assignee={"accountId": "acc-1", "displayName": "Ada", "emailAddress": "ada@example.com"},
            reporter={"accountId": "acc-2", "displayName": "Grace"},
            priority={"name": "High"},
            labels=["bug", "auth"],
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/rest/api/3/issue/PROJ-1"
            assert request.headers["Authorization"] == "Bearer old-token"
            return httpx.Response(200, json=payload)

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            issue = await client.get_issue("PROJ-1")
        finally:
            await client.close()

        assert issue.id == "10001"
        assert issue.key == "PROJ-1"
        assert issue.title == "Login fails"
        assert issue.description == "Stack trace attached"
        assert issue.status == IssueStatus.IN_PROGRESS
        assert issue.assignee.name == "Ada"
        assert issue.assignee.email == "ada@example.com"
        assert issue.reporter.id == "acc-2"
        assert issue.priority == "High"
        assert issue.labels == ["bug", "auth"]
        assert issue.url == f"{BASE_URL}/browse/PROJ-1"
        assert issue.created_at == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_get_issue_not_found(self):
        """Test a 404 lookup returns None."""
        client = JiraClient(_config(), transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        try:
            assert await client.get_issue("PROJ-404") is None
            assert await client.get_project("NOPE") is None
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_get_issues_paginates(self):
        """Test search pages are requested until the result set is exhausted."""
        all_issues = [_jira_issue(n) for n in range(1, 131)]
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/rest/api/3/search"
            body = json.loads(request.content)
            bodies.append(body)
            start, size = body["startAt"], body["maxResults"]
            return httpx.Response(
                200,
                json={"startAt": start, "total": len(all_issues), "issues": all_issues[start : start + size]},
            )

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            issues = await client.get_issues("PROJ", IssueQuery(limit=500))
        finally:
            await client.close()

        assert len(issues) == 130
        assert [b["startAt"] for b in bodies] == [0, 100]
        assert all(b["maxResults"] <= 100 for b in bodies)
        assert bodies[0]["jql"] == 'project = "PROJ" ORDER BY updated DESC'
        assert "summary" in bodies[0]["fields"]

    @pytest.mark.asyncio
    async def test_get_issues_respects_limit(self):
        """Test no more than the requested number of issues are returned."""
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            issues = [_jira_issue(n) for n in range(body["startAt"], body["startAt"] + body["maxResults"])]
            return httpx.Response(200, json={"total": 1000, "issues": issues})

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            issues = await client.get_issues("PROJ", IssueQuery(limit=5, offset=10))
        finally:
            await client.close()

        assert len(issues) == 5
        assert bodies == [bodies[0]]
        assert bodies[0]["startAt"] == 10
        assert bodies[0]["maxResults"] == 5

    @pytest.mark.asyncio
    async def test_401_refreshes_and_replays_once(self):
        """Test an expired token is refreshed, persisted and the call replayed."""
        store = InMemoryTokenStore()
        token_requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                token_requests.append(json.loads(request.content))
                return httpx.Response(
                    200,
                    json={"access_token": "new-token", "refresh_token": "refresh-2", "expires_in": 3600},
                )
            if request.headers["Authorization"] == "Bearer old-token":
                return httpx.Response(401)
            return httpx.Response(200, json=[{"id": "1", "key": "PROJ", "name": "Project"}])

        client = JiraClient(
            _config(),
            token_store=store,
            token_name="tracker-1",
            transport=httpx.MockTransport(handler),
        )
        try:
            projects = await client.get_projects()
        finally:
            await client.close()

        assert [p.key for p in projects] == ["PROJ"]
        assert len(token_requests) == 1
        assert token_requests[0]["grant_type"] == "refresh_token"
        assert token_requests[0]["refresh_token"] == "refresh-1"

        saved = await store.load("tracker-1")
        assert saved.access_token == "new-token"
        assert saved.refresh_token == "refresh-2"
        assert saved.expires_at is not None

    @pytest.mark.asyncio
    async def test_failed_refresh_requires_authentication(self):
        """Test a 401 with a rejected refresh raises AuthenticationRequiredError."""

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(401)

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(AuthenticationRequiredError):
                await client.get_projects()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_second_401_is_not_retried_again(self):
        """Test a replay that is also rejected raises instead of looping."""
        calls = {"api": 0, "token": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                calls["token"] += 1
                return httpx.Response(200, json={"access_token": "still-bad"})
            calls["api"] += 1
            return httpx.Response(401)

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(AuthenticationRequiredError):
                await client.get_issue("PROJ-1")
        finally:
            await client.close()

        assert calls == {"api": 2, "token": 1}

    @pytest.mark.asyncio
    async def test_no_token_requires_authentication(self):
        """Test calls without any token fail before touching the network."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=[])

        client = JiraClient(
            _config(access_token=None, refresh_token=None),
            transport=httpx.MockTransport(handler),
        )
        try:
            with pytest.raises(AuthenticationRequiredError):
                await client.get_projects()
        finally:
            await client.close()
        assert requests == []

    @pytest.mark.asyncio
    async def test_refresh_token_only_refreshes_before_first_call(self):
        """Test a client without an access token refreshes once, then calls."""
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                seen.append("token")
                return httpx.Response(200, json={"access_token": "minted", "expires_in": 3600})
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json=[{"id": "1", "key": "PROJ", "name": "Project"}])

        client = JiraClient(_config(access_token=None, refresh_token="r1"), transport=httpx.MockTransport(handler))
        try:
            projects = await client.get_projects()
        finally:
            await client.close()

        assert [p.key for p in projects] == ["PROJ"]
        assert seen == ["token", "Bearer minted"]
        assert client.token.refresh_token == "r1"

    @pytest.mark.asyncio
    async def test_stored_token_without_access_token_is_refreshed(self):
        """Test a persisted refresh-only token is refreshed and saved back."""
        store = InMemoryTokenStore()
        await store.save("tracker-1", OAuthToken(access_token="", refresh_token="stored-refresh"))
        token_requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                token_requests.append(json.loads(request.content))
                return httpx.Response(200, json={"access_token": "minted"})
            return httpx.Response(200, json={"accountId": "me"})

        client = JiraClient(
            _config(access_token=None, refresh_token=None),
            token_store=store,
            token_name="tracker-1",
            transport=httpx.MockTransport(handler),
        )
        try:
            assert await client.test_connection() is True
        finally:
            await client.close()

        assert [body["refresh_token"] for body in token_requests] == ["stored-refresh"]
        assert (await store.load("tracker-1")).access_token == "minted"

    @pytest.mark.asyncio
    async def test_failed_upfront_refresh_is_not_repeated(self):
        """Test a rejected refresh raises without calling the API."""
        calls = {"api": 0, "token": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                calls["token"] += 1
                return httpx.Response(400, json={"error": "invalid_grant"})
            calls["api"] += 1
            return httpx.Response(200, json=[])

        client = JiraClient(_config(access_token=None, refresh_token="r1"), transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(AuthenticationRequiredError):
                await client.get_projects()
        finally:
            await client.close()

        assert calls == {"api": 0, "token": 1}


class TestJiraAuthentication:
    """Tests for authenticate, authorization URL and code exchange."""

    @pytest.mark.asyncio
    async def test_authenticate_with_valid_token(self):
        """Test a working token authenticates without refreshing."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/rest/api/3/myself"
            return httpx.Response(200, json={"accountId": "me"})

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            assert await client.authenticate() is True
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_authenticate_refreshes_expired_token(self):
        """Test an expired token is refreshed during authenticate."""
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
            raise AssertionError("expired token must not be used")

        client = JiraClient(_config(expires_at=expired), transport=httpx.MockTransport(handler))
        try:
            assert await client.authenticate() is True
            assert client.token.access_token == "fresh"
            assert client.token.refresh_token == "refresh-1"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_authenticate_without_tokens(self):
        """Test authenticate reports that the OAuth flow is required."""
        client = JiraClient(_config(access_token=None, refresh_token=None))
        try:
            assert await client.authenticate() is False
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_stored_token_is_preferred(self):
        """Test a persisted token replaces the configured one."""
        store = InMemoryTokenStore()
        await store.save("tracker-1", OAuthToken(access_token="stored-token"))
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"accountId": "me"})

        client = JiraClient(
            _config(),
            token_store=store,
            token_name="tracker-1",
            transport=httpx.MockTransport(handler),
        )
        try:
            assert await client.test_connection() is True
        finally:
            await client.close()
        assert seen == ["Bearer stored-token"]

    def test_authorization_url(self):
        """Test the authorize URL carries the OAuth parameters."""
        client = JiraClient(_config())
        url = urlparse(client.authorization_url(state="abc"))
        params = parse_qs(url.query)

        assert url.netloc == "auth.atlassian.com"
        assert params["client_id"] == ["client-123"]
        assert params["response_type"] == ["code"]
        assert params["state"] == ["abc"]
        assert params["redirect_uri"] == ["https://app.example.com/oauth/callback"]
        assert params["audience"] == ["api.atlassian.com"]

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        """Test the authorization code grant stores the new token."""
        store = InMemoryTokenStore()
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"access_token": "a1", "refresh_token": "r1", "expires_in": 3600})

        client = JiraClient(
            _config(access_token=None, refresh_token=None),
            token_store=store,
            token_name="t",
            transport=httpx.MockTransport(handler),
        )
        try:
            assert await client.exchange_code("the-code") is True
        finally:
            await client.close()

        assert bodies[0]["grant_type"] == "authorization_code"
        assert bodies[0]["code"] == "the-code"
        assert (await store.load("t")).access_token == "a1"

    @pytest.mark.asyncio
    async def test_sync_issues_reports_fetch_failures(self):
        """Test sync collects errors instead of raising."""
        client = JiraClient(_config(), transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        try:
            result = await client.sync_issues("PROJ")
        finally:
            await client.close()

        assert result.success is False
        assert result.errors
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_sync_issues_counts_fetched(self):
        """Test provider-level sync counts are fetch-only."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"total": 2, "issues": [_jira_issue(1), _jira_issue(2)]})

        client = JiraClient(_config(), transport=httpx.MockTransport(handler))
        try:
            result = await client.sync_issues("PROJ")
        finally:
            await client.close()

        assert result.success is True
        assert result.processed == 2
        assert result.created == 2
        assert result.updated == 0
