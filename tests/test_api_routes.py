"""Tests for the tracker HTTP API."""

import asyncio
import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from tracker_sync.common import RateLimiter
from tracker_sync.config import Settings
from tracker_sync.context import IntegrationContext
from tracker_sync.main import create_app
from tracker_sync.sync import InMemoryStore

GOOD_AUTH = "Basic " + base64.b64encode(b"good-key:x").decode()

TASKS = [
    {"id": 1, "name": "First", "status": "new", "createdOn": "2024-01-15T10:00:00Z", "lastChangedOn": "2024-01-15T11:00:00Z"},
    {"id": 2, "name": "Second", "status": "completed", "createdOn": "2024-01-15T10:00:00Z", "lastChangedOn": "2024-01-16T11:00:00Z"},
]


def teamwork_handler(request: httpx.Request) -> httpx.Response:
    """A tiny Teamwork that accepts only the good key."""
    if request.headers.get("Authorization") != GOOD_AUTH:
        return httpx.Response(401)

    path = request.url.path
    if path == "/projects/api/v3/projects.json":
        return httpx.Response(200, json={"projects": [{"id": 1, "name": "Site"}]})
    if path == "/projects/api/v3/tasks.json":
        return httpx.Response(200, json={"tasks": TASKS})
    if path == "/projects/api/v3/tasks/1.json":
        return httpx.Response(200, json={"task": TASKS[0]})
    return httpx.Response(404)


def _context(handler=teamwork_handler, limiter: RateLimiter | None = None) -> IntegrationContext:
    config = Settings(
        store_type="memory",
        retry_attempts=1,
        retry_base_delay_seconds=0.0,
        token_store_directory="",
        teamwork_api_key="",
        teamwork_site="",
    )
    return IntegrationContext(
        config,
        store=InMemoryStore(),
        rate_limiter=limiter,
        transport=httpx.MockTransport(handler),
    )


def _teamwork_body(api_key: str = "good-key") -> dict:
    return {
        "name": "Acme Teamwork",
        "tracker_type": "teamwork",
        "credentials": {"type": "api_key", "api_key": api_key, "site": "acme"},
    }


@pytest.fixture
def context():
    return _context()


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as test_client:
        yield test_client


@pytest.fixture
def tracker_id(client):
    response = client.post("/api/trackers", json=_teamwork_body())
    assert response.status_code == 201
    return response.json()["id"]


class TestTrackerRegistration:
    """Tests for creating, reading and deleting trackers."""

    def test_invalid_api_key_is_rejected(self, client):
        """Test a failing connection test blocks creation."""
        response = client.post("/api/trackers", json=_teamwork_body(api_key="bad-key"))

        assert response.status_code == 400
        assert client.get("/api/trackers").json() == []

    def test_create_hides_credentials(self, client):
        """Test a created tracker is returned without credentials."""
        response = client.post("/api/trackers", json=_teamwork_body())

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "Acme Teamwork"
        assert body["tracker_type"] == "teamwork"
        assert "credentials" not in body
        assert body["last_synced_at"] is None

    def test_invalid_body(self, client):
        """Test schema violations are rejected."""
        body = _teamwork_body()
        body["credentials"] = {"type": "api_key", "api_key": "", "site": "acme"}
        assert client.post("/api/trackers", json=body).status_code == 422

    def test_get_and_list(self, client, tracker_id):
        """Test a tracker can be fetched and listed."""
        assert client.get(f"/api/trackers/{tracker_id}").json()["id"] == tracker_id
        assert [t["id"] for t in client.get("/api/trackers").json()] == [tracker_id]

    def test_unknown_tracker(self, client):
        """Test unknown ids return 404."""
        response = client.get("/api/trackers/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

    def test_delete_without_issues(self, client, tracker_id):
        """Test a tracker without linked issues can be deleted."""
        assert client.delete(f"/api/trackers/{tracker_id}").status_code == 204
        assert client.get(f"/api/trackers/{tracker_id}").status_code == 404

    def test_delete_with_issues_conflicts(self, client, tracker_id):
        """Test linked issues block deletion."""
        client.post(f"/api/trackers/{tracker_id}/sync")
        assert client.delete(f"/api/trackers/{tracker_id}").status_code == 409

    def test_connection_endpoint(self, client, tracker_id):
        """Test the connection check reports status and metadata."""
        body = client.post(f"/api/trackers/{tracker_id}/test").json()
        assert body["connected"] is True
        assert body["tracker_type"] == "teamwork"


class TestTrackerReads:
    """Tests for reads through the caching service."""

    def test_projects(self, client, tracker_id):
        projects = client.get(f"/api/trackers/{tracker_id}/projects").json()
        assert projects[0]["key"] == "1"
        assert projects[0]["name"] == "Site"

    def test_issues(self, client, tracker_id):
        """Test issues are listed in the shared shape."""
        issues = client.get(f"/api/trackers/{tracker_id}/issues").json()
        assert [i["key"] for i in issues] == ["1", "2"]
        assert [i["status"] for i in issues] == ["open", "done"]

    def test_single_issue(self, client, tracker_id):
        """Test one issue is returned and missing ones are 404."""
        assert client.get(f"/api/trackers/{tracker_id}/issues/1").json()["title"] == "First"
        assert client.get(f"/api/trackers/{tracker_id}/issues/999").status_code == 404

    def test_reads_are_cached(self, client, context, tracker_id):
        """Test repeated reads do not use more of the request budget."""
        client.get(f"/api/trackers/{tracker_id}/projects")
        used = context.rate_limiter.get_tracker("teamwork:good-key").count
        client.get(f"/api/trackers/{tracker_id}/projects")
        assert context.rate_limiter.get_tracker("teamwork:good-key").count == used

        removed = client.delete(f"/api/trackers/{tracker_id}/cache").json()["removed"]
        assert removed == 1

    def test_upstream_failure_is_bad_gateway(self):
        """Test provider errors map to 502."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/tasks.json"):
                return httpx.Response(500)
            return teamwork_handler(request)

        with TestClient(create_app(_context(handler))) as client:
            tracker_id = client.post("/api/trackers", json=_teamwork_body()).json()["id"]
            response = client.get(f"/api/trackers/{tracker_id}/issues")

        assert response.status_code == 502

    def test_rate_limit_is_429(self):
        """Test a spent budget maps to 429 with Retry-After."""
        limiter = RateLimiter(max_requests=2, window_seconds=60.0)
        with TestClient(create_app(_context(limiter=limiter))) as client:
            tracker_id = client.post("/api/trackers", json=_teamwork_body()).json()["id"]
            assert client.get(f"/api/trackers/{tracker_id}/projects").status_code == 200
            response = client.get(f"/api/trackers/{tracker_id}/issues")

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["detail"]["code"] == "RATE_LIMIT_EXCEEDED"


class TestTrackerSync:
    """Tests for the sync endpoint."""

    def test_sync_twice_updates(self, client, context, tracker_id):
        """Test a second sync updates instead of duplicating."""
        first = client.post(f"/api/trackers/{tracker_id}/sync").json()
        second = client.post(f"/api/trackers/{tracker_id}/sync").json()

        assert (first["success"], first["created"], first["updated"]) == (True, 2, 0)
        assert (second["created"], second["updated"]) == (0, 2)
        assert client.get(f"/api/trackers/{tracker_id}").json()["last_synced_at"] is not None


class TestJiraOAuth:
    """Tests for the Jira authorization endpoints."""

    @staticmethod
    def _jira_handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == "https://auth.atlassian.com/oauth/token":
            return httpx.Response(200, json={"access_token": "granted", "refresh_token": "r", "expires_in": 3600})
        return httpx.Response(401)

    def _create_jira(self, client) -> str:
        response = client.post(
            "/api/trackers",
            json={
                "name": "Acme Jira",
                "tracker_type": "jira",
                "base_url": "https://acme.atlassian.net",
                "credentials": {
                    "type": "oauth2",
                    "client_id": "cid",
                    "client_secret": "secret",
                    "redirect_uri": "https://app.example.com/cb",
                },
            },
        )
        assert response.status_code == 201
        return response.json()["id"]

    def test_authorize_and_callback(self):
        """Test a pending Jira tracker completes the OAuth flow."""
        context = _context(self._jira_handler)
        with TestClient(create_app(context)) as client:
            tracker_id = self._create_jira(client)

            url = client.get(f"/api/trackers/{tracker_id}/oauth/authorize").json()["authorization_url"]
            assert f"state={tracker_id}" in url
            assert "client_id=cid" in url

            response = client.post(f"/api/trackers/{tracker_id}/oauth/callback", json={"code": "abc"})
            assert response.json() == {"authenticated": True}

        token = asyncio.run(context.token_store.load(tracker_id))
        assert token.access_token == "granted"

    def test_refresh_token_only_tracker_registers(self):
        """Test a Jira tracker holding only a refresh token connects on creation."""

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == "https://auth.atlassian.com/oauth/token":
                return httpx.Response(200, json={"access_token": "granted", "expires_in": 3600})
            if request.headers.get("Authorization") == "Bearer granted":
                return httpx.Response(200, json={"accountId": "me"})
            return httpx.Response(401)

        with TestClient(create_app(_context(handler))) as client:
            response = client.post(
                "/api/trackers",
                json={
                    "name": "Acme Jira",
                    "tracker_type": "jira",
                    "base_url": "https://acme.atlassian.net",
                    "credentials": {
                        "type": "oauth2",
                        "client_id": "cid",
                        "client_secret": "secret",
                        "redirect_uri": "https://app.example.com/cb",
                        "refresh_token": "r1",
                    },
                },
            )

        assert response.status_code == 201

    def test_oauth_only_for_jira(self, client, tracker_id):
        """Test Teamwork trackers have no OAuth flow."""
        assert client.get(f"/api/trackers/{tracker_id}/oauth/authorize").status_code == 400


def test_health(client):
    """Test the health endpoint."""
    assert client.get("/api/health").json() == {"status": "healthy"}
