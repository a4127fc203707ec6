"""Process-wide integration objects, built once at startup and passed explicitly."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from .common import RateLimiter, ResponseCache
from .config import Settings, settings as default_settings
from .sync import Database, InMemoryStore, SyncReconciler, SyncStore, TrackerRecord
from .trackers import (
    ApiKeyCredentials,
    InMemoryTokenStore,
    TokenStore,
    TrackerClient,
    TrackerService,
    TrackerType,
    YamlTokenStore,
    create_tracker_client,
)

logger = logging.getLogger("tracker_sync.context")

DEFAULT_TEAMWORK_TRACKER_NAME = "teamwork-default"


class IntegrationContext:
    """
    Owns the shared rate limiter, response cache, token store and sync store.

    Anything not passed in is built from settings. ``transport`` is handed to
    every provider client, which lets tests route provider HTTP to a mock.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        store: SyncStore | None = None,
        rate_limiter: RateLimiter | None = None,
        cache: ResponseCache | None = None,
        token_store: TokenStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = config or default_settings
        self.store = store or self._build_store()
        self.rate_limiter = rate_limiter or RateLimiter(
            self.settings.teamwork_rate_limit_requests,
            self.settings.teamwork_rate_limit_window_seconds,
        )
        self.cache = cache or ResponseCache(self.settings.cache_default_ttl_seconds)
        self.token_store = token_store or self._build_token_store()
        self.reconciler = SyncReconciler(self.store, self.settings.sync_page_size)
        self._transport = transport

    def _build_store(self) -> SyncStore:
        if self.settings.store_type == "postgres":
            return Database(self.settings.database_url)
        return InMemoryStore()

    def _build_token_store(self) -> TokenStore:
        if self.settings.token_store_directory:
            return YamlTokenStore(self.settings.token_store_directory)
        return InMemoryTokenStore()

    async def start(self) -> None:
        """Start the cleanup sweepers and register the configured default tracker."""
        self.rate_limiter.start_sweeper(self.settings.rate_limiter_sweep_interval_seconds)
        self.cache.start_sweeper(self.settings.cache_sweep_interval_seconds)
        await self.register_default_tracker()

    async def close(self) -> None:
        await self.rate_limiter.stop_sweeper()
        await self.cache.stop_sweeper()
        await self.store.close()

    async def register_default_tracker(self) -> TrackerRecord | None:
        """Register a Teamwork tracker from settings when an API key and site are set."""
        if not (self.settings.teamwork_api_key and self.settings.teamwork_site):
            return None

        for tracker in await self.store.list_trackers():
            if tracker.name == DEFAULT_TEAMWORK_TRACKER_NAME:
                return tracker

        tracker = await self.store.create_tracker(
            TrackerRecord(
                name=DEFAULT_TEAMWORK_TRACKER_NAME,
                tracker_type=TrackerType.TEAMWORK,
                credentials=ApiKeyCredentials(
                    api_key=self.settings.teamwork_api_key,
                    site=self.settings.teamwork_site,
                ),
            )
        )
        logger.info(f"Registered default Teamwork tracker for {self.settings.teamwork_site}")
        return tracker

    def build_client(self, tracker: TrackerRecord) -> TrackerClient:
        """Construct the provider client for a stored tracker."""
        config = tracker.to_config(
            timeout_seconds=self.settings.http_timeout_seconds,
            retry_attempts=self.settings.retry_attempts,
            retry_base_delay_seconds=self.settings.retry_base_delay_seconds,
        )
        return create_tracker_client(
            config,
            rate_limiter=self.rate_limiter,
            token_store=self.token_store,
            token_name=str(tracker.id),
            transport=self._transport,
        )

    @asynccontextmanager
    async def open_client(self, tracker: TrackerRecord) -> AsyncIterator[TrackerClient]:
        """Yield a client for the tracker and close it afterwards."""
        client = self.build_client(tracker)
        try:
            yield client
        finally:
            await client.close()

    def service_for(self, tracker: TrackerRecord, client: TrackerClient) -> TrackerService:
        return TrackerService(
            client,
            self.cache,
            str(tracker.id),
            projects_ttl_seconds=self.settings.cache_projects_ttl_seconds,
            issues_ttl_seconds=self.settings.cache_issues_ttl_seconds,
        )
