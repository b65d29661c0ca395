"""Wire a configured ``CalendarSyncService`` backed by PostgreSQL."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

import httpx

from rendezvous.calendar.conflicts import ConflictResolver
from rendezvous.calendar.models import Provider
from rendezvous.calendar.orchestrator import ProviderFetchOrchestrator
from rendezvous.calendar.postgres import (
    PostgresConflictStore,
    PostgresCredentialRepository,
    PostgresEventStore,
    PostgresPreferencesStore,
    ensure_schema,
)
from rendezvous.calendar.providers import (
    GoogleCalendarAdapter,
    JsonFileEventSource,
    LocalCalendarAdapter,
    MicrosoftGraphAdapter,
    ProviderAdapter,
)
from rendezvous.calendar.providers.base import DEFAULT_HTTP_TIMEOUT_SECONDS
from rendezvous.calendar.service import CalendarSyncService
from rendezvous.calendar.sync import SynchronizationEngine
from rendezvous.calendar.tokens import (
    OAuthClientCredentials,
    OAuthTokenRefresher,
    OAuthTokenService,
    TokenRefresher,
)
from rendezvous.config import RendezvousConfig
from rendezvous.db import Database


@dataclass
class Runtime:
    config: RendezvousConfig
    database: Database
    service: CalendarSyncService
    preferences: PostgresPreferencesStore
    adapters: dict[Provider, ProviderAdapter]


def build_adapters(
    config: RendezvousConfig, http_client: httpx.AsyncClient
) -> dict[Provider, ProviderAdapter]:
    adapters: dict[Provider, ProviderAdapter] = {}
    if config.google is not None:
        adapters[Provider.GOOGLE] = GoogleCalendarAdapter(
            calendar_ids=config.google.calendar_ids, http_client=http_client
        )
    if config.microsoft is not None:
        adapters[Provider.MICROSOFT] = MicrosoftGraphAdapter(
            calendar_ids=config.microsoft.calendar_ids or None, http_client=http_client
        )
    if config.local is not None:
        adapters[Provider.LOCAL] = LocalCalendarAdapter(JsonFileEventSource(config.local.path))
    return adapters


def build_refreshers(
    config: RendezvousConfig, http_client: httpx.AsyncClient
) -> dict[Provider, TokenRefresher]:
    refreshers: dict[Provider, TokenRefresher] = {}
    if config.google is not None:
        refreshers[Provider.GOOGLE] = OAuthTokenRefresher.google(
            OAuthClientCredentials(
                client_id=config.google.client_id, client_secret=config.google.client_secret
            ),
            http_client,
        )
    if config.microsoft is not None:
        refreshers[Provider.MICROSOFT] = OAuthTokenRefresher.microsoft(
            OAuthClientCredentials(
                client_id=config.microsoft.client_id,
                client_secret=config.microsoft.client_secret,
            ),
            http_client,
            tenant=config.microsoft.tenant,
        )
    return refreshers


@asynccontextmanager
async def open_runtime(
    config: RendezvousConfig, database: Database | None = None
) -> AsyncIterator[Runtime]:
    """Provision the database, build every component, and tear it all down on exit."""
    database = database or Database.from_env(config.db.name, schema=config.db.schema)
    await database.provision()
    await database.connect()
    http_client = httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
    try:
        await ensure_schema(database)
        event_store = PostgresEventStore(database)
        preferences = PostgresPreferencesStore(database)
        conflict_store = PostgresConflictStore(database)
        token_service = OAuthTokenService(
            PostgresCredentialRepository(database),
            build_refreshers(config, http_client),
            refresh_threshold=timedelta(minutes=config.sync.refresh_threshold_minutes),
        )
        adapters = build_adapters(config, http_client)
        service = CalendarSyncService(
            orchestrator=ProviderFetchOrchestrator(
                adapters=adapters,
                token_service=token_service,
                fetch_timeout_seconds=config.sync.fetch_timeout_s,
                timezone=config.sync.timezone,
            ),
            engine=SynchronizationEngine(store=event_store),
            resolver=ConflictResolver(store=conflict_store),
            event_store=event_store,
            preferences_store=preferences,
            conflict_store=conflict_store,
            token_service=token_service,
            window_days=config.sync.window_days,
            full_refetch_after=timedelta(hours=config.sync.full_refetch_hours),
        )
        yield Runtime(
            config=config,
            database=database,
            service=service,
            preferences=preferences,
            adapters=adapters,
        )
    finally:
        await http_client.aclose()
        await database.close()
