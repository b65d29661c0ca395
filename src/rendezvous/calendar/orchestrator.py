"""Concurrent per-provider fetch with failure isolation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import NamedTuple

from rendezvous.calendar.errors import (
    AuthExpiredError,
    NetworkTimeoutError,
    ParseError,
    ProviderError,
    ProviderUnavailableError,
)
from rendezvous.calendar.models import Event, Provider, TimeWindow
from rendezvous.calendar.normalize import normalize
from rendezvous.calendar.providers.base import ProviderAdapter
from rendezvous.calendar.tokens import TokenService
from rendezvous.core.logging import sync_context
from rendezvous.core.telemetry import get_tracer, tag_sync_span

DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0


class FetchOutcome(NamedTuple):
    events: dict[Provider, list[Event]]
    errors: dict[Provider, ProviderError]


class ProviderFetchOrchestrator:
    """Fetches and normalizes events from every requested provider.

    Each provider runs in its own task with its own timeout. A failure is
    recorded against that provider only and never cancels the others.
    """

    def __init__(
        self,
        *,
        adapters: Mapping[Provider, ProviderAdapter],
        token_service: TokenService,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        timezone: str = "UTC",
        logger: logging.Logger | None = None,
    ) -> None:
        self._adapters = dict(adapters)
        self._token_service = token_service
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._timezone = timezone
        self._logger = logger or logging.getLogger(__name__)
        self._tracer = get_tracer(__name__)

    async def fetch_all(
        self,
        user_id: str,
        providers: Iterable[Provider],
        window: TimeWindow,
        *,
        windows: Mapping[Provider, TimeWindow] | None = None,
    ) -> FetchOutcome:
        """Fetch every provider in *providers* concurrently.

        *windows* overrides *window* for the providers it names.
        """
        requested = list(dict.fromkeys(Provider(p) for p in providers))
        overrides = windows or {}
        results = await asyncio.gather(
            *(
                self._fetch_isolated(user_id, provider, overrides.get(provider, window))
                for provider in requested
            )
        )

        events: dict[Provider, list[Event]] = {}
        errors: dict[Provider, ProviderError] = {}
        for provider, result in zip(requested, results, strict=True):
            if isinstance(result, ProviderError):
                errors[provider] = result
            else:
                events[provider] = result
        return FetchOutcome(events=events, errors=errors)

    async def _fetch_isolated(
        self, user_id: str, provider: Provider, window: TimeWindow
    ) -> list[Event] | ProviderError:
        with (
            sync_context(user_id, provider.value),
            self._tracer.start_as_current_span("rendezvous.calendar.fetch") as span,
        ):
            tag_sync_span(span, user_id, provider.value)
            try:
                events = await asyncio.wait_for(
                    self._fetch_provider(user_id, provider, window),
                    timeout=self._fetch_timeout_seconds,
                )
            except TimeoutError:
                error: ProviderError = NetworkTimeoutError(
                    provider, f"fetch exceeded {self._fetch_timeout_seconds:g}s timeout"
                )
            except ProviderError as exc:
                error = exc
            except Exception as exc:
                self._logger.exception(
                    "Unexpected calendar fetch failure (user_id=%s, provider=%s)",
                    user_id,
                    provider.value,
                )
                error = ProviderUnavailableError(provider, f"{type(exc).__name__}: {exc}")
            else:
                span.set_attribute("calendar.event_count", len(events))
                return events

            span.set_attribute("calendar.error_kind", error.kind.value)
            self._logger.warning(
                "Calendar fetch failed (user_id=%s, provider=%s, kind=%s): %s",
                user_id,
                provider.value,
                error.kind.value,
                error.message,
            )
            return error

    async def _fetch_provider(
        self, user_id: str, provider: Provider, window: TimeWindow
    ) -> list[Event]:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderUnavailableError(provider, "no adapter configured for provider")

        if not adapter.requires_credential:
            raw_events = await adapter.fetch_events(None, window.start, window.end)
        else:
            credential = await self._token_service.get_valid_token(user_id, provider)
            try:
                raw_events = await adapter.fetch_events(credential, window.start, window.end)
            except AuthExpiredError:
                # At most one refresh per fetch: a just-refreshed credential is not refreshed again.
                if credential.refreshed:
                    raise
                self._logger.info(
                    "Calendar provider rejected credential; refreshing once "
                    "(user_id=%s, provider=%s)",
                    user_id,
                    provider.value,
                )
                credential = await self._token_service.get_valid_token(
                    user_id, provider, force_refresh=True
                )
                raw_events = await adapter.fetch_events(credential, window.start, window.end)

        synced_at = datetime.now(UTC)
        events: list[Event] = []
        skipped = 0
        for raw in raw_events:
            try:
                event = normalize(
                    provider, raw, user_id=user_id, timezone=self._timezone, synced_at=synced_at
                )
            except ParseError as exc:
                skipped += 1
                self._logger.warning(
                    "Skipping unparseable calendar event "
                    "(user_id=%s, provider=%s, provider_event_id=%s): %s",
                    user_id,
                    provider.value,
                    exc.provider_event_id,
                    exc,
                )
                continue
            events.append(event)

        self._logger.info(
            "Calendar fetch completed (user_id=%s, provider=%s, events=%d, skipped=%d)",
            user_id,
            provider.value,
            len(events),
            skipped,
        )
        return events
