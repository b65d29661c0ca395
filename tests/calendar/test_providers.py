"""Unit tests for provider adapters and HTTP error mapping.

Covers:
- GoogleCalendarAdapter request shape, pagination, and multiple calendars
- MicrosoftGraphAdapter calendarView paging via @odata.nextLink
- error_for_response status/reason mapping and credential redaction
- Transport timeouts and invalid payloads
- LocalCalendarAdapter with JsonFileEventSource and permission failures
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import pytest

from rendezvous.calendar.errors import (
    AuthExpiredError,
    NetworkTimeoutError,
    PermissionDeniedError,
    ProviderUnavailableError,
    RateLimitedError,
    error_for_response,
    sanitize_error_message,
)
from rendezvous.calendar.models import Credential, Provider
from rendezvous.calendar.providers import (
    GoogleCalendarAdapter,
    JsonFileEventSource,
    LocalCalendarAdapter,
    MicrosoftGraphAdapter,
)

pytestmark = pytest.mark.unit

WINDOW_START = datetime(2026, 3, 2, tzinfo=UTC)
WINDOW_END = datetime(2026, 4, 1, tzinfo=UTC)


def _credential(provider: Provider = Provider.GOOGLE) -> Credential:
    return Credential(user_id="alice", provider=provider, access_token="tok-1")


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


class TestGoogleCalendarAdapter:
    async def test_request_shape_and_single_page(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"items": [{"id": "e1"}, {"id": "e2"}]})

        adapter = GoogleCalendarAdapter(http_client=_client(handler))
        raw_events = await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

        assert [raw.payload["id"] for raw in raw_events] == ["e1", "e2"]
        assert all(raw.provider == Provider.GOOGLE for raw in raw_events)
        assert all(raw.calendar_id == "primary" for raw in raw_events)

        request = requests[0]
        assert request.url.path == "/calendar/v3/calendars/primary/events"
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert request.url.params["singleEvents"] == "true"
        assert request.url.params["timeMin"] == "2026-03-02T00:00:00Z"
        assert request.url.params["timeMax"] == "2026-04-01T00:00:00Z"
        assert "pageToken" not in request.url.params

    async def test_pagination_follows_next_page_token(self):
        seen_tokens: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = request.url.params.get("pageToken")
            seen_tokens.append(token)
            if token is None:
                return httpx.Response(200, json={"items": [{"id": "e1"}], "nextPageToken": "p2"})
            return httpx.Response(200, json={"items": [{"id": "e2"}]})

        adapter = GoogleCalendarAdapter(http_client=_client(handler))
        raw_events = await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

        assert seen_tokens == [None, "p2"]
        assert [raw.payload["id"] for raw in raw_events] == ["e1", "e2"]

    async def test_multiple_calendars_are_tagged(self):
        def handler(request: httpx.Request) -> httpx.Response:
            calendar_id = request.url.path.split("/")[-2]
            return httpx.Response(200, json={"items": [{"id": f"{calendar_id}-1"}]})

        adapter = GoogleCalendarAdapter(
            calendar_ids=["primary", "team"], http_client=_client(handler)
        )
        raw_events = await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

        assert [(raw.calendar_id, raw.payload["id"]) for raw in raw_events] == [
            ("primary", "primary-1"),
            ("team", "team-1"),
        ]

    async def test_missing_items_is_unavailable(self):
        adapter = GoogleCalendarAdapter(
            http_client=_client(lambda request: httpx.Response(200, json={"kind": "x"}))
        )
        with pytest.raises(ProviderUnavailableError, match="missing items"):
            await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

    async def test_401_raises_auth_expired(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        adapter = GoogleCalendarAdapter(http_client=_client(handler))
        with pytest.raises(AuthExpiredError, match="Invalid Credentials"):
            await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

    async def test_timeout_raises_network_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        adapter = GoogleCalendarAdapter(http_client=_client(handler))
        with pytest.raises(NetworkTimeoutError):
            await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

    async def test_connection_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        adapter = GoogleCalendarAdapter(http_client=_client(handler))
        with pytest.raises(ProviderUnavailableError):
            await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

    async def test_invalid_json_is_unavailable(self):
        adapter = GoogleCalendarAdapter(
            http_client=_client(lambda request: httpx.Response(200, text="<html>"))
        )
        with pytest.raises(ProviderUnavailableError, match="invalid JSON"):
            await adapter.fetch_events(_credential(), WINDOW_START, WINDOW_END)

    async def test_requires_credential(self):
        adapter = GoogleCalendarAdapter(
            http_client=_client(lambda request: httpx.Response(200, json={"items": []}))
        )
        assert adapter.requires_credential is True
        with pytest.raises(ProviderUnavailableError, match="no credential"):
            await adapter.fetch_events(None, WINDOW_START, WINDOW_END)

    def test_empty_calendar_ids_rejected(self):
        with pytest.raises(ValueError, match="calendar_ids"):
            GoogleCalendarAdapter(calendar_ids=[])


# ---------------------------------------------------------------------------
# Microsoft Graph
# ---------------------------------------------------------------------------


class TestMicrosoftGraphAdapter:
    async def test_calendar_view_paging(self):
        requests: list[httpx.Request] = []
        next_link = "https://graph.microsoft.com/v1.0/me/calendarView?$skiptoken=abc"

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "$skiptoken" in str(request.url):
                return httpx.Response(200, json={"value": [{"id": "m2"}]})
            return httpx.Response(
                200, json={"value": [{"id": "m1"}], "@odata.nextLink": next_link}
            )

        adapter = MicrosoftGraphAdapter(http_client=_client(handler))
        raw_events = await adapter.fetch_events(
            _credential(Provider.MICROSOFT), WINDOW_START, WINDOW_END
        )

        assert [raw.payload["id"] for raw in raw_events] == ["m1", "m2"]
        assert all(raw.calendar_id == "default" for raw in raw_events)
        first, second = requests
        assert first.url.path == "/v1.0/me/calendarView"
        assert first.url.params["startDateTime"] == "2026-03-02T00:00:00Z"
        assert first.headers["Prefer"] == 'outlook.timezone="UTC"'
        assert "startDateTime" not in second.url.params
        assert second.url.params["$skiptoken"] == "abc"

    async def test_named_calendars(self):
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"value": []})

        adapter = MicrosoftGraphAdapter(calendar_ids=["cal-1"], http_client=_client(handler))
        await adapter.fetch_events(_credential(Provider.MICROSOFT), WINDOW_START, WINDOW_END)

        assert paths == ["/v1.0/me/calendars/cal-1/calendarView"]

    async def test_throttled_response_carries_retry_after(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                headers={"Retry-After": "12"},
                json={"error": {"code": "TooManyRequests", "message": "Slow down"}},
            )

        adapter = MicrosoftGraphAdapter(http_client=_client(handler))
        with pytest.raises(RateLimitedError) as exc_info:
            await adapter.fetch_events(
                _credential(Provider.MICROSOFT), WINDOW_START, WINDOW_END
            )
        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.to_dict()["retry_after"] == 12.0

    async def test_missing_value_is_unavailable(self):
        adapter = MicrosoftGraphAdapter(
            http_client=_client(lambda request: httpx.Response(200, json={}))
        )
        with pytest.raises(ProviderUnavailableError, match="missing value"):
            await adapter.fetch_events(
                _credential(Provider.MICROSOFT), WINDOW_START, WINDOW_END
            )


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorForResponse:
    def test_401_is_auth_expired(self):
        error = error_for_response(Provider.GOOGLE, httpx.Response(401, text="nope"))
        assert isinstance(error, AuthExpiredError)
        assert error.kind.value == "auth_expired"

    def test_403_is_permission_denied(self):
        response = httpx.Response(
            403, json={"error": {"errors": [{"reason": "forbidden"}], "message": "Forbidden"}}
        )
        assert isinstance(error_for_response(Provider.GOOGLE, response), PermissionDeniedError)

    def test_403_rate_limit_reason_is_rate_limited(self):
        response = httpx.Response(
            403,
            json={
                "error": {
                    "errors": [{"reason": "userRateLimitExceeded"}],
                    "message": "Rate Limit Exceeded",
                }
            },
        )
        error = error_for_response(Provider.GOOGLE, response)
        assert isinstance(error, RateLimitedError)
        assert error.retry_after is None

    @pytest.mark.parametrize("status", [408, 504])
    def test_gateway_timeouts(self, status):
        error = error_for_response(Provider.GOOGLE, httpx.Response(status))
        assert isinstance(error, NetworkTimeoutError)

    def test_server_error_is_unavailable(self):
        error = error_for_response(Provider.MICROSOFT, httpx.Response(503, text="down"))
        assert isinstance(error, ProviderUnavailableError)
        assert error.to_dict() == {
            "provider": "microsoft",
            "kind": "unknown",
            "error": "request failed (503): down",
            "error_type": "ProviderUnavailableError",
        }

    def test_error_message_is_redacted_and_truncated(self):
        response = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "refresh_token=abc123"}
        )
        error = error_for_response(Provider.GOOGLE, response)
        assert "abc123" not in error.message
        assert "[REDACTED]" in error.message

        long_message = sanitize_error_message("x" * 500)
        assert len(long_message) == 200

    def test_bearer_tokens_are_redacted(self):
        assert "secret-value" not in sanitize_error_message("Authorization: Bearer secret-value")


# ---------------------------------------------------------------------------
# Local device calendar
# ---------------------------------------------------------------------------


class _DeniedSource:
    async def list_records(self, window_start, window_end):
        raise PermissionError("calendar access not granted")


class TestLocalCalendarAdapter:
    async def test_reads_json_export_and_filters_window(self, tmp_path):
        export = tmp_path / "calendar.json"
        export.write_text(
            json.dumps(
                {
                    "events": [
                        {
                            "eventIdentifier": "in-window",
                            "startDate": "2026-03-05T10:00:00Z",
                            "endDate": "2026-03-05T11:00:00Z",
                        },
                        {
                            "eventIdentifier": "too-early",
                            "startDate": "2026-02-01T10:00:00Z",
                            "endDate": "2026-02-01T11:00:00Z",
                        },
                        {
                            "eventIdentifier": "all-day-on-start",
                            "startDate": "2026-03-02",
                            "endDate": "2026-03-02",
                        },
                        {"eventIdentifier": "undated"},
                    ]
                }
            )
        )
        adapter = LocalCalendarAdapter(JsonFileEventSource(export))
        raw_events = await adapter.fetch_events(None, WINDOW_START, WINDOW_END)

        ids = [raw.payload["eventIdentifier"] for raw in raw_events]
        assert ids == ["in-window", "all-day-on-start", "undated"]
        assert all(raw.calendar_id == "local" for raw in raw_events)
        assert adapter.requires_credential is False

    async def test_bare_list_export(self, tmp_path):
        export = tmp_path / "calendar.json"
        export.write_text(json.dumps([{"eventIdentifier": "e1"}]))
        adapter = LocalCalendarAdapter(JsonFileEventSource(export))

        raw_events = await adapter.fetch_events(None, WINDOW_START, WINDOW_END)
        assert len(raw_events) == 1

    async def test_missing_file_is_unavailable(self, tmp_path):
        adapter = LocalCalendarAdapter(JsonFileEventSource(tmp_path / "missing.json"))
        with pytest.raises(ProviderUnavailableError, match="could not be read"):
            await adapter.fetch_events(None, WINDOW_START, WINDOW_END)

    async def test_malformed_export_is_unavailable(self, tmp_path):
        export = tmp_path / "calendar.json"
        export.write_text('"just a string"')
        adapter = LocalCalendarAdapter(JsonFileEventSource(export))
        with pytest.raises(ProviderUnavailableError):
            await adapter.fetch_events(None, WINDOW_START, WINDOW_END)

    async def test_permission_error_is_permission_denied(self):
        adapter = LocalCalendarAdapter(_DeniedSource())
        with pytest.raises(PermissionDeniedError, match="access denied"):
            await adapter.fetch_events(None, WINDOW_START, WINDOW_END)
