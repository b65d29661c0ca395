"""Provider adapters: Google Calendar, Microsoft Graph, and the local device calendar."""

from __future__ import annotations

from rendezvous.calendar.providers.base import HttpProviderAdapter, ProviderAdapter
from rendezvous.calendar.providers.google import GoogleCalendarAdapter
from rendezvous.calendar.providers.local import (
    JsonFileEventSource,
    LocalCalendarAdapter,
    LocalEventSource,
)
from rendezvous.calendar.providers.microsoft import MicrosoftGraphAdapter

__all__ = [
    "GoogleCalendarAdapter",
    "HttpProviderAdapter",
    "JsonFileEventSource",
    "LocalCalendarAdapter",
    "LocalEventSource",
    "MicrosoftGraphAdapter",
    "ProviderAdapter",
]
