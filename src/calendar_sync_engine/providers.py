"""
Provider client interface and plug-in registry.

Concrete clients (HTTP, OAuth, token refresh) live outside this package and
are registered through the ``calendar_sync_engine.providers`` entry-point
group.  The engine only ever talks to the abstract ``ProviderClient``.
"""

import datetime
import logging
from abc import ABC
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from importlib.metadata import entry_points

from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import CalendarSyncError
from calendar_sync_engine.models import ExternalEvent
from calendar_sync_engine.models import Provider

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "calendar_sync_engine.providers"

# Optional event fields each provider can store.  Title, description,
# start/end, location and the all-day flag are supported everywhere.
PROVIDER_OPTIONAL_FIELDS: dict[Provider, frozenset[str]] = {
    Provider.GOOGLE: frozenset({"reminder_minutes", "color"}),
    Provider.MICROSOFT: frozenset({"reminder_minutes"}),
}


@dataclass
class TimeWindow:
    start: datetime.datetime
    end: datetime.datetime

    def contains(self, start: datetime.datetime, end: datetime.datetime) -> bool:
        """True when ``[start, end)`` overlaps the window."""
        return start < self.end and end > self.start


@dataclass
class ExternalCalendar:
    calendar_id: str
    name: str
    primary: bool = False


class ProviderClient(ABC):
    """Capability interface every provider implementation satisfies.

    Implementations translate wire payloads to ``ExternalEvent`` at their
    boundary (see ``EventMapper.from_provider_payload``) and raise the
    taxonomy in ``models``: ``AuthExpiredError`` for revoked credentials,
    ``RateLimitError``/``TransientNetworkError`` for retryable failures and
    ``NotFoundError`` for events that no longer exist.
    """

    provider: Provider

    @abstractmethod
    def list_calendars(self) -> list[ExternalCalendar]: ...

    @abstractmethod
    def list_events(self, calendar_id: str, window: TimeWindow) -> list[ExternalEvent]: ...

    @abstractmethod
    def get_event(self, calendar_id: str, external_id: str) -> ExternalEvent:
        """Fetch one event by id, wherever it lies; ``NotFoundError`` if deleted."""

    @abstractmethod
    def create_event(self, calendar_id: str, event: ExternalEvent) -> ExternalEvent:
        """Create the event and return it as stored (with its assigned id)."""

    @abstractmethod
    def update_event(self, calendar_id: str, event: ExternalEvent) -> ExternalEvent:
        """Overwrite the event identified by ``event.external_id``."""

    @abstractmethod
    def delete_event(self, calendar_id: str, external_id: str) -> None: ...


ProviderFactory = Callable[[CalendarIntegration], ProviderClient]


def load_provider_factories() -> dict[Provider, ProviderFactory]:
    """Collect provider factories registered as entry points."""
    factories: dict[Provider, ProviderFactory] = {}
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            provider = Provider(ep.name)
        except ValueError:
            logger.warning(f"Ignoring provider plug-in with unknown name: {ep.name}")
            continue
        factories[provider] = ep.load()
        logger.debug(f"Loaded provider plug-in {ep.name} from {ep.value}")
    return factories


class ProviderRegistry:
    """Selects the client implementation for an integration by provider type."""

    def __init__(self, factories: dict[Provider, ProviderFactory] | None = None):
        self._factories: dict[Provider, ProviderFactory] = dict(factories or {})

    @classmethod
    def from_entry_points(cls) -> "ProviderRegistry":
        return cls(load_provider_factories())

    def register(self, provider: Provider, factory: ProviderFactory):
        self._factories[provider] = factory

    def __contains__(self, provider: Provider) -> bool:
        return provider in self._factories

    def __call__(self, integration: CalendarIntegration) -> ProviderClient:
        factory = self._factories.get(integration.provider)
        if factory is None:
            raise CalendarSyncError(
                f"No provider client registered for '{integration.provider.value}'"
            )
        return factory(integration)
