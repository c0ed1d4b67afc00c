"""
The local schedule as a sync pass sees it.

Recurring masters are expanded into one event per occurrence inside the
window.  Writes that target an occurrence become series exceptions; the
master itself is never edited by a sync.
"""

import dataclasses
import datetime
import logging
import uuid

from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import EVENT_CANCELLED
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.providers import TimeWindow
from calendar_sync_engine.recurrence import DEFAULT_MAX_OCCURRENCES
from calendar_sync_engine.recurrence import expand_to_events

_logger = logging.getLogger(__name__)


def _split_occurrence_id(event_id: str) -> tuple[str, datetime.date] | None:
    master_id, sep, suffix = event_id.rpartition(":")
    if not sep or len(suffix) != 8 or not suffix.isdigit():
        return None
    try:
        return master_id, datetime.datetime.strptime(suffix, "%Y%m%d").date()
    except ValueError:
        return None


class LocalView:
    def __init__(
        self,
        state_db: StateDatabase,
        user_id: str,
        window: TimeWindow | None = None,
        max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
    ):
        self.state_db = state_db
        self.user_id = user_id
        self.window = window
        self.max_occurrences = max_occurrences

    def load(self) -> dict[str, LocalEvent]:
        """Return the live events in the window keyed by id.

        Cancelled events are left out.  An exception replaces the occurrence
        on its ``original_date``; a cancelled exception removes it.
        """
        events: dict[str, LocalEvent] = {}
        masters: list[LocalEvent] = []
        orphans: list[LocalEvent] = []

        for event in self.state_db.list_local_events(
            self.user_id, self.window.start, self.window.end
        ):
            if event.recurrence_pattern is not None:
                masters.append(event)
            elif event.is_exception and event.parent_event_id:
                orphans.append(event)
            elif not event.is_cancelled:
                events[event.id] = event

        # Whole days with a day of slack each side; the window check below trims.
        first_day = self.window.start.date() - datetime.timedelta(days=1)
        last_day = self.window.end.date() + datetime.timedelta(days=1)

        expanded_masters = set()
        for master in masters:
            if master.is_cancelled:
                continue
            expanded_masters.add(master.id)
            overrides = {
                e.original_date: e for e in self.state_db.list_exception_events(master.id)
            }
            occurrences = expand_to_events(master, first_day, last_day, self.max_occurrences + 1)
            if len(occurrences) > self.max_occurrences:
                _logger.warning(
                    f"Series {master.id} has more than {self.max_occurrences} occurrences "
                    f"in the window; later ones are not synced"
                )
                occurrences = occurrences[: self.max_occurrences]
            for occurrence in occurrences:
                override = overrides.get(occurrence.original_date)
                if override is None:
                    if self.window.contains(occurrence.start, occurrence.end):
                        events[occurrence.id] = occurrence
                elif not override.is_cancelled and self.window.contains(
                    override.start, override.end
                ):
                    events[override.id] = override

        # Exceptions moved into the window whose master starts after it.
        for event in orphans:
            if event.parent_event_id not in expanded_masters and not event.is_cancelled:
                events[event.id] = event

        _logger.debug(
            f"Local view for {self.user_id}: {len(events)} event(s), "
            f"{len(expanded_masters)} recurring series expanded"
        )
        return events

    def out_of_window(self, event_id: str) -> bool:
        """True when a mapped local event still exists but lies outside the window."""
        stored = self.state_db.get_local_event(event_id)
        if stored is not None:
            if stored.is_cancelled:
                return False
            return not self.window.contains(stored.start, stored.end)

        parts = _split_occurrence_id(event_id)
        if parts is None:
            return False
        master_id, day = parts
        master = self.state_db.get_local_event(master_id)
        if master is None or master.recurrence_pattern is None or master.is_cancelled:
            return False
        cancelled_days = {
            e.original_date for e in self.state_db.list_exception_events(master_id) if e.is_cancelled
        }
        if day in cancelled_days:
            return False
        return not (self.window.start.date() <= day <= self.window.end.date())

    def _is_virtual(self, event: LocalEvent) -> bool:
        return (
            event.parent_event_id is not None
            and not event.is_exception
            and self.state_db.get_local_event(event.id) is None
        )

    def _new_exception(self, occurrence: LocalEvent, **changes) -> LocalEvent:
        exception = dataclasses.replace(
            occurrence,
            id=str(uuid.uuid4()),
            is_exception=True,
            created_at=None,
            updated_at=None,
            **changes,
        )
        self.state_db.insert_local_event(exception)
        _logger.debug(
            f"Recorded exception {exception.id} for {occurrence.parent_event_id} "
            f"on {occurrence.original_date}"
        )
        return exception

    def create(self, partial: dict) -> LocalEvent:
        """Store a new standalone local event built from an external partial."""
        event = LocalEvent(id=str(uuid.uuid4()), user_id=self.user_id, **partial)
        return self.state_db.insert_local_event(event)

    def apply(self, local: LocalEvent, partial: dict) -> LocalEvent:
        """Write changed fields to a local event and return the stored result.

        For an expanded occurrence the change is stored as a new exception
        event, so the returned id differs from ``local.id``.
        """
        if self._is_virtual(local):
            return self._new_exception(local, **partial)
        return self.state_db.update_local_event(EventMapper.apply_partial(local, partial))

    def delete(self, local: LocalEvent) -> str | None:
        """Remove a local event from the schedule.

        Occurrences and exceptions are cancelled rather than removed so the
        series does not regenerate them.  Returns the id of a newly created
        cancellation exception, if any.
        """
        if self._is_virtual(local):
            return self._new_exception(local, status=EVENT_CANCELLED).id
        if local.is_exception:
            self.state_db.update_local_event(dataclasses.replace(local, status=EVENT_CANCELLED))
            return None
        self.state_db.delete_local_event(local.id)
        return None
