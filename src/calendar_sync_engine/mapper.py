"""
Event mapping between the local schedule and external providers.
"""

import dataclasses
import datetime
import hashlib
import json
import re
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from calendar_sync_engine.models import ExternalEvent
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import MonthlyBy
from calendar_sync_engine.models import Provider
from calendar_sync_engine.models import RecurrencePattern
from calendar_sync_engine.models import RecurrenceType
from calendar_sync_engine.models import WeekDay
from calendar_sync_engine.providers import PROVIDER_OPTIONAL_FIELDS

UNTITLED = "Untitled Event"

# Fields that define an event for change detection.  Provider metadata such
# as etags and modification stamps is left out.
FINGERPRINT_FIELDS = ("title", "description", "start", "end", "location")

# Fields every provider carries, and the only ones a merge may set.
CORE_FIELDS = FINGERPRINT_FIELDS + ("is_all_day",)
MERGEABLE_FIELDS = frozenset(FINGERPRINT_FIELDS)

# Graph API timestamps carry 7 fractional digits; Python parses at most 6.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _normalize_time(value: datetime.datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return value.replace(microsecond=0).isoformat()


def _dt_to_str(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _str_to_dt(value: str | None) -> datetime.datetime | None:
    return datetime.datetime.fromisoformat(value) if value else None


class EventMapper:
    """Translates events between the local and the provider-neutral shape."""

    @staticmethod
    def supported_fields(provider: Provider) -> frozenset[str]:
        return frozenset(CORE_FIELDS) | PROVIDER_OPTIONAL_FIELDS.get(provider, frozenset())

    @classmethod
    def to_external(
        cls,
        local: LocalEvent,
        provider: Provider,
        calendar_id: str = "primary",
        external_id: str | None = None,
    ) -> ExternalEvent:
        """Build the external shape of a local event.

        Optional fields the provider cannot store are dropped.
        """
        supported = cls.supported_fields(provider)
        return ExternalEvent(
            provider=provider,
            external_id=external_id,
            calendar_id=calendar_id,
            title=local.title,
            description=local.description or "",
            start=local.start,
            end=local.end,
            location=local.location or "",
            is_all_day=local.is_all_day,
            reminder_minutes=local.reminder_minutes if "reminder_minutes" in supported else None,
            color=local.color if "color" in supported else None,
        )

    @classmethod
    def to_local(cls, external: ExternalEvent, provider: Provider) -> dict:
        """Return the local fields an external event defines.

        The result is a partial: optional fields the provider does not support,
        or that it left unset, are omitted so that applying the partial leaves
        the local values untouched rather than nulling them.
        """
        partial = {
            "title": (external.title or "").strip() or UNTITLED,
            "description": external.description or "",
            "start": external.start,
            "end": external.end,
            "location": external.location or "",
            "is_all_day": external.is_all_day,
        }
        supported = cls.supported_fields(provider)
        for name in ("reminder_minutes", "color"):
            value = getattr(external, name)
            if name in supported and value is not None:
                partial[name] = value
        return partial

    @staticmethod
    def apply_partial(local: LocalEvent, partial: dict) -> LocalEvent:
        """Return a copy of ``local`` with the partial's fields applied."""
        return dataclasses.replace(local, **partial)

    @staticmethod
    def fingerprint(event) -> str:
        """SHA256 over the fields that matter for change detection.

        Works on anything exposing the fingerprint fields as attributes
        (LocalEvent, ExternalEvent).  Times are normalised to UTC and whole
        seconds; text is stripped.
        """
        parts = []
        for name in FINGERPRINT_FIELDS:
            value = getattr(event, name)
            if isinstance(value, datetime.datetime):
                parts.append(_normalize_time(value))
            else:
                parts.append((value or "").strip())
        payload = json.dumps(parts, ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------ #
    # JSON snapshots (conflict records, local store rows)                  #
    # ------------------------------------------------------------------ #

    @staticmethod
    def pattern_to_dict(pattern: RecurrencePattern | None) -> dict | None:
        if pattern is None:
            return None
        return {
            "type": pattern.type.value,
            "interval": pattern.interval,
            "days_of_week": (
                [int(d) for d in pattern.days_of_week] if pattern.days_of_week else None
            ),
            "monthly_by": pattern.monthly_by.value if pattern.monthly_by else None,
            "day_of_month": pattern.day_of_month,
            "week_of_month": pattern.week_of_month,
            "week_day": int(pattern.week_day) if pattern.week_day is not None else None,
            "month": pattern.month,
            "end_date": pattern.end_date.isoformat() if pattern.end_date else None,
            "occurrences": pattern.occurrences,
            "workdays_only": pattern.workdays_only,
        }

    @staticmethod
    def pattern_from_dict(data: dict | None) -> RecurrencePattern | None:
        if not data:
            return None
        return RecurrencePattern(
            type=RecurrenceType(data["type"]),
            interval=data.get("interval", 1),
            days_of_week=(
                [WeekDay(d) for d in data["days_of_week"]] if data.get("days_of_week") else None
            ),
            monthly_by=MonthlyBy(data["monthly_by"]) if data.get("monthly_by") else None,
            day_of_month=data.get("day_of_month"),
            week_of_month=data.get("week_of_month"),
            week_day=WeekDay(data["week_day"]) if data.get("week_day") is not None else None,
            month=data.get("month"),
            end_date=(
                datetime.date.fromisoformat(data["end_date"]) if data.get("end_date") else None
            ),
            occurrences=data.get("occurrences"),
            workdays_only=data.get("workdays_only", False),
        )

    @classmethod
    def local_to_dict(cls, local: LocalEvent) -> dict:
        return {
            "id": local.id,
            "user_id": local.user_id,
            "title": local.title,
            "description": local.description,
            "start": _dt_to_str(local.start),
            "end": _dt_to_str(local.end),
            "location": local.location,
            "timezone": local.timezone,
            "is_all_day": local.is_all_day,
            "status": local.status,
            "parent_event_id": local.parent_event_id,
            "is_exception": local.is_exception,
            "original_date": local.original_date.isoformat() if local.original_date else None,
            "recurrence_pattern": cls.pattern_to_dict(local.recurrence_pattern),
            "reminder_minutes": local.reminder_minutes,
            "color": local.color,
            "created_at": _dt_to_str(local.created_at),
            "updated_at": _dt_to_str(local.updated_at),
        }

    @classmethod
    def local_from_dict(cls, data: dict) -> LocalEvent:
        return LocalEvent(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            start=_str_to_dt(data["start"]),
            end=_str_to_dt(data["end"]),
            description=data.get("description") or "",
            location=data.get("location") or "",
            timezone=data.get("timezone") or "UTC",
            is_all_day=bool(data.get("is_all_day")),
            status=data.get("status") or "confirmed",
            parent_event_id=data.get("parent_event_id"),
            is_exception=bool(data.get("is_exception")),
            original_date=(
                datetime.date.fromisoformat(data["original_date"])
                if data.get("original_date")
                else None
            ),
            recurrence_pattern=cls.pattern_from_dict(data.get("recurrence_pattern")),
            reminder_minutes=data.get("reminder_minutes"),
            color=data.get("color"),
            created_at=_str_to_dt(data.get("created_at")),
            updated_at=_str_to_dt(data.get("updated_at")),
        )

    @staticmethod
    def external_to_dict(external: ExternalEvent) -> dict:
        return {
            "provider": external.provider.value,
            "external_id": external.external_id,
            "calendar_id": external.calendar_id,
            "title": external.title,
            "description": external.description,
            "start": _dt_to_str(external.start),
            "end": _dt_to_str(external.end),
            "location": external.location,
            "is_all_day": external.is_all_day,
            "reminder_minutes": external.reminder_minutes,
            "color": external.color,
            "etag": external.etag,
            "updated": _dt_to_str(external.updated),
        }

    @staticmethod
    def external_from_dict(data: dict) -> ExternalEvent:
        return ExternalEvent(
            provider=Provider(data["provider"]),
            external_id=data.get("external_id"),
            calendar_id=data.get("calendar_id") or "primary",
            title=data["title"],
            description=data.get("description") or "",
            start=_str_to_dt(data["start"]),
            end=_str_to_dt(data["end"]),
            location=data.get("location") or "",
            is_all_day=bool(data.get("is_all_day")),
            reminder_minutes=data.get("reminder_minutes"),
            color=data.get("color"),
            etag=data.get("etag"),
            updated=_str_to_dt(data.get("updated")),
        )

    # ------------------------------------------------------------------ #
    # Provider wire payloads                                               #
    # ------------------------------------------------------------------ #

    @classmethod
    def from_provider_payload(
        cls, payload: dict, provider: Provider, calendar_id: str = "primary"
    ) -> ExternalEvent:
        """Decode a Google Calendar or Microsoft Graph event resource."""
        if provider == Provider.GOOGLE:
            return cls._from_google(payload, calendar_id)
        return cls._from_microsoft(payload, calendar_id)

    @classmethod
    def to_provider_payload(cls, external: ExternalEvent) -> dict:
        """Encode an external event as the provider's event resource."""
        if external.provider == Provider.GOOGLE:
            return cls._to_google(external)
        return cls._to_microsoft(external)

    @staticmethod
    def _from_google(payload: dict, calendar_id: str) -> ExternalEvent:
        def parse(node: dict) -> tuple[datetime.datetime, bool]:
            if "date" in node:
                day = datetime.date.fromisoformat(node["date"])
                return datetime.datetime.combine(day, datetime.time.min, datetime.timezone.utc), True
            value = date_parser.isoparse(node["dateTime"])
            if value.tzinfo is None:
                value = value.replace(tzinfo=ZoneInfo(node.get("timeZone") or "UTC"))
            return value, False

        start, all_day = parse(payload["start"])
        end, _ = parse(payload["end"])

        reminder = None
        reminders = payload.get("reminders") or {}
        if reminders.get("overrides"):
            reminder = reminders["overrides"][0].get("minutes")

        updated = payload.get("updated")
        return ExternalEvent(
            provider=Provider.GOOGLE,
            external_id=payload.get("id"),
            calendar_id=calendar_id,
            title=payload.get("summary") or "",
            description=payload.get("description") or "",
            start=start,
            end=end,
            location=payload.get("location") or "",
            is_all_day=all_day,
            reminder_minutes=reminder,
            color=payload.get("colorId"),
            etag=payload.get("etag"),
            updated=date_parser.isoparse(updated) if updated else None,
        )

    @staticmethod
    def _to_google(external: ExternalEvent) -> dict:
        if external.is_all_day:
            start = {"date": external.start.date().isoformat()}
            end = {"date": external.end.date().isoformat()}
        else:
            start = {"dateTime": external.start.isoformat(), "timeZone": "UTC"}
            end = {"dateTime": external.end.isoformat(), "timeZone": "UTC"}
        payload = {
            "summary": external.title,
            "description": external.description,
            "location": external.location,
            "start": start,
            "end": end,
            "status": "confirmed",
        }
        if external.external_id:
            payload["id"] = external.external_id
        if external.reminder_minutes is not None:
            payload["reminders"] = {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": external.reminder_minutes}],
            }
        else:
            payload["reminders"] = {"useDefault": True}
        if external.color:
            payload["colorId"] = external.color
        return payload

    @staticmethod
    def _from_microsoft(payload: dict, calendar_id: str) -> ExternalEvent:
        def parse(node: dict) -> datetime.datetime:
            value = date_parser.isoparse(_FRACTION_RE.sub(r"\1", node["dateTime"]))
            if value.tzinfo is None:
                value = value.replace(tzinfo=ZoneInfo(node.get("timeZone") or "UTC"))
            return value

        reminder = None
        if payload.get("isReminderOn"):
            reminder = payload.get("reminderMinutesBeforeStart")

        modified = payload.get("lastModifiedDateTime")
        return ExternalEvent(
            provider=Provider.MICROSOFT,
            external_id=payload.get("id"),
            calendar_id=calendar_id,
            title=payload.get("subject") or "",
            description=(payload.get("body") or {}).get("content") or "",
            start=parse(payload["start"]),
            end=parse(payload["end"]),
            location=(payload.get("location") or {}).get("displayName") or "",
            is_all_day=bool(payload.get("isAllDay")),
            reminder_minutes=reminder,
            etag=payload.get("changeKey"),
            updated=date_parser.isoparse(modified) if modified else None,
        )

    @staticmethod
    def _to_microsoft(external: ExternalEvent) -> dict:
        def node(value: datetime.datetime) -> dict:
            if value.tzinfo is not None:
                value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
            return {"dateTime": value.isoformat(), "timeZone": "UTC"}

        payload = {
            "subject": external.title,
            "body": {"contentType": "text", "content": external.description},
            "start": node(external.start),
            "end": node(external.end),
            "location": {"displayName": external.location},
            "isAllDay": external.is_all_day,
            "isReminderOn": external.reminder_minutes is not None,
        }
        if external.external_id:
            payload["id"] = external.external_id
        if external.reminder_minutes is not None:
            payload["reminderMinutesBeforeStart"] = external.reminder_minutes
        return payload
