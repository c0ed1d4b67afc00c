"""
Shared pytest fixtures and event helpers.
"""

import datetime
import logging

import pytest

from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import ExternalEvent
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import Provider
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncDirection
from calendar_sync_engine.models import SyncResult
from calendar_sync_engine.sync import SyncEngine
from tests.fake_client import FakeProviderClient

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
INTEGRATION_ID = "integration-google"

UTC = datetime.timezone.utc
# Fixed "now" for every sync in the suite; events are placed around it.
NOW = datetime.datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def at(day: int, hour: int, minute: int = 0, month: int = 3) -> datetime.datetime:
    """UTC datetime in 2026."""
    return datetime.datetime(2026, month, day, hour, minute, tzinfo=UTC)


def make_local(
    event_id: str,
    title: str = "Test Event",
    start: datetime.datetime | None = None,
    end: datetime.datetime | None = None,
    **kwargs,
) -> LocalEvent:
    start = start or at(3, 10)
    return LocalEvent(
        id=event_id,
        user_id=kwargs.pop("user_id", USER_ID),
        title=title,
        start=start,
        end=end or start + datetime.timedelta(hours=1),
        **kwargs,
    )


def make_external(
    external_id: str | None,
    title: str = "Test Event",
    start: datetime.datetime | None = None,
    end: datetime.datetime | None = None,
    provider: Provider = Provider.GOOGLE,
    **kwargs,
) -> ExternalEvent:
    start = start or at(3, 10)
    return ExternalEvent(
        provider=provider,
        external_id=external_id,
        title=title,
        start=start,
        end=end or start + datetime.timedelta(hours=1),
        **kwargs,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(
        state_db_path=db_path,
        dry_run=False,
        verbose=False,
        provider_timeout_seconds=5.0,
        backoff_multiplier=0,
        backoff_max_seconds=0,
    )


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_result():
    return SyncResult(integration_id=INTEGRATION_ID)


@pytest.fixture
def fake_client():
    return FakeProviderClient(Provider.GOOGLE)


@pytest.fixture
def make_integration(state_db):
    def _make(
        integration_id: str = INTEGRATION_ID,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        provider: Provider = Provider.GOOGLE,
        user_id: str = USER_ID,
        **kwargs,
    ) -> CalendarIntegration:
        integration = CalendarIntegration(
            id=integration_id,
            user_id=user_id,
            provider=provider,
            sync_direction=direction,
            **kwargs,
        )
        state_db.create_integration(integration)
        state_db.commit()
        return integration

    return _make


@pytest.fixture
def engine(state_db, sync_config, fake_client):
    return SyncEngine(state_db, lambda integration: fake_client, sync_config, clock=lambda: NOW)


@pytest.fixture
def lecture_pair(state_db, fake_client, make_integration):
    """A mapped "Lecture" pair moved on both sides since the last sync.

    Last synced at 09:00-10:00; now local is 10:00-11:00 and external is
    10:30-11:30.
    """
    make_integration()
    state_db.insert_local_event(make_local("L1", "Lecture", start=at(3, 10)))
    fake_client.seed(make_external("X1", "Lecture", start=at(3, 10, 30)))
    previous = make_local("L1", "Lecture", start=at(3, 9))
    state_db.upsert_mapping(
        INTEGRATION_ID,
        "L1",
        "X1",
        EventMapper.fingerprint(previous),
        EventMapper.fingerprint(EventMapper.to_external(previous, Provider.GOOGLE)),
    )
    state_db.commit()


@pytest.fixture
def lecture_conflict(lecture_pair, engine, state_db):
    """The pending time_mismatch recorded by syncing ``lecture_pair``."""
    engine.perform_full_sync(USER_ID, INTEGRATION_ID)
    (conflict,) = engine.conflicts.get_pending_conflicts(USER_ID)
    return conflict
