"""
Concurrency, cancellation and retry behaviour of the sync engine.

Passes that must be caught mid-flight block inside FakeProviderClient's
list_events via ``list_gate``; the test releases the gate once it has acted.
"""

import dataclasses
import datetime
import threading

import pytest

from calendar_sync_engine.models import AuthExpiredError
from calendar_sync_engine.models import ConflictStatus
from calendar_sync_engine.models import Provider
from calendar_sync_engine.models import RateLimitError
from calendar_sync_engine.models import Resolution
from calendar_sync_engine.models import SyncCancelledError
from calendar_sync_engine.models import SyncInProgressError
from calendar_sync_engine.models import SyncStatus
from calendar_sync_engine.models import TransientNetworkError
from calendar_sync_engine.models import ValidationError
from calendar_sync_engine.sync import SyncEngine
from calendar_sync_engine.sync.conflicts import ConflictResolutionService
from calendar_sync_engine.sync.utils import CancellationToken
from calendar_sync_engine.sync.utils import KeyedLock
from calendar_sync_engine.sync.utils import call_provider
from tests.conftest import INTEGRATION_ID
from tests.conftest import NOW
from tests.conftest import OTHER_USER_ID
from tests.conftest import USER_ID
from tests.conftest import at
from tests.conftest import make_local
from tests.fake_client import FakeProviderClient


class _Background:
    """Run one sync pass on a worker thread and keep its result."""

    def __init__(self, engine, user_id=USER_ID, integration_id=INTEGRATION_ID):
        self.result = None
        self._thread = threading.Thread(
            target=self._run, args=(engine, user_id, integration_id), daemon=True
        )

    def _run(self, engine, user_id, integration_id):
        self.result = engine.perform_full_sync(user_id, integration_id)

    def start(self):
        self._thread.start()
        return self

    def join(self):
        self._thread.join(timeout=10)
        assert not self._thread.is_alive()
        return self.result


@pytest.fixture
def gated(fake_client):
    fake_client.list_gate = threading.Event()
    return fake_client


class TestSingleFlight:
    def test_second_pass_is_rejected_while_first_runs(self, engine, gated, make_integration):
        make_integration()
        running = _Background(engine).start()
        assert gated.list_started.wait(timeout=5)

        with pytest.raises(SyncInProgressError):
            engine.perform_full_sync(USER_ID, INTEGRATION_ID)

        gated.list_gate.set()
        assert running.join().success
        assert gated.list_calls == 1

    def test_status_is_syncing_during_pass(self, engine, state_db, gated, make_integration):
        make_integration()
        running = _Background(engine).start()
        assert gated.list_started.wait(timeout=5)

        assert state_db.get_integration(INTEGRATION_ID).sync_status == SyncStatus.SYNCING

        gated.list_gate.set()
        running.join()
        assert state_db.get_integration(INTEGRATION_ID).sync_status == SyncStatus.SUCCESS

    def test_stale_claim_is_taken_over(self, engine, state_db, make_integration):
        make_integration()
        abandoned_at = NOW - datetime.timedelta(hours=2)
        assert state_db.claim_integration(INTEGRATION_ID, abandoned_at, abandoned_at)

        assert engine.perform_full_sync(USER_ID, INTEGRATION_ID).success

    def test_recent_claim_is_respected(self, engine, state_db, make_integration):
        make_integration()
        recent = NOW - datetime.timedelta(minutes=10)
        assert state_db.claim_integration(INTEGRATION_ID, recent, recent)

        with pytest.raises(SyncInProgressError):
            engine.perform_full_sync(USER_ID, INTEGRATION_ID)


class TestCancellation:
    def test_cancel_stops_before_writes(self, engine, state_db, gated, make_integration):
        make_integration()
        state_db.insert_local_event(make_local("L1", "Gym", start=at(6, 7)))
        running = _Background(engine).start()
        assert gated.list_started.wait(timeout=5)

        assert engine.cancel(INTEGRATION_ID)
        gated.list_gate.set()
        result = running.join()

        assert not result.success
        assert result.errors == ["Sync cancelled"]
        assert gated.writes == 0
        integration = state_db.get_integration(INTEGRATION_ID)
        assert integration.sync_status == SyncStatus.IDLE
        assert integration.sync_error_message == "Sync cancelled"

    def test_disabling_mid_pass_cancels(self, engine, state_db, gated, make_integration):
        make_integration()
        state_db.insert_local_event(make_local("L1", "Gym", start=at(6, 7)))
        running = _Background(engine).start()
        assert gated.list_started.wait(timeout=5)

        state_db.update_integration_preferences(INTEGRATION_ID, sync_enabled=False)
        state_db.commit()
        gated.list_gate.set()
        result = running.join()

        assert result.errors == ["Sync cancelled"]
        assert gated.writes == 0
        integration = state_db.get_integration(INTEGRATION_ID)
        assert integration.sync_status == SyncStatus.IDLE
        assert not integration.sync_enabled

    def test_cancel_without_running_pass(self, engine, make_integration):
        make_integration()
        assert engine.cancel(INTEGRATION_ID) is False

    def test_next_pass_after_cancel_runs_normally(self, engine, state_db, gated, make_integration):
        make_integration()
        state_db.insert_local_event(make_local("L1", "Gym", start=at(6, 7)))
        running = _Background(engine).start()
        assert gated.list_started.wait(timeout=5)
        engine.cancel(INTEGRATION_ID)
        gated.list_gate.set()
        running.join()

        result = engine.perform_full_sync(USER_ID, INTEGRATION_ID)

        assert result.success
        assert result.events_created == 1


class TestSyncAll:
    def test_failure_in_one_integration_is_isolated(self, state_db, sync_config, make_integration):
        make_integration("google", provider=Provider.GOOGLE)
        make_integration("outlook", provider=Provider.MICROSOFT)
        clients = {
            "google": FakeProviderClient(Provider.GOOGLE),
            "outlook": FakeProviderClient(Provider.MICROSOFT),
        }
        clients["google"].failures["list_events"] = [AuthExpiredError("token revoked")]
        state_db.insert_local_event(make_local("L1", "Gym", start=at(6, 7)))
        engine = SyncEngine(
            state_db, lambda integration: clients[integration.id], sync_config, clock=lambda: NOW
        )

        results = {r.integration_id: r for r in engine.sync_all(USER_ID)}

        assert set(results) == {"google", "outlook"}
        assert not results["google"].success
        assert results["outlook"].success
        assert results["outlook"].events_created == 1
        assert clients["outlook"].event_count == 1
        assert state_db.get_integration("google").sync_status == SyncStatus.ERROR
        assert state_db.get_integration("outlook").sync_status == SyncStatus.SUCCESS

    def test_only_enabled_integrations_for_user(self, state_db, sync_config, make_integration):
        make_integration("mine")
        make_integration("paused", sync_enabled=False)
        make_integration("theirs", user_id=OTHER_USER_ID)
        seen = []

        def factory(integration):
            seen.append(integration.id)
            return FakeProviderClient(integration.provider)

        engine = SyncEngine(state_db, factory, sync_config, clock=lambda: NOW)

        results = engine.sync_all(USER_ID)

        assert [r.integration_id for r in results] == ["mine"]
        assert seen == ["mine"]

    def test_no_integrations(self, engine):
        assert engine.sync_all(USER_ID) == []


class TestRetries:
    def test_transient_failures_are_retried(self, engine, fake_client, make_integration):
        make_integration()
        fake_client.failures["list_events"] = [
            RateLimitError("429 Too Many Requests"),
            TransientNetworkError("connection reset"),
        ]

        result = engine.perform_full_sync(USER_ID, INTEGRATION_ID)

        assert result.success
        assert fake_client.list_calls == 3

    def test_retries_are_bounded(self, engine, state_db, fake_client, make_integration):
        make_integration()
        fake_client.failures["list_events"] = [RateLimitError("429")] * 5

        result = engine.perform_full_sync(USER_ID, INTEGRATION_ID)

        assert not result.success
        assert fake_client.list_calls == 3
        assert state_db.get_integration(INTEGRATION_ID).sync_status == SyncStatus.ERROR

    def test_slow_provider_times_out(self, state_db, sync_config, fake_client, make_integration):
        make_integration()
        fake_client.list_delay = 0.5
        config = dataclasses.replace(sync_config, provider_timeout_seconds=0.1, max_retries=1)
        engine = SyncEngine(state_db, lambda i: fake_client, config, clock=lambda: NOW)

        result = engine.perform_full_sync(USER_ID, INTEGRATION_ID)

        assert not result.success
        assert "timed out after 0.1s" in result.errors[0]

    def test_permanent_errors_are_not_retried(self, sync_config):
        calls = []

        def rejecting():
            calls.append(1)
            raise ValidationError("bad request")

        with pytest.raises(ValidationError):
            call_provider(sync_config, None, "create", rejecting)
        assert len(calls) == 1

    def test_cancelled_token_stops_before_calling(self, sync_config):
        token = CancellationToken()
        token.cancel()
        calls = []

        with pytest.raises(SyncCancelledError):
            call_provider(sync_config, token, "list", lambda: calls.append(1))
        assert calls == []


class TestConcurrentResolution:
    def test_same_conflict_is_applied_once(self, engine, fake_client, lecture_conflict):
        barrier = threading.Barrier(2)
        outcomes = []

        def resolve():
            barrier.wait(timeout=5)
            outcomes.append(
                engine.conflicts.resolve_conflict_manually(
                    lecture_conflict.id, USER_ID, Resolution.KEEP_LOCAL
                )
            )

        threads = [threading.Thread(target=resolve) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert all(o.success for o in outcomes)
        assert sorted(o.already_resolved for o in outcomes) == [False, True]
        assert fake_client.updates == ["X1"]

    def test_resolutions_from_separate_services_apply_once(
        self, state_db, sync_config, fake_client, lecture_conflict
    ):
        first = ConflictResolutionService(
            state_db, lambda i: fake_client, sync_config, clock=lambda: NOW
        )
        second = ConflictResolutionService(
            state_db, lambda i: fake_client, sync_config, clock=lambda: NOW
        )
        fake_client.write_gate = threading.Event()
        outcomes = []
        worker = threading.Thread(
            target=lambda: outcomes.append(
                first.resolve_conflict_manually(lecture_conflict.id, USER_ID, Resolution.KEEP_LOCAL)
            ),
            daemon=True,
        )
        worker.start()
        assert fake_client.write_started.wait(timeout=5)

        rejected = second.resolve_conflict_manually(
            lecture_conflict.id, USER_ID, Resolution.KEEP_EXTERNAL
        )
        fake_client.write_gate.set()
        worker.join(timeout=10)

        assert not rejected.success
        assert "already being resolved" in rejected.error
        (applied,) = outcomes
        assert applied.success and not applied.already_resolved
        assert fake_client.updates == ["X1"]
        stored = state_db.get_conflict(lecture_conflict.id)
        assert stored.status == ConflictStatus.RESOLVED
        assert stored.resolution == Resolution.KEEP_LOCAL

    def test_late_caller_from_another_service_sees_resolved(
        self, state_db, sync_config, fake_client, engine, lecture_conflict
    ):
        engine.conflicts.resolve_conflict_manually(
            lecture_conflict.id, USER_ID, Resolution.KEEP_LOCAL
        )
        other = ConflictResolutionService(state_db, lambda i: fake_client, sync_config)

        outcome = other.resolve_conflict_manually(
            lecture_conflict.id, USER_ID, Resolution.KEEP_EXTERNAL
        )

        assert outcome.success and outcome.already_resolved
        assert fake_client.updates == ["X1"]

    def test_slow_resolution_times_out_and_is_released(
        self, state_db, sync_config, fake_client, lecture_conflict
    ):
        config = dataclasses.replace(sync_config, provider_timeout_seconds=0.1)
        service = ConflictResolutionService(
            state_db, lambda i: fake_client, config, clock=lambda: NOW
        )
        fake_client.write_delay = 0.5

        outcome = service.resolve_conflict_manually(
            lecture_conflict.id, USER_ID, Resolution.KEEP_LOCAL
        )

        assert not outcome.success
        assert "timed out after 0.1s" in outcome.error
        assert state_db.get_conflict(lecture_conflict.id).status == ConflictStatus.PENDING

    def test_resolution_calls_are_not_retried(self, engine, fake_client, lecture_conflict):
        fake_client.failures["update_event"] = [RateLimitError("429"), RateLimitError("429")]

        outcome = engine.conflicts.resolve_conflict_manually(
            lecture_conflict.id, USER_ID, Resolution.KEEP_LOCAL
        )

        assert not outcome.success
        assert len(fake_client.failures["update_event"]) == 1
        assert fake_client.updates == []


class TestKeyedLock:
    def test_same_key_is_exclusive_other_keys_are_not(self):
        locks = KeyedLock()
        other_done = threading.Event()
        same_done = threading.Event()

        def hold(key, done):
            with locks.hold(key):
                done.set()

        with locks.hold("c1"):
            threading.Thread(target=hold, args=("c2", other_done), daemon=True).start()
            blocked = threading.Thread(target=hold, args=("c1", same_done), daemon=True)
            blocked.start()
            assert other_done.wait(timeout=5)
            assert not same_done.wait(timeout=0.2)

        assert same_done.wait(timeout=5)

    def test_entries_are_dropped_once_unused(self):
        locks = KeyedLock()
        with locks.hold("c1"):
            with locks.hold("c2"):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    def test_entry_survives_while_a_waiter_queues(self):
        locks = KeyedLock()
        entered = threading.Event()

        def wait_for_key():
            with locks.hold("c1"):
                entered.set()

        with locks.hold("c1"):
            waiter = threading.Thread(target=wait_for_key, daemon=True)
            waiter.start()
            assert not entered.wait(timeout=0.2)
            assert len(locks) == 1

        assert entered.wait(timeout=5)
        waiter.join(timeout=5)
        assert len(locks) == 0
