"""
Unit tests for ConflictDetector classification and unmapped-event matching.
"""

import dataclasses
import datetime

import pytest

from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import ConflictType
from calendar_sync_engine.models import Resolution
from calendar_sync_engine.models import Severity
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncMapping
from calendar_sync_engine.sync.detector import Action
from calendar_sync_engine.sync.detector import ConflictDetector
from calendar_sync_engine.sync.detector import longer_side
from calendar_sync_engine.sync.detector import newer_side
from calendar_sync_engine.sync.detector import title_similarity
from tests.conftest import INTEGRATION_ID
from tests.conftest import at
from tests.conftest import make_external
from tests.conftest import make_local


@pytest.fixture
def detector():
    return ConflictDetector(SyncConfig())


def _synced_pair(title="Lecture", start=None, end=None):
    """A local/external pair plus the mapping recorded when they last agreed."""
    local = make_local("L1", title, start=start or at(3, 10), end=end)
    external = make_external("X1", title, start=start or at(3, 10), end=end)
    mapping = SyncMapping(
        integration_id=INTEGRATION_ID,
        local_event_id="L1",
        external_event_id="X1",
        local_hash=EventMapper.fingerprint(local),
        external_hash=EventMapper.fingerprint(external),
    )
    return local, external, mapping


def _moved(event, start, end):
    return dataclasses.replace(event, start=start, end=end)


class TestClassifyPair:
    def test_unchanged_pair_is_noop(self, detector):
        local, external, mapping = _synced_pair()
        assert detector.classify_pair(local, external, mapping).action == Action.NOOP

    def test_only_local_changed_pushes(self, detector):
        local, external, mapping = _synced_pair()
        local = dataclasses.replace(local, title="Lecture (moved)")
        assert detector.classify_pair(local, external, mapping).action == Action.PUSH_LOCAL

    def test_only_external_changed_pulls(self, detector):
        local, external, mapping = _synced_pair()
        external = _moved(external, at(3, 12), at(3, 13))
        assert detector.classify_pair(local, external, mapping).action == Action.PULL_EXTERNAL

    def test_both_changed_times_differ_is_time_mismatch(self, detector):
        local, external, mapping = _synced_pair(start=at(3, 9))
        local = _moved(local, at(3, 10), at(3, 11))
        external = _moved(external, at(3, 10, 30), at(3, 11, 30))
        decision = detector.classify_pair(local, external, mapping)
        assert decision.action == Action.CONFLICT
        assert decision.conflict_type == ConflictType.TIME_MISMATCH

    def test_time_mismatch_is_symmetric(self, detector):
        """The same divergence classifies the same whichever side moved last."""
        local, external, mapping = _synced_pair(start=at(3, 9))
        one = detector.classify_pair(
            _moved(local, at(3, 10), at(3, 11)), _moved(external, at(3, 14), at(3, 15)), mapping
        )
        other = detector.classify_pair(
            _moved(local, at(3, 14), at(3, 15)), _moved(external, at(3, 10), at(3, 11)), mapping
        )
        assert one.conflict_type == other.conflict_type == ConflictType.TIME_MISMATCH

    def test_time_mismatch_outranks_content_mismatch(self, detector):
        local, external, mapping = _synced_pair()
        local = dataclasses.replace(local, title="A", start=at(3, 11), end=at(3, 12))
        external = dataclasses.replace(external, title="B", start=at(3, 12), end=at(3, 13))
        assert (
            detector.classify_pair(local, external, mapping).conflict_type
            == ConflictType.TIME_MISMATCH
        )

    def test_both_changed_text_differs_is_content_mismatch(self, detector):
        local, external, mapping = _synced_pair()
        local = dataclasses.replace(local, location="Hall A")
        external = dataclasses.replace(external, location="Hall B")
        decision = detector.classify_pair(local, external, mapping)
        assert decision.conflict_type == ConflictType.CONTENT_MISMATCH
        assert "location" in decision.description

    def test_differences_within_tolerance_are_accepted(self, detector):
        local, external, mapping = _synced_pair()
        local = _moved(local, at(3, 11), at(3, 12))
        external = _moved(
            external,
            at(3, 11) + datetime.timedelta(seconds=3),
            at(3, 12) + datetime.timedelta(seconds=3),
        )
        assert detector.classify_pair(local, external, mapping).action == Action.ACCEPT

    def test_deleted_locally_unchanged_externally(self, detector):
        _, external, mapping = _synced_pair()
        assert detector.classify_pair(None, external, mapping).action == Action.DELETE_EXTERNAL

    def test_deleted_externally_unchanged_locally(self, detector):
        local, _, mapping = _synced_pair()
        assert detector.classify_pair(local, None, mapping).action == Action.DELETE_LOCAL

    def test_deleted_on_one_side_modified_on_other(self, detector):
        local, external, mapping = _synced_pair()
        edited_local = dataclasses.replace(local, title="Edited")
        edited_external = dataclasses.replace(external, title="Edited")

        first = detector.classify_pair(edited_local, None, mapping)
        second = detector.classify_pair(None, edited_external, mapping)
        assert first.conflict_type == second.conflict_type == ConflictType.DELETION_CONFLICT

    def test_both_gone_forgets_mapping(self, detector):
        _, _, mapping = _synced_pair()
        assert detector.classify_pair(None, None, mapping).action == Action.FORGET

    def test_custom_tolerance(self):
        detector = ConflictDetector(SyncConfig(time_tolerance_seconds=120))
        local, external, mapping = _synced_pair()
        local = _moved(local, at(3, 11), at(3, 12))
        external = _moved(external, at(3, 11, 1), at(3, 12, 1))
        assert detector.classify_pair(local, external, mapping).action == Action.ACCEPT


class TestMatchUnmapped:
    def test_identical_events_are_linked(self, detector):
        plan = detector.match_unmapped(
            [make_local("L1", "Team sync")], [make_external("X1", "Team sync")]
        )
        assert [(loc.id, ext.external_id) for loc, ext in plan.links] == [("L1", "X1")]
        assert not plan.conflicts and not plan.new_local and not plan.new_external

    def test_similar_events_are_a_creation_conflict(self, detector):
        plan = detector.match_unmapped(
            [make_local("L1", "Team sync", start=at(3, 10))],
            [make_external("X1", "Team sync!", start=at(3, 10, 15))],
        )
        assert len(plan.conflicts) == 1
        local, external, description = plan.conflicts[0]
        assert (local.id, external.external_id) == ("L1", "X1")
        assert "without a recorded link" in description

    def test_dissimilar_titles_are_independent(self, detector):
        plan = detector.match_unmapped(
            [make_local("L1", "Dentist")], [make_external("X1", "Board meeting")]
        )
        assert [e.id for e in plan.new_local] == ["L1"]
        assert [e.external_id for e in plan.new_external] == ["X1"]

    def test_outside_time_window_is_independent(self, detector):
        plan = detector.match_unmapped(
            [make_local("L1", "Team sync", start=at(3, 10))],
            [make_external("X1", "Team sync", start=at(3, 11))],
        )
        assert len(plan.new_local) == 1 and len(plan.new_external) == 1

    def test_best_candidate_wins_and_is_claimed_once(self, detector):
        plan = detector.match_unmapped(
            [make_local("L1", "Team sync", start=at(3, 10))],
            [
                make_external("X1", "Team sync", start=at(3, 10, 20)),
                make_external("X2", "Team sync", start=at(3, 10, 5)),
            ],
        )
        _, matched, _ = plan.conflicts[0]
        assert matched.external_id == "X2"
        assert [e.external_id for e in plan.new_external] == ["X1"]


def test_title_similarity_is_case_insensitive():
    assert title_similarity("Weekly Review", "weekly review ") == 1.0
    assert title_similarity("", "") == 1.0
    assert title_similarity("abc", "xyz") == 0.0


class TestAnalyzePair:
    def test_identical_pair_needs_nothing(self, detector):
        analysis = detector.analyze_pair(make_local("L1"), make_external("X1"))

        assert analysis.affected_fields == []
        assert analysis.severity == Severity.LOW
        assert analysis.auto_resolvable
        assert analysis.suggested_resolution == Resolution.IGNORE

    def test_single_text_field_suggests_merge(self, detector):
        analysis = detector.analyze_pair(
            make_local("L1", "Standup"), make_external("X1", "Stand-up")
        )

        assert analysis.affected_fields == ["title"]
        assert analysis.severity == Severity.LOW
        assert analysis.suggested_resolution == Resolution.MERGE

    def test_time_difference_is_high_severity(self, detector):
        local = make_local("L1", updated_at=at(2, 12))
        external = make_external("X1", start=at(3, 10, 30), updated=at(2, 9))

        analysis = detector.analyze_pair(local, external)

        assert analysis.affected_fields == ["time"]
        assert analysis.severity == Severity.HIGH
        assert analysis.auto_resolvable
        assert analysis.suggested_resolution == Resolution.KEEP_LOCAL

    def test_three_text_fields_are_not_auto_resolvable(self, detector):
        local = make_local("L1", "Standup", description="daily", location="Room 1")
        external = make_external("X1", "Stand-up", description="weekly", location="Room 2")

        analysis = detector.analyze_pair(local, external)

        assert analysis.affected_fields == ["title", "description", "location"]
        assert analysis.severity == Severity.MEDIUM
        assert not analysis.auto_resolvable
        assert analysis.suggested_resolution == Resolution.KEEP_EXTERNAL

    @pytest.mark.parametrize("missing", ["local", "external"])
    def test_missing_side_needs_a_person(self, detector, missing):
        local = None if missing == "local" else make_local("L1")
        external = None if missing == "external" else make_external("X1")

        analysis = detector.analyze_pair(local, external)

        assert analysis.affected_fields == ["existence"]
        assert analysis.severity == Severity.HIGH
        assert not analysis.auto_resolvable


class TestSidePickers:
    def test_newer_side_prefers_strictly_later_local_edit(self):
        external = make_external("X1", updated=at(2, 9))
        assert newer_side(make_local("L1", updated_at=at(2, 10)), external) == "local"
        assert newer_side(make_local("L1", updated_at=at(2, 9)), external) == "external"
        assert newer_side(make_local("L1"), external) == "external"

    def test_newer_side_dates_unstamped_external_by_start(self):
        external = make_external("X1", start=at(3, 10))
        assert newer_side(make_local("L1", updated_at=at(3, 11)), external) == "local"

    def test_longer_side_keeps_local_on_a_tie(self):
        assert longer_side(make_local("L1"), make_external("X1")) == "local"
        longer = make_external("X1", end=at(3, 12))
        assert longer_side(make_local("L1"), longer) == "external"
