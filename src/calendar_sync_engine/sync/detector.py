"""
Divergence classification for mapped pairs and matching of unmapped events.
"""

import datetime
import uuid
from dataclasses import dataclass
from dataclasses import field
from difflib import SequenceMatcher
from enum import Enum

from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import ConflictAnalysis
from calendar_sync_engine.models import ConflictType
from calendar_sync_engine.models import ExternalEvent
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import Resolution
from calendar_sync_engine.models import Severity
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncConflict
from calendar_sync_engine.models import SyncMapping


class Action(str, Enum):
    NOOP = "noop"
    PUSH_LOCAL = "push_local"  # local changed; overwrite external
    PULL_EXTERNAL = "pull_external"  # external changed; overwrite local
    DELETE_EXTERNAL = "delete_external"  # local deleted, external untouched
    DELETE_LOCAL = "delete_local"  # external deleted, local untouched
    FORGET = "forget"  # both sides gone; drop the mapping
    ACCEPT = "accept"  # both changed but agree; refresh the snapshot
    CONFLICT = "conflict"


@dataclass
class Decision:
    action: Action
    conflict_type: ConflictType | None = None
    description: str = ""


@dataclass
class MatchPlan:
    """How unmapped events on both sides relate to each other."""

    links: list[tuple[LocalEvent, ExternalEvent]] = field(default_factory=list)
    conflicts: list[tuple[LocalEvent, ExternalEvent, str]] = field(default_factory=list)
    new_local: list[LocalEvent] = field(default_factory=list)  # export candidates
    new_external: list[ExternalEvent] = field(default_factory=list)  # import candidates


def title_similarity(a: str, b: str) -> float:
    a = (a or "").strip().casefold()
    b = (b or "").strip().casefold()
    if not a and not b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


def _fmt(value: datetime.datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


def newer_side(local: LocalEvent, external: ExternalEvent) -> str:
    """'local' when the local copy was modified strictly later, else 'external'.

    An external event without a modification stamp is dated by its start.
    """
    external_stamp = external.updated or external.start
    if local.updated_at is None:
        return "external"
    return "local" if local.updated_at > external_stamp else "external"


def longer_side(local: LocalEvent, external: ExternalEvent) -> str:
    """'local' unless the external copy lasts strictly longer."""
    if local.end - local.start >= external.end - external.start:
        return "local"
    return "external"


def _text_differs(local: LocalEvent, external: ExternalEvent) -> list[str]:
    names = []
    for name in ("title", "description", "location"):
        if (getattr(local, name) or "").strip() != (getattr(external, name) or "").strip():
            names.append(name)
    return names


class ConflictDetector:
    """Classifies the divergence between a local event and its external copy.

    Change is judged against the fingerprints stored in the ``SyncMapping``
    at the last successful sync, so the same inputs always give the same
    decision.
    """

    def __init__(self, config: SyncConfig | None = None):
        config = config or SyncConfig()
        self.time_tolerance = datetime.timedelta(seconds=config.time_tolerance_seconds)
        self.match_window = datetime.timedelta(minutes=config.creation_match_window_minutes)
        self.similarity_threshold = config.title_similarity_threshold

    def times_differ(self, local: LocalEvent, external: ExternalEvent) -> bool:
        return (
            abs(local.start - external.start) > self.time_tolerance
            or abs(local.end - external.end) > self.time_tolerance
        )

    def analyze_pair(
        self, local: LocalEvent | None, external: ExternalEvent | None
    ) -> ConflictAnalysis:
        """Which field groups differ, how severe that is and whether a rule may settle it.

        A missing side (deletion) always needs a manual decision.  Otherwise
        up to two differing field groups are auto-resolvable.
        """
        if local is None or external is None:
            return ConflictAnalysis(["existence"], Severity.HIGH, auto_resolvable=False)

        affected = []
        text = _text_differs(local, external)
        for name in ("title", "description"):
            if name in text:
                affected.append(name)
        if self.times_differ(local, external):
            affected.append("time")
        if "location" in text:
            affected.append("location")

        if "time" in affected or len(affected) > 3:
            severity = Severity.HIGH
        elif len(affected) > 1:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        if not affected:
            suggested = Resolution.IGNORE
        elif len(affected) == 1 and affected != ["time"]:
            suggested = Resolution.MERGE
        elif newer_side(local, external) == "local":
            suggested = Resolution.KEEP_LOCAL
        else:
            suggested = Resolution.KEEP_EXTERNAL
        return ConflictAnalysis(
            affected_fields=affected,
            severity=severity,
            auto_resolvable=len(affected) <= 2,
            suggested_resolution=suggested,
        )

    def classify_pair(
        self,
        local: LocalEvent | None,
        external: ExternalEvent | None,
        mapping: SyncMapping,
    ) -> Decision:
        """Decide what to do with a mapped pair; ``None`` means deleted."""
        if local is None and external is None:
            return Decision(Action.FORGET)

        local_changed = local is not None and EventMapper.fingerprint(local) != mapping.local_hash
        external_changed = (
            external is not None and EventMapper.fingerprint(external) != mapping.external_hash
        )

        if local is None:
            if external_changed:
                return Decision(
                    Action.CONFLICT,
                    ConflictType.DELETION_CONFLICT,
                    f"'{external.title}' was deleted locally but modified in the external calendar",
                )
            return Decision(Action.DELETE_EXTERNAL)

        if external is None:
            if local_changed:
                return Decision(
                    Action.CONFLICT,
                    ConflictType.DELETION_CONFLICT,
                    f"'{local.title}' was deleted in the external calendar but modified locally",
                )
            return Decision(Action.DELETE_LOCAL)

        if not local_changed and not external_changed:
            return Decision(Action.NOOP)
        if local_changed and not external_changed:
            return Decision(Action.PUSH_LOCAL)
        if external_changed and not local_changed:
            return Decision(Action.PULL_EXTERNAL)

        if self.times_differ(local, external):
            return Decision(
                Action.CONFLICT,
                ConflictType.TIME_MISMATCH,
                f"'{local.title}' times differ: local {_fmt(local.start)} to {_fmt(local.end)}, "
                f"external {_fmt(external.start)} to {_fmt(external.end)}",
            )
        differing = _text_differs(local, external)
        if differing:
            return Decision(
                Action.CONFLICT,
                ConflictType.CONTENT_MISMATCH,
                f"'{local.title}' was edited on both sides; {', '.join(differing)} differ",
            )
        return Decision(Action.ACCEPT)

    def is_plausible_match(self, local: LocalEvent, external: ExternalEvent) -> bool:
        return (
            abs(local.start - external.start) <= self.match_window
            and title_similarity(local.title, external.title) >= self.similarity_threshold
        )

    def match_unmapped(
        self, locals_: list[LocalEvent], externals: list[ExternalEvent]
    ) -> MatchPlan:
        """Pair unmapped events that look like the same appointment.

        Each local event takes the best-scoring unclaimed external candidate
        (highest title similarity, then closest start).  Identical pairs are
        linked; differing ones become creation conflicts; the rest are new.
        """
        plan = MatchPlan()
        claimed: set[str] = set()

        for local in sorted(locals_, key=lambda e: (e.start, e.id)):
            best = None
            best_score = None
            for external in externals:
                if external.external_id in claimed or not self.is_plausible_match(local, external):
                    continue
                score = (
                    title_similarity(local.title, external.title),
                    -abs(local.start - external.start),
                )
                if best_score is None or score > best_score:
                    best, best_score = external, score

            if best is None:
                plan.new_local.append(local)
                continue

            claimed.add(best.external_id)
            if EventMapper.fingerprint(local) == EventMapper.fingerprint(best):
                plan.links.append((local, best))
            else:
                plan.conflicts.append(
                    (
                        local,
                        best,
                        f"'{local.title}' exists locally and as '{best.title}' in the external "
                        f"calendar ({_fmt(best.start)}) without a recorded link",
                    )
                )

        plan.new_external = [e for e in externals if e.external_id not in claimed]
        return plan

    @staticmethod
    def build_conflict(
        user_id: str,
        integration_id: str,
        conflict_type: ConflictType,
        description: str,
        local: LocalEvent | None,
        external: ExternalEvent | None,
        local_event_id: str | None = None,
        external_event_id: str | None = None,
    ) -> SyncConflict:
        """Snapshot both sides into a pending conflict record."""
        return SyncConflict(
            id=str(uuid.uuid4()),
            user_id=user_id,
            integration_id=integration_id,
            conflict_type=conflict_type,
            description=description,
            local_event_id=local.id if local is not None else local_event_id,
            external_event_id=(
                external.external_id if external is not None else external_event_id
            ),
            local_event_data=EventMapper.local_to_dict(local) if local is not None else None,
            external_event_data=(
                EventMapper.external_to_dict(external) if external is not None else None
            ),
        )
