"""
Conflict lifecycle: recording, listing, statistics and resolution (manual,
rule-based, smart merge and batches).
"""

import dataclasses
import datetime
import logging
import uuid
from collections.abc import Callable
from collections.abc import Iterable

from dateutil import parser as date_parser

from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.mapper import MERGEABLE_FIELDS
from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import MERGE_FIELD_GROUPS
from calendar_sync_engine.models import AutoResolutionRule
from calendar_sync_engine.models import BatchResolutionResult
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import CalendarSyncError
from calendar_sync_engine.models import ConflictAnalysis
from calendar_sync_engine.models import ConflictStatus
from calendar_sync_engine.models import ConflictType
from calendar_sync_engine.models import ExternalEvent
from calendar_sync_engine.models import FieldSource
from calendar_sync_engine.models import ForbiddenError
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import NotFoundError
from calendar_sync_engine.models import Resolution
from calendar_sync_engine.models import ResolutionResult
from calendar_sync_engine.models import ResolutionStrategy
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncConflict
from calendar_sync_engine.models import ValidationError
from calendar_sync_engine.models import utcnow
from calendar_sync_engine.providers import ProviderClient
from calendar_sync_engine.sync.detector import ConflictDetector
from calendar_sync_engine.sync.detector import longer_side
from calendar_sync_engine.sync.detector import newer_side
from calendar_sync_engine.sync.local_view import LocalView
from calendar_sync_engine.sync.utils import KeyedLock
from calendar_sync_engine.sync.utils import call_provider

logger = logging.getLogger(__name__)


def _coerce_merged(merged_data: dict | None) -> dict:
    if not merged_data:
        raise ValidationError("merge requires merged_data")
    unknown = set(merged_data) - MERGEABLE_FIELDS
    if unknown:
        raise ValidationError(f"merge cannot set: {', '.join(sorted(unknown))}")

    fields = {}
    for name, value in merged_data.items():
        if name in ("start", "end"):
            if isinstance(value, str):
                try:
                    value = date_parser.isoparse(value)
                except ValueError as e:
                    raise ValidationError(f"invalid {name}: {value!r}") from e
            if not isinstance(value, datetime.datetime):
                raise ValidationError(f"{name} must be a datetime")
            if value.tzinfo is None:
                value = value.replace(tzinfo=datetime.timezone.utc)
        elif value is None:
            value = ""
        elif not isinstance(value, str):
            raise ValidationError(f"{name} must be text")
        fields[name] = value
    return fields


class ConflictResolutionService:
    """Owns ``SyncConflict`` records from creation to resolution.

    A resolution first claims its conflict in the state database
    (``pending`` → ``resolving``), so two resolutions of one conflict never
    both apply, whichever service instance or process runs them.  Within a
    service, resolutions of the same conflict also queue on a keyed lock so
    the second caller sees the first one's outcome.  Resolving an
    already-resolved conflict succeeds without touching either calendar.
    Errors are reported in the returned ``ResolutionResult``; provider calls
    are bounded by the configured timeout and never retried.
    """

    def __init__(
        self,
        state_db: StateDatabase,
        provider_factory: Callable[[CalendarIntegration], ProviderClient],
        config: SyncConfig | None = None,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.state_db = state_db
        self.provider_factory = provider_factory
        self.config = config or SyncConfig()
        self.detector = ConflictDetector(self.config)
        self.locks = locks or KeyedLock()
        self.clock = clock
        self._call_config = dataclasses.replace(self.config, max_retries=1)

    def record_conflict(self, conflict: SyncConflict) -> SyncConflict:
        conflict = self.state_db.insert_conflict(conflict)
        self.state_db.commit()
        return conflict

    def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        return self.state_db.get_conflict(conflict_id)

    def get_pending_conflicts(self, user_id: str) -> list[SyncConflict]:
        """Unresolved conflicts for a user, oldest first."""
        return self.state_db.list_conflicts(user_id, ConflictStatus.PENDING)

    def get_conflict_statistics(self, user_id: str) -> dict:
        stats = {
            "total": 0,
            **{s.value: 0 for s in ConflictStatus},
            "by_type": {t.value: 0 for t in ConflictType},
            "by_resolution": {r.value: 0 for r in Resolution},
        }
        for row in self.state_db.conflict_counts(user_id):
            count = row["count"]
            stats["total"] += count
            stats[row["status"]] += count
            stats["by_type"][row["conflict_type"]] += count
            if row["resolution"]:
                stats["by_resolution"][row["resolution"]] += count
        return stats

    def _owned_conflict(self, conflict_id: str, user_id: str) -> SyncConflict:
        conflict = self.state_db.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        if conflict.user_id != user_id:
            raise ForbiddenError("Forbidden: conflict belongs to another user")
        return conflict

    def resolve_conflict_manually(
        self,
        conflict_id: str,
        user_id: str,
        resolution: Resolution | str,
        merged_data: dict | None = None,
    ) -> ResolutionResult:
        with self.locks.hold(conflict_id):
            try:
                conflict = self._owned_conflict(conflict_id, user_id)
                if conflict.status == ConflictStatus.RESOLVED:
                    logger.info(f"Conflict {conflict_id} already resolved; nothing to do")
                    return ResolutionResult(success=True, already_resolved=True)
                try:
                    resolution = Resolution(resolution)
                except ValueError:
                    raise ValidationError(f"Unknown resolution: {resolution!r}") from None

                now = self.clock()
                stale_before = now - datetime.timedelta(minutes=self.config.stale_sync_minutes)
                if not self.state_db.claim_conflict(conflict_id, now, stale_before):
                    current = self.state_db.get_conflict(conflict_id)
                    if current is not None and current.status == ConflictStatus.RESOLVED:
                        return ResolutionResult(success=True, already_resolved=True)
                    raise CalendarSyncError(f"Conflict {conflict_id} is already being resolved")

                try:
                    changes = self._apply(conflict, resolution, merged_data)
                except Exception:
                    self.state_db.release_conflict(conflict_id, self.clock())
                    raise
                self.state_db.mark_conflict_resolved(
                    conflict_id, resolution, user_id, self.clock()
                )
                self.state_db.commit()
            except CalendarSyncError as e:
                logger.error(f"Failed to resolve conflict {conflict_id}: {e}")
                return ResolutionResult(success=False, error=str(e))

        logger.info(f"Resolved conflict {conflict_id} with {resolution.value}")
        return ResolutionResult(success=True, applied_changes=changes)

    # ------------------------------------------------------------------ #
    # Rule-based resolution                                                #
    # ------------------------------------------------------------------ #

    def _versions(self, conflict: SyncConflict) -> tuple[LocalEvent | None, ExternalEvent | None]:
        external = (
            EventMapper.external_from_dict(conflict.external_event_data)
            if conflict.external_event_data
            else None
        )
        return self._current_local(conflict), external

    def analyze_conflict(self, conflict: SyncConflict) -> ConflictAnalysis:
        """Compare the current local event with the external snapshot."""
        return self.detector.analyze_pair(*self._versions(conflict))

    def resolve_conflict_automatically(
        self, conflict_id: str, user_id: str, rule: AutoResolutionRule | str
    ) -> ResolutionResult:
        """Pick a side by ``rule`` and resolve as ``keep_local``/``keep_external``."""
        try:
            conflict = self._owned_conflict(conflict_id, user_id)
            if conflict.status == ConflictStatus.RESOLVED:
                return ResolutionResult(success=True, already_resolved=True)
            try:
                rule = AutoResolutionRule(rule)
            except ValueError:
                raise ValidationError(f"Unknown auto-resolution rule: {rule!r}") from None

            local, external = self._versions(conflict)
            if not self.detector.analyze_pair(local, external).auto_resolvable:
                raise ValidationError("Conflict is not auto-resolvable")
            if rule == AutoResolutionRule.LOCAL_WINS:
                winner = "local"
            elif rule == AutoResolutionRule.EXTERNAL_WINS:
                winner = "external"
            elif rule == AutoResolutionRule.NEWEST_WINS:
                winner = newer_side(local, external)
            else:
                winner = longer_side(local, external)
        except CalendarSyncError as e:
            logger.error(f"Failed to auto-resolve conflict {conflict_id}: {e}")
            return ResolutionResult(success=False, error=str(e))

        resolution = Resolution.KEEP_LOCAL if winner == "local" else Resolution.KEEP_EXTERNAL
        logger.debug(f"Rule {rule.value} picks {resolution.value} for {conflict_id}")
        return self.resolve_conflict_manually(conflict_id, user_id, resolution)

    def resolve_conflict_with_smart_merge(
        self,
        conflict_id: str,
        user_id: str,
        field_priorities: dict[str, FieldSource | str],
    ) -> ResolutionResult:
        """Merge field group by field group, each from the side its priority names.

        Groups left out of ``field_priorities`` keep the local value.
        """
        try:
            conflict = self._owned_conflict(conflict_id, user_id)
            if conflict.status == ConflictStatus.RESOLVED:
                return ResolutionResult(success=True, already_resolved=True)
            unknown = set(field_priorities) - set(MERGE_FIELD_GROUPS)
            if unknown:
                raise ValidationError(f"Unknown field group: {', '.join(sorted(unknown))}")
            try:
                priorities = {k: FieldSource(v) for k, v in field_priorities.items()}
            except ValueError as e:
                raise ValidationError(f"Unknown field source: {e}") from None

            local, external = self._versions(conflict)
            if local is None or external is None:
                raise ValidationError("Smart merge needs both versions of the event")
            newest = newer_side(local, external)
            merged = {}
            for group, names in MERGE_FIELD_GROUPS.items():
                source = priorities.get(group, FieldSource.LOCAL)
                use_external = source == FieldSource.EXTERNAL or (
                    source == FieldSource.NEWEST and newest == "external"
                )
                chosen = external if use_external else local
                for name in names:
                    merged[name] = getattr(chosen, name)
        except CalendarSyncError as e:
            logger.error(f"Failed to smart-merge conflict {conflict_id}: {e}")
            return ResolutionResult(success=False, error=str(e))

        return self.resolve_conflict_manually(conflict_id, user_id, Resolution.MERGE, merged)

    def batch_resolve_conflicts(
        self, conflict_ids: Iterable[str], user_id: str, strategy: ResolutionStrategy
    ) -> BatchResolutionResult:
        """Resolve each conflict independently; one failure never stops the rest."""
        batch = BatchResolutionResult()
        for conflict_id in conflict_ids:
            if strategy.auto_rule is not None:
                outcome = self.resolve_conflict_automatically(
                    conflict_id, user_id, strategy.auto_rule
                )
            elif strategy.field_priorities:
                outcome = self.resolve_conflict_with_smart_merge(
                    conflict_id, user_id, strategy.field_priorities
                )
            else:
                batch.failed += 1
                batch.errors.append(f"Invalid strategy for conflict {conflict_id}")
                continue

            if outcome.success:
                batch.resolved += 1
            else:
                batch.failed += 1
                batch.errors.append(f"Failed to resolve conflict {conflict_id}: {outcome.error}")
        logger.info(f"Batch resolution: {batch.resolved} resolved, {batch.failed} failed")
        return batch

    # ------------------------------------------------------------------ #
    # Strategies                                                           #
    # ------------------------------------------------------------------ #

    def _call(self, description: str, fn, *args):
        return call_provider(self._call_config, None, description, fn, *args)

    def _apply(
        self, conflict: SyncConflict, resolution: Resolution, merged_data: dict | None
    ) -> list[str]:
        integration = self.state_db.get_integration(conflict.integration_id)
        if integration is None:
            raise NotFoundError(f"Calendar integration {conflict.integration_id} not found")
        view = LocalView(self.state_db, conflict.user_id)
        local, external = self._versions(conflict)

        if resolution == Resolution.IGNORE:
            return self._ignore(conflict, integration, local, external)
        if resolution == Resolution.KEEP_LOCAL:
            return self._keep_local(conflict, integration, local, external)
        if resolution == Resolution.KEEP_EXTERNAL:
            return self._keep_external(conflict, integration, view, local, external)
        return self._merge(conflict, integration, view, local, external, merged_data)

    def _current_local(self, conflict: SyncConflict) -> LocalEvent | None:
        if not conflict.local_event_id:
            return None
        stored = self.state_db.get_local_event(conflict.local_event_id)
        if stored is not None:
            return None if stored.is_cancelled else stored
        # Expanded occurrences are never stored; fall back to the snapshot.
        if conflict.local_event_data and conflict.local_event_data.get("parent_event_id"):
            return EventMapper.local_from_dict(conflict.local_event_data)
        return None

    def _link(
        self,
        integration: CalendarIntegration,
        previous_local_id: str | None,
        local: LocalEvent,
        external: ExternalEvent,
    ):
        if previous_local_id and previous_local_id != local.id:
            self.state_db.delete_mapping(integration.id, previous_local_id)
        self.state_db.upsert_mapping(
            integration.id,
            local.id,
            external.external_id,
            EventMapper.fingerprint(local),
            EventMapper.fingerprint(external),
        )

    def _ignore(self, conflict, integration, local, external) -> list[str]:
        if local is not None and external is not None:
            self._link(integration, conflict.local_event_id, local, external)
            return ["accepted current versions without changes"]
        if conflict.local_event_id:
            self.state_db.delete_mapping(integration.id, conflict.local_event_id)
        return ["detached events"]

    def _keep_local(self, conflict, integration, local, external) -> list[str]:
        client = self.provider_factory(integration)
        calendar_id = integration.calendar_id
        if local is None:
            if conflict.external_event_id:
                try:
                    self._call(
                        f"delete {conflict.external_event_id}",
                        client.delete_event,
                        calendar_id,
                        conflict.external_event_id,
                    )
                except NotFoundError:
                    pass
                if conflict.local_event_id:
                    self.state_db.delete_mapping(integration.id, conflict.local_event_id)
            return [f"deleted external event {conflict.external_event_id}"]

        if external is None:
            outgoing = EventMapper.to_external(local, integration.provider, calendar_id)
            stored = self._call(f"create from {local.id}", client.create_event, calendar_id, outgoing)
            self._link(integration, conflict.local_event_id, local, stored)
            return [f"recreated external event {stored.external_id}"]

        outgoing = EventMapper.to_external(
            local, integration.provider, calendar_id, external.external_id
        )
        stored = self._call(
            f"update {external.external_id}", client.update_event, calendar_id, outgoing
        )
        self._link(integration, conflict.local_event_id, local, stored)
        return [f"updated external event {stored.external_id}"]

    def _keep_external(self, conflict, integration, view, local, external) -> list[str]:
        if external is None:
            if local is not None:
                view.delete(local)
            if conflict.local_event_id:
                self.state_db.delete_mapping(integration.id, conflict.local_event_id)
            return [f"deleted local event {conflict.local_event_id}"]

        partial = EventMapper.to_local(external, integration.provider)
        if local is None:
            stored = view.create(partial)
            change = f"recreated local event {stored.id}"
        else:
            stored = view.apply(local, partial)
            change = f"updated local event {stored.id}"
        self._link(integration, conflict.local_event_id, stored, external)
        return [change]

    def _merge(self, conflict, integration, view, local, external, merged_data) -> list[str]:
        fields = _coerce_merged(merged_data)

        if local is not None:
            base = local
        elif external is not None:
            base = LocalEvent(
                id=str(uuid.uuid4()),
                user_id=conflict.user_id,
                **EventMapper.to_local(external, integration.provider),
            )
        else:
            raise ValidationError("merge needs at least one surviving version")
        merged = EventMapper.apply_partial(base, fields)
        if merged.start >= merged.end:
            raise ValidationError("merged start must be before end")

        # The provider is written first; a failed push leaves the local side untouched.
        client = self.provider_factory(integration)
        calendar_id = integration.calendar_id
        external_id = external.external_id if external is not None else None
        outgoing = EventMapper.to_external(merged, integration.provider, calendar_id, external_id)
        if external_id:
            pushed = self._call(f"update {external_id}", client.update_event, calendar_id, outgoing)
            pushed_change = f"updated external event {pushed.external_id}"
        else:
            pushed = self._call(f"create from {merged.id}", client.create_event, calendar_id, outgoing)
            pushed_change = f"recreated external event {pushed.external_id}"

        if local is not None:
            stored = view.apply(local, fields)
            local_change = f"updated local event {stored.id}"
        else:
            stored = self.state_db.insert_local_event(merged)
            local_change = f"recreated local event {stored.id}"

        self._link(integration, conflict.local_event_id, stored, pushed)
        return [local_change, pushed_change]
