"""
One synchronisation pass for one integration.
"""

import datetime

from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.mapper import EventMapper
from calendar_sync_engine.models import AuthExpiredError
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import CalendarSyncError
from calendar_sync_engine.models import ConflictType
from calendar_sync_engine.models import ExternalEvent
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import NotFoundError
from calendar_sync_engine.models import SyncCancelledError
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncMapping
from calendar_sync_engine.models import SyncResult
from calendar_sync_engine.providers import ProviderClient
from calendar_sync_engine.sync.conflicts import ConflictResolutionService
from calendar_sync_engine.sync.detector import Action
from calendar_sync_engine.sync.detector import ConflictDetector
from calendar_sync_engine.sync.local_view import LocalView
from calendar_sync_engine.sync.utils import CancellationToken
from calendar_sync_engine.sync.utils import call_provider
from calendar_sync_engine.sync.utils import sync_window


class _Pass:
    """State threaded through the per-event handlers of a single pass."""

    def __init__(
        self,
        config: SyncConfig,
        result: SyncResult,
        logger,
        integration: CalendarIntegration,
        client: ProviderClient,
        state_db: StateDatabase,
        detector: ConflictDetector,
        conflicts: ConflictResolutionService,
        cancel: CancellationToken,
        view: LocalView,
    ):
        self.config = config
        self.result = result
        self.logger = logger
        self.integration = integration
        self.client = client
        self.state_db = state_db
        self.detector = detector
        self.conflicts = conflicts
        self.cancel = cancel
        self.view = view

    @property
    def provider(self):
        return self.integration.provider

    def call(self, description: str, fn, *args):
        return call_provider(self.config, self.cancel, description, fn, *args)

    def fail(self, what: str, error: Exception):
        self.logger.error(f"Failed to {what}: {error}")
        self.result.errors.append(f"Failed to {what}: {error}")

    def record_conflict(
        self,
        conflict_type: ConflictType,
        description: str,
        local: LocalEvent | None,
        external: ExternalEvent | None,
        mapping: SyncMapping | None = None,
    ):
        conflict = self.detector.build_conflict(
            self.integration.user_id,
            self.integration.id,
            conflict_type,
            description,
            local,
            external,
            local_event_id=mapping.local_event_id if mapping else None,
            external_event_id=mapping.external_event_id if mapping else None,
        )
        self.result.conflicts_detected += 1
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] Would record {conflict_type.value}: {description}")
            return
        self.conflicts.record_conflict(conflict)
        self.logger.warning(f"Conflict ({conflict_type.value}): {description}")

    # ------------------------------------------------------------------ #
    # Mapped pairs                                                         #
    # ------------------------------------------------------------------ #

    def push_local(self, local: LocalEvent, mapping: SyncMapping):
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] [LOCAL→EXTERNAL] Would UPDATE: {local.id}")
            self.result.events_updated += 1
            return
        outgoing = EventMapper.to_external(
            local, self.provider, self.integration.calendar_id, mapping.external_event_id
        )
        stored = self.call(
            f"update {mapping.external_event_id}",
            self.client.update_event,
            self.integration.calendar_id,
            outgoing,
        )
        self.state_db.update_mapping_hashes(
            self.integration.id,
            local.id,
            EventMapper.fingerprint(local),
            EventMapper.fingerprint(stored),
        )
        self.state_db.commit()
        self.result.events_updated += 1
        self.logger.debug(f"Updated external {mapping.external_event_id} from local {local.id}")

    def pull_external(self, local: LocalEvent, external: ExternalEvent, mapping: SyncMapping):
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] [EXTERNAL→LOCAL] Would UPDATE: {local.id}")
            self.result.events_updated += 1
            return
        stored = self.view.apply(local, EventMapper.to_local(external, self.provider))
        if stored.id != local.id:
            self.state_db.remap_local_event(self.integration.id, local.id, stored.id)
        self.state_db.update_mapping_hashes(
            self.integration.id,
            stored.id,
            EventMapper.fingerprint(stored),
            EventMapper.fingerprint(external),
        )
        self.state_db.commit()
        self.result.events_updated += 1
        self.logger.debug(f"Updated local {stored.id} from external {external.external_id}")

    def delete_external(self, mapping: SyncMapping):
        if self.config.dry_run:
            self.logger.info(
                f"[DRY RUN] [LOCAL→EXTERNAL] Would DELETE: {mapping.external_event_id}"
            )
            self.result.events_deleted += 1
            return
        try:
            self.call(
                f"delete {mapping.external_event_id}",
                self.client.delete_event,
                self.integration.calendar_id,
                mapping.external_event_id,
            )
        except NotFoundError:
            self.logger.debug(f"External {mapping.external_event_id} already gone")
        self.state_db.delete_mapping(self.integration.id, mapping.local_event_id)
        self.state_db.commit()
        self.result.events_deleted += 1

    def delete_local(self, local: LocalEvent, mapping: SyncMapping):
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] [EXTERNAL→LOCAL] Would DELETE: {local.id}")
            self.result.events_deleted += 1
            return
        self.view.delete(local)
        self.state_db.delete_mapping(self.integration.id, mapping.local_event_id)
        self.state_db.commit()
        self.result.events_deleted += 1

    def process_pair(
        self,
        mapping: SyncMapping,
        local: LocalEvent | None,
        external: ExternalEvent | None,
    ):
        direction = self.integration.sync_direction
        decision = self.detector.classify_pair(local, external, mapping)
        action = decision.action

        if action == Action.NOOP:
            return
        if action == Action.CONFLICT:
            self.record_conflict(
                decision.conflict_type, decision.description, local, external, mapping
            )
        elif action == Action.ACCEPT:
            if not self.config.dry_run:
                self.state_db.update_mapping_hashes(
                    self.integration.id,
                    local.id,
                    EventMapper.fingerprint(local),
                    EventMapper.fingerprint(external),
                )
                self.state_db.commit()
        elif action == Action.FORGET:
            if not self.config.dry_run:
                self.state_db.delete_mapping(self.integration.id, mapping.local_event_id)
                self.state_db.commit()
        elif action == Action.PUSH_LOCAL and direction.exports:
            self.push_local(local, mapping)
        elif action == Action.PULL_EXTERNAL and direction.imports:
            self.pull_external(local, external, mapping)
        elif action == Action.DELETE_EXTERNAL and direction.exports:
            self.delete_external(mapping)
        elif action == Action.DELETE_LOCAL and direction.imports:
            self.delete_local(local, mapping)
        else:
            self.logger.debug(
                f"Skipping {action.value} for {mapping.local_event_id}: "
                f"direction is {direction.value}"
            )

    def process_mapped(
        self,
        mapping: SyncMapping,
        local: LocalEvent | None,
        external: ExternalEvent | None,
    ):
        """Like ``process_pair``, but confirms an external absence first.

        An event missing from the window listing may only have moved out of
        the window; it counts as deleted only when the provider says so.
        """
        if local is not None and external is None:
            try:
                external = self.call(
                    f"get {mapping.external_event_id}",
                    self.client.get_event,
                    self.integration.calendar_id,
                    mapping.external_event_id,
                )
            except NotFoundError:
                external = None
            else:
                self.logger.debug(
                    f"External {mapping.external_event_id} is outside the window; "
                    f"comparing the fetched copy"
                )
        self.process_pair(mapping, local, external)

    # ------------------------------------------------------------------ #
    # Unmapped events                                                      #
    # ------------------------------------------------------------------ #

    def export_new(self, local: LocalEvent):
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] [LOCAL→EXTERNAL] Would CREATE: {local.id}")
            self.result.events_created += 1
            return
        outgoing = EventMapper.to_external(local, self.provider, self.integration.calendar_id)
        stored = self.call(
            f"create from {local.id}",
            self.client.create_event,
            self.integration.calendar_id,
            outgoing,
        )
        self.state_db.upsert_mapping(
            self.integration.id,
            local.id,
            stored.external_id,
            EventMapper.fingerprint(local),
            EventMapper.fingerprint(stored),
        )
        self.state_db.commit()
        self.result.events_created += 1
        self.logger.debug(f"Created external {stored.external_id} from local {local.id}")

    def import_new(self, external: ExternalEvent):
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] [EXTERNAL→LOCAL] Would CREATE: {external.external_id}")
            self.result.events_created += 1
            return
        stored = self.view.create(EventMapper.to_local(external, self.provider))
        self.state_db.upsert_mapping(
            self.integration.id,
            stored.id,
            external.external_id,
            EventMapper.fingerprint(stored),
            EventMapper.fingerprint(external),
        )
        self.state_db.commit()
        self.result.events_created += 1
        self.logger.debug(f"Created local {stored.id} from external {external.external_id}")

    def link(self, local: LocalEvent, external: ExternalEvent):
        if self.config.dry_run:
            self.logger.info(f"[DRY RUN] Would LINK: {local.id} <-> {external.external_id}")
            return
        self.state_db.upsert_mapping(
            self.integration.id,
            local.id,
            external.external_id,
            EventMapper.fingerprint(local),
            EventMapper.fingerprint(external),
        )
        self.state_db.commit()
        self.logger.debug(f"Linked identical events {local.id} <-> {external.external_id}")


def _guarded(p: _Pass, what: str, fn, *args):
    """Run one per-event step; provider write failures are counted, not fatal."""
    p.cancel.raise_if_cancelled()
    try:
        fn(*args)
    except (AuthExpiredError, SyncCancelledError):
        raise
    except CalendarSyncError as e:
        p.fail(what, e)


def run_full_pass(
    config: SyncConfig,
    result: SyncResult,
    logger,
    integration: CalendarIntegration,
    client: ProviderClient,
    state_db: StateDatabase,
    detector: ConflictDetector,
    conflicts: ConflictResolutionService,
    cancel: CancellationToken,
    now: datetime.datetime,
):
    """Reconcile one integration's external calendar with the local schedule.

    Fetch failures propagate and abort the pass.  Writes already applied
    stay applied; the next pass sees them as in sync.
    """
    window = sync_window(integration, now)
    logger.info(
        f"Syncing {integration.provider.value}:{integration.calendar_id} "
        f"({integration.sync_direction.value}) for {window.start:%Y-%m-%d}..{window.end:%Y-%m-%d}"
    )

    # Phase 1: fetch both sides
    external_events = call_provider(
        config, cancel, "list events", client.list_events, integration.calendar_id, window
    )
    externals = {e.external_id: e for e in external_events}
    logger.debug(f"Fetched {len(externals)} external event(s)")

    cancel.raise_if_cancelled()
    view = LocalView(state_db, integration.user_id, window, config.max_occurrences)
    locals_ = view.load()
    mappings = state_db.get_mappings(integration.id)
    logger.debug(f"Loaded {len(locals_)} local event(s) and {len(mappings)} mapping(s)")

    p = _Pass(
        config, result, logger, integration, client, state_db, detector, conflicts, cancel, view
    )

    # Phase 2: mapped pairs
    mapped_local: set[str] = set()
    mapped_external: set[str] = set()
    for mapping in mappings:
        mapped_local.add(mapping.local_event_id)
        mapped_external.add(mapping.external_event_id)
        local = locals_.get(mapping.local_event_id)
        external = externals.get(mapping.external_event_id)

        if local is None and view.out_of_window(mapping.local_event_id):
            continue
        if state_db.has_pending_conflict(
            integration.id, mapping.local_event_id, mapping.external_event_id
        ):
            logger.debug(f"Skipping {mapping.local_event_id}: conflict pending")
            continue
        _guarded(p, f"sync {mapping.local_event_id}", p.process_mapped, mapping, local, external)

    # Phase 3: events with no mapping on either side
    unmapped_local = [
        e
        for event_id, e in locals_.items()
        if event_id not in mapped_local
        and not state_db.has_pending_conflict(integration.id, event_id, None)
    ]
    unmapped_external = [
        e
        for external_id, e in externals.items()
        if external_id not in mapped_external
        and not state_db.has_pending_conflict(integration.id, None, external_id)
    ]
    plan = detector.match_unmapped(unmapped_local, unmapped_external)

    for local, external in plan.links:
        _guarded(p, f"link {local.id}", p.link, local, external)
    for local, external, description in plan.conflicts:
        p.cancel.raise_if_cancelled()
        p.record_conflict(ConflictType.CREATION_CONFLICT, description, local, external)
    if integration.sync_direction.exports:
        for local in plan.new_local:
            _guarded(p, f"export {local.id}", p.export_new, local)
    if integration.sync_direction.imports:
        for external in plan.new_external:
            _guarded(p, f"import {external.external_id}", p.import_new, external)

    result.events_processed = result.events_created + result.events_updated + result.events_deleted
    logger.info(
        f"Pass complete: {result.events_created} created, {result.events_updated} updated, "
        f"{result.events_deleted} deleted, {result.conflicts_detected} conflict(s), "
        f"{len(result.errors)} error(s)"
    )
