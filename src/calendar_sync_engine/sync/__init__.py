"""
SyncEngine: per-integration orchestrator that delegates to sync submodules.
"""

import datetime
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from calendar_sync_engine.db import StateDatabase
from calendar_sync_engine.models import AuthExpiredError
from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import CalendarSyncError
from calendar_sync_engine.models import HistoryStatus
from calendar_sync_engine.models import SyncCancelledError
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import SyncInProgressError
from calendar_sync_engine.models import SyncResult
from calendar_sync_engine.models import SyncStatus
from calendar_sync_engine.models import utcnow
from calendar_sync_engine.providers import ProviderClient
from calendar_sync_engine.sync.conflicts import ConflictResolutionService
from calendar_sync_engine.sync.detector import ConflictDetector
from calendar_sync_engine.sync.full_pass import run_full_pass
from calendar_sync_engine.sync.utils import CancellationToken


class SyncEngine:
    """Main synchronization engine.

    At most one pass runs per integration: a pass first claims the
    integration row (``sync_status`` → ``syncing``) and a second caller is
    turned away with ``SyncInProgressError``.  Passes for different
    integrations run independently.
    """

    def __init__(
        self,
        state_db: StateDatabase,
        provider_factory: Callable[[CalendarIntegration], ProviderClient],
        config: SyncConfig | None = None,
        detector: ConflictDetector | None = None,
        conflict_service: ConflictResolutionService | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.state_db = state_db
        self.provider_factory = provider_factory
        self.config = config or SyncConfig()
        self.detector = detector or ConflictDetector(self.config)
        self.conflicts = conflict_service or ConflictResolutionService(
            state_db, provider_factory, self.config, clock=clock
        )
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    def _integration_disabled(self, integration_id: str) -> bool:
        current = self.state_db.get_integration(integration_id)
        return current is None or not current.sync_enabled

    def cancel(self, integration_id: str) -> bool:
        """Ask the in-flight pass for an integration to stop; False if none runs."""
        with self._tokens_lock:
            token = self._tokens.get(integration_id)
        if token is None:
            return False
        token.cancel()
        self.logger.info(f"Cancellation requested for {integration_id}")
        return True

    def perform_full_sync(self, user_id: str, integration_id: str) -> SyncResult:
        """Run one sync pass for an integration.

        Failures are reported through the returned ``SyncResult`` and the
        integration's status; only ``SyncInProgressError`` is raised.
        """
        result = SyncResult(integration_id=integration_id)

        integration = self.state_db.get_integration(integration_id)
        if integration is None or integration.user_id != user_id:
            result.errors.append(f"Calendar integration {integration_id} not found")
            return result
        if not integration.sync_enabled:
            self.logger.info(f"Sync disabled for {integration_id}; skipping")
            result.success = True
            return result

        now = self.clock()
        stale_before = now - datetime.timedelta(minutes=self.config.stale_sync_minutes)
        if not self.state_db.claim_integration(integration_id, now, stale_before):
            raise SyncInProgressError(f"A sync is already running for {integration_id}")

        history_id = self.state_db.start_sync_history(integration, now)
        token = CancellationToken(check=lambda: self._integration_disabled(integration_id))
        with self._tokens_lock:
            self._tokens[integration_id] = token

        status = SyncStatus.ERROR
        history_status = HistoryStatus.FAILED
        message = None
        try:
            client = self.provider_factory(integration)
            run_full_pass(
                self.config,
                result,
                self.logger,
                integration,
                client,
                self.state_db,
                self.detector,
                self.conflicts,
                token,
                now,
            )
            status = SyncStatus.SUCCESS
            history_status = HistoryStatus.COMPLETED
            result.success = True
        except SyncCancelledError:
            status = SyncStatus.IDLE
            history_status = HistoryStatus.CANCELLED
            message = "Sync cancelled"
            self.logger.warning(f"Sync of {integration_id} cancelled")
        except AuthExpiredError as e:
            message = f"Authentication expired, reconnect the calendar: {e}"
            self.logger.error(message)
        except CalendarSyncError as e:
            message = str(e)
            self.logger.error(f"Sync of {integration_id} failed: {e}")
        except Exception as e:
            message = f"Unexpected error: {e}"
            self.logger.exception(f"Sync of {integration_id} failed unexpectedly")
        finally:
            with self._tokens_lock:
                self._tokens.pop(integration_id, None)
            if message:
                result.errors.append(message)
            result.events_processed = (
                result.events_created + result.events_updated + result.events_deleted
            )
            finished = self.clock()
            self.state_db.finish_sync(integration_id, status, finished, message)
            self.state_db.complete_sync_history(history_id, history_status, result, finished)
        return result

    def _sync_isolated(self, integration: CalendarIntegration) -> SyncResult:
        try:
            return self.perform_full_sync(integration.user_id, integration.id)
        except SyncInProgressError as e:
            self.logger.warning(str(e))
            return SyncResult(integration_id=integration.id, errors=[str(e)])

    def sync_all(self, user_id: str | None = None) -> list[SyncResult]:
        """Sync every enabled integration (optionally for one user) in parallel.

        Waits for all passes; one failure never cancels the others.  Results
        come back in integration order.
        """
        integrations = self.state_db.list_integrations(user_id, enabled_only=True)
        if not integrations:
            return []
        workers = max(1, min(self.config.max_workers, len(integrations)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as executor:
            results = list(executor.map(self._sync_isolated, integrations))

        ok = sum(1 for r in results if r.success)
        self.logger.info(f"Synced {ok}/{len(results)} integration(s)")
        return results
