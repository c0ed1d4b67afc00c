"""
Helpers shared by the sync submodules: provider call plumbing, cancellation
and per-key locking.
"""

import datetime
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager

from tenacity import Retrying
from tenacity import before_sleep_log
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from calendar_sync_engine.models import CalendarIntegration
from calendar_sync_engine.models import SyncCancelledError
from calendar_sync_engine.models import SyncConfig
from calendar_sync_engine.models import TransientError
from calendar_sync_engine.models import TransientNetworkError
from calendar_sync_engine.providers import TimeWindow

_logger = logging.getLogger(__name__)


def sync_window(integration: CalendarIntegration, now: datetime.datetime) -> TimeWindow:
    """The span a pass compares: ``sync_past_days`` back to ``sync_future_days`` ahead."""
    return TimeWindow(
        start=now - datetime.timedelta(days=integration.sync_past_days),
        end=now + datetime.timedelta(days=integration.sync_future_days),
    )


class CancellationToken:
    """Cancellation signal observed at every I/O boundary of a pass.

    ``check`` is an optional extra predicate (e.g. "integration was
    disabled") consulted alongside the explicit ``cancel()`` flag.
    """

    def __init__(self, check: Callable[[], bool] | None = None):
        self._event = threading.Event()
        self._check = check

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return bool(self._check and self._check())

    def raise_if_cancelled(self):
        if self.cancelled:
            raise SyncCancelledError("Sync cancelled")


def _run_with_timeout(fn: Callable, args: tuple, timeout: float | None, description: str):
    if not timeout or timeout <= 0:
        return fn(*args)
    # A dedicated worker per call; a hung call must not block later ones.
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provider-call")
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        future.cancel()
        raise TransientNetworkError(f"{description} timed out after {timeout:g}s") from e
    finally:
        executor.shutdown(wait=False)


def call_provider(
    config: SyncConfig,
    cancel: CancellationToken | None,
    description: str,
    fn: Callable,
    *args,
):
    """Invoke a provider method with a timeout and bounded retries.

    Only ``TransientError`` (rate limits, network failures, timeouts) is
    retried; everything else propagates on the first attempt.  Cancellation
    is checked before each attempt.
    """

    def attempt():
        if cancel is not None:
            cancel.raise_if_cancelled()
        return _run_with_timeout(fn, args, config.provider_timeout_seconds, description)

    retrying = Retrying(
        stop=stop_after_attempt(max(config.max_retries, 1)),
        wait=wait_exponential(
            multiplier=config.backoff_multiplier, max=config.backoff_max_seconds
        ),
        retry=retry_if_exception_type(TransientError),
        before_sleep=before_sleep_log(_logger, logging.WARNING),
        reraise=True,
    )
    return retrying(attempt)


class KeyedLock:
    """One mutex per key, created on first use and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        # key → [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
