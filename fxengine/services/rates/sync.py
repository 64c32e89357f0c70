from __future__ import annotations

"""Background synchronization of cached exchange rates.

Three independent jobs, each on its own daemon thread:

  - full sync: refresh expired base currencies plus the common set, guarded by
    a provider quota check and an exclusive "running" flag
  - quota watch: log provider quota, warn when it runs low
  - janitor: soft-delete expired API rows (flag, never delete)

Jobs never raise out of their thread; failures are logged and the next tick
runs as scheduled. `stop()` wakes every waiting thread so shutdown is prompt.
"""
from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from fxengine.core.config import EngineConfig
from fxengine.core.errors import RateEngineError
from fxengine.db.rate_store import RateStore
from fxengine.models.constants import SOURCE_API_CACHED
from fxengine.models.currency import CurrencyCode
from .provider import ExchangeRateApiClient, QuotaInfo

logger = logging.getLogger("fxengine.sync")

SKIP_ALREADY_RUNNING = "already_running"
SKIP_NOT_CONFIGURED = "not_configured"
SKIP_LOW_QUOTA = "low_quota"


@dataclass
class SyncSummary:
    started: Optional[datetime] = None
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None
    finished: Optional[datetime] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started.isoformat() if self.started else None,
            "finished": self.finished.isoformat() if self.finished else None,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "skipped_reason": self.skipped_reason,
        }


class RateSyncScheduler:
    def __init__(
        self,
        config: EngineConfig,
        client: ExchangeRateApiClient,
        store: RateStore,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.client = client
        self.store = store
        self._sleep = sleep
        self._lock = threading.Lock()
        self._running = False
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.last_sync_time: Optional[datetime] = None
        self.last_summary: Optional[SyncSummary] = None

    # ------------------------------------------------------------------
    # Running flag (only ever mutated here)
    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def try_start(self) -> bool:
        with self._lock:
            if self._running:
                return False
            self._running = True
            return True

    def finish(self) -> None:
        with self._lock:
            self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self) -> bool:
        if not self.config.has_api_key:
            logger.warning("no exchange rate API key configured; sync jobs not started")
            return False
        if self._threads:
            return True
        self._stop.clear()
        jobs = (
            ("full_sync", self.config.full_sync_interval.total_seconds(), self.run_full_sync),
            ("quota_watch", self.config.quota_check_interval.total_seconds(), self.check_quota),
            ("janitor", self.config.janitor_interval.total_seconds(), self.cleanup_expired),
        )
        for name, interval, job in jobs:
            thread = threading.Thread(
                target=self._loop,
                args=(name, interval, job),
                name=f"fxengine-{name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("rate sync jobs started: %s", ", ".join(j[0] for j in jobs))
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("rate sync jobs stopped")

    def _loop(self, name: str, interval: float, job: Callable[[], Any]) -> None:
        # first run happens one interval after start, like a cron tick
        while not self._stop.wait(interval):
            try:
                job()
            except Exception:
                logger.exception("sync job %s crashed", name, extra={"job": name})

    # ------------------------------------------------------------------
    # Jobs
    def run_full_sync(self) -> SyncSummary:
        if not self.try_start():
            logger.info("full sync already in progress, skipping", extra={"job": "full_sync"})
            return SyncSummary(skipped_reason=SKIP_ALREADY_RUNNING)
        try:
            summary = self._full_sync()
            self.last_summary = summary
            return summary
        finally:
            self.finish()

    def _full_sync(self) -> SyncSummary:
        summary = SyncSummary(started=self.store.now())
        if not self.config.has_api_key:
            logger.warning("full sync skipped: no API key", extra={"job": "full_sync"})
            summary.skipped_reason = SKIP_NOT_CONFIGURED
            return summary

        quota = self.check_quota()
        if quota is None:
            logger.warning(
                "quota unknown, running full sync anyway", extra={"job": "full_sync"}
            )
        elif quota.remaining_fraction < self.config.quota_threshold:
            logger.warning(
                "low API quota (%s/%s), skipping full sync",
                quota.remaining,
                quota.limit,
                extra={"job": "full_sync"},
            )
            summary.skipped_reason = SKIP_LOW_QUOTA
            return summary

        candidates = self.currencies_needing_update()
        logger.info(
            "full sync of %s base currencies", len(candidates), extra={"job": "full_sync"}
        )
        for index, base in enumerate(candidates):
            if index and self.config.inter_call_delay_seconds > 0:
                self._sleep(self.config.inter_call_delay_seconds)
            try:
                self.client.fetch_latest(base, source=SOURCE_API_CACHED)
            except RateEngineError as exc:
                summary.failed.append(base)
                logger.warning(
                    "sync failed for %s: %s: %s",
                    base,
                    type(exc).__name__,
                    exc,
                    extra={"job": "full_sync", "base": base},
                )
                continue
            summary.succeeded.append(base)

        summary.finished = self.store.now()
        self.last_sync_time = summary.finished
        logger.info(
            "full sync finished: %s succeeded, %s failed (active rates: %s)",
            len(summary.succeeded),
            len(summary.failed),
            self.store.count_active(),
            extra={"job": "full_sync"},
        )
        return summary

    def currencies_needing_update(self) -> List[str]:
        """Expired rows' base currencies, then the common set; de-duplicated."""
        ordered: Dict[str, None] = {}
        for row in self.store.find_expired(include_inactive=True):
            ordered.setdefault(row.base_currency, None)
        for code in self.config.common_currencies:
            ordered.setdefault(str(CurrencyCode.parse(code)), None)
        return list(ordered)

    def check_quota(self) -> Optional[QuotaInfo]:
        try:
            quota = self.client.fetch_quota()
        except RateEngineError as exc:
            logger.warning("quota check failed: %s", exc, extra={"job": "quota_watch"})
            return None
        pct = quota.remaining_fraction * 100
        if quota.remaining_fraction < self.config.quota_threshold:
            logger.warning(
                "low API quota: %s/%s remaining (%.1f%%)",
                quota.remaining,
                quota.limit,
                pct,
                extra={"job": "quota_watch"},
            )
        else:
            logger.info(
                "API quota: %s/%s remaining (%.1f%%)",
                quota.remaining,
                quota.limit,
                pct,
                extra={"job": "quota_watch"},
            )
        return quota

    def cleanup_expired(self) -> int:
        expired = self.store.find_expired()
        if not expired:
            logger.info("no expired cache entries", extra={"job": "janitor"})
            return 0
        count = self.store.deactivate(r.id for r in expired)
        logger.info("retired %s expired cache entries", count, extra={"job": "janitor"})
        return count

    # ------------------------------------------------------------------
    # Manual entry points
    def trigger_manual_sync(self, base: str = "USD") -> bool:
        """Refresh one base currency now; independent of the running flag."""
        try:
            self.client.fetch_latest(base, source=SOURCE_API_CACHED)
        except RateEngineError as exc:
            logger.warning(
                "manual sync failed for %s: %s", base, exc, extra={"base": base}
            )
            return False
        logger.info("manual sync completed for %s", base, extra={"base": base})
        return True

    def get_sync_status(self) -> Dict[str, Any]:
        quota = self.check_quota() if self.config.has_api_key else None
        return {
            "is_running": self.is_running,
            "last_sync_time": self.last_sync_time.isoformat()
            if self.last_sync_time
            else None,
            "total_rates": self.store.count_active(),
            "expired_rates": len(self.store.find_expired()),
            "quota": quota.as_status() if quota else None,
            "last_summary": self.last_summary.as_dict() if self.last_summary else None,
        }
