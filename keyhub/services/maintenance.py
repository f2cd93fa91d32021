"""Periodic maintenance: expiry, auto-renewal and cleanup of transient state"""
import asyncio
from typing import Optional

from keyhub.core.cache.rate_limiter import RateLimiter
from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import MaintenanceReport
from keyhub.services.lifecycle import SubscriptionLifecycleEngine
from keyhub.utils.clock import Clock, utcnow
from keyhub.utils.exceptions import KeyHubError
from keyhub.utils.logger import logger


class MaintenanceService:
    """
    Runs the maintenance sweep.

    Steps, in order:
        1. expire every overdue active subscription
        2. auto-renew subscriptions ending within the renewal window
        3. purge lapsed entries from the revocation set
        4. prune elapsed rate limit counters

    Safe to run alongside live traffic: every transition re-checks its
    guard under the key lock. Sweeps never overlap each other.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        lifecycle: SubscriptionLifecycleEngine,
        rate_limiter: RateLimiter,
        clock: Clock = utcnow,
    ):
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.rate_limiter = rate_limiter
        self.clock = clock
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    async def run_maintenance_sweep(self) -> MaintenanceReport:
        """
        Run one full sweep.

        Raises:
            StorageFailure: a step could not read or write storage; later
                steps are not attempted
        """
        async with self._run_lock:
            report = MaintenanceReport(started_at=self.clock())
            logger.info("[Maintenance] Starting maintenance tasks...")

            try:
                report.expired_count = await self.lifecycle.expire_overdue()
                report.auto_renewed_count = await self.lifecycle.auto_renew_sweep()
                report.cleaned_token_count = await self.gateway.purge_revoked(self.clock())
            except KeyHubError as e:
                logger.error(f"[Maintenance] Sweep aborted: {e.code}")
                raise

            report.pruned_rate_limits = self.rate_limiter.cleanup_expired()
            report.finished_at = self.clock()

            logger.info(
                f"[Maintenance] Completed: expired={report.expired_count} "
                f"renewed={report.auto_renewed_count} tokens={report.cleaned_token_count} "
                f"rate_limits={report.pruned_rate_limits}"
            )
            return report


class PeriodicTask:
    """
    Background loop calling ``job`` every ``interval`` seconds.

    A failing run is logged and the loop carries on with the next one.
    """

    def __init__(self, name: str, job, interval: float):
        self.name = name
        self._job = job
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning(f"[{self.name}] Already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"[{self.name}] Started (every {self.interval}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"[{self.name}] Stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            try:
                result = self._job()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[{self.name}] Run failed: {type(e).__name__}: {e}")


class MaintenanceScheduler(PeriodicTask):
    """Runs the maintenance sweep on a timer"""

    def __init__(self, maintenance: MaintenanceService, interval: float):
        super().__init__("Maintenance Scheduler", maintenance.run_maintenance_sweep, interval)
        self.maintenance = maintenance


class RateLimitJanitor(PeriodicTask):
    """Prunes elapsed rate limit counters between sweeps"""

    def __init__(self, rate_limiter: RateLimiter, interval: float):
        super().__init__("Rate Limit Cleanup", rate_limiter.cleanup_expired, interval)
