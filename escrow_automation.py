"""
Escrow Automation Module

Background jobs for the escrow ledger:
- Per-account auto-release after ``auto_release_delay`` hours
- Re-arming auto-release jobs on start-up
- Reconciling deposits and refunds stuck in ``pending`` with the gateway

Every auto-release is its own APScheduler ``DateTrigger`` job with the id
``auto_release:<escrow_id>``, so a manual release, refund, freeze or
dispute-mode activation can cancel it the instant it happens. When a job
fires, the ledger re-checks eligibility under the account lock.

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py: For escrow operations
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from escrow_errors import EscrowError
from escrow_models import EscrowAccount, TransactionType
from escrow_service import EscrowLedger, is_auto_release_eligible

logger = logging.getLogger(__name__)

JOB_PREFIX = "auto_release:"
RECONCILE_JOB_ID = "reconcile_pending"


def auto_release_job_id(escrow_id: str) -> str:
    return f"{JOB_PREFIX}{escrow_id}"


class AutoReleaseScheduler:
    """
    Owns the APScheduler instance driving auto-release and maintenance jobs.

    Attributes:
        ledger: Escrow ledger the jobs call into
        scheduler: APScheduler scheduler
        reconcile_interval_minutes: Period of the pending-transaction sweep
        stale_deposit_minutes: Age after which a pending deposit or refund is polled
    """

    def __init__(
        self,
        ledger: EscrowLedger,
        scheduler: Optional[AsyncIOScheduler] = None,
        reconcile_interval_minutes: int = 15,
        stale_deposit_minutes: int = 30,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.ledger = ledger
        self.scheduler = scheduler or AsyncIOScheduler(timezone='UTC')
        self.reconcile_interval_minutes = reconcile_interval_minutes
        self.stale_deposit_minutes = stale_deposit_minutes
        self.clock = clock or ledger.clock
        self.is_running = False

        # Statistics
        self.stats = {
            'auto_releases': 0,
            'auto_release_skips': 0,
            'auto_release_failures': 0,
            'reconciled_deposits': 0,
            'reconciled_refunds': 0,
            'last_run': {}
        }

    async def start(self) -> None:
        """Re-arm auto-release jobs, schedule the sweeps and start the scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        try:
            self.ledger.attach_scheduler(self)
            rearmed = await self.rearm()

            self.scheduler.add_job(
                self.reconcile_pending,
                trigger=IntervalTrigger(minutes=self.reconcile_interval_minutes),
                id=RECONCILE_JOB_ID,
                name='Reconcile Pending Deposits and Refunds',
                max_instances=1,
                misfire_grace_time=300,
                replace_existing=True
            )

            self.scheduler.start()
            self.is_running = True

            logger.info(f"Escrow automation started; {rearmed} auto-release job(s) re-armed")
            logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

        except Exception as e:
            logger.error(f"Failed to start automation: {e}", exc_info=True)
            raise

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    # ==================== AUTO-RELEASE JOBS ====================

    def run_at_for(self, account: EscrowAccount) -> datetime:
        """When the auto-release of ``account`` is due; never in the past."""
        start = account.funded_at or self.clock()
        run_at = start + timedelta(hours=account.admin_controls.auto_release_delay)
        now = self.clock()
        return run_at if run_at > now else now

    def schedule(self, account: EscrowAccount) -> None:
        """Arm (or re-arm) the auto-release job of an account."""
        run_at = self.run_at_for(account)
        self.scheduler.add_job(
            self._run_auto_release,
            trigger=DateTrigger(run_date=run_at),
            args=[account.id],
            id=auto_release_job_id(account.id),
            name=f'Auto Release {account.id}',
            max_instances=1,
            misfire_grace_time=None,
            replace_existing=True
        )
        logger.info(f"Auto-release for escrow {account.id} armed for {run_at.isoformat()}")

    def cancel(self, escrow_id: str) -> bool:
        """Remove the auto-release job of an account; returns whether one existed."""
        try:
            self.scheduler.remove_job(auto_release_job_id(escrow_id))
        except JobLookupError:
            return False
        logger.info(f"Auto-release for escrow {escrow_id} cancelled")
        return True

    def has_job(self, escrow_id: str) -> bool:
        return self.scheduler.get_job(auto_release_job_id(escrow_id)) is not None

    async def rearm(self) -> int:
        """Arm jobs for every eligible account; used on start-up."""
        count = 0
        for account in await self.ledger.repository.list_auto_release_candidates():
            if is_auto_release_eligible(account):
                self.schedule(account)
                count += 1
        return count

    async def _run_auto_release(self, escrow_id: str) -> None:
        self.stats['last_run']['auto_release'] = self.clock()
        try:
            account = await self.ledger.auto_release(escrow_id)
        except EscrowError as e:
            self.stats['auto_release_failures'] += 1
            logger.error(f"Auto-release of escrow {escrow_id} failed: {e.message}")
            return

        if account is None:
            self.stats['auto_release_skips'] += 1
        else:
            self.stats['auto_releases'] += 1

    # ==================== MAINTENANCE ====================

    async def reconcile_pending(self) -> None:
        """Interval job: sweep stale deposits, then stale refunds."""
        await self.reconcile_pending_deposits()
        await self.reconcile_pending_refunds()

    async def reconcile_pending_deposits(self) -> int:
        """
        Poll the gateway for deposits pending longer than ``stale_deposit_minutes``.

        Returns:
            Number of deposits settled (funded or failed)
        """
        logger.info("Starting pending deposit reconciliation")
        start_time = self.clock()
        cutoff = start_time - timedelta(minutes=self.stale_deposit_minutes)

        settled = 0
        failed = 0
        stale = await self.ledger.repository.list_stale_pending_transactions(TransactionType.DEPOSIT, cutoff)
        for txn in stale:
            try:
                result = await self.ledger.reconcile_deposit(txn.escrow_id)
            except EscrowError as e:
                failed += 1
                logger.error(f"Failed to reconcile deposit {txn.id}: {e.message}")
                continue
            if result.get('result') == 'applied':
                settled += 1

        self.stats['reconciled_deposits'] += settled
        self.stats['last_run']['reconcile'] = start_time

        logger.info(f"Reconciliation completed: {settled} settled, {failed} failed")
        return settled

    async def reconcile_pending_refunds(self) -> int:
        """
        Poll the gateway for refunds pending longer than ``stale_deposit_minutes``.

        Returns:
            Number of refunds settled (refunded or failed)
        """
        logger.info("Starting pending refund reconciliation")
        start_time = self.clock()
        cutoff = start_time - timedelta(minutes=self.stale_deposit_minutes)

        stale = await self.ledger.repository.list_stale_pending_transactions(TransactionType.REFUND, cutoff)
        escrow_ids = list(dict.fromkeys(t.escrow_id for t in stale))

        settled = 0
        failed = 0
        for escrow_id in escrow_ids:
            try:
                result = await self.ledger.reconcile_refunds(escrow_id)
            except EscrowError as e:
                failed += 1
                logger.error(f"Failed to reconcile refunds of escrow {escrow_id}: {e.message}")
                continue
            settled += sum(1 for r in result.get('refunds', []) if r.get('result') == 'applied')

        self.stats['reconciled_refunds'] += settled
        self.stats['last_run']['reconcile_refunds'] = start_time

        logger.info(f"Refund reconciliation completed: {settled} settled, {failed} failed")
        return settled

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        jobs = self.scheduler.get_jobs()
        return {
            **self.stats,
            'is_running': self.is_running,
            'scheduled_auto_releases': sum(1 for j in jobs if j.id.startswith(JOB_PREFIX)),
        }
