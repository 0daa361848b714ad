"""
Escrow Automation Module.

Runs the auto-release sweep in the background:

- Every AUTO_RELEASE_INTERVAL_HOURS, find locked wallets whose auto-release
  date has passed.
- Release those whose order has been shipped or delivered. Orders without
  recorded fulfilment (including disputed orders) stay locked and are looked
  at again on the next sweep.

The same sweep backs the cron endpoint, so an external scheduler can drive
it instead of (or as well as) the in-process one.

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py: For the release operation
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from payloom_escrow.escrow_service import EscrowService
from payloom_escrow.exceptions import InvalidStateError, StateTransitionError
from payloom_escrow.models import FULFILLED_STATUSES, ReleasedBy
from payloom_escrow.utils import utcnow

logger = logging.getLogger(__name__)


class EscrowAutomation:
    """
    Automation service for the escrow core.

    Attributes:
        escrow: Escrow service used for releases
        interval_hours: Hours between sweeps
    """

    def __init__(self, escrow: EscrowService, interval_hours: int = 1):
        self.escrow = escrow
        self.interval_hours = interval_hours
        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.is_running = False

        # Statistics
        self.stats: Dict[str, Any] = {
            'auto_releases': 0,
            'skipped_unfulfilled': 0,
            'failures': 0,
            'last_run': None,
            'start_time': None,
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        self.stats['start_time'] = utcnow()

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        self.scheduler.add_job(
            self.auto_release_payments,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id='auto_release_payments',
            name='Auto Release Payments',
            max_instances=1,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"Auto-release scheduled every {self.interval_hours} hour(s)")

    async def auto_release_payments(self) -> None:
        """Scheduled entry point; a failed sweep is logged and retried next interval."""
        try:
            await self.run_auto_release()
        except Exception as e:
            logger.error(f"Auto-release task failed: {e}", exc_info=True)

    async def run_auto_release(self, now: Optional[datetime] = None) -> int:
        """
        Release every due wallet whose order has been fulfilled.

        Each wallet is released in its own transaction, so one failure does
        not stop the sweep.

        Args:
            now: Sweep time (defaults to the current UTC time)

        Returns:
            Number of wallets released
        """
        now = now or utcnow()
        logger.info("Starting auto-release payments task")

        async with self.escrow.db.session() as store:
            candidates = await store.list_due_wallets(now)

        logger.info(f"Found {len(candidates)} wallets past their auto-release date")

        fulfilled = {status.value for status in FULFILLED_STATUSES}
        released_count = 0
        skipped_count = 0
        failed_count = 0

        for wallet in candidates:
            order_id = wallet['order_id']
            if wallet['order_status'] not in fulfilled:
                skipped_count += 1
                logger.debug(
                    f"Skipping auto-release for order {order_id}: status {wallet['order_status']}"
                )
                continue

            try:
                await self.escrow.release(
                    wallet_id=wallet['id'],
                    released_by=ReleasedBy.AUTO_RELEASE,
                    require_order_status=FULFILLED_STATUSES,
                )
                released_count += 1
                logger.info(f"Auto-released escrow for order {order_id}")

            except InvalidStateError as e:
                # Order left shipped/delivered (e.g. disputed) since the listing
                skipped_count += 1
                logger.info(f"Auto-release skipped for order {order_id}: {e}")

            except StateTransitionError as e:
                # Released or refunded by someone else since the listing
                logger.info(f"Auto-release skipped for order {order_id}: {e}")

            except Exception as e:
                failed_count += 1
                logger.error(f"Failed to auto-release order {order_id}: {e}", exc_info=True)

        self.stats['auto_releases'] += released_count
        self.stats['skipped_unfulfilled'] += skipped_count
        self.stats['failures'] += failed_count
        self.stats['last_run'] = now

        duration = (utcnow() - now).total_seconds()
        logger.info(
            f"Auto-release task completed: {released_count} released, "
            f"{skipped_count} awaiting fulfilment, {failed_count} failed in {duration:.2f}s"
        )
        return released_count

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'interval_hours': self.interval_hours,
            'stats': dict(self.stats),
        }
