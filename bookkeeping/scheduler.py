"""
Sync Scheduler

Background jobs that keep the mirror current without user action:
- Cash-flow delta sync: daily at 02:00
- Cash-flow full reconciliation: Sundays at 03:00
- Reconciliation sweep (30-day lookback): daily at 04:00
- Purge of expired checkpoints and OAuth states: hourly

Uses APScheduler for job scheduling.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select

from bookkeeping.database import async_session_maker
from bookkeeping.models import OAuthState, XeroConnection
from bookkeeping.sync.cashflow import CashFlowDataSync
from bookkeeping.sync.checkpoints import CheckpointStore
from bookkeeping.sync.reconciliation import run_scheduled_reconciliation
from bookkeeping.xero.client import get_active_connection

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Scheduled sync runs across every active Xero connection.

    A failure for one tenant is recorded in the run summary and does not
    stop the others.
    """

    def __init__(self):
        self._last_cashflow_run: Optional[datetime] = None
        self._last_full_reconciliation_run: Optional[datetime] = None
        self._last_reconciliation_run: Optional[datetime] = None
        self._last_cleanup_run: Optional[datetime] = None

    async def _for_each_connection(self, run_type: str, operation) -> dict:
        started = datetime.now(timezone.utc)
        summary = {
            "run_type": run_type,
            "started_at": started.isoformat(),
            "connections_processed": 0,
            "errors": [],
        }

        async with async_session_maker() as db:
            result = await db.execute(
                select(XeroConnection.tenant_id).where(XeroConnection.is_active == True)
            )
            tenant_ids = result.scalars().all()

            for tenant_id in tenant_ids:
                try:
                    connection = await get_active_connection(db, tenant_id)
                    if connection is None:
                        raise RuntimeError("connection could not be refreshed")
                    await operation(CashFlowDataSync(db, connection))
                    summary["connections_processed"] += 1
                except Exception as e:
                    logger.error(f"{run_type} failed for tenant {tenant_id}: {e}")
                    summary["errors"].append({"tenant_id": tenant_id, "error": str(e)})

        summary["completed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"{run_type} complete: {summary['connections_processed']} connections, "
            f"{len(summary['errors'])} errors"
        )
        return summary

    async def run_cashflow_sync(self) -> dict:
        """Daily delta sync of cash-flow data."""
        logger.info("Starting scheduled cash-flow sync")
        self._last_cashflow_run = datetime.now(timezone.utc)
        return await self._for_each_connection(
            "cashflow_delta",
            lambda sync: sync.perform_daily_sync(),
        )

    async def run_full_reconciliation(self) -> dict:
        """Weekly full reconciliation of cash-flow data."""
        logger.info("Starting scheduled full reconciliation")
        self._last_full_reconciliation_run = datetime.now(timezone.utc)
        return await self._for_each_connection(
            "cashflow_full_reconciliation",
            lambda sync: sync.perform_full_reconciliation(),
        )

    async def run_reconciliation(self) -> dict:
        """Daily invoice and bank transaction reconciliation sweep."""
        self._last_reconciliation_run = datetime.now(timezone.utc)
        return await run_scheduled_reconciliation()

    async def run_cleanup(self) -> dict:
        """Remove expired sync checkpoints and OAuth states."""
        self._last_cleanup_run = datetime.now(timezone.utc)
        async with async_session_maker() as db:
            checkpoints = await CheckpointStore(db).purge_expired()
            result = await db.execute(
                delete(OAuthState).where(OAuthState.expires_at < datetime.now(timezone.utc))
            )
            await db.commit()

        summary = {"checkpoints_removed": checkpoints, "oauth_states_removed": result.rowcount or 0}
        logger.info(f"Cleanup complete: {summary}")
        return summary

    def get_status(self) -> dict:
        """Get scheduler status including last run times."""
        def fmt(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "last_cashflow_run": fmt(self._last_cashflow_run),
            "last_full_reconciliation_run": fmt(self._last_full_reconciliation_run),
            "last_reconciliation_run": fmt(self._last_reconciliation_run),
            "last_cleanup_run": fmt(self._last_cleanup_run),
        }


# Singleton instance for use across the application
sync_scheduler = SyncScheduler()


def setup_apscheduler(scheduler):
    """
    Configure APScheduler with sync jobs.

    Usage:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        scheduler = AsyncIOScheduler(timezone="UTC")
        setup_apscheduler(scheduler)
        scheduler.start()
    """
    scheduler.add_job(
        sync_scheduler.run_cashflow_sync,
        'cron',
        hour=2,
        minute=0,
        id='cashflow_delta_sync',
        name='Daily Cash Flow Sync',
        replace_existing=True,
    )

    scheduler.add_job(
        sync_scheduler.run_full_reconciliation,
        'cron',
        day_of_week='sun',
        hour=3,
        minute=0,
        id='cashflow_full_reconciliation',
        name='Weekly Full Reconciliation',
        replace_existing=True,
    )

    scheduler.add_job(
        sync_scheduler.run_reconciliation,
        'cron',
        hour=4,
        minute=0,
        id='reconciliation_sweep',
        name='Daily Reconciliation Sweep',
        replace_existing=True,
    )

    scheduler.add_job(
        sync_scheduler.run_cleanup,
        'interval',
        hours=1,
        id='expired_state_cleanup',
        name='Expired Checkpoint Cleanup',
        replace_existing=True,
    )

    logger.info("Sync scheduler jobs configured")
