"""Sync API Routes.

Endpoints:
- POST /xero/sync - Incremental (or first full) sync
- GET /xero/sync - Sync status and mirrored totals
- POST /xero/sync/full - Forced full sync
- POST /xero/sync/historical - Start a historical sync in the background
- GET /xero/sync/progress/{sync_id} - Live progress of a historical sync
- GET /xero/sync/checkpoint/{sync_id} - Resume point of a historical sync
- POST /xero/sync/reconcile - Reconcile local records against Xero
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, time, timezone
from typing import Optional
import logging

from bookkeeping.database import get_db
from bookkeeping import schemas
from bookkeeping.errors import NotFoundError
from bookkeeping.middleware.rate_limit import (
    limiter,
    SYNC_LIMIT,
    FULL_SYNC_LIMIT,
    RECONCILE_LIMIT,
    STATUS_LIMIT,
)
from bookkeeping.models import XeroConnection
from bookkeeping.models.base import generate_id
from bookkeeping.sync.checkpoints import CheckpointStore
from bookkeeping.sync.engine import perform_sync, get_sync_status
from bookkeeping.sync.historical import HistoricalSyncOptions, run_historical_sync
from bookkeeping.sync.lock import LockResource, sync_lock
from bookkeeping.sync.progress import progress_store
from bookkeeping.sync.reconciliation import run_reconciliation
from bookkeeping.xero.dependencies import require_connection


router = APIRouter()
logger = logging.getLogger(__name__)


# ============================================================================
# STANDARD SYNC
# ============================================================================

@router.post("/sync", response_model=schemas.SyncSummary)
@limiter.limit(SYNC_LIMIT)
async def sync_xero(
    request: Request,
    body: Optional[schemas.SyncRequest] = None,
    connection: XeroConnection = Depends(require_connection),
    db: AsyncSession = Depends(get_db)
):
    """
    Sync accounts, bank transactions, invoices and bills from Xero.
    Returns 409 if another sync holds the lock.
    """
    return await perform_sync(db, connection, force_full_sync=bool(body and body.force_full_sync))


@router.get("/sync", response_model=schemas.SyncStatusResponse)
@limiter.limit(STATUS_LIMIT)
async def get_xero_sync_status(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Last successful sync and totals for the mirrored data.
    """
    status = await get_sync_status(db)
    status["is_syncing"] = await sync_lock.is_locked(LockResource.XERO_SYNC)
    return status


@router.post("/sync/full", response_model=schemas.SyncSummary)
@limiter.limit(FULL_SYNC_LIMIT)
async def full_sync_xero(
    request: Request,
    connection: XeroConnection = Depends(require_connection),
    db: AsyncSession = Depends(get_db)
):
    """
    Re-pull everything regardless of the last sync time.
    """
    return await perform_sync(db, connection, force_full_sync=True)


# ============================================================================
# HISTORICAL SYNC
# ============================================================================

@router.post("/sync/historical", response_model=schemas.HistoricalSyncStarted, status_code=202)
@limiter.limit(FULL_SYNC_LIMIT)
async def start_historical_sync(
    request: Request,
    body: schemas.HistoricalSyncRequest,
    background_tasks: BackgroundTasks,
    connection: XeroConnection = Depends(require_connection),
    db: AsyncSession = Depends(get_db)
):
    """
    Start (or resume) a historical sync. Poll /sync/progress/{sync_id}.
    """
    if body.resume:
        checkpoint = await CheckpointStore(db).load(body.sync_id)
        if checkpoint is None:
            raise NotFoundError("Checkpoint")
        sync_id = body.sync_id
    else:
        sync_id = generate_id("hist")

    options = HistoricalSyncOptions(
        start_date=body.start_date,
        end_date=body.end_date,
        transaction_limit=body.transaction_limit,
        invoice_limit=body.invoice_limit,
        bill_limit=body.bill_limit,
        resume=body.resume,
    )
    progress_store.update(sync_id, status="queued", percentage=0, message="Historical sync queued")
    background_tasks.add_task(run_historical_sync, sync_id, connection.tenant_id, options)

    logger.info(f"Queued historical sync {sync_id} for tenant {connection.tenant_id} (resume={body.resume})")
    return schemas.HistoricalSyncStarted(
        sync_id=sync_id,
        status="queued",
        message="Historical sync started",
    )


@router.get("/sync/progress/{sync_id}")
@limiter.limit(STATUS_LIMIT)
async def get_historical_progress(request: Request, sync_id: str):
    progress = progress_store.get(sync_id)
    if progress is None:
        raise NotFoundError("Sync progress")
    return progress


@router.get("/sync/checkpoint/{sync_id}")
@limiter.limit(STATUS_LIMIT)
async def get_historical_checkpoint(
    request: Request,
    sync_id: str,
    db: AsyncSession = Depends(get_db)
):
    checkpoint = await CheckpointStore(db).load(sync_id)
    if checkpoint is None:
        raise NotFoundError("Checkpoint")
    return checkpoint


# ============================================================================
# RECONCILIATION
# ============================================================================

@router.post("/sync/reconcile")
@limiter.limit(RECONCILE_LIMIT)
async def reconcile_xero(
    request: Request,
    body: Optional[schemas.ReconcileRequest] = None,
    connection: XeroConnection = Depends(require_connection),
    db: AsyncSession = Depends(get_db)
):
    """
    Mark records removed in Xero as DELETED and carry over status changes.
    Without from_date the whole mirror is compared.
    """
    from_date = None
    if body and body.from_date:
        from_date = datetime.combine(body.from_date, time.min, tzinfo=timezone.utc)
    return await run_reconciliation(db, connection, from_date)
