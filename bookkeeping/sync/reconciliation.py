"""Reconciliation sweeps.

Incremental syncs never see records removed in Xero. These sweeps compare
local rows with Xero's current state, mark vanished records DELETED and
carry over status changes (e.g. AUTHORISED -> VOIDED).
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
import time

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.config import settings
from bookkeeping.database import async_session_maker
from bookkeeping.models import BankTransaction, SyncedInvoice, SyncLog, XeroConnection
from bookkeeping.sync.historical import date_range_filter
from bookkeeping.sync.lock import LockResource, new_holder, sync_lock
from bookkeeping.xero.api_helpers import fetch_all
from bookkeeping.xero.client import XeroClient, get_active_connection


logger = logging.getLogger(__name__)

# Local open-item status that corresponds to Xero's AUTHORISED
EQUIVALENT_STATUSES = {"OPEN": "AUTHORISED"}


def _counters() -> Dict[str, int]:
    return {"total": 0, "active": 0, "voided": 0, "deleted": 0, "updated": 0}


async def reconcile_invoices(
    db: AsyncSession,
    client: XeroClient,
    from_date: Optional[datetime] = None,
) -> Dict[str, Dict[str, int]]:
    """Reconcile local invoices (ACCREC) and bills (ACCPAY) against Xero."""
    xero_invoices = await fetch_all(
        lambda page: client.get_invoices(
            page=page,
            order="UpdatedDateUTC ASC",
            where=date_range_filter(from_date, None),
        )
    )

    results = {"invoices": _counters(), "bills": _counters()}
    status_maps: Dict[str, Dict[str, str]] = {"ACCREC": {}, "ACCPAY": {}}
    for invoice in xero_invoices:
        invoice_type = invoice.get("type")
        if invoice_type not in status_maps or not invoice.get("invoice_id"):
            continue
        status = invoice.get("status") or "DRAFT"
        status_maps[invoice_type][invoice["invoice_id"]] = status

        counters = results["invoices" if invoice_type == "ACCREC" else "bills"]
        counters["total"] += 1
        if status == "VOIDED":
            counters["voided"] += 1
        elif status == "DELETED":
            counters["deleted"] += 1
        else:
            counters["active"] += 1

    for invoice_type, key in (("ACCREC", "invoices"), ("ACCPAY", "bills")):
        query = select(SyncedInvoice).where(SyncedInvoice.type == invoice_type)
        if from_date:
            query = query.where(SyncedInvoice.date >= from_date)
        local = (await db.execute(query)).scalars().all()

        for row in local:
            xero_status = status_maps[invoice_type].get(row.xero_invoice_id)
            if xero_status is None:
                if row.status != "DELETED":
                    logger.info(f"Marking {invoice_type} {row.xero_invoice_id} as DELETED")
                    row.status = "DELETED"
                    results[key]["updated"] += 1
            elif EQUIVALENT_STATUSES.get(row.status, row.status) != xero_status:
                logger.info(f"{invoice_type} {row.xero_invoice_id} status {row.status} -> {xero_status}")
                row.status = xero_status
                results[key]["updated"] += 1

    await db.commit()
    return results


async def reconcile_bank_transactions(
    db: AsyncSession,
    client: XeroClient,
    from_date: Optional[datetime] = None,
) -> Dict[str, int]:
    """Mark local transactions that no longer exist in Xero as DELETED."""
    xero_transactions = await fetch_all(
        lambda page: client.get_bank_transactions(
            page=page,
            order="Date ASC",
            where=date_range_filter(from_date, None),
        )
    )
    active_ids = {t["transaction_id"] for t in xero_transactions if t.get("transaction_id")}
    results = {"total": len(active_ids), "active": len(active_ids), "deleted": 0, "updated": 0}

    query = select(BankTransaction).where(
        or_(BankTransaction.status.is_(None), BankTransaction.status != "DELETED")
    )
    if from_date:
        query = query.where(BankTransaction.date >= from_date)
    local = (await db.execute(query)).scalars().all()

    for row in local:
        if row.xero_transaction_id not in active_ids:
            logger.info(f"Marking bank transaction {row.xero_transaction_id} as DELETED")
            row.status = "DELETED"
            results["deleted"] += 1
            results["updated"] += 1

    await db.commit()
    return results


async def run_reconciliation(
    db: AsyncSession,
    connection: XeroConnection,
    from_date: Optional[datetime] = None,
    client: Optional[XeroClient] = None,
) -> Dict[str, Any]:
    """Run both sweeps under the transaction-sync lock and log the outcome."""
    client = client or XeroClient(connection)
    tenant_id = connection.tenant_id

    async def operation():
        started = time.monotonic()
        sync_log = SyncLog(tenant_id=tenant_id, sync_type="reconciliation", status="in_progress")
        db.add(sync_log)
        await db.commit()
        try:
            invoice_results = await reconcile_invoices(db, client, from_date)
            transaction_results = await reconcile_bank_transactions(db, client, from_date)
        except Exception as e:
            await db.rollback()
            sync_log.status = "failed"
            sync_log.error_message = str(e)
            sync_log.completed_at = datetime.now(timezone.utc)
            await db.commit()
            raise

        results = {**invoice_results, "transactions": transaction_results}
        sync_log.status = "success"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.records_updated = sum(r["updated"] for r in results.values())
        sync_log.records_deleted = transaction_results["deleted"]
        sync_log.details = results
        await db.commit()

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Reconciliation completed for tenant {tenant_id} in {duration_ms}ms: {results}")
        return {"success": True, "duration_ms": duration_ms, "results": results}

    return await sync_lock.with_lock(
        LockResource.TRANSACTION_SYNC,
        new_holder("reconciliation"),
        operation,
    )


async def run_scheduled_reconciliation() -> Dict[str, Any]:
    """Reconcile every active connection over the configured lookback window."""
    from_date = datetime.now(timezone.utc) - timedelta(days=settings.RECONCILIATION_LOOKBACK_DAYS)
    summary = {"connections": 0, "succeeded": 0, "failed": 0, "errors": []}

    async with async_session_maker() as db:
        result = await db.execute(select(XeroConnection.tenant_id).where(XeroConnection.is_active == True))
        tenant_ids = result.scalars().all()

        for tenant_id in tenant_ids:
            summary["connections"] += 1
            try:
                connection = await get_active_connection(db, tenant_id)
                if connection is None:
                    raise RuntimeError("connection could not be refreshed")
                await run_reconciliation(db, connection, from_date)
                summary["succeeded"] += 1
            except Exception as e:
                logger.error(f"Scheduled reconciliation failed for tenant {tenant_id}: {e}")
                summary["failed"] += 1
                summary["errors"].append({"tenant_id": tenant_id, "error": str(e)})

    logger.info(f"Scheduled reconciliation finished: {summary}")
    return summary
