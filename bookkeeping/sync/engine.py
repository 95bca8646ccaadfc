"""Xero to local database sync.

perform_sync pulls, in order:
1. GL accounts (chart of accounts), upserted by code
2. Bank accounts, upserted by Xero account id
3. Bank transactions for each bank account
4. Open invoices (ACCREC) and bills (ACCPAY)

A run is full when forced or when no earlier sync succeeded; otherwise it
is incremental from the last successful run's completion time.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.models import BankAccount, BankTransaction, SyncLog, XeroConnection
from bookkeeping.sync.idempotency import idempotency_store
from bookkeeping.sync.lock import LockResource, new_holder, sync_lock
from bookkeeping.sync.upserts import (
    open_item_status,
    upsert_bank_account,
    upsert_bank_transaction,
    upsert_gl_account,
    upsert_invoice,
)
from bookkeeping.xero.api_helpers import fetch_all, paginate
from bookkeeping.xero.client import XeroClient


logger = logging.getLogger(__name__)

FULL_SYNC = "full_sync"
INCREMENTAL_SYNC = "incremental_sync"
SYNC_TYPES = (FULL_SYNC, INCREMENTAL_SYNC)

TRANSACTION_MAX_PAGES = 100
TRANSACTION_PAGE_DELAY_SECONDS = 0.5


# ============================================================================
# SYNC ORCHESTRATOR
# ============================================================================

async def get_last_successful_sync(db: AsyncSession) -> Optional[SyncLog]:
    result = await db.execute(
        select(SyncLog)
        .where(SyncLog.sync_type.in_(SYNC_TYPES), SyncLog.status == "success")
        .order_by(SyncLog.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def perform_sync(
    db: AsyncSession,
    connection: XeroConnection,
    force_full_sync: bool = False,
    client: Optional[XeroClient] = None,
) -> Dict[str, Any]:
    """
    Sync accounts, transactions, invoices and bills for a connection.

    Concurrent identical requests share one run, and runs are serialised
    across workers by the xero-sync lock (ConflictError when held).
    """
    last_sync = None if force_full_sync else await get_last_successful_sync(db)
    sync_type = FULL_SYNC if last_sync is None else INCREMENTAL_SYNC
    modified_since = last_sync.completed_at if last_sync is not None else None

    key_data = {
        "operation": "xero_sync",
        "syncType": sync_type,
        "modifiedSince": modified_since.isoformat() if modified_since else None,
    }

    async def locked_sync():
        return await _run_sync(db, connection, sync_type, modified_since, client)

    async def run():
        return await sync_lock.with_lock(
            LockResource.XERO_SYNC,
            new_holder("xero-sync"),
            locked_sync,
        )

    return await idempotency_store.with_idempotency(key_data, run)


async def _run_sync(
    db: AsyncSession,
    connection: XeroConnection,
    sync_type: str,
    modified_since: Optional[datetime],
    client: Optional[XeroClient] = None,
) -> Dict[str, Any]:
    client = client or XeroClient(connection)
    tenant_id = connection.tenant_id
    logger.info(f"Starting {sync_type} for tenant {tenant_id} (modified since {modified_since})")

    sync_log = SyncLog(
        tenant_id=tenant_id,
        sync_type=sync_type,
        status="in_progress",
        started_at=datetime.now(timezone.utc),
    )
    db.add(sync_log)
    await db.commit()

    try:
        gl_accounts = await sync_gl_accounts(db, client)
        bank_accounts = await sync_bank_accounts(db, client)
        transactions = await sync_transactions(db, client, bank_accounts, modified_since)

        sync_log.status = "success"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.records_created = transactions["created"]
        sync_log.records_updated = transactions["updated"]
        sync_log.details = {
            "glAccounts": gl_accounts,
            "bankAccounts": len(bank_accounts),
            "transactions": transactions["total"],
            "accounts": transactions["by_account"],
        }
        await db.commit()

        invoices = await sync_open_invoices(db, client, "ACCREC")
        bills = await sync_open_invoices(db, client, "ACCPAY")

        connection.last_sync_at = datetime.now(timezone.utc)
        connection.sync_error = None
        await db.commit()

    except Exception as e:
        logger.exception(f"{sync_type} failed for tenant {tenant_id}: {e}")
        await db.rollback()
        sync_log.status = "failed"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.error_message = str(e)
        connection.sync_error = str(e)
        await db.commit()
        raise

    summary = {
        "sync_type": sync_type,
        "gl_accounts": gl_accounts,
        "bank_accounts": len(bank_accounts),
        "transactions": transactions["total"],
        "invoices": invoices,
        "bills": bills,
        "created": transactions["created"],
        "updated": transactions["updated"],
    }
    logger.info(f"{sync_type} completed for tenant {tenant_id}: {summary}")
    return summary


# ============================================================================
# ACCOUNTS
# ============================================================================

async def sync_gl_accounts(db: AsyncSession, client: XeroClient) -> int:
    """Upsert the chart of accounts by code. Returns the number synced."""
    accounts = await client.get_accounts(order="Code ASC")
    synced = 0
    for account in accounts:
        if not account.get("account_id") or not account.get("code"):
            continue
        await upsert_gl_account(db, account)
        synced += 1
    await db.commit()
    logger.info(f"Synced {synced} GL accounts")
    return synced


async def sync_bank_accounts(db: AsyncSession, client: XeroClient) -> list:
    """Upsert BANK accounts. Returns the local rows."""
    accounts = await client.get_bank_accounts()
    rows = []
    for account in accounts:
        if not account.get("account_id"):
            continue
        row, _created = await upsert_bank_account(db, account)
        rows.append(row)
    await db.commit()
    logger.info(f"Synced {len(rows)} bank accounts")
    return rows


# ============================================================================
# BANK TRANSACTIONS
# ============================================================================

async def sync_transactions(
    db: AsyncSession,
    client: XeroClient,
    bank_accounts: list,
    modified_since: Optional[datetime] = None,
) -> Dict[str, Any]:
    created = 0
    updated = 0
    by_account = []

    for bank_account in bank_accounts:
        where = f'BankAccount.AccountID=Guid("{bank_account.xero_account_id}")'
        account_created = 0
        account_updated = 0

        async def fetch_page(page: int, where=where):
            return await client.get_bank_transactions(
                page=page,
                where=where,
                if_modified_since=modified_since,
            )

        async for transactions in paginate(
            fetch_page,
            max_pages=TRANSACTION_MAX_PAGES,
            delay_between_pages=TRANSACTION_PAGE_DELAY_SECONDS,
        ):
            for txn in transactions:
                if not txn.get("transaction_id"):
                    continue
                _row, was_created = await upsert_bank_transaction(db, txn, bank_account.id)
                if was_created:
                    account_created += 1
                else:
                    account_updated += 1
            await db.commit()

        logger.info(
            f"Bank account {bank_account.name}: {account_created} created, {account_updated} updated"
        )
        by_account.append({
            "account": bank_account.name,
            "xero_account_id": bank_account.xero_account_id,
            "created": account_created,
            "updated": account_updated,
        })
        created += account_created
        updated += account_updated

    return {
        "total": created + updated,
        "created": created,
        "updated": updated,
        "by_account": by_account,
    }


# ============================================================================
# OPEN INVOICES / BILLS
# ============================================================================

async def sync_open_invoices(db: AsyncSession, client: XeroClient, invoice_type: str) -> int:
    """
    Upsert AUTHORISED invoices (ACCREC) or bills (ACCPAY) with money owing.

    Failures are logged and reported as zero rather than failing the sync.
    """
    try:
        invoices = await fetch_all(
            lambda page: client.get_invoices(
                page=page,
                where=f'Status=="AUTHORISED"&&Type=="{invoice_type}"',
                statuses=["AUTHORISED"],
            )
        )
        synced = 0
        for invoice in invoices:
            if not invoice.get("invoice_id") or not invoice.get("amount_due"):
                continue
            await upsert_invoice(db, invoice, status=open_item_status(invoice), invoice_type=invoice_type)
            synced += 1
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to sync {invoice_type} invoices: {e}")
        await db.rollback()
        return 0

    logger.info(f"Synced {synced} {invoice_type} invoices")
    return synced


# ============================================================================
# STATUS
# ============================================================================

async def get_sync_status(db: AsyncSession) -> Dict[str, Any]:
    last_sync = await get_last_successful_sync(db)

    txn_result = await db.execute(
        select(func.count(BankTransaction.id), func.coalesce(func.sum(BankTransaction.amount), 0))
    )
    transaction_count, total_amount = txn_result.one()

    bank_count = await db.scalar(select(func.count(BankAccount.id)))
    unreconciled = await db.scalar(
        select(func.count(BankTransaction.id)).where(
            BankTransaction.is_reconciled == False,
            or_(BankTransaction.status.is_(None), BankTransaction.status != "DELETED"),
        )
    )

    return {
        "last_sync": {
            "id": last_sync.id,
            "sync_type": last_sync.sync_type,
            "completed_at": last_sync.completed_at,
            "records_created": last_sync.records_created,
            "records_updated": last_sync.records_updated,
            "details": last_sync.details,
        } if last_sync else None,
        "transaction_count": transaction_count or 0,
        "total_amount": Decimal(total_amount or 0),
        "bank_account_count": bank_count or 0,
        "unreconciled_count": unreconciled or 0,
    }
