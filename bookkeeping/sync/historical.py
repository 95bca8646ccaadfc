"""Resumable historical sync.

Pulls the full history for a tenant in a fixed entity order:

    contacts -> accounts -> transactions -> invoices -> bills

A checkpoint is written after every page so an interrupted run can resume
where it stopped. Progress is published to the in-memory progress store
for polling clients.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.database import async_session_maker
from bookkeeping.models import BankAccount, SyncLog, XeroConnection
from bookkeeping.sync.checkpoints import CheckpointStore
from bookkeeping.sync.engine import sync_bank_accounts, sync_gl_accounts
from bookkeeping.sync.lock import LockResource, new_holder, sync_lock
from bookkeeping.sync.progress import ProgressStore, progress_store
from bookkeeping.sync.upserts import upsert_bank_transaction, upsert_contact, upsert_invoice
from bookkeeping.xero.api_helpers import XERO_PAGE_SIZE, paginate
from bookkeeping.xero.client import XeroClient, get_active_connection


logger = logging.getLogger(__name__)

HISTORICAL_LOCK_TIMEOUT_SECONDS = 3600

ENTITY_ORDER = ["contacts", "accounts", "transactions", "invoices", "bills"]

BATCH_SIZES = {
    "contacts": 50,
    "transactions": 100,
    "invoices": 50,
}

# (start %, end %) per step
STEP_PERCENTAGES = {
    "contacts": (5, 10),
    "accounts": (15, 25),
    "transactions": (30, 65),
    "invoices": (70, 80),
    "bills": (85, 95),
}


@dataclass
class HistoricalSyncOptions:
    """Options for a historical sync run."""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_limit: int = 10000
    invoice_limit: int = 5000
    bill_limit: int = 5000
    resume: bool = False


@dataclass
class SyncState:
    """Mutable checkpoint state carried through a run."""
    last_completed_entity: Optional[str] = None
    last_processed_page: Dict[str, int] = field(default_factory=dict)
    processed_counts: Dict[str, int] = field(default_factory=dict)
    completed_bank_accounts: List[str] = field(default_factory=list)

    @classmethod
    def from_checkpoint(cls, checkpoint: Optional[Dict[str, Any]]) -> "SyncState":
        if not checkpoint:
            return cls()
        return cls(
            last_completed_entity=checkpoint.get("last_completed_entity"),
            last_processed_page=dict(checkpoint.get("last_processed_page") or {}),
            processed_counts=dict(checkpoint.get("processed_counts") or {}),
            completed_bank_accounts=list(checkpoint.get("completed_bank_accounts") or []),
        )

    def entity_done(self, entity: str) -> bool:
        if self.last_completed_entity is None:
            return False
        return ENTITY_ORDER.index(entity) <= ENTITY_ORDER.index(self.last_completed_entity)

    def add(self, entity: str, count: int) -> int:
        self.processed_counts[entity] = self.processed_counts.get(entity, 0) + count
        return self.processed_counts[entity]


def _xero_date(value: date) -> str:
    return f"DateTime({value.year},{value.month:02d},{value.day:02d})"


def date_range_filter(start_date: Optional[date], end_date: Optional[date]) -> Optional[str]:
    """Xero where-clause restricting Date to [start_date, end_date]."""
    clauses = []
    if start_date:
        clauses.append(f"Date>={_xero_date(start_date)}")
    if end_date:
        clauses.append(f"Date<={_xero_date(end_date)}")
    return "&&".join(clauses) or None


def _join_filters(*filters: Optional[str]) -> Optional[str]:
    parts = [f for f in filters if f]
    return "&&".join(parts) or None


class HistoricalSync:
    """Checkpointed full-history import for one connection."""

    def __init__(
        self,
        db: AsyncSession,
        connection: XeroConnection,
        client: Optional[XeroClient] = None,
        progress: Optional[ProgressStore] = None,
        checkpoints: Optional[CheckpointStore] = None,
    ):
        self.db = db
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.client = client or XeroClient(connection)
        self.progress = progress or progress_store
        self.checkpoints = checkpoints or CheckpointStore(db)

    # -------------------------------------------------------------------------
    # Orchestration
    # -------------------------------------------------------------------------

    async def run(self, sync_id: str, options: HistoricalSyncOptions) -> Dict[str, Any]:
        checkpoint = await self.checkpoints.load(sync_id) if options.resume else None
        state = SyncState.from_checkpoint(checkpoint)
        if checkpoint:
            logger.info(f"Resuming historical sync {sync_id} after {state.last_completed_entity}")

        sync_log = SyncLog(
            tenant_id=self.tenant_id,
            sync_type="historical_sync",
            status="in_progress",
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(sync_log)
        await self.db.commit()

        self.progress.update(
            sync_id,
            status="running",
            percentage=0,
            current_step="starting",
            message="Starting historical sync",
            started_at=datetime.now(timezone.utc).isoformat(),
        )

        steps: Dict[str, Callable] = {
            "contacts": self._sync_contacts,
            "accounts": self._sync_accounts,
            "transactions": self._sync_transactions,
            "invoices": lambda s, i, o: self._sync_invoices(s, i, o, "ACCREC", "invoices", o.invoice_limit),
            "bills": lambda s, i, o: self._sync_invoices(s, i, o, "ACCPAY", "bills", o.bill_limit),
        }

        try:
            for entity in ENTITY_ORDER:
                if state.entity_done(entity):
                    self.progress.update_step(
                        sync_id, entity, "completed", count=state.processed_counts.get(entity, 0)
                    )
                    continue

                start_pct, end_pct = STEP_PERCENTAGES[entity]
                self.progress.update_step(
                    sync_id, entity, "in_progress", percentage=start_pct, message=f"Syncing {entity}"
                )
                await steps[entity](state, sync_id, options)

                state.last_completed_entity = entity
                await self._save_checkpoint(sync_id, state)
                self.progress.update_step(
                    sync_id,
                    entity,
                    "completed",
                    count=state.processed_counts.get(entity, 0),
                    percentage=end_pct,
                )

        except Exception as e:
            logger.exception(f"Historical sync {sync_id} failed: {e}")
            await self.db.rollback()
            sync_log.status = "failed"
            sync_log.completed_at = datetime.now(timezone.utc)
            sync_log.error_message = str(e)
            sync_log.details = {"sync_id": sync_id, "processed": state.processed_counts}
            await self.db.commit()
            self.progress.update(sync_id, status="failed", error=str(e), message="Historical sync failed")
            raise

        sync_log.status = "success"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.records_created = sum(state.processed_counts.get(entity, 0) for entity in ENTITY_ORDER)
        sync_log.details = {"sync_id": sync_id, "processed": state.processed_counts}
        self.connection.last_sync_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.checkpoints.clear(sync_id)

        self.progress.update(
            sync_id,
            status="completed",
            percentage=100,
            current_step="done",
            message="Historical sync completed",
            counts=dict(state.processed_counts),
        )
        logger.info(f"Historical sync {sync_id} completed: {state.processed_counts}")
        return {"sync_id": sync_id, "status": "completed", "counts": dict(state.processed_counts)}

    async def _save_checkpoint(self, sync_id: str, state: SyncState) -> None:
        await self.checkpoints.save(
            sync_id,
            tenant_id=self.tenant_id,
            last_completed_entity=state.last_completed_entity,
            last_processed_page=state.last_processed_page,
            processed_counts=state.processed_counts,
            completed_bank_accounts=state.completed_bank_accounts,
        )

    # -------------------------------------------------------------------------
    # Entity steps
    # -------------------------------------------------------------------------

    async def _sync_contacts(self, state: SyncState, sync_id: str, options: HistoricalSyncOptions) -> None:
        start_page = state.last_processed_page.get("contacts", 0) + 1

        async def fetch_page(page: int):
            return await self.client.get_contacts(page=page, include_archived=True)

        page = start_page
        async for contacts in paginate(fetch_page, start_page=start_page):
            pending = 0
            for contact in contacts:
                if not contact.get("contact_id"):
                    continue
                await upsert_contact(self.db, contact)
                pending += 1
                if pending % BATCH_SIZES["contacts"] == 0:
                    await self.db.commit()
            await self.db.commit()

            total = state.add("contacts", pending)
            state.last_processed_page["contacts"] = page
            await self._save_checkpoint(sync_id, state)
            self.progress.update_step(sync_id, "contacts", "in_progress", count=total)
            page += 1

    async def _sync_accounts(self, state: SyncState, sync_id: str, options: HistoricalSyncOptions) -> None:
        gl_count = await sync_gl_accounts(self.db, self.client)
        bank_accounts = await sync_bank_accounts(self.db, self.client)
        state.processed_counts["gl_accounts"] = gl_count
        state.processed_counts["bank_accounts"] = len(bank_accounts)
        state.add("accounts", gl_count + len(bank_accounts))

    async def _sync_transactions(self, state: SyncState, sync_id: str, options: HistoricalSyncOptions) -> None:
        result = await self.db.execute(select(BankAccount).order_by(BankAccount.name))
        bank_accounts = result.scalars().all()
        local_accounts = {acc.xero_account_id: acc for acc in bank_accounts}
        start_pct, end_pct = STEP_PERCENTAGES["transactions"]
        date_filter = date_range_filter(options.start_date, options.end_date)

        for index, bank_account in enumerate(bank_accounts):
            if bank_account.xero_account_id in state.completed_bank_accounts:
                continue
            if state.processed_counts.get("transactions", 0) >= options.transaction_limit:
                logger.info(f"Transaction limit ({options.transaction_limit}) reached")
                break

            page_key = f"transactions:{bank_account.xero_account_id}"
            start_page = state.last_processed_page.get(page_key, 0) + 1
            where = _join_filters(
                f'BankAccount.AccountID=Guid("{bank_account.xero_account_id}")',
                date_filter,
            )

            async def fetch_page(page: int, where=where):
                return await self.client.get_bank_transactions(page=page, where=where, order="Date ASC")

            page = start_page
            limit_reached = False
            async for transactions in paginate(fetch_page, start_page=start_page):
                processed = 0
                for txn in transactions:
                    if state.processed_counts.get("transactions", 0) + processed >= options.transaction_limit:
                        limit_reached = True
                        break
                    owner = local_accounts.get(txn.get("bank_account_id") or bank_account.xero_account_id)
                    if owner is None or not txn.get("transaction_id"):
                        state.add("transactions_skipped", 1)
                        continue
                    await upsert_bank_transaction(self.db, txn, owner.id)
                    processed += 1
                    if processed % BATCH_SIZES["transactions"] == 0:
                        await self.db.commit()
                await self.db.commit()

                total = state.add("transactions", processed)
                state.last_processed_page[page_key] = page
                await self._save_checkpoint(sync_id, state)
                self.progress.update_step(sync_id, "transactions", "in_progress", count=total)
                page += 1
                if limit_reached:
                    break

            if limit_reached:
                break

            state.completed_bank_accounts.append(bank_account.xero_account_id)
            await self._save_checkpoint(sync_id, state)
            pct = start_pct + int((end_pct - start_pct) * (index + 1) / max(len(bank_accounts), 1))
            self.progress.update(sync_id, percentage=pct)

    async def _sync_invoices(
        self,
        state: SyncState,
        sync_id: str,
        options: HistoricalSyncOptions,
        invoice_type: str,
        entity: str,
        limit: int,
    ) -> None:
        start_page = state.last_processed_page.get(entity, 0) + 1
        where = _join_filters(
            f'Type=="{invoice_type}"',
            date_range_filter(options.start_date, options.end_date),
        )

        async def fetch_page(page: int):
            return await self.client.get_invoices(page=page, where=where, order="Date ASC")

        page = start_page
        async for invoices in paginate(fetch_page, page_size=XERO_PAGE_SIZE, start_page=start_page):
            processed = 0
            limit_reached = False
            for invoice in invoices:
                if state.processed_counts.get(entity, 0) + processed >= limit:
                    limit_reached = True
                    break
                if not invoice.get("invoice_id"):
                    continue
                await upsert_invoice(self.db, invoice, invoice_type=invoice_type)
                processed += 1
                if processed % BATCH_SIZES["invoices"] == 0:
                    await self.db.commit()
            await self.db.commit()

            total = state.add(entity, processed)
            state.last_processed_page[entity] = page
            await self._save_checkpoint(sync_id, state)
            self.progress.update_step(sync_id, entity, "in_progress", count=total)
            page += 1
            if limit_reached:
                logger.info(f"{entity} limit ({limit}) reached")
                break


# ============================================================================
# BACKGROUND ENTRY POINT
# ============================================================================

async def run_historical_sync(sync_id: str, tenant_id: str, options: HistoricalSyncOptions) -> None:
    """Run a historical sync in its own session, under the full-sync and xero-sync locks."""
    async with async_session_maker() as db:
        connection = await get_active_connection(db, tenant_id)
        if connection is None:
            progress_store.update(sync_id, status="failed", error="No active Xero connection")
            return

        holder = new_holder("historical")

        async def operation():
            return await HistoricalSync(db, connection).run(sync_id, options)

        # perform_sync writes the same tables under XERO_SYNC
        async def exclusive():
            return await sync_lock.with_lock(
                LockResource.XERO_SYNC,
                holder,
                operation,
                timeout=HISTORICAL_LOCK_TIMEOUT_SECONDS,
            )

        try:
            await sync_lock.with_lock(
                LockResource.FULL_SYNC,
                holder,
                exclusive,
                timeout=HISTORICAL_LOCK_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.error(f"Historical sync {sync_id} did not complete: {e}")
            progress_store.update(sync_id, status="failed", error=str(e))
