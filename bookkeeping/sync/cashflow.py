"""Cash-flow data sync.

Keeps the data behind cash-flow views current: receivables, payables,
repeating invoices, credit-note adjustments, bank balances, and derived
per-contact payment patterns.
"""
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.models import (
    BankAccount,
    PaymentPattern,
    RepeatingTransaction,
    SyncedInvoice,
    SyncLog,
    XeroConnection,
)
from bookkeeping.sync.lock import LockResource, new_holder, sync_lock
from bookkeeping.sync.upserts import upsert_invoice, upsert_repeating_transaction
from bookkeeping.xero.api_helpers import paginate
from bookkeeping.xero.client import XeroClient


logger = logging.getLogger(__name__)

INVOICE_STATUSES = ["AUTHORISED", "PAID", "VOIDED"]
MIN_PAYMENT_SAMPLE = 3
ON_TIME_GRACE_DAYS = 3
PENDING_VERIFICATION = "PENDING_VERIFICATION"


@dataclass
class SyncResult:
    success: bool = True
    items_synced: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_deleted: int = 0

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            success=self.success and other.success,
            items_synced=self.items_synced + other.items_synced,
            items_created=self.items_created + other.items_created,
            items_updated=self.items_updated + other.items_updated,
            items_deleted=self.items_deleted + other.items_deleted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_payment(days_late: int) -> str:
    """early (<= 0 days), on_time (<= 3 days late) or late."""
    if days_late <= 0:
        return "early"
    if days_late <= ON_TIME_GRACE_DAYS:
        return "on_time"
    return "late"


class CashFlowDataSync:
    """Delta sync and full reconciliation of cash-flow data for one tenant.

    Steps run one after another on a single session.
    """

    def __init__(self, db: AsyncSession, connection: XeroConnection, client: Optional[XeroClient] = None):
        self.db = db
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.client = client or XeroClient(connection)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def perform_daily_sync(self) -> Dict[str, Any]:
        return await sync_lock.with_lock(
            LockResource.CASHFLOW_SYNC,
            new_holder("cashflow"),
            self._daily_sync,
        )

    async def perform_full_reconciliation(self) -> Dict[str, Any]:
        return await sync_lock.with_lock(
            LockResource.CASHFLOW_SYNC,
            new_holder("cashflow-reconcile"),
            self._full_reconciliation,
        )

    async def _start_log(self, sync_type: str) -> SyncLog:
        sync_log = SyncLog(
            tenant_id=self.tenant_id,
            sync_type=sync_type,
            status="in_progress",
            started_at=datetime.now(timezone.utc),
            details={"entity_type": "all"},
        )
        self.db.add(sync_log)
        await self.db.commit()
        return sync_log

    async def _fail_log(self, sync_log: SyncLog, error: Exception) -> None:
        await self.db.rollback()
        sync_log.status = "failed"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.error_message = str(error)
        await self.db.commit()

    async def _daily_sync(self) -> Dict[str, Any]:
        sync_log = await self._start_log("DELTA")
        try:
            last_sync = await self.get_last_successful_sync()
            logger.info(f"Cash-flow delta sync for tenant {self.tenant_id} since {last_sync}")

            total = SyncResult()
            total += await self.sync_invoices(last_sync)
            total += await self.sync_bills(last_sync)
            total += await self.sync_repeating_transactions()
            total += await self.sync_credit_notes(last_sync)
            position = await self.sync_financial_position()
            patterns = await self.calculate_payment_patterns()

        except Exception as e:
            logger.exception(f"Cash-flow delta sync failed for tenant {self.tenant_id}: {e}")
            await self._fail_log(sync_log, e)
            raise

        sync_log.status = "success"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.records_created = total.items_created
        sync_log.records_updated = total.items_updated
        sync_log.details = {
            "entity_type": "all",
            "items_synced": total.items_synced,
            "payment_patterns": patterns,
            "bank_balances": position["bank_accounts_updated"],
        }
        await self.db.commit()

        return {**total.to_dict(), "payment_patterns": patterns, "financial_position": position}

    async def _full_reconciliation(self) -> Dict[str, Any]:
        sync_log = await self._start_log("FULL_RECONCILIATION")
        try:
            await self.db.execute(update(SyncedInvoice).values(status=PENDING_VERIFICATION))
            await self.db.execute(update(RepeatingTransaction).values(status=PENDING_VERIFICATION))
            await self.db.commit()

            total = SyncResult()
            total += await self.sync_invoices(None)
            total += await self.sync_bills(None)
            total += await self.sync_repeating_transactions()
            total += await self.sync_credit_notes(None)

            voided = await self.db.execute(
                update(SyncedInvoice)
                .where(SyncedInvoice.status == PENDING_VERIFICATION)
                .values(status="VOIDED")
            )
            cancelled = await self.db.execute(
                update(RepeatingTransaction)
                .where(RepeatingTransaction.status == PENDING_VERIFICATION)
                .values(status="CANCELLED")
            )
            total.items_deleted = (voided.rowcount or 0) + (cancelled.rowcount or 0)
            await self.db.commit()

            patterns = await self.calculate_payment_patterns()

        except Exception as e:
            logger.exception(f"Cash-flow full reconciliation failed for tenant {self.tenant_id}: {e}")
            await self._fail_log(sync_log, e)
            raise

        sync_log.status = "success"
        sync_log.completed_at = datetime.now(timezone.utc)
        sync_log.records_created = total.items_created
        sync_log.records_updated = total.items_updated
        sync_log.records_deleted = total.items_deleted
        sync_log.details = {"entity_type": "all", "items_synced": total.items_synced}
        await self.db.commit()

        logger.info(f"Full reconciliation for tenant {self.tenant_id}: {total.items_deleted} items removed")
        return {**total.to_dict(), "payment_patterns": patterns}

    async def get_last_successful_sync(self) -> Optional[datetime]:
        result = await self.db.execute(
            select(SyncLog.completed_at)
            .where(SyncLog.sync_type == "DELTA", SyncLog.status == "success")
            .order_by(SyncLog.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Receivables / payables
    # -------------------------------------------------------------------------

    async def _upsert_invoice_pages(self, fetch_page) -> SyncResult:
        result = SyncResult()
        async for invoices in paginate(fetch_page):
            for invoice in invoices:
                if not invoice.get("invoice_id"):
                    continue
                _row, created = await upsert_invoice(self.db, invoice)
                if created:
                    result.items_created += 1
                else:
                    result.items_updated += 1
                result.items_synced += 1
            await self.db.commit()
        return result

    async def sync_invoices(self, last_sync: Optional[datetime]) -> SyncResult:
        """Invoices and bills in AUTHORISED, PAID or VOIDED state changed since last_sync."""
        return await self._upsert_invoice_pages(
            lambda page: self.client.get_invoices(
                page=page,
                statuses=INVOICE_STATUSES,
                if_modified_since=last_sync,
            )
        )

    async def sync_bills(self, last_sync: Optional[datetime]) -> SyncResult:
        return await self._upsert_invoice_pages(
            lambda page: self.client.get_invoices(
                page=page,
                where='Type=="ACCPAY"',
                statuses=INVOICE_STATUSES,
                if_modified_since=last_sync,
            )
        )

    async def sync_repeating_transactions(self) -> SyncResult:
        result = SyncResult()
        repeating_invoices = await self.client.get_repeating_invoices(where='Status=="AUTHORISED"')
        for repeating in repeating_invoices:
            if not repeating.get("repeating_invoice_id"):
                continue
            _row, created = await upsert_repeating_transaction(self.db, repeating)
            if created:
                result.items_created += 1
            else:
                result.items_updated += 1
            result.items_synced += 1
        await self.db.commit()
        return result

    async def sync_credit_notes(self, last_sync: Optional[datetime]) -> SyncResult:
        """Apply AUTHORISED credit note allocations to invoice amounts due."""
        result = SyncResult()

        async def fetch_page(page: int):
            return await self.client.get_credit_notes(page=page, if_modified_since=last_sync)

        async for credit_notes in paginate(fetch_page):
            for note in credit_notes:
                if not note.get("credit_note_id") or note.get("status") != "AUTHORISED":
                    continue
                for allocation in note.get("allocations") or []:
                    if not allocation.get("invoice_id"):
                        continue
                    invoice = (await self.db.execute(
                        select(SyncedInvoice).where(SyncedInvoice.xero_invoice_id == allocation["invoice_id"])
                    )).scalar_one_or_none()
                    if invoice is None:
                        continue
                    remaining = Decimal(invoice.amount_due or 0) - Decimal(allocation.get("amount") or 0)
                    invoice.amount_due = max(Decimal("0"), remaining)
                    result.items_updated += 1
                result.items_synced += 1
            await self.db.commit()
        return result

    # -------------------------------------------------------------------------
    # Financial position
    # -------------------------------------------------------------------------

    async def sync_financial_position(self) -> Dict[str, Any]:
        """Store bank summary closing balances on bank accounts; summarise the balance sheet."""
        balance_sheet = await self.client.get_balance_sheet()
        bank_summary = await self.client.get_bank_summary()

        now = datetime.now(timezone.utc)
        updated = 0
        for entry in bank_summary:
            if not entry.get("account_id"):
                continue
            account = (await self.db.execute(
                select(BankAccount).where(BankAccount.xero_account_id == entry["account_id"])
            )).scalar_one_or_none()
            if account is None:
                continue
            account.balance = entry["closing_balance"]
            account.balance_updated_at = now
            updated += 1
        await self.db.commit()

        return {
            "bank_accounts_updated": updated,
            "total_cash": sum((e["closing_balance"] for e in bank_summary), Decimal("0")),
            "balance_sheet": balance_sheet.get("rows", []),
        }

    # -------------------------------------------------------------------------
    # Payment patterns
    # -------------------------------------------------------------------------

    async def calculate_payment_patterns(self) -> int:
        """
        Derive per-contact payment timing from PAID invoices.

        Contacts with fewer than three paid invoices of a type are skipped.
        Days to pay is paid date minus due date.
        """
        result = await self.db.execute(
            select(SyncedInvoice).where(
                SyncedInvoice.status == "PAID",
                SyncedInvoice.xero_contact_id.isnot(None),
                SyncedInvoice.due_date.isnot(None),
            )
        )
        groups: Dict[tuple, List[SyncedInvoice]] = defaultdict(list)
        for invoice in result.scalars().all():
            groups[(invoice.xero_contact_id, invoice.type)].append(invoice)

        calculated = 0
        now = datetime.now(timezone.utc)
        for (contact_id, invoice_type), invoices in groups.items():
            if len(invoices) < MIN_PAYMENT_SAMPLE:
                continue

            counts = {"early": 0, "on_time": 0, "late": 0}
            total_days = 0
            for invoice in invoices:
                paid_on = invoice.fully_paid_on_date or invoice.last_modified_utc or invoice.updated_at
                days = (paid_on - invoice.due_date).days
                total_days += abs(days)
                counts[classify_payment(days)] += 1

            sample = len(invoices)
            pattern_type = "CUSTOMER" if invoice_type == "ACCREC" else "SUPPLIER"
            fields = {
                "contact_name": invoices[0].contact_name,
                "average_days_to_pay": total_days / sample,
                "on_time_rate": counts["on_time"] / sample * 100,
                "early_rate": counts["early"] / sample * 100,
                "late_rate": counts["late"] / sample * 100,
                "sample_size": sample,
                "last_calculated": now,
            }

            pattern = (await self.db.execute(
                select(PaymentPattern).where(
                    PaymentPattern.xero_contact_id == contact_id,
                    PaymentPattern.type == pattern_type,
                )
            )).scalar_one_or_none()
            if pattern is None:
                self.db.add(PaymentPattern(xero_contact_id=contact_id, type=pattern_type, **fields))
            else:
                for key, value in fields.items():
                    setattr(pattern, key, value)
            calculated += 1

        await self.db.commit()
        logger.info(f"Calculated {calculated} payment patterns for tenant {self.tenant_id}")
        return calculated
