"""
Tests for the cash-flow data sync.

Covers payment classification, result aggregation, credit-note
allocation, bank balance refresh, payment pattern derivation and the
failure path of the daily sync.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from bookkeeping.models import PaymentPattern, SyncLog
from bookkeeping.sync import cashflow
from bookkeeping.sync.cashflow import CashFlowDataSync, SyncResult, classify_payment


DUE = datetime(2024, 3, 1, tzinfo=timezone.utc)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def client():
    xero = MagicMock()
    xero.get_credit_notes = AsyncMock(return_value=[])
    xero.get_balance_sheet = AsyncMock(return_value={"rows": [{"title": "Assets"}]})
    xero.get_bank_summary = AsyncMock(return_value=[])
    return xero


@pytest.fixture
def data_sync(mock_db, connection, client):
    return CashFlowDataSync(mock_db, connection, client=client)


def paid_invoice(contact_id, days_after_due, invoice_type="ACCREC"):
    return SimpleNamespace(
        xero_contact_id=contact_id,
        contact_name=f"Contact {contact_id}",
        type=invoice_type,
        due_date=DUE,
        fully_paid_on_date=DUE + timedelta(days=days_after_due),
        last_modified_utc=None,
        updated_at=None,
    )


# =============================================================================
# Unit Tests - helpers
# =============================================================================

class TestClassifyPayment:
    """Bucketing of days between due date and payment."""

    def test_paid_before_due_is_early(self):
        assert classify_payment(-5) == "early"
        assert classify_payment(0) == "early"

    def test_grace_period_counts_as_on_time(self):
        assert classify_payment(1) == "on_time"
        assert classify_payment(3) == "on_time"

    def test_beyond_grace_is_late(self):
        assert classify_payment(4) == "late"


class TestSyncResult:
    """Aggregation of per-step results."""

    def test_add_sums_counters(self):
        total = SyncResult(items_synced=2, items_created=1, items_updated=1) + SyncResult(
            items_synced=3, items_updated=3, items_deleted=1
        )

        assert total.to_dict() == {
            "success": True,
            "items_synced": 5,
            "items_created": 1,
            "items_updated": 4,
            "items_deleted": 1,
        }

    def test_any_failure_fails_total(self):
        assert (SyncResult() + SyncResult(success=False)).success is False


# =============================================================================
# Unit Tests - steps
# =============================================================================

class TestCreditNotes:
    """Credit note allocations reduce invoice amounts due."""

    @pytest.mark.asyncio
    async def test_allocation_applied(self, data_sync, client, mock_db, fake_result):
        invoice = SimpleNamespace(amount_due=Decimal("100.00"))
        client.get_credit_notes.return_value = [
            {
                "credit_note_id": "cn-1",
                "status": "AUTHORISED",
                "allocations": [{"invoice_id": "inv-1", "amount": Decimal("30.00")}],
            },
            {"credit_note_id": "cn-2", "status": "DRAFT", "allocations": [{"invoice_id": "inv-1", "amount": 50}]},
        ]
        mock_db.execute.return_value = fake_result([invoice])

        result = await data_sync.sync_credit_notes(None)

        assert invoice.amount_due == Decimal("70.00")
        assert result.items_synced == 1
        assert result.items_updated == 1

    @pytest.mark.asyncio
    async def test_amount_due_never_negative(self, data_sync, client, mock_db, fake_result):
        invoice = SimpleNamespace(amount_due=Decimal("20.00"))
        client.get_credit_notes.return_value = [
            {"credit_note_id": "cn-1", "status": "AUTHORISED", "allocations": [{"invoice_id": "inv-1", "amount": 50}]},
        ]
        mock_db.execute.return_value = fake_result([invoice])

        await data_sync.sync_credit_notes(None)

        assert invoice.amount_due == Decimal("0")


class TestFinancialPosition:
    """Bank summary balances land on bank accounts."""

    @pytest.mark.asyncio
    async def test_updates_known_accounts(self, data_sync, client, mock_db, fake_result):
        account = SimpleNamespace(balance=None, balance_updated_at=None)
        client.get_bank_summary.return_value = [
            {"account_id": "acct-1", "closing_balance": Decimal("1500.00")},
            {"account_id": "acct-2", "closing_balance": Decimal("250.00")},
        ]
        mock_db.execute.side_effect = [fake_result([account]), fake_result()]

        position = await data_sync.sync_financial_position()

        assert account.balance == Decimal("1500.00")
        assert account.balance_updated_at is not None
        assert position["bank_accounts_updated"] == 1
        assert position["total_cash"] == Decimal("1750.00")
        assert position["balance_sheet"] == [{"title": "Assets"}]


class TestPaymentPatterns:
    """Per-contact payment timing."""

    @pytest.mark.asyncio
    async def test_creates_pattern_for_contacts_with_enough_history(self, data_sync, mock_db, fake_result):
        invoices = [
            paid_invoice("c1", -2),
            paid_invoice("c1", 2),
            paid_invoice("c1", 10),
            paid_invoice("c2", 1),
            paid_invoice("c2", 1),
        ]
        mock_db.execute.side_effect = [fake_result(invoices), fake_result()]

        assert await data_sync.calculate_payment_patterns() == 1

        pattern = mock_db.add.call_args.args[0]
        assert isinstance(pattern, PaymentPattern)
        assert pattern.xero_contact_id == "c1"
        assert pattern.type == "CUSTOMER"
        assert pattern.sample_size == 3
        assert pattern.average_days_to_pay == pytest.approx(14 / 3)
        assert pattern.on_time_rate == pytest.approx(100 / 3)
        assert pattern.late_rate == pytest.approx(100 / 3)

    @pytest.mark.asyncio
    async def test_updates_existing_supplier_pattern(self, data_sync, mock_db, fake_result):
        invoices = [paid_invoice("s1", 0, "ACCPAY") for _ in range(3)]
        existing = SimpleNamespace(sample_size=1, early_rate=0)
        mock_db.execute.side_effect = [fake_result(invoices), fake_result([existing])]

        await data_sync.calculate_payment_patterns()

        assert existing.sample_size == 3
        assert existing.early_rate == 100
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_to_last_modified(self, data_sync, mock_db, fake_result):
        invoice = paid_invoice("c1", 0)
        invoice.fully_paid_on_date = None
        invoice.last_modified_utc = DUE + timedelta(days=6)
        mock_db.execute.side_effect = [fake_result([invoice] * 3), fake_result()]

        await data_sync.calculate_payment_patterns()

        assert mock_db.add.call_args.args[0].late_rate == 100


# =============================================================================
# Unit Tests - daily sync
# =============================================================================

class TestDailySync:
    """The daily delta sync entry point."""

    @pytest.mark.asyncio
    async def test_failure_recorded_on_sync_log(self, data_sync, mock_db, lock_passthrough):
        with patch.object(cashflow, "sync_lock", lock_passthrough), \
             patch.object(data_sync, "sync_invoices", AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(RuntimeError):
                await data_sync.perform_daily_sync()

        sync_log = mock_db.add.call_args.args[0]
        assert isinstance(sync_log, SyncLog)
        assert sync_log.sync_type == "DELTA"
        assert sync_log.status == "failed"
        assert sync_log.error_message == "boom"
        mock_db.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_success_summarises_steps(self, data_sync, mock_db, lock_passthrough):
        steps = {
            "sync_invoices": AsyncMock(return_value=SyncResult(items_synced=2, items_created=2)),
            "sync_bills": AsyncMock(return_value=SyncResult(items_synced=1, items_updated=1)),
            "sync_repeating_transactions": AsyncMock(return_value=SyncResult()),
            "sync_credit_notes": AsyncMock(return_value=SyncResult()),
            "sync_financial_position": AsyncMock(return_value={"bank_accounts_updated": 2}),
            "calculate_payment_patterns": AsyncMock(return_value=4),
        }
        with patch.object(cashflow, "sync_lock", lock_passthrough), patch.multiple(data_sync, **steps):
            summary = await data_sync.perform_daily_sync()

        assert summary["items_synced"] == 3
        assert summary["items_created"] == 2
        assert summary["payment_patterns"] == 4
        sync_log = mock_db.add.call_args.args[0]
        assert sync_log.status == "success"
        assert sync_log.details["bank_balances"] == 2


class TestBillSync:
    """Payables pulled into cash-flow tables."""

    @pytest.mark.asyncio
    async def test_bills_limited_to_cash_affecting_statuses(self, data_sync, client):
        client.get_invoices = AsyncMock(return_value=[])

        await data_sync.sync_bills(None)

        kwargs = client.get_invoices.call_args.kwargs
        assert kwargs["where"] == 'Type=="ACCPAY"'
        assert kwargs["statuses"] == ["AUTHORISED", "PAID", "VOIDED"]
