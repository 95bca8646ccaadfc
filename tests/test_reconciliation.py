"""
Tests for reconciliation sweeps against Xero's current state.
"""

import pytest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from bookkeeping.models import SyncLog
from bookkeeping.sync import reconciliation
from bookkeeping.sync.reconciliation import (
    reconcile_bank_transactions,
    reconcile_invoices,
    run_reconciliation,
)


def local_invoice(invoice_id, status, invoice_type="ACCREC"):
    return SimpleNamespace(xero_invoice_id=invoice_id, status=status, type=invoice_type)


# =============================================================================
# Unit Tests
# =============================================================================

class TestReconcileInvoices:
    """Local invoices and bills follow Xero."""

    @pytest.mark.asyncio
    async def test_vanished_and_changed_rows(self, mock_db, fake_result):
        xero = [
            {"invoice_id": "i1", "type": "ACCREC", "status": "AUTHORISED"},
            {"invoice_id": "i2", "type": "ACCREC", "status": "VOIDED"},
            {"invoice_id": "b1", "type": "ACCPAY", "status": "PAID"},
        ]
        open_invoice = local_invoice("i1", "OPEN")
        voided_in_xero = local_invoice("i2", "OPEN")
        gone = local_invoice("i3", "OPEN")
        bill = local_invoice("b1", "PAID", "ACCPAY")
        mock_db.execute.side_effect = [
            fake_result([open_invoice, voided_in_xero, gone]),
            fake_result([bill]),
        ]

        with patch.object(reconciliation, "fetch_all", AsyncMock(return_value=xero)):
            results = await reconcile_invoices(mock_db, MagicMock())

        assert open_invoice.status == "OPEN"
        assert voided_in_xero.status == "VOIDED"
        assert gone.status == "DELETED"
        assert bill.status == "PAID"
        assert results["invoices"] == {"total": 2, "active": 1, "voided": 1, "deleted": 0, "updated": 2}
        assert results["bills"]["updated"] == 0
        mock_db.commit.assert_awaited()


class TestReconcileBankTransactions:
    """Bank transactions removed in Xero are soft-deleted."""

    @pytest.mark.asyncio
    async def test_marks_missing_deleted(self, mock_db, fake_result):
        kept = SimpleNamespace(xero_transaction_id="t1", status="AUTHORISED")
        removed = SimpleNamespace(xero_transaction_id="t2", status=None)
        mock_db.execute.return_value = fake_result([kept, removed])

        with patch.object(reconciliation, "fetch_all", AsyncMock(return_value=[{"transaction_id": "t1"}])):
            results = await reconcile_bank_transactions(mock_db, MagicMock())

        assert kept.status == "AUTHORISED"
        assert removed.status == "DELETED"
        assert results == {"total": 1, "active": 1, "deleted": 1, "updated": 1}


class TestRunReconciliation:
    """Locked, logged reconciliation runs."""

    @pytest.mark.asyncio
    async def test_success_logged(self, mock_db, connection, lock_passthrough):
        invoice_results = {
            "invoices": {"total": 1, "active": 1, "voided": 0, "deleted": 0, "updated": 1},
            "bills": {"total": 0, "active": 0, "voided": 0, "deleted": 0, "updated": 0},
        }
        txn_results = {"total": 3, "active": 3, "deleted": 2, "updated": 2}

        with patch.object(reconciliation, "sync_lock", lock_passthrough), \
             patch.object(reconciliation, "reconcile_invoices", AsyncMock(return_value=invoice_results)), \
             patch.object(reconciliation, "reconcile_bank_transactions", AsyncMock(return_value=txn_results)):
            outcome = await run_reconciliation(mock_db, connection, client=MagicMock())

        assert outcome["success"] is True
        assert outcome["results"]["transactions"] == txn_results
        sync_log = mock_db.add.call_args.args[0]
        assert isinstance(sync_log, SyncLog)
        assert sync_log.status == "success"
        assert sync_log.records_updated == 3
        assert sync_log.records_deleted == 2
        assert lock_passthrough.with_lock.call_args.args[0] == "transaction-sync"

    @pytest.mark.asyncio
    async def test_failure_logged_and_raised(self, mock_db, connection, lock_passthrough):
        with patch.object(reconciliation, "sync_lock", lock_passthrough), \
             patch.object(reconciliation, "reconcile_invoices", AsyncMock(side_effect=RuntimeError("429"))):
            with pytest.raises(RuntimeError):
                await run_reconciliation(mock_db, connection, client=MagicMock())

        sync_log = mock_db.add.call_args.args[0]
        assert sync_log.status == "failed"
        assert sync_log.error_message == "429"


class TestReconciliationWindow:
    """Remote and local rows are selected by the same document date."""

    @pytest.mark.asyncio
    async def test_remote_fetch_filters_by_document_date(self, mock_db, fake_result):
        from_date = datetime(2024, 5, 1, tzinfo=timezone.utc)
        in_window = local_invoice("i1", "OPEN")
        client = MagicMock()
        client.get_invoices = AsyncMock(return_value=[
            {"invoice_id": "i1", "type": "ACCREC", "status": "AUTHORISED"},
        ])
        mock_db.execute.side_effect = [fake_result([in_window]), fake_result()]

        await reconcile_invoices(mock_db, client, from_date)

        kwargs = client.get_invoices.call_args.kwargs
        assert kwargs["where"] == "Date>=DateTime(2024,05,01)"
        assert "if_modified_since" not in kwargs
        assert in_window.status == "OPEN"

    @pytest.mark.asyncio
    async def test_bank_transactions_filter_by_date(self, mock_db, fake_result):
        client = MagicMock()
        client.get_bank_transactions = AsyncMock(return_value=[{"transaction_id": "t1"}])
        kept = SimpleNamespace(xero_transaction_id="t1", status="AUTHORISED")
        mock_db.execute.return_value = fake_result([kept])

        await reconcile_bank_transactions(mock_db, client, datetime(2024, 5, 1, tzinfo=timezone.utc))

        assert client.get_bank_transactions.call_args.kwargs["where"] == "Date>=DateTime(2024,05,01)"
        assert kept.status == "AUTHORISED"

    @pytest.mark.asyncio
    async def test_open_bill_matches_authorised(self, mock_db, fake_result):
        bill = local_invoice("b1", "OPEN", "ACCPAY")
        xero = [{"invoice_id": "b1", "type": "ACCPAY", "status": "AUTHORISED"}]
        mock_db.execute.side_effect = [fake_result(), fake_result([bill])]

        with patch.object(reconciliation, "fetch_all", AsyncMock(return_value=xero)):
            results = await reconcile_invoices(mock_db, MagicMock())

        assert bill.status == "OPEN"
        assert results["bills"]["updated"] == 0
