"""
Tests for historical sync bookkeeping: checkpoints, progress and resume state.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from bookkeeping.models import SyncCheckpoint
from bookkeeping.sync.checkpoints import CheckpointStore
from bookkeeping.sync import historical
from bookkeeping.sync.historical import HistoricalSyncOptions, SyncState, date_range_filter, run_historical_sync
from bookkeeping.sync.progress import ProgressStore


# =============================================================================
# Unit Tests - CheckpointStore
# =============================================================================

class TestCheckpointStore:
    """Database-backed resume points."""

    @pytest.mark.asyncio
    async def test_missing_checkpoint_loads_none(self, mock_db):
        assert await CheckpointStore(mock_db).load("hist_1") is None

    @pytest.mark.asyncio
    async def test_expired_checkpoint_loads_none(self, mock_db, fake_result):
        row = SyncCheckpoint(sync_id="hist_1", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        mock_db.execute.return_value = fake_result([row])

        assert await CheckpointStore(mock_db).load("hist_1") is None

    @pytest.mark.asyncio
    async def test_live_checkpoint_loads_with_defaults(self, mock_db, fake_result):
        row = SyncCheckpoint(
            sync_id="hist_1",
            tenant_id="tenant-123",
            last_completed_entity="accounts",
            processed_counts={"contacts": 40},
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        mock_db.execute.return_value = fake_result([row])

        checkpoint = await CheckpointStore(mock_db).load("hist_1")

        assert checkpoint["last_completed_entity"] == "accounts"
        assert checkpoint["processed_counts"] == {"contacts": 40}
        assert checkpoint["last_processed_page"] == {}
        assert checkpoint["completed_bank_accounts"] == []

    @pytest.mark.asyncio
    async def test_save_creates_and_extends_expiry(self, mock_db):
        store = CheckpointStore(mock_db, ttl_hours=2)

        checkpoint = await store.save(
            "hist_1",
            tenant_id="tenant-123",
            last_processed_page={"transactions": 3},
            completed_bank_accounts=["acct-1"],
        )

        mock_db.add.assert_called_once_with(checkpoint)
        assert checkpoint.last_processed_page == {"transactions": 3}
        assert checkpoint.completed_bank_accounts == ["acct-1"]
        assert checkpoint.expires_at - checkpoint.updated_at == timedelta(hours=2)
        mock_db.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_purge_reports_rowcount(self, mock_db):
        result = MagicMock()
        result.rowcount = 4
        mock_db.execute.return_value = result

        assert await CheckpointStore(mock_db).purge_expired() == 4


# =============================================================================
# Unit Tests - ProgressStore
# =============================================================================

class TestProgressStore:
    """In-memory progress with per-step merging."""

    def test_unknown_sync_has_no_progress(self):
        assert ProgressStore(ttl_seconds=60).get("nope") is None

    def test_steps_merge(self):
        store = ProgressStore(ttl_seconds=60)
        store.update_step("hist_1", "contacts", "in_progress", count=10, percentage=5)
        store.update_step("hist_1", "contacts", "completed", count=25, percentage=10)
        store.update_step("hist_1", "accounts", "in_progress")

        progress = store.get("hist_1")
        assert progress["steps"]["contacts"] == {"status": "completed", "count": 25}
        assert progress["steps"]["accounts"] == {"status": "in_progress"}
        assert progress["current_step"] == "accounts"
        assert progress["percentage"] == 10

    def test_clear(self):
        store = ProgressStore(ttl_seconds=60)
        store.update("hist_1", status="queued")
        store.clear("hist_1")

        assert store.get("hist_1") is None


# =============================================================================
# Unit Tests - historical sync state
# =============================================================================

class TestSyncState:
    """Resume decisions from a checkpoint."""

    def test_fresh_state_has_nothing_done(self):
        state = SyncState.from_checkpoint(None)

        assert not state.entity_done("contacts")

    def test_entities_up_to_last_completed_are_done(self):
        state = SyncState.from_checkpoint({"last_completed_entity": "accounts"})

        assert state.entity_done("contacts")
        assert state.entity_done("accounts")
        assert not state.entity_done("transactions")

    def test_add_accumulates(self):
        state = SyncState.from_checkpoint({"processed_counts": {"invoices": 50}})

        assert state.add("invoices", 25) == 75
        assert state.add("bills", 5) == 5


class TestDateRangeFilter:
    """Xero where-clauses for historical date windows."""

    def test_both_bounds(self):
        assert date_range_filter(date(2023, 1, 5), date(2023, 12, 31)) == (
            "Date>=DateTime(2023,01,05)&&Date<=DateTime(2023,12,31)"
        )

    def test_open_ended(self):
        assert date_range_filter(date(2023, 1, 5), None) == "Date>=DateTime(2023,01,05)"
        assert date_range_filter(None, None) is None


class TestRunHistoricalSync:
    """Background entry point for historical syncs."""

    @pytest.mark.asyncio
    async def test_holds_full_sync_and_xero_sync_locks(self, mock_db, connection, lock_passthrough):
        @asynccontextmanager
        async def session_maker():
            yield mock_db

        runner = MagicMock()
        runner.run = AsyncMock(return_value={"success": True})

        with patch.object(historical, "async_session_maker", session_maker), \
             patch.object(historical, "get_active_connection", AsyncMock(return_value=connection)), \
             patch.object(historical, "sync_lock", lock_passthrough), \
             patch.object(historical, "HistoricalSync", MagicMock(return_value=runner)):
            await run_historical_sync("hist_1", "tenant-123", HistoricalSyncOptions())

        resources = [c.args[0] for c in lock_passthrough.with_lock.call_args_list]
        assert resources == ["full-sync", "xero-sync"]
        runner.run.assert_awaited_once()
