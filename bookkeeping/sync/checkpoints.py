"""Persistent resume points for historical syncs."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.config import settings
from bookkeeping.models import SyncCheckpoint


logger = logging.getLogger(__name__)


def checkpoint_to_dict(checkpoint: SyncCheckpoint) -> Dict[str, Any]:
    return {
        "sync_id": checkpoint.sync_id,
        "tenant_id": checkpoint.tenant_id,
        "last_completed_entity": checkpoint.last_completed_entity,
        "last_processed_page": checkpoint.last_processed_page or {},
        "processed_counts": checkpoint.processed_counts or {},
        "completed_bank_accounts": checkpoint.completed_bank_accounts or [],
        "timestamp": checkpoint.updated_at or checkpoint.created_at,
        "expires_at": checkpoint.expires_at,
    }


class CheckpointStore:
    def __init__(self, db: AsyncSession, ttl_hours: int = None):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours or settings.CHECKPOINT_TTL_HOURS)

    async def _get_row(self, sync_id: str) -> Optional[SyncCheckpoint]:
        result = await self.db.execute(
            select(SyncCheckpoint).where(SyncCheckpoint.sync_id == sync_id)
        )
        return result.scalar_one_or_none()

    async def load(self, sync_id: str) -> Optional[Dict[str, Any]]:
        """Return the checkpoint, or None if missing or expired."""
        checkpoint = await self._get_row(sync_id)
        if checkpoint is None:
            return None
        if checkpoint.expires_at < datetime.now(timezone.utc):
            logger.info(f"Checkpoint for {sync_id} expired")
            return None
        return checkpoint_to_dict(checkpoint)

    async def save(
        self,
        sync_id: str,
        tenant_id: Optional[str] = None,
        last_completed_entity: Optional[str] = None,
        last_processed_page: Optional[Dict[str, int]] = None,
        processed_counts: Optional[Dict[str, int]] = None,
        completed_bank_accounts: Optional[list] = None,
    ) -> SyncCheckpoint:
        now = datetime.now(timezone.utc)
        checkpoint = await self._get_row(sync_id)
        if checkpoint is None:
            checkpoint = SyncCheckpoint(sync_id=sync_id, tenant_id=tenant_id)
            self.db.add(checkpoint)

        if last_completed_entity is not None:
            checkpoint.last_completed_entity = last_completed_entity
        if last_processed_page is not None:
            checkpoint.last_processed_page = dict(last_processed_page)
        if processed_counts is not None:
            checkpoint.processed_counts = dict(processed_counts)
        if completed_bank_accounts is not None:
            checkpoint.completed_bank_accounts = list(completed_bank_accounts)
        checkpoint.updated_at = now
        checkpoint.expires_at = now + self.ttl

        await self.db.commit()
        return checkpoint

    async def clear(self, sync_id: str) -> None:
        await self.db.execute(delete(SyncCheckpoint).where(SyncCheckpoint.sync_id == sync_id))
        await self.db.commit()

    async def purge_expired(self) -> int:
        result = await self.db.execute(
            delete(SyncCheckpoint).where(SyncCheckpoint.expires_at < datetime.now(timezone.utc))
        )
        await self.db.commit()
        return result.rowcount or 0
