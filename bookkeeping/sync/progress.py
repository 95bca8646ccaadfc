"""In-memory progress reporting for long-running syncs."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cachetools import TTLCache

from bookkeeping.config import settings


class ProgressStore:
    def __init__(self, ttl_seconds: int = None, maxsize: int = 1000):
        self._progress = TTLCache(maxsize=maxsize, ttl=ttl_seconds or settings.PROGRESS_TTL_SECONDS)

    def get(self, sync_id: str) -> Optional[Dict[str, Any]]:
        return self._progress.get(sync_id)

    def update(self, sync_id: str, **fields) -> Dict[str, Any]:
        """Merge `fields` into the stored progress; `steps` merge per step name."""
        current = dict(self._progress.get(sync_id) or {"sync_id": sync_id, "steps": {}})
        steps = dict(current.get("steps") or {})
        for name, step in (fields.pop("steps", None) or {}).items():
            steps[name] = {**steps.get(name, {}), **step}
        current.update(fields)
        current["steps"] = steps
        current["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._progress[sync_id] = current
        return current

    def update_step(
        self,
        sync_id: str,
        step: str,
        status: str,
        count: Optional[int] = None,
        percentage: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        step_fields: Dict[str, Any] = {"status": status}
        if count is not None:
            step_fields["count"] = count
        fields: Dict[str, Any] = {"steps": {step: step_fields}, "current_step": step}
        if percentage is not None:
            fields["percentage"] = percentage
        if message is not None:
            fields["message"] = message
        return self.update(sync_id, **fields)

    def clear(self, sync_id: str) -> None:
        self._progress.pop(sync_id, None)


progress_store = ProgressStore()
