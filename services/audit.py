"""
Audit log — append-only record of what the workers did.

Pipelines call AuditLogger.record() after each job outcome; granular
per-platform / per-provider detail lives here rather than on the entity.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from database.store_base import BaseStore
from models.schemas import AuditLogEntry

logger = structlog.get_logger()


class AuditActions:
    SOCIAL_POST_PUBLISHED = "social.post.published"
    SOCIAL_POST_FAILED = "social.post.failed"
    EVENT_SYNC_COMPLETED = "event.sync.completed"
    EVENT_SYNC_FAILED = "event.sync.failed"
    SPACE_REQUEST_EXPIRED = "space.request.expired"


class AuditLogger:

    def __init__(self, store: BaseStore, actor_id: str = "worker",
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.actor_id = actor_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record(self, action: str, entity_type: str, entity_id: str,
                     business_id: str = "", metadata: dict[str, Any] = None) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor_id=self.actor_id,
            actor_type="system",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            business_id=business_id,
            metadata=metadata or {},
            created_at=self._clock(),
        )
        await self.store.add_audit_log(entry)
        logger.info("audit_recorded", action=action, entity_type=entity_type, entity_id=entity_id)
        return entry

    async def cleanup(self, retention_days: int = 90) -> int:
        """Delete entries older than the retention window. Returns rows removed."""
        cutoff = self._clock() - timedelta(days=retention_days)
        deleted = await self.store.delete_audit_logs_before(cutoff)
        logger.info("audit_cleanup", retention_days=retention_days, deleted=deleted)
        return deleted
