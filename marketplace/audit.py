import logging
from typing import Optional

from marketplace.models import AuditLogDB

logger = logging.getLogger(__name__)


async def record_admin_action(db, actor_id: Optional[str], action: str, resource_type: str,
                              resource_id: Optional[str] = None, metadata: Optional[dict] = None):
    entry = AuditLogDB(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata or {},
    )
    try:
        await db.audit_logs.insert_one(entry.model_dump())
    except Exception as exc:
        logger.error(f"Failed to write audit log for {action}", extra={"user_id": actor_id, "error": str(exc)})
