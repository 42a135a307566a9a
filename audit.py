from __future__ import annotations
import logging
from typing import Any, Optional

from database import create_document

logger = logging.getLogger(__name__)


async def log_activity(
    action: str,
    target_type: str,
    target_id: Any,
    actor_id: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
    request_meta: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Record who did what to which order/address in the "audit_log" collection."""
    entry = await create_document("audit_log", {
        "action": action,
        "target_type": target_type,
        "target_id": target_id,
        "actor_id": actor_id,
        "metadata": metadata or {},
        # ip_address / user_agent of the request, when known
        "properties": request_meta or {},
    })
    logger.info("audit %s %s#%s by %s", action, target_type, target_id, actor_id)
    return entry
