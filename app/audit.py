"""
Append-only audit trail. Writes are best-effort: a failed write is logged
and never fails the operation that triggered it.
"""
import logging
from typing import Any, Dict, Optional

from app.models import ActorType, AuditEventType, AuditLogEntry
from app.records import RecordStore

logger = logging.getLogger(__name__)


async def record_event(
    records: RecordStore,
    document_id: str,
    event_type: AuditEventType,
    actor_type: ActorType,
    actor: str,
    sign_request_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    entry = AuditLogEntry(
        document_id=document_id,
        sign_request_id=sign_request_id,
        actor_type=actor_type,
        actor=actor,
        event_type=event_type,
        meta=meta or {},
    )
    try:
        await records.append_audit(entry)
    except Exception as e:
        logger.error(f"Audit write failed for {event_type.value} on document {document_id}: {e}")
