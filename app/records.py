"""
Record store: documents, sign-requests and audit log rows.

Backends implement four primitives over plain dict rows (insert, select,
update, with a `where` filter). update() is conditional: it only touches
rows matching every clause and returns the rows it changed, so an empty
result means another writer got there first.

Where clauses:
    {"col": value}          col = value
    {"col": None}           col IS NULL
    {"col": [a, b]}         col IN (a, b)
"""
import copy
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from app.config import get_settings
from app.models import (
    AuditLogEntry,
    Document,
    SignRequest,
    SignRequestStatus,
)
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

DOCUMENTS = "documents"
SIGN_REQUESTS = "sign_requests"
AUDIT_LOGS = "audit_logs"

# Tokens must be unique across all sign-requests
UNIQUE_COLUMNS = {SIGN_REQUESTS: ("sign_link_token",)}


def serialize_value(value: Any) -> Any:
    """Python value -> JSON-compatible column value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def serialize_row(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: serialize_value(v) for k, v in values.items()}


class RecordStore:
    """Base record store: abstract primitives plus typed helpers built on them."""

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def select(
        self,
        table: str,
        where: Dict[str, Any],
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def update(
        self,
        table: str,
        where: Dict[str, Any],
        values: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def select_one(self, table: str, where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, where)
        return rows[0] if rows else None

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def create_document(self, document: Document) -> Document:
        row = await self.insert(DOCUMENTS, serialize_row(document.model_dump()))
        return Document(**row)

    async def get_document(self, document_id: str) -> Optional[Document]:
        row = await self.select_one(DOCUMENTS, {"id": document_id})
        return Document(**row) if row else None

    async def list_documents(self, owner_id: str) -> List[Document]:
        rows = await self.select(DOCUMENTS, {"owner_id": owner_id}, order_by="created_at")
        return [Document(**r) for r in rows]

    async def update_document(
        self,
        document_id: str,
        values: Dict[str, Any],
        where: Optional[Dict[str, Any]] = None,
    ) -> Optional[Document]:
        """
        Update a document, optionally only if `where` still holds.

        Returns the updated document, or None when the condition failed.
        """
        values = {**values, "updated_at": utc_now()}
        rows = await self.update(
            DOCUMENTS,
            serialize_row({**(where or {}), "id": document_id}),
            serialize_row(values),
        )
        return Document(**rows[0]) if rows else None

    # -------------------------------------------------------------------------
    # Sign-requests
    # -------------------------------------------------------------------------

    async def create_sign_request(self, sign_request: SignRequest) -> SignRequest:
        row = await self.insert(SIGN_REQUESTS, serialize_row(sign_request.model_dump()))
        return SignRequest(**row)

    async def get_sign_request(self, sign_request_id: str) -> Optional[SignRequest]:
        row = await self.select_one(SIGN_REQUESTS, {"id": sign_request_id})
        return SignRequest(**row) if row else None

    async def get_sign_request_by_token(self, token: str) -> Optional[SignRequest]:
        if not token:
            return None
        row = await self.select_one(SIGN_REQUESTS, {"sign_link_token": token})
        return SignRequest(**row) if row else None

    async def list_sign_requests(self, document_id: str) -> List[SignRequest]:
        rows = await self.select(SIGN_REQUESTS, {"document_id": document_id}, order_by="order")
        return [SignRequest(**r) for r in rows]

    async def update_sign_request(
        self,
        sign_request_id: str,
        values: Dict[str, Any],
        where: Optional[Dict[str, Any]] = None,
    ) -> Optional[SignRequest]:
        """Conditional update; None when `where` no longer holds."""
        values = {**values, "updated_at": utc_now()}
        rows = await self.update(
            SIGN_REQUESTS,
            serialize_row({**(where or {}), "id": sign_request_id}),
            serialize_row(values),
        )
        return SignRequest(**rows[0]) if rows else None

    async def count_signed(self, document_id: str) -> Tuple[int, int]:
        """(signed, total) read fresh from the store."""
        rows = await self.select(SIGN_REQUESTS, {"document_id": document_id})
        signed = sum(1 for r in rows if r.get("status") == SignRequestStatus.SIGNED.value)
        return signed, len(rows)

    # -------------------------------------------------------------------------
    # Audit log
    # -------------------------------------------------------------------------

    async def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        row = await self.insert(AUDIT_LOGS, serialize_row(entry.model_dump()))
        return AuditLogEntry(**row)

    async def list_audit(self, document_id: str) -> List[AuditLogEntry]:
        rows = await self.select(AUDIT_LOGS, {"document_id": document_id}, order_by="created_at")
        return [AuditLogEntry(**r) for r in rows]


def _matches(row: Dict[str, Any], where: Dict[str, Any]) -> bool:
    for column, expected in where.items():
        actual = row.get(column)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryRecordStore(RecordStore):
    """
    Process-local store for development and tests.

    No await happens between the match and the write in update(), so each
    conditional update is atomic with respect to other coroutines.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            DOCUMENTS: {},
            SIGN_REQUESTS: {},
            AUDIT_LOGS: {},
        }

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.tables.setdefault(table, {})
        row = serialize_row(row)
        for column in UNIQUE_COLUMNS.get(table, ()):
            if any(r.get(column) == row.get(column) for r in rows.values()):
                raise ValueError(f"Duplicate value for unique column {table}.{column}")
        rows[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def select(
        self,
        table: str,
        where: Dict[str, Any],
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        where = serialize_row(where)
        rows = [copy.deepcopy(r) for r in self.tables.get(table, {}).values() if _matches(r, where)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)))
        return rows

    async def update(
        self,
        table: str,
        where: Dict[str, Any],
        values: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        where = serialize_row(where)
        values = serialize_row(values)
        updated = []
        for row in self.tables.get(table, {}).values():
            if _matches(row, where):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated


# Singleton instance
_record_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    """Get the record store singleton selected by RECORD_STORE."""
    global _record_store
    if _record_store is None:
        settings = get_settings()
        if settings.record_store == "memory":
            logger.warning("Using in-memory record store; data is lost on restart")
            _record_store = InMemoryRecordStore()
        else:
            from app.supabase_client import get_supabase_client
            _record_store = get_supabase_client()
    return _record_store
