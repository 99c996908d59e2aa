"""
Supabase client module for record storage.

Uses the service role key: recipients are anonymous token holders and owner
access is checked in the service layer, so row-level security is not the
access boundary here.

Expected schema (PostgREST):
    documents       id pk, owner_id idx
    sign_requests   id pk, document_id idx, sign_link_token unique
    audit_logs      id pk, document_id idx
"""
import logging
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from app.config import Settings, get_settings
from app.records import RecordStore

logger = logging.getLogger(__name__)


class SupabaseRecordStore(RecordStore):
    """RecordStore over Supabase tables."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(
                self.settings.supabase_url,
                self.settings.supabase_service_role_key,
            )
        return self._client

    def table(self, table_name: str):
        return self.client.table(table_name)

    @staticmethod
    def _apply_where(query, where: Dict[str, Any]):
        for column, value in where.items():
            if value is None:
                query = query.is_(column, "null")
            elif isinstance(value, list):
                query = query.in_(column, value)
            else:
                query = query.eq(column, value)
        return query

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        result = self.table(table).insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Insert into {table} returned no data")
        return result.data[0]

    async def select(
        self,
        table: str,
        where: Dict[str, Any],
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = self._apply_where(self.table(table).select("*"), where)
        if order_by:
            query = query.order(order_by)
        result = query.execute()
        return result.data or []

    async def update(
        self,
        table: str,
        where: Dict[str, Any],
        values: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        query = self._apply_where(self.table(table).update(values), where)
        result = query.execute()
        if not result.data:
            logger.info(f"Conditional update on {table} matched no rows")
        return result.data or []


# Singleton instance
_supabase_client: Optional[SupabaseRecordStore] = None


def get_supabase_client() -> SupabaseRecordStore:
    """Get the Supabase record store singleton."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = SupabaseRecordStore()
    return _supabase_client
