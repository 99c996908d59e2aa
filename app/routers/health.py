"""
Health check endpoints for diagnosing service dependencies.
"""
from fastapi import APIRouter

from app.config import get_settings
from app.pdf.fonts import get_font_chain
from app.records import InMemoryRecordStore, get_record_store

router = APIRouter(
    prefix="/health",
    tags=["health"],
)

VERSION = "1.0.0"


@router.get("")
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy", "version": VERSION}


@router.get("/dependencies")
async def health_check_dependencies():
    """
    Which backends this instance is wired to.

    Useful for spotting a deployment that silently fell back to the
    in-memory record store or has no email provider.
    """
    settings = get_settings()
    records = get_record_store()
    return {
        "status": "healthy",
        "environment": settings.environment,
        "record_store": "memory" if isinstance(records, InMemoryRecordStore) else "supabase",
        "byte_store": "gcs" if settings.gcs_bucket else "local",
        "email_configured": bool(settings.resend_api_key),
        "font_resolvers": [type(r).__name__ for r in get_font_chain().resolvers],
    }
