"""
Owner API: documents, recipients, field placement and sending.
Paths: /v1/documents
"""
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Path, Response, UploadFile
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from app.auth import get_current_owner
from app.exceptions import ValidationException
from app.models import (
    AddRecipientRequest,
    AuditLogEntry,
    AuthenticatedOwner,
    DocumentResponse,
    PlaceFieldsRequest,
    RecipientInput,
    ResendRequest,
    SendResponse,
    SignRequestSummary,
)
from app.services.envelope import EnvelopeOrchestrator, get_envelope_orchestrator
from app.storage import content_disposition


router = APIRouter(
    prefix="/v1/documents",
    tags=["documents"],
)

MAX_UPLOAD_BYTES = 25 * 1024 * 1024

_recipients_adapter = TypeAdapter(List[RecipientInput])


def _parse_recipients(raw: Optional[str]) -> List[RecipientInput]:
    """Recipients arrive as a JSON array in a multipart form field."""
    if not raw:
        return []
    try:
        return _recipients_adapter.validate_python(json.loads(raw))
    except (ValueError, PydanticValidationError) as e:
        raise ValidationException("Invalid recipients", details={"reason": str(e)})


@router.post(
    "",
    response_model=DocumentResponse,
    status_code=201,
)
async def create_document(
    file: UploadFile = File(..., description="PDF to be signed"),
    title: Optional[str] = Form(default=None),
    signing_order: bool = Form(default=False, alias="signingOrder"),
    recipients: Optional[str] = Form(default=None, description="JSON array of {name, email, order}"),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    """Upload a PDF and create a draft envelope."""
    pdf_bytes = await file.read()
    if not pdf_bytes:
        raise ValidationException("Uploaded file is empty")
    if len(pdf_bytes) > MAX_UPLOAD_BYTES:
        raise ValidationException(
            "Uploaded file is too large",
            details={"max_bytes": MAX_UPLOAD_BYTES, "size": len(pdf_bytes)},
        )

    document, sign_requests = await orchestrator.create_document(
        owner,
        title=(title or file.filename or "Untitled document").strip(),
        pdf_bytes=pdf_bytes,
        signing_order=signing_order,
        recipients=_parse_recipients(recipients),
    )
    return DocumentResponse.from_records(document, sign_requests)


@router.get("", response_model=List[DocumentResponse])
async def list_documents(
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    documents = await orchestrator.list_documents(owner)
    return [DocumentResponse.from_records(d, []) for d in documents]


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    document, sign_requests = await orchestrator.get_document(owner, document_id)
    return DocumentResponse.from_records(document, sign_requests)


@router.get("/{document_id}/file")
async def get_document_file(
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    """Latest PDF: the void render, else the signed working copy, else the original."""
    document, pdf_bytes = await orchestrator.get_document_file(owner, document_id)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": content_disposition(f"{document.title}.pdf")},
    )


@router.post(
    "/{document_id}/recipients",
    response_model=SignRequestSummary,
    status_code=201,
)
async def add_recipient(
    request_body: AddRecipientRequest,
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    sign_request = await orchestrator.add_recipient(owner, document_id, request_body)
    return SignRequestSummary.from_record(sign_request)


@router.put("/{document_id}/fields", response_model=List[SignRequestSummary])
async def place_fields(
    request_body: PlaceFieldsRequest,
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    """Replace field placements; every field is validated against the page it lands on."""
    updated = await orchestrator.place_fields(owner, document_id, request_body)
    return [SignRequestSummary.from_record(sr) for sr in updated]


@router.post("/{document_id}/send", response_model=SendResponse)
async def send_document(
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    notified = await orchestrator.send(owner, document_id)
    return SendResponse(sent_count=len(notified))


@router.post("/{document_id}/resend", response_model=SendResponse)
async def resend_document(
    request_body: Optional[ResendRequest] = None,
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    overrides = request_body.recipients if request_body else []
    notified = await orchestrator.resend(owner, document_id, overrides)
    return SendResponse(sent_count=len(notified))


@router.delete("/{document_id}", response_model=DocumentResponse)
async def trash_document(
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    """Soft delete; the document disappears from listings."""
    document = await orchestrator.trash(owner, document_id)
    return DocumentResponse.from_records(document, [])


@router.get("/{document_id}/audit", response_model=List[AuditLogEntry])
async def list_audit(
    document_id: str = Path(...),
    owner: AuthenticatedOwner = Depends(get_current_owner),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    return await orchestrator.list_audit(owner, document_id)
