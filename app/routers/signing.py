"""
Public Signing API Router - token-based recipient endpoints.
Paths: /v1/sign/{token}

The sign-link token is the only credential. It is never logged raw; the
services put its fingerprint into the logging context.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Path, Request, Response

from app.auth import get_client_ip, get_user_agent
from app.models import (
    CompleteResponse,
    DeclineRequest,
    SaveFieldValueRequest,
    SaveSignatureRequest,
    SigningInfoResponse,
)
from app.services.envelope import EnvelopeOrchestrator, get_envelope_orchestrator
from app.services.sign_requests import SignRequestService, get_sign_request_service
from app.storage import content_disposition
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/v1/sign",
    tags=["signing"],
)

ERROR_RESPONSES = {
    404: {"description": "Unknown token"},
    409: {"description": "Document not active or signing in progress"},
    410: {"description": "Sign link expired"},
}


@router.get(
    "/{token}",
    response_model=SigningInfoResponse,
    responses=ERROR_RESPONSES,
)
async def open_signing_link(
    token: str = Path(..., description="Sign-link token"),
    service: SignRequestService = Depends(get_sign_request_service),
):
    """
    Recipient opens their link.

    Returns document metadata plus this recipient's fields and saved
    progress. Recorded in the audit trail as link_opened.
    """
    sign_request, document = await service.record_view(token)
    return SigningInfoResponse.from_records(document, sign_request)


@router.get("/{token}/file", responses=ERROR_RESPONSES)
async def get_signing_file(
    token: str = Path(..., description="Sign-link token"),
    service: SignRequestService = Depends(get_sign_request_service),
):
    """Current working copy, including signatures of earlier recipients."""
    document, pdf_bytes = await service.get_file(token)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": content_disposition(f"{document.title}.pdf")},
    )


@router.post(
    "/{token}/signature",
    response_model=SigningInfoResponse,
    responses=ERROR_RESPONSES,
)
async def save_signature(
    request_body: SaveSignatureRequest,
    token: str = Path(..., description="Sign-link token"),
    service: SignRequestService = Depends(get_sign_request_service),
):
    """Save a drawn or typed signature without completing."""
    sign_request = await service.save_signature_only(
        token, request_body.signature_data, request_body.field_id
    )
    document = await service.document_for(sign_request)
    return SigningInfoResponse.from_records(document, sign_request)


@router.post(
    "/{token}/field-value",
    response_model=SigningInfoResponse,
    responses=ERROR_RESPONSES,
)
async def save_field_value(
    request_body: SaveFieldValueRequest,
    token: str = Path(..., description="Sign-link token"),
    service: SignRequestService = Depends(get_sign_request_service),
):
    sign_request = await service.save_field_value(token, request_body.field_id, request_body.value)
    document = await service.document_for(sign_request)
    return SigningInfoResponse.from_records(document, sign_request)


@router.post(
    "/{token}/complete",
    response_model=CompleteResponse,
    responses={
        **ERROR_RESPONSES,
        400: {"description": "Required signature fields are empty"},
    },
)
async def complete_signing(
    request: Request,
    token: str = Path(..., description="Sign-link token"),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    """
    Finish signing.

    Idempotent: calling again after success returns the stored result
    without re-embedding.
    """
    sign_request, document = await orchestrator.complete(
        token,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    logger.info(f"Complete returned {sign_request.status.value}, document {document.status.value}")
    return CompleteResponse(
        status=sign_request.status,
        document_status=document.status,
        signed_at=sign_request.signed_at,
    )


@router.post(
    "/{token}/decline",
    response_model=CompleteResponse,
    responses=ERROR_RESPONSES,
)
async def decline_signing(
    request: Request,
    request_body: Optional[DeclineRequest] = None,
    token: str = Path(..., description="Sign-link token"),
    orchestrator: EnvelopeOrchestrator = Depends(get_envelope_orchestrator),
):
    """Decline to sign. The document is voided for everyone."""
    sign_request, document = await orchestrator.decline(
        token,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
        reason=request_body.reason if request_body else None,
    )
    return CompleteResponse(
        status=sign_request.status,
        document_status=document.status,
    )
