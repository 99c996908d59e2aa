"""
Envelope orchestration: everything that concerns a document's full set of
sign-requests rather than one of them.

Owner side: create, add recipients, place fields, send, resend, trash.
Recipient side: complete and decline go through the state machine, then
the envelope is re-evaluated from the record store to either finalize the
document or hand the chain to the next signer.
"""
import logging
from typing import Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from app import storage
from app.audit import record_event
from app.config import Settings, get_settings
from app.exceptions import (
    DocumentNotActiveError,
    NotFoundError,
    PlacementException,
    ValidationException,
)
from app.models import (
    ActorType,
    AddRecipientRequest,
    AuditEventType,
    AuditLogEntry,
    AuthenticatedOwner,
    CLOSED_DOCUMENT_STATUSES,
    Document,
    DocumentStatus,
    EmailTemplateType,
    PlaceFieldsRequest,
    PlacedField,
    RecipientInput,
    RecipientOverride,
    SignRequest,
    SignRequestStatus,
    new_id,
)
from app.pdf.embed import SigningError, measure_pages
from app.pdf.geometry import PlacementValidationError, validate_field_placement
from app.records import RecordStore
from app.services.sign_requests import (
    ACTIVE_DOCUMENT_STATUSES,
    OPEN_STATUSES,
    SignRequestService,
    is_owner_signer,
)
from app.storage import ByteStore
from app.utils.datetime_utils import days_from_now, utc_now
from app.utils.logging import mask_email, set_context
from app.utils.security import compute_bytes_hash

logger = logging.getLogger(__name__)


def _is_open(sign_request: SignRequest) -> bool:
    return sign_request.status in (SignRequestStatus.PENDING, SignRequestStatus.VIEWED)


class EnvelopeOrchestrator:
    """Coordinates the sign-requests of one document."""

    def __init__(
        self,
        records: RecordStore,
        byte_store: ByteStore,
        sign_requests: SignRequestService,
        settings: Optional[Settings] = None,
    ):
        self.records = records
        self.byte_store = byte_store
        self.sign_requests = sign_requests
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Owner access
    # -------------------------------------------------------------------------

    async def _owned_document(self, owner: AuthenticatedOwner, document_id: str) -> Document:
        document = await self.records.get_document(document_id)
        if not document or document.owner_id != owner.id or document.status == DocumentStatus.DELETED:
            raise NotFoundError("Document", document_id)
        set_context(document_id=document.id, owner_id=owner.id)
        return document

    async def get_document(
        self,
        owner: AuthenticatedOwner,
        document_id: str,
    ) -> Tuple[Document, List[SignRequest]]:
        document = await self._owned_document(owner, document_id)
        return document, await self.records.list_sign_requests(document.id)

    async def list_documents(self, owner: AuthenticatedOwner) -> List[Document]:
        documents = await self.records.list_documents(owner.id)
        return [d for d in documents if d.status != DocumentStatus.DELETED]

    async def get_document_file(self, owner: AuthenticatedOwner, document_id: str) -> Tuple[Document, bytes]:
        document = await self._owned_document(owner, document_id)
        key = document.voided_key or document.working_key
        return document, self.byte_store.get(key)

    async def _page_sizes(self, document: Document) -> List[Tuple[float, float]]:
        pdf_bytes = self.byte_store.get(document.original_key)
        return await run_in_threadpool(measure_pages, pdf_bytes)

    async def _validate_fields(
        self,
        document: Document,
        fields: List[PlacedField],
        render_width: Optional[float],
        render_height: Optional[float],
    ) -> None:
        if not fields:
            return
        page_sizes = await self._page_sizes(document)
        for field in fields:
            try:
                validate_field_placement(field, page_sizes, render_width, render_height)
            except PlacementValidationError as e:
                raise PlacementException(e.message, code=e.code, details=e.details)

    # -------------------------------------------------------------------------
    # Authoring
    # -------------------------------------------------------------------------

    async def create_document(
        self,
        owner: AuthenticatedOwner,
        title: str,
        pdf_bytes: bytes,
        signing_order: bool = False,
        recipients: Optional[List[RecipientInput]] = None,
    ) -> Tuple[Document, List[SignRequest]]:
        """Store the original upload and create a draft with draft sign-requests."""
        try:
            page_sizes = await run_in_threadpool(measure_pages, pdf_bytes)
        except SigningError as e:
            raise ValidationException("Uploaded file is not a readable PDF", details={"reason": str(e)})
        if not page_sizes:
            raise ValidationException("Uploaded PDF has no pages")

        document_id = new_id()
        key = storage.original_key(document_id)
        self.byte_store.put(key, pdf_bytes)

        document = await self.records.create_document(Document(
            id=document_id,
            owner_id=owner.id,
            owner_email=owner.email,
            owner_name=owner.name,
            title=title,
            original_key=key,
            signing_order=signing_order,
            page_count=len(page_sizes),
        ))
        set_context(document_id=document.id, owner_id=owner.id)

        sign_requests = []
        for index, recipient in enumerate(recipients or []):
            order = recipient.order if recipient.order else index + 1
            sign_requests.append(
                await self.sign_requests.create(document, recipient, order=order, draft=True)
            )

        await record_event(
            self.records,
            document.id,
            AuditEventType.DOCUMENT_CREATED,
            ActorType.SENDER,
            owner.email,
            meta={
                "title": title,
                "page_count": len(page_sizes),
                "recipients": len(sign_requests),
                "sha256": compute_bytes_hash(pdf_bytes),
            },
        )
        logger.info(f"Created document {document.id} with {len(sign_requests)} recipient(s)")
        return document, sign_requests

    async def add_recipient(
        self,
        owner: AuthenticatedOwner,
        document_id: str,
        request: AddRecipientRequest,
    ) -> SignRequest:
        document = await self._owned_document(owner, document_id)
        if document.status in CLOSED_DOCUMENT_STATUSES:
            raise DocumentNotActiveError(document.status.value)

        await self._validate_fields(
            document, request.fields, document.page1_render_width, document.page1_render_height
        )

        order = request.order
        if not order:
            existing = await self.records.list_sign_requests(document.id)
            order = max((sr.order for sr in existing), default=0) + 1

        # In an ordered chain a late recipient waits for their turn
        draft = request.draft or document.signing_order
        sign_request = await self.sign_requests.create(
            document, request, fields=request.fields, order=order, draft=draft
        )
        if document.signing_order and not request.draft and document.status == DocumentStatus.PENDING:
            await self._advance(document)
            sign_request = await self.records.get_sign_request(sign_request.id) or sign_request
        return sign_request

    async def place_fields(
        self,
        owner: AuthenticatedOwner,
        document_id: str,
        request: PlaceFieldsRequest,
    ) -> List[SignRequest]:
        """
        Replace field placements per sign-request. Draft documents only.

        Every field is checked against the live page sizes before anything
        is written; one bad field rejects the whole request.
        """
        document = await self._owned_document(owner, document_id)
        if document.status != DocumentStatus.DRAFT:
            raise DocumentNotActiveError(
                document.status.value, "Fields can only be placed while the document is a draft"
            )

        existing = {sr.id: sr for sr in await self.records.list_sign_requests(document.id)}
        unknown = [sr_id for sr_id in request.fields if sr_id not in existing]
        if unknown:
            raise ValidationException("Unknown sign request", details={"sign_request_ids": unknown})

        render_width = request.page1_render_width or document.page1_render_width
        render_height = request.page1_render_height or document.page1_render_height

        for fields in request.fields.values():
            await self._validate_fields(document, fields, render_width, render_height)

        updated = []
        for sr_id, fields in request.fields.items():
            sign_request = await self.records.update_sign_request(sr_id, {"fields": fields})
            updated.append(sign_request or existing[sr_id])

        if request.page1_render_width or request.page1_render_height:
            await self.records.update_document(document.id, {
                "page1_render_width": render_width,
                "page1_render_height": render_height,
            })
        logger.info(f"Placed fields for {len(updated)} sign request(s)")
        return updated

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    @staticmethod
    def _first_unsigned_group(sign_requests: List[SignRequest]) -> List[SignRequest]:
        """Open requests at the lowest order that still has unsigned work."""
        open_requests = [sr for sr in sign_requests if _is_open(sr)]
        if not open_requests:
            return []
        first = min(sr.order for sr in open_requests)
        return [sr for sr in open_requests if sr.order == first]

    async def send(self, owner: AuthenticatedOwner, document_id: str) -> List[SignRequest]:
        """
        Send the envelope.

        Without signing order every open request is invited. With signing
        order only the lowest-order group that has not been notified yet.
        All open requests share one expiry. A delivery failure aborts with
        DeliveryFailedError; requests invited before it stay invited.
        """
        document = await self._owned_document(owner, document_id)
        if document.status not in ACTIVE_DOCUMENT_STATUSES:
            raise DocumentNotActiveError(document.status.value)

        sign_requests = await self.records.list_sign_requests(document.id)
        if not sign_requests:
            raise ValidationException("No recipients to send to. Add signers for this document first.")

        expires_at = days_from_now(self.settings.sign_link_ttl_days)
        refreshed = []
        for sr in sign_requests:
            if _is_open(sr):
                sr = await self.records.update_sign_request(sr.id, {"expires_at": expires_at}) or sr
            refreshed.append(sr)

        if document.signing_order:
            targets = [sr for sr in self._first_unsigned_group(refreshed) if sr.notified_at is None]
        else:
            targets = [sr for sr in refreshed if _is_open(sr)]

        notified = []
        for sr in targets:
            notified.append(await self.sign_requests.invite(document, sr))

        await self.records.update_document(
            document.id,
            {"status": DocumentStatus.PENDING, "sent_at": utc_now()},
            where={"status": DocumentStatus.DRAFT},
        )
        logger.info(f"Sent document {document.id} to {len(notified)} recipient(s)")
        return notified

    async def resend(
        self,
        owner: AuthenticatedOwner,
        document_id: str,
        overrides: Optional[List[RecipientOverride]] = None,
    ) -> List[SignRequest]:
        """
        Re-invite everyone who has not signed, after applying name/email fixes.

        With signing order, only requests already reached by the chain.
        """
        document = await self._owned_document(owner, document_id)
        if document.status not in ACTIVE_DOCUMENT_STATUSES:
            raise DocumentNotActiveError(document.status.value)

        sign_requests: Dict[str, SignRequest] = {
            sr.id: sr for sr in await self.records.list_sign_requests(document.id)
        }

        for override in overrides or []:
            sr = sign_requests.get(override.sign_request_id)
            if sr is None:
                raise ValidationException(
                    "Unknown sign request",
                    details={"sign_request_id": override.sign_request_id},
                )
            values = {}
            if override.email and override.email.strip():
                values["signer_email"] = override.email.strip().lower()
            if override.name and override.name.strip():
                values["signer_name"] = override.name.strip()
            if values and _is_open(sr):
                sign_requests[sr.id] = await self.records.update_sign_request(
                    sr.id, values, where={"status": OPEN_STATUSES}
                ) or sr
                logger.info(f"Updated recipient of {sr.id} to {mask_email(sign_requests[sr.id].signer_email)}")

        targets = [sr for sr in sign_requests.values() if _is_open(sr)]
        if document.signing_order:
            targets = [sr for sr in targets if sr.notified_at is not None]

        expires_at = days_from_now(self.settings.sign_link_ttl_days)
        notified = []
        for sr in targets:
            sr = await self.records.update_sign_request(sr.id, {"expires_at": expires_at}) or sr
            notified.append(await self.sign_requests.invite(document, sr))

        logger.info(f"Resent document {document.id} to {len(notified)} recipient(s)")
        return notified

    # -------------------------------------------------------------------------
    # Recipient actions
    # -------------------------------------------------------------------------

    async def complete(
        self,
        token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[SignRequest, Document]:
        """Complete one sign-request, then finalize or advance the envelope."""
        sign_request, newly_signed = await self.sign_requests.complete(token, ip, user_agent)
        if newly_signed:
            await self._finalize(sign_request)

        document = await self.records.get_document(sign_request.document_id)
        if not document:
            raise NotFoundError("Document", sign_request.document_id)
        return sign_request, document

    async def decline(
        self,
        token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Tuple[SignRequest, Document]:
        sign_request = await self.sign_requests.decline(token, ip, user_agent, reason)
        document = await self.records.get_document(sign_request.document_id)
        if not document:
            raise NotFoundError("Document", sign_request.document_id)
        return sign_request, document

    async def _finalize(self, completed: SignRequest) -> None:
        """
        Decide, from fresh counts, whether the envelope is done.

        Only the caller whose conditional update flips the document to
        completed sends the completion emails.
        """
        signed, total = await self.records.count_signed(completed.document_id)
        if total > 0 and signed == total:
            document = await self.records.update_document(
                completed.document_id,
                {"status": DocumentStatus.COMPLETED, "completed_at": utc_now()},
                where={"status": ACTIVE_DOCUMENT_STATUSES},
            )
            if document is None:
                logger.info(f"Document {completed.document_id} already finalized elsewhere")
                return
            logger.info(f"Document {document.id} completed ({signed}/{total} signed)")
            for sr in await self.records.list_sign_requests(document.id):
                await self.sign_requests.notify(EmailTemplateType.DOCUMENT_COMPLETED, document, sr)
            return

        document = await self.records.get_document(completed.document_id)
        if document is None:
            return
        logger.info(f"Document {document.id} at {signed}/{total} signed")
        await self.sign_requests.notify(EmailTemplateType.SIGNED_WAITING_FOR_OTHERS, document, completed)
        if document.signing_order and document.status == DocumentStatus.PENDING:
            await self._advance(document)

    async def _advance(self, document: Document) -> List[SignRequest]:
        """
        Invite the next group of an ordered chain.

        The next group is the lowest order with un-notified open requests,
        and only once every lower order is signed. Each invitation is
        claimed with a conditional update on notified_at so concurrent
        completions never double-send; a failed send releases the claim.
        """
        sign_requests = await self.records.list_sign_requests(document.id)
        waiting = [sr for sr in sign_requests if _is_open(sr) and sr.notified_at is None]
        if not waiting:
            return []

        next_order = min(sr.order for sr in waiting)
        if any(sr.order < next_order and not sr.is_signed for sr in sign_requests):
            return []

        advanced = []
        for sr in (s for s in waiting if s.order == next_order):
            claimed = await self.records.update_sign_request(
                sr.id,
                {"notified_at": utc_now(), "expires_at": days_from_now(self.settings.sign_link_ttl_days)},
                where={"notified_at": None, "status": OPEN_STATUSES},
            )
            if claimed is None:
                continue

            if not is_owner_signer(document, claimed):
                delivered = await self.sign_requests.notify(EmailTemplateType.SIGN_REQUEST, document, claimed)
                if not delivered:
                    await self.records.update_sign_request(
                        claimed.id,
                        {"notified_at": None},
                        where={"notified_at": claimed.notified_at},
                    )
                    logger.error(f"Could not invite next signer {claimed.id}, claim released")
                    continue

            await record_event(
                self.records,
                document.id,
                AuditEventType.SENT_FOR_SIGNATURE,
                ActorType.SYSTEM,
                "signing-order",
                sign_request_id=claimed.id,
                meta={"signer_email": claimed.signer_email, "order": claimed.order},
            )
            advanced.append(claimed)

        if advanced:
            logger.info(f"Advanced signing order to {next_order} ({len(advanced)} recipient(s))")
        return advanced

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    async def trash(self, owner: AuthenticatedOwner, document_id: str) -> Document:
        """Soft delete. Stored bytes are kept."""
        document = await self._owned_document(owner, document_id)
        updated = await self.records.update_document(document.id, {"status": DocumentStatus.DELETED})
        logger.info(f"Document {document.id} moved to trash")
        return updated or document

    async def list_audit(self, owner: AuthenticatedOwner, document_id: str) -> List[AuditLogEntry]:
        document = await self._owned_document(owner, document_id)
        return await self.records.list_audit(document.id)


# Singleton instance
_orchestrator: Optional[EnvelopeOrchestrator] = None


def get_envelope_orchestrator() -> EnvelopeOrchestrator:
    """Get the orchestrator singleton sharing the sign-request service's backends."""
    global _orchestrator
    if _orchestrator is None:
        from app.services.sign_requests import get_sign_request_service

        service = get_sign_request_service()
        _orchestrator = EnvelopeOrchestrator(
            records=service.records,
            byte_store=service.byte_store,
            sign_requests=service,
        )
    return _orchestrator
