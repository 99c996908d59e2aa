"""
Sign-request state machine.

One recipient's task against one document:

    pending -> viewed -> signed
    pending | viewed -> declined

signed and declined are terminal. Once signed, every mutating call returns
the stored record unchanged. The recipient authenticates with the
sign-link token alone, and every token entry point checks link expiry.
"""
import asyncio
import logging
import time
from typing import List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from app import storage
from app.audit import record_event
from app.config import Settings, get_settings
from app.email import EmailDeliveryStatus, EmailService
from app.exceptions import (
    AlreadySignedError,
    DeliveryFailedError,
    DocumentNotActiveError,
    FieldsUnsignedError,
    LinkExpiredError,
    NotFoundError,
    SigningInProgressError,
    ValidationException,
)
from app.models import (
    ActorType,
    ApproveField,
    AuditEventType,
    CLOSED_DOCUMENT_STATUSES,
    Document,
    DocumentStatus,
    EmailTemplateContext,
    EmailTemplateType,
    OPEN_SIGN_REQUEST_STATUSES,
    PlacedField,
    RecipientInput,
    SignRequest,
    SignRequestStatus,
)
from app.pdf.embed import PDFEmbedder, SigningError
from app.records import RecordStore
from app.storage import ByteStore
from app.utils.datetime_utils import days_from_now, is_past, seconds_since, utc_now
from app.utils.logging import fingerprint, mask_email, set_context
from app.utils.security import generate_sign_link_token

logger = logging.getLogger(__name__)

# A completion lock older than this is assumed abandoned and may be taken over
LOCK_STALE_SECONDS = 120

# A duplicate completion waits this long for the lock holder before giving up
LOCK_WAIT_SECONDS = LOCK_STALE_SECONDS
LOCK_POLL_SECONDS = 0.2

# Re-embed attempts when other recipients keep replacing the working copy
MAX_PUBLISH_ATTEMPTS = 5

OPEN_STATUSES = list(OPEN_SIGN_REQUEST_STATUSES)
ACTIVE_DOCUMENT_STATUSES = [DocumentStatus.DRAFT, DocumentStatus.PENDING]


def is_owner_signer(document: Document, sign_request: SignRequest) -> bool:
    return sign_request.signer_email.strip().lower() == document.owner_email.strip().lower()


class SignRequestService:
    """Lifecycle of individual sign-requests."""

    def __init__(
        self,
        records: RecordStore,
        byte_store: ByteStore,
        embedder: PDFEmbedder,
        notifier: EmailService,
        settings: Optional[Settings] = None,
    ):
        self.records = records
        self.byte_store = byte_store
        self.embedder = embedder
        self.notifier = notifier
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Lookup and guards
    # -------------------------------------------------------------------------

    async def _resolve(self, token: str) -> Tuple[SignRequest, Document]:
        token_fp = fingerprint(token, "tok_")
        sign_request = await self.records.get_sign_request_by_token(token)
        if not sign_request:
            logger.warning(f"Unknown sign-link token {token_fp}")
            raise NotFoundError("Sign request", token_fp)

        document = await self.document_for(sign_request)
        set_context(document_id=document.id, sign_request_id=sign_request.id, token_fp=token_fp)
        return sign_request, document

    async def document_for(self, sign_request: SignRequest) -> Document:
        document = await self.records.get_document(sign_request.document_id)
        if not document:
            raise NotFoundError("Document", sign_request.document_id)
        return document

    @staticmethod
    def _check_expiry(sign_request: SignRequest) -> None:
        if is_past(sign_request.expires_at):
            logger.info(f"Sign-link for request {sign_request.id} expired at {sign_request.expires_at}")
            raise LinkExpiredError()

    @staticmethod
    def _ensure_open(sign_request: SignRequest, document: Document) -> None:
        if sign_request.status == SignRequestStatus.DECLINED:
            raise DocumentNotActiveError(
                SignRequestStatus.DECLINED.value,
                "This signing request was declined",
            )
        if document.status in CLOSED_DOCUMENT_STATUSES:
            raise DocumentNotActiveError(document.status.value)

    # -------------------------------------------------------------------------
    # Creation and invitations
    # -------------------------------------------------------------------------

    async def create(
        self,
        document: Document,
        recipient: RecipientInput,
        fields: Optional[List[PlacedField]] = None,
        order: Optional[int] = None,
        draft: bool = True,
    ) -> SignRequest:
        """
        Create a sign-request with a fresh capability token.

        draft=True leaves it dormant: no expiry, no invitation, no audit and
        no document status change. Otherwise the invitation goes out now.
        """
        sign_request = SignRequest(
            document_id=document.id,
            signer_email=recipient.email,
            signer_name=recipient.name,
            sign_link_token=generate_sign_link_token(),
            order=recipient.order if order is None else order,
            fields=list(fields or []),
        )
        if not draft:
            sign_request.expires_at = days_from_now(self.settings.sign_link_ttl_days)

        sign_request = await self.records.create_sign_request(sign_request)
        logger.info(
            f"Created sign request {sign_request.id} for {mask_email(recipient.email)} "
            f"(order={sign_request.order}, draft={draft})"
        )

        if draft:
            return sign_request

        sign_request = await self.invite(document, sign_request)
        if document.status == DocumentStatus.DRAFT:
            await self.records.update_document(
                document.id,
                {"status": DocumentStatus.PENDING, "sent_at": utc_now()},
                where={"status": DocumentStatus.DRAFT},
            )
        return sign_request

    def _context(self, document: Document, sign_request: SignRequest) -> EmailTemplateContext:
        link = self.settings.sign_url_for(sign_request.sign_link_token)
        return EmailTemplateContext(
            document_title=document.title,
            recipient_name=sign_request.signer_name,
            sender_name=document.owner_name,
            sender_email=document.owner_email,
            sign_url=link,
            view_url=link,
        )

    async def invite(self, document: Document, sign_request: SignRequest) -> SignRequest:
        """
        Send the signing invitation and stamp notified_at.

        The owner signing their own document is never emailed but still
        counts as notified.

        Raises:
            DeliveryFailedError: The provider rejected or could not deliver
        """
        if is_owner_signer(document, sign_request):
            logger.info(f"Sign request {sign_request.id} belongs to the owner, not emailing")
        else:
            result = await self.notifier.send(
                EmailTemplateType.SIGN_REQUEST,
                sign_request.signer_email,
                self._context(document, sign_request),
            )
            if result.delivery_status == EmailDeliveryStatus.SKIPPED:
                logger.warning(f"Invitation for {sign_request.id} not emailed: {result.error}")
            elif not result.success:
                raise DeliveryFailedError(result.failure_kind.value, sign_request.signer_email)

        updated = await self.records.update_sign_request(sign_request.id, {"notified_at": utc_now()})
        await record_event(
            self.records,
            document.id,
            AuditEventType.SENT_FOR_SIGNATURE,
            ActorType.SENDER,
            document.owner_email,
            sign_request_id=sign_request.id,
            meta={"signer_email": sign_request.signer_email, "signer_name": sign_request.signer_name},
        )
        return updated or sign_request

    async def notify(
        self,
        template: EmailTemplateType,
        document: Document,
        sign_request: SignRequest,
    ) -> bool:
        """
        Best-effort notification; failures are logged and reported as False.

        A send skipped because no provider is configured counts as done.
        """
        try:
            result = await self.notifier.send(
                template,
                sign_request.signer_email,
                self._context(document, sign_request),
            )
        except Exception as e:
            logger.error(f"{template.value} notification for {sign_request.id} raised: {e}")
            return False
        if result.delivery_status == EmailDeliveryStatus.SKIPPED:
            return True
        if not result.success:
            logger.error(f"{template.value} notification for {sign_request.id} failed: {result.error}")
        return result.success

    # -------------------------------------------------------------------------
    # Recipient reads
    # -------------------------------------------------------------------------

    async def record_view(self, token: str) -> Tuple[SignRequest, Document]:
        """Link opened: expiry check plus a best-effort audit entry. Status is untouched."""
        sign_request, document = await self._resolve(token)
        self._check_expiry(sign_request)
        await record_event(
            self.records,
            document.id,
            AuditEventType.LINK_OPENED,
            ActorType.SIGNER,
            sign_request.signer_email,
            sign_request_id=sign_request.id,
        )
        return sign_request, document

    async def get_info(self, token: str) -> Tuple[SignRequest, Document]:
        sign_request, document = await self._resolve(token)
        self._check_expiry(sign_request)
        return sign_request, document

    async def get_file(self, token: str) -> Tuple[Document, bytes]:
        """Current document bytes as the recipient should see them."""
        sign_request, document = await self._resolve(token)
        self._check_expiry(sign_request)
        key = document.voided_key or document.working_key
        return document, self.byte_store.get(key)

    # -------------------------------------------------------------------------
    # Partial saves
    # -------------------------------------------------------------------------

    async def _save(self, sign_request: SignRequest, values: dict) -> SignRequest:
        updated = await self.records.update_sign_request(
            sign_request.id, values, where={"status": OPEN_STATUSES}
        )
        if updated is None:
            # Moved to a terminal state meanwhile
            current = await self.records.get_sign_request(sign_request.id)
            return current or sign_request
        return updated

    async def save_signature_only(
        self,
        token: str,
        payload: str,
        field_id: Optional[str] = None,
    ) -> SignRequest:
        """
        Store a signature payload without completing.

        With field_id the payload goes to that field's slot, otherwise to the
        legacy single-payload slot.
        """
        sign_request, document = await self._resolve(token)
        if sign_request.is_signed:
            return sign_request
        self._check_expiry(sign_request)
        self._ensure_open(sign_request, document)

        if field_id:
            if field_id not in {f.id for f in sign_request.signature_fields}:
                raise ValidationException(
                    f"Unknown signature field: {field_id}",
                    details={"field_id": field_id},
                )
            values = {"field_signatures": {**sign_request.field_signatures, field_id: payload}}
        else:
            values = {"signature_data": payload}

        return await self._save(sign_request, values)

    async def save_field_value(self, token: str, field_id: str, value: str) -> SignRequest:
        sign_request, document = await self._resolve(token)
        if sign_request.is_signed:
            return sign_request
        self._check_expiry(sign_request)
        self._ensure_open(sign_request, document)

        field = next((f for f in sign_request.fields if f.id == field_id), None)
        if field is None or field.is_signature:
            raise ValidationException(
                f"Unknown value field: {field_id}",
                details={"field_id": field_id},
            )
        values = {"field_values": {**sign_request.field_values, field_id: value.strip()}}
        return await self._save(sign_request, values)

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    async def _acquire_lock(self, sign_request: SignRequest) -> Optional[SignRequest]:
        """
        Take the completion lock with a conditional update.

        Returns the locked record, or None if someone else holds it (or the
        request left the open states).
        """
        where = {"status": OPEN_STATUSES, "signing_started_at": None}
        started = seconds_since(sign_request.signing_started_at)
        if started is not None and started >= LOCK_STALE_SECONDS:
            logger.warning(f"Taking over stale completion lock on {sign_request.id} ({started:.0f}s old)")
            where["signing_started_at"] = sign_request.signing_started_at
        return await self.records.update_sign_request(
            sign_request.id, {"signing_started_at": utc_now()}, where=where
        )

    async def _wait_for_lock(self, sign_request_id: str, deadline: float) -> SignRequest:
        """
        Poll until the lock holder finishes, lets go, or goes stale.

        Raises:
            SigningInProgressError: Still locked when the deadline passes
        """
        while time.monotonic() < deadline:
            await asyncio.sleep(LOCK_POLL_SECONDS)
            current = await self.records.get_sign_request(sign_request_id)
            if current is None:
                raise NotFoundError("Sign request", sign_request_id)
            if current.is_signed or current.status not in OPEN_SIGN_REQUEST_STATUSES:
                return current
            held = seconds_since(current.signing_started_at)
            if held is None or held >= LOCK_STALE_SECONDS:
                return current
        raise SigningInProgressError()

    async def _release_lock(self, sign_request_id: str) -> None:
        await self.records.update_sign_request(
            sign_request_id,
            {"signing_started_at": None},
            where={"status": OPEN_STATUSES},
        )

    async def _embed_and_publish(self, document_id: str, sign_request: SignRequest) -> str:
        """
        Embed against the current working copy and publish the result.

        Publishing is a compare-and-swap on signed_key; when another
        recipient published first, start again from their copy.
        """
        for attempt in range(1, MAX_PUBLISH_ATTEMPTS + 1):
            document = await self.records.get_document(document_id)
            if not document:
                raise NotFoundError("Document", document_id)
            base_key = document.signed_key

            source = self.byte_store.get(document.working_key)
            output = await run_in_threadpool(
                self.embedder.embed,
                source,
                sign_request.fields,
                field_signatures=sign_request.field_signatures,
                legacy_payload=sign_request.signature_data,
                text_values=sign_request.field_values,
                signer_label=sign_request.signer_name,
                record_id=sign_request.id,
                render_width=document.page1_render_width,
                render_height=document.page1_render_height,
            )

            new_key = storage.signed_key(document_id)
            self.byte_store.put(new_key, output)

            published = await self.records.update_document(
                document_id, {"signed_key": new_key}, where={"signed_key": base_key}
            )
            if published:
                logger.info(f"Published working copy {new_key} (attempt {attempt})")
                return new_key
            logger.info(f"Working copy of {document_id} changed during embed, retrying")

        raise SigningError(f"Could not publish working copy after {MAX_PUBLISH_ATTEMPTS} attempts")

    async def complete(
        self,
        token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[SignRequest, bool]:
        """
        Finish the recipient's part: validate, embed, mark signed.

        Returns the record and whether this call did the signing. A repeated
        call on a signed request returns it (False) without re-embedding, and
        so does a duplicate that waited on the lock while another call signed.

        Raises:
            LinkExpiredError, DocumentNotActiveError, FieldsUnsignedError,
            SigningInProgressError
        """
        sign_request, document = await self._resolve(token)
        if sign_request.is_signed:
            logger.info(f"Sign request {sign_request.id} already signed, returning stored state")
            return sign_request, False
        self._check_expiry(sign_request)
        self._ensure_open(sign_request, document)

        missing = sign_request.unsigned_required_fields()
        if missing:
            raise FieldsUnsignedError(missing, sign_request.signer_email)

        locked = await self._acquire_lock(sign_request)
        deadline = time.monotonic() + LOCK_WAIT_SECONDS
        while locked is None:
            # Another call for this token is embedding; wait for its outcome
            current = await self._wait_for_lock(sign_request.id, deadline)
            if current.is_signed:
                logger.info(f"Sign request {current.id} signed by a concurrent call")
                return current, False
            latest = await self.records.get_document(document.id)
            self._ensure_open(current, latest or document)
            locked = await self._acquire_lock(current)

        try:
            await self._embed_and_publish(document.id, locked)

            signed_at = utc_now()
            values = {
                "status": SignRequestStatus.SIGNED,
                "signed_at": signed_at,
                "signer_ip": ip,
                "user_agent": user_agent[:500] if user_agent else None,
                "signing_started_at": None,
            }
            if any(isinstance(f, ApproveField) for f in locked.fields):
                values["approved_at"] = signed_at

            updated = await self.records.update_sign_request(
                sign_request.id, values, where={"status": OPEN_STATUSES}
            )
            if updated is None:
                raise DocumentNotActiveError("changed", "Sign request changed state during completion")
        except Exception:
            await self._release_lock(sign_request.id)
            raise

        await record_event(
            self.records,
            document.id,
            AuditEventType.SIGNED,
            ActorType.SIGNER,
            updated.signer_email,
            sign_request_id=updated.id,
            meta={"ip": ip},
        )
        logger.info(f"Sign request {updated.id} signed")
        return updated, True

    # -------------------------------------------------------------------------
    # Decline
    # -------------------------------------------------------------------------

    async def decline(
        self,
        token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SignRequest:
        """
        Decline to sign; voids the whole document.

        Raises:
            AlreadySignedError: The request is already signed
        """
        sign_request, document = await self._resolve(token)
        if sign_request.is_signed:
            raise AlreadySignedError("This request has already been signed and cannot be declined")
        if sign_request.status == SignRequestStatus.DECLINED:
            if document.status == DocumentStatus.VOIDED and document.voided_key is None:
                # An earlier decline voided the document but never stored the stamped copy
                logger.warning(f"Re-running void stamp for document {document.id}")
                await self._store_void_copy(document, sign_request)
            return sign_request
        self._check_expiry(sign_request)
        if document.status in CLOSED_DOCUMENT_STATUSES:
            raise DocumentNotActiveError(document.status.value)

        updated = await self.records.update_sign_request(
            sign_request.id,
            {
                "status": SignRequestStatus.DECLINED,
                "declined_at": utc_now(),
                "decline_reason": reason,
                "signer_ip": ip,
                "user_agent": user_agent[:500] if user_agent else None,
            },
            where={"status": OPEN_STATUSES, "signing_started_at": None},
        )
        if updated is None:
            current = await self.records.get_sign_request(sign_request.id)
            if current and current.is_signed:
                raise AlreadySignedError("This request has already been signed and cannot be declined")
            if current and current.status == SignRequestStatus.DECLINED:
                return current
            raise SigningInProgressError()

        await record_event(
            self.records,
            document.id,
            AuditEventType.DECLINED,
            ActorType.SIGNER,
            updated.signer_email,
            sign_request_id=updated.id,
            meta={"reason": reason} if reason else None,
        )

        voided = await self.records.update_document(
            document.id,
            {"status": DocumentStatus.VOIDED, "voided_at": utc_now()},
            where={"status": ACTIVE_DOCUMENT_STATUSES},
        )
        if voided:
            await self._store_void_copy(voided, updated)
            logger.info(f"Document {document.id} voided by decline of {updated.id}")

        return updated

    async def _store_void_copy(self, document: Document, sign_request: SignRequest) -> None:
        """Stamp the working copy VOID and record it as the document's visible file."""
        source = self.byte_store.get(document.working_key)
        output = await run_in_threadpool(
            self.embedder.stamp_void, source, sign_request.signer_name, sign_request.decline_reason
        )
        key = storage.void_key(document.id)
        self.byte_store.put(key, output)
        await self.records.update_document(document.id, {"voided_key": key}, where={"voided_key": None})


# Singleton instance
_sign_request_service: Optional[SignRequestService] = None


def get_sign_request_service() -> SignRequestService:
    """Get the sign-request service singleton wired to the configured backends."""
    global _sign_request_service
    if _sign_request_service is None:
        from app.email import get_email_service
        from app.pdf.embed import get_pdf_embedder
        from app.records import get_record_store
        from app.storage import get_byte_store

        _sign_request_service = SignRequestService(
            records=get_record_store(),
            byte_store=get_byte_store(),
            embedder=get_pdf_embedder(),
            notifier=get_email_service(),
        )
    return _sign_request_service
