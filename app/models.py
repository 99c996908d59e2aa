from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.utils.datetime_utils import utc_now


def new_id() -> str:
    return str(uuid4())


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore")


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; accepts both on input."""
    model_config = ConfigDict(
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# Enums
class DocumentStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    VOIDED = "voided"
    DELETED = "deleted"


# Documents in these states accept no further signing activity
CLOSED_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.COMPLETED,
    DocumentStatus.CANCELLED,
    DocumentStatus.VOIDED,
    DocumentStatus.DELETED,
})


class SignRequestStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"


OPEN_SIGN_REQUEST_STATUSES = (SignRequestStatus.PENDING, SignRequestStatus.VIEWED)


class ActorType(str, Enum):
    SENDER = "sender"
    SIGNER = "signer"
    SYSTEM = "system"


class AuditEventType(str, Enum):
    DOCUMENT_CREATED = "document_created"
    SENT_FOR_SIGNATURE = "sent_for_signature"
    LINK_OPENED = "link_opened"
    SIGNED = "signed"
    DECLINED = "declined"


class EmailTemplateType(str, Enum):
    SIGN_REQUEST = "SIGN_REQUEST"
    SIGNED_WAITING_FOR_OTHERS = "SIGNED_WAITING_FOR_OTHERS"
    DOCUMENT_COMPLETED = "DOCUMENT_COMPLETED"


class FieldType(str, Enum):
    SIGNATURE = "signature"
    INITIAL = "initial"
    TEXT = "text"
    DATE = "date"
    NAME = "name"
    EMAIL = "email"
    COMPANY = "company"
    TITLE = "title"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    DROPDOWN = "dropdown"
    RADIO = "radio"
    STAMP = "stamp"
    APPROVE = "approve"
    NOTE = "note"


SIGNATURE_FIELD_TYPES = frozenset({"signature", "initial"})

# Field types whose submitted value is burned into the PDF as text
TEXT_FIELD_TYPES = frozenset({
    "name", "email", "company", "title", "text", "number", "stamp", "date", "dropdown",
})


# =============================================================================
# Fields: shared geometry + metadata, one variant per field family
# =============================================================================

class FieldBase(WireModel):
    """
    Placement of one field on a page.

    Either percentage coordinates (x_pct.., top-left origin, percent of the
    page) or legacy pixels (x, y, width, height) in the render space the
    owner authored against.
    """
    id: str = Field(default_factory=new_id)
    page: int = Field(default=1, ge=1)
    x: float = 0
    y: float = 0
    width: float = 160
    height: float = 36
    x_pct: Optional[float] = None
    y_pct: Optional[float] = None
    w_pct: Optional[float] = None
    h_pct: Optional[float] = None
    required: bool = True
    data_label: str = Field(default="", max_length=200)
    tooltip: str = Field(default="", max_length=500)
    scale: float = Field(default=100, ge=50, le=200)

    @property
    def has_percent_geometry(self) -> bool:
        return None not in (self.x_pct, self.y_pct, self.w_pct, self.h_pct)

    @property
    def is_signature(self) -> bool:
        return self.type in SIGNATURE_FIELD_TYPES


class TextFormat(WireModel):
    font_family: Optional[str] = None
    font_size: Optional[float] = Field(default=None, gt=0, le=72)
    bold: bool = False
    italic: bool = False
    underline: bool = False
    font_color: Optional[str] = None
    character_limit: Optional[int] = Field(default=None, ge=1)
    read_only: bool = False
    hide_with_asterisks: bool = False
    fixed_width: bool = False
    default_value: Optional[str] = None
    add_text: Optional[str] = None
    placeholder: Optional[str] = None
    # Name fields: "Full Name" | "First Name" | "Last Name"
    name_format: Optional[str] = None
    # Number fields
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    decimal_places: int = Field(default=0, ge=0, le=10)


class SignatureField(FieldBase):
    type: Literal["signature", "initial"] = "signature"


class TextField(FieldBase, TextFormat):
    type: Literal["text", "name", "email", "company", "title", "number", "date", "stamp"]


class ChoiceOption(WireModel):
    label: str
    value: str


class ChoiceField(FieldBase, TextFormat):
    type: Literal["dropdown", "radio"]
    options: List[ChoiceOption] = Field(default_factory=list)
    default_option: str = ""
    group_name: Optional[str] = None

    def label_for(self, value: str) -> str:
        for option in self.options:
            if option.value == value:
                return option.label
        return value


class CheckboxField(FieldBase):
    type: Literal["checkbox"]
    caption: Optional[str] = None
    checked: bool = False


class ApproveField(FieldBase):
    """Completing the request is the approval; nothing is drawn."""
    type: Literal["approve"]


class NoteField(FieldBase):
    """Sender's message to the recipient, never written on the document."""
    type: Literal["note"]
    note_content: Optional[str] = None
    required: bool = False


PlacedField = Annotated[
    Union[SignatureField, TextField, ChoiceField, CheckboxField, ApproveField, NoteField],
    Field(discriminator="type"),
]


# =============================================================================
# Records
# =============================================================================

class Document(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    owner_email: str
    owner_name: Optional[str] = None
    title: str
    status: DocumentStatus = DocumentStatus.DRAFT
    original_key: str
    signed_key: Optional[str] = None
    voided_key: Optional[str] = None
    signing_order: bool = False
    page_count: int = 1
    page1_render_width: Optional[float] = None
    page1_render_height: Optional[float] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def working_key(self) -> str:
        """Latest embedded copy, else the original upload."""
        return self.signed_key or self.original_key


class SignRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    document_id: str
    signer_email: str
    signer_name: str
    sign_link_token: str
    order: int = 0
    notified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    status: SignRequestStatus = SignRequestStatus.PENDING
    fields: List[PlacedField] = Field(default_factory=list)
    field_signatures: Dict[str, str] = Field(default_factory=dict)
    signature_data: Optional[str] = None
    field_values: Dict[str, str] = Field(default_factory=dict)
    signed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    signer_ip: Optional[str] = None
    user_agent: Optional[str] = None
    signing_started_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_signed(self) -> bool:
        return self.status == SignRequestStatus.SIGNED

    @property
    def signature_fields(self) -> List[SignatureField]:
        return [f for f in self.fields if isinstance(f, SignatureField)]

    def payload_for(self, field_id: str) -> Optional[str]:
        """Per-field payload, else the legacy single payload."""
        return self.field_signatures.get(field_id) or self.signature_data

    def unsigned_required_fields(self) -> List[str]:
        """Ids of required signature/initial fields with no resolvable payload."""
        return [
            f.id for f in self.signature_fields
            if f.required and not self.payload_for(f.id)
        ]


class AuditLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    document_id: str
    sign_request_id: Optional[str] = None
    actor_type: ActorType
    actor: str
    event_type: AuditEventType
    meta: Dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class AuthenticatedOwner(BaseModel):
    """Caller identity for owner routes, resolved by app.auth."""
    id: str
    email: str
    name: Optional[str] = None


# =============================================================================
# Email
# =============================================================================

class EmailTemplateContext(BaseModel):
    document_title: str
    recipient_name: Optional[str] = None
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    sign_url: Optional[str] = None
    view_url: Optional[str] = None


# =============================================================================
# Request Models
# =============================================================================

class RecipientInput(BaseRequest):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=254)
    order: int = Field(default=0, ge=0)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class AddRecipientRequest(RecipientInput):
    fields: List[PlacedField] = Field(default_factory=list)
    draft: bool = Field(default=True, description="Add without sending the invitation")


class PlaceFieldsRequest(WireModel):
    """Field placements keyed by sign-request id, plus the authoring render size."""
    fields: Dict[str, List[PlacedField]] = Field(default_factory=dict)
    page1_render_width: Optional[float] = Field(default=None, gt=0)
    page1_render_height: Optional[float] = Field(default=None, gt=0)


class RecipientOverride(WireModel):
    sign_request_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class ResendRequest(WireModel):
    recipients: List[RecipientOverride] = Field(default_factory=list)


class SaveSignatureRequest(WireModel):
    signature_data: str = Field(..., min_length=1)
    field_id: Optional[str] = None


class SaveFieldValueRequest(WireModel):
    field_id: str = Field(..., min_length=1)
    value: str = Field(default="", max_length=5000)


class DeclineRequest(WireModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


# =============================================================================
# Response Models
# =============================================================================

class SignRequestSummary(WireModel):
    id: str
    signer_name: str
    signer_email: str
    order: int
    status: SignRequestStatus
    notified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, sr: SignRequest) -> "SignRequestSummary":
        return cls(
            id=sr.id,
            signer_name=sr.signer_name,
            signer_email=sr.signer_email,
            order=sr.order,
            status=sr.status,
            notified_at=sr.notified_at,
            expires_at=sr.expires_at,
            signed_at=sr.signed_at,
        )


class DocumentResponse(WireModel):
    id: str
    title: str
    status: DocumentStatus
    signing_order: bool
    page_count: int
    has_signed_copy: bool
    page1_render_width: Optional[float] = None
    page1_render_height: Optional[float] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sign_requests: List[SignRequestSummary] = Field(default_factory=list)

    @classmethod
    def from_records(cls, doc: Document, sign_requests: List[SignRequest]) -> "DocumentResponse":
        return cls(
            id=doc.id,
            title=doc.title,
            status=doc.status,
            signing_order=doc.signing_order,
            page_count=doc.page_count,
            has_signed_copy=doc.signed_key is not None,
            page1_render_width=doc.page1_render_width,
            page1_render_height=doc.page1_render_height,
            sent_at=doc.sent_at,
            completed_at=doc.completed_at,
            sign_requests=[SignRequestSummary.from_record(sr) for sr in sign_requests],
        )


class SigningDocumentInfo(WireModel):
    id: str
    title: str
    status: DocumentStatus
    page_count: int
    page1_render_width: Optional[float] = None
    page1_render_height: Optional[float] = None


class SigningRequestInfo(WireModel):
    id: str
    signer_name: str
    signer_email: str
    status: SignRequestStatus
    expires_at: Optional[datetime] = None
    fields: List[PlacedField] = Field(default_factory=list)
    field_values: Dict[str, str] = Field(default_factory=dict)
    signed_field_ids: List[str] = Field(default_factory=list)
    signature_data: Optional[str] = None


class SigningInfoResponse(WireModel):
    document: SigningDocumentInfo
    sign_request: SigningRequestInfo

    @classmethod
    def from_records(cls, doc: Document, sr: SignRequest) -> "SigningInfoResponse":
        return cls(
            document=SigningDocumentInfo(
                id=doc.id,
                title=doc.title,
                status=doc.status,
                page_count=doc.page_count,
                page1_render_width=doc.page1_render_width,
                page1_render_height=doc.page1_render_height,
            ),
            sign_request=SigningRequestInfo(
                id=sr.id,
                signer_name=sr.signer_name,
                signer_email=sr.signer_email,
                status=sr.status,
                expires_at=sr.expires_at,
                fields=sr.fields,
                field_values=sr.field_values,
                signed_field_ids=sorted(sr.field_signatures),
                signature_data=sr.signature_data,
            ),
        )


class SendResponse(WireModel):
    success: bool = True
    sent_count: int


class CompleteResponse(WireModel):
    success: bool = True
    status: SignRequestStatus
    document_status: DocumentStatus
    signed_at: Optional[datetime] = None


class SuccessResponse(BaseModel):
    success: bool = True
