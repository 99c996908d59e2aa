"""
Pytest configuration and fixtures.
"""
import base64
import io
import os
import sys
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
import pytest
from PIL import Image

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from app.email import EmailDeliveryStatus, EmailResult
from app.models import (
    AuthenticatedOwner,
    EmailTemplateContext,
    EmailTemplateType,
    PlaceFieldsRequest,
    RecipientInput,
    SignatureField,
)
from app.pdf.embed import PDFEmbedder
from app.pdf.fonts import FontResolverChain
from app.records import InMemoryRecordStore
from app.services.envelope import EnvelopeOrchestrator
from app.services.sign_requests import SignRequestService
from app.storage import LocalByteStore

# Standard A4 page dimensions in points (72 points per inch)
A4_WIDTH = 595.0
A4_HEIGHT = 842.0


def make_pdf(pages: int = 1, width: float = A4_WIDTH, height: float = A4_HEIGHT) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Agreement page {i + 1}", fontname="helv", fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


def make_png(width: int = 120, height: int = 40) -> bytes:
    img = Image.new("RGBA", (width, height), (255, 255, 255, 0))
    for x in range(10, width - 10):
        img.putpixel((x, height // 2), (0, 0, 160, 255))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_uri(data: Optional[bytes] = None) -> str:
    return "data:image/png;base64," + base64.b64encode(data or make_png()).decode()


def page_text(pdf_bytes: bytes, page: int = 0) -> str:
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        return doc[page].get_text()
    finally:
        doc.close()


class FakeNotifier:
    """Stands in for EmailService. Records every send; can fail chosen addresses."""

    def __init__(self):
        self.sent: List[Tuple[EmailTemplateType, str, EmailTemplateContext]] = []
        self.failures = {}

    def fail_for(self, email: str, error: str = "API error 500: upstream unavailable"):
        self.failures[email] = error

    async def send(self, template_type, to_email, context) -> EmailResult:
        if to_email in self.failures:
            return EmailResult(
                success=False,
                error=self.failures[to_email],
                delivery_status=EmailDeliveryStatus.FAILED,
                total_attempts=1,
            )
        self.sent.append((template_type, to_email, context))
        return EmailResult(success=True, message_id=f"msg_{len(self.sent)}", delivery_status=EmailDeliveryStatus.SENT)

    def recipients_of(self, template_type: EmailTemplateType) -> List[str]:
        return [to for t, to, _ in self.sent if t == template_type]


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf(pages=2)


@pytest.fixture
def sample_png() -> bytes:
    return make_png()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        record_store="memory",
        storage_dir=str(tmp_path / "store"),
        resend_api_key="",
        sign_app_url="https://sign.example.com",
        environment="test",
        remote_fonts_enabled=False,
    )


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def byte_store(tmp_path) -> LocalByteStore:
    return LocalByteStore(str(tmp_path / "bytes"))


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def embedder() -> PDFEmbedder:
    return PDFEmbedder(font_chain=FontResolverChain([]))


@pytest.fixture
def service(records, byte_store, embedder, notifier, settings) -> SignRequestService:
    return SignRequestService(records, byte_store, embedder, notifier, settings)


@pytest.fixture
def orchestrator(records, byte_store, service, settings) -> EnvelopeOrchestrator:
    return EnvelopeOrchestrator(records, byte_store, service, settings)


@pytest.fixture
def owner() -> AuthenticatedOwner:
    return AuthenticatedOwner(id="owner-1", email="owner@example.com", name="Olivia Owner")


def recipient(name: str, email: str, order: int = 0) -> RecipientInput:
    return RecipientInput(name=name, email=email, order=order)


def signature_field(field_id: str, page: int = 1, **kwargs) -> SignatureField:
    geometry = {"x_pct": 10.0, "y_pct": 70.0, "w_pct": 30.0, "h_pct": 6.0}
    geometry.update(kwargs)
    return SignatureField(id=field_id, page=page, **geometry)


async def draft_envelope(orchestrator, owner, pdf_bytes, people, signing_order=False, title="Services Agreement"):
    """Create a draft document; people is a list of (name, email) or (name, email, order)."""
    return await orchestrator.create_document(
        owner,
        title=title,
        pdf_bytes=pdf_bytes,
        signing_order=signing_order,
        recipients=[recipient(*p) for p in people],
    )


async def sent_envelope(orchestrator, owner, pdf_bytes, people, signing_order=False):
    """Draft, one required signature field per recipient, then send."""
    document, sign_requests = await draft_envelope(orchestrator, owner, pdf_bytes, people, signing_order)
    await orchestrator.place_fields(
        owner,
        document.id,
        PlaceFieldsRequest(fields={
            sr.id: [signature_field(f"sig-{i}", y_pct=10.0 + 12 * i)]
            for i, sr in enumerate(sign_requests)
        }),
    )
    await orchestrator.send(owner, document.id)
    return document, await orchestrator.records.list_sign_requests(document.id)


async def sign(service, sign_request, name=None):
    """Save a typed signature for every signature field of the request."""
    for field in sign_request.signature_fields:
        await service.save_signature_only(
            sign_request.sign_link_token, f"typed::{name or sign_request.signer_name}", field.id
        )
