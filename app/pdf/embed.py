"""
PDF embedding engine using PyMuPDF (fitz).

Burns a recipient's signatures, labels and text values into the current
working copy of a document. Each call starts from whatever bytes it is
given, so successive recipients accumulate on the same PDF.

Also renders the VOID pass used when a recipient declines.
"""
import io
import logging
import os
from typing import Dict, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from app.models import (
    CheckboxField,
    ChoiceField,
    SignatureField,
    SIGNATURE_FIELD_TYPES,
    TEXT_FIELD_TYPES,
)
from app.pdf.fonts import DEFAULT_FONT_NAME, FontResolverChain
from app.pdf.geometry import PdfBox, render_scale, to_pdf_box
from app.pdf.signature_codec import (
    AbsentSignature,
    ImageSignature,
    TypedSignature,
    decode,
)
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

# Signature box layout, in points
BORDER_PADDING = 5
SIG_TEXT_MARGIN_H = 4
SIG_TEXT_MARGIN_V = 3
MIN_TYPED_FONT_SIZE = 5
TYPED_HEIGHT_RATIO = 0.6
IMAGE_HEIGHT_SHARE = 0.55
SIGNED_BY_LABEL = "Signed by:"
RECORD_ID_LENGTH = 16

# Text fields
DEFAULT_TEXT_FONT_SIZE = 10.0
TEXT_PADDING_X = 2.0

BLACK = (0, 0, 0)
VOID_RED = (0.8, 0.1, 0.1)

# Used when a legacy request has a payload but no placed fields (render units)
DEFAULT_SIGNATURE_BOX = {"page": 1, "x": 100, "y": 400, "width": 180, "height": 36}

# family -> (regular, bold, italic, bold-italic) Base-14 codes
STANDARD_FONT_VARIANTS = {
    "helvetica": ("helv", "hebo", "heit", "hebi"),
    "times": ("tiro", "tibo", "tiit", "tibi"),
    "courier": ("cour", "cobo", "coit", "cobi"),
}

FONT_FAMILY_ALIASES = {
    "arial": "helvetica",
    "sans-serif": "helvetica",
    "verdana": "helvetica",
    "times new roman": "times",
    "georgia": "times",
    "serif": "times",
    "courier new": "courier",
    "monospace": "courier",
}

COLOR_PALETTE = {
    "black": (0, 0, 0),
    "white": (1, 1, 1),
    "gray": (0.5, 0.5, 0.5),
    "grey": (0.5, 0.5, 0.5),
    "red": (0.8, 0, 0),
    "green": (0, 0.5, 0),
    "blue": (0, 0, 0.8),
    "navy": (0, 0, 0.5),
    "purple": (0.5, 0, 0.5),
    "orange": (1, 0.55, 0),
}

CHECKED_VALUES = frozenset({"true", "1", "yes", "on", "checked", "x"})


class SigningError(Exception):
    """PDF embedding error."""
    pass


class IntegrityViolationError(SigningError):
    """A required signature field reached the embedder with no payload."""

    def __init__(self, field_ids: List[str]):
        self.field_ids = list(field_ids)
        super().__init__(f"Required signature fields have no payload: {', '.join(self.field_ids)}")


def standard_font_code(family: Optional[str], bold: bool = False, italic: bool = False) -> str:
    """Base-14 font code for a family/weight/style combination."""
    key = (family or "helvetica").strip().lower()
    key = FONT_FAMILY_ALIASES.get(key, key)
    variants = STANDARD_FONT_VARIANTS.get(key, STANDARD_FONT_VARIANTS["helvetica"])
    return variants[(1 if bold else 0) + (2 if italic else 0)]


def parse_color(value: Optional[str]) -> Tuple[float, float, float]:
    """Palette name or #rrggbb / #rgb to an RGB tuple in [0, 1]. Default black."""
    if not value:
        return BLACK
    v = value.strip().lower()
    if v in COLOR_PALETTE:
        return COLOR_PALETTE[v]
    if v.startswith("#"):
        hex_part = v[1:]
        if len(hex_part) == 3:
            hex_part = "".join(c * 2 for c in hex_part)
        if len(hex_part) == 6:
            try:
                return tuple(int(hex_part[i:i + 2], 16) / 255 for i in (0, 2, 4))
            except ValueError:
                pass
    return BLACK


def title_case(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in text.strip().lower().split())


def short_record_id(record_id: str) -> str:
    return record_id.replace("-", "")[-RECORD_ID_LENGTH:]


def resolve_text_value(field, text_values: Dict[str, str]) -> Optional[str]:
    """
    Text to burn for a non-signature field, or None to skip it.

    Submitted value first, then the read-only default literal; dropdowns fall
    back to their default option and show the option label.
    """
    value = (text_values.get(field.id) or "").strip()

    if not value and getattr(field, "read_only", False):
        value = (field.default_value or field.add_text or "").strip()

    if isinstance(field, ChoiceField):
        if not value:
            value = field.default_option
        value = field.label_for(value) if value else value

    if not value:
        return None

    if field.type == "name" and field.name_format:
        parts = value.split()
        if field.name_format == "First Name":
            value = parts[0]
        elif field.name_format == "Last Name":
            value = parts[-1]

    if field.type == "number" and field.decimal_places:
        try:
            value = f"{float(value):.{field.decimal_places}f}"
        except ValueError:
            pass

    if field.character_limit:
        value = value[:field.character_limit]
    if field.hide_with_asterisks:
        value = "*" * len(value)
    return value


def is_checked(field: CheckboxField, text_values: Dict[str, str]) -> bool:
    if field.id in text_values:
        return (text_values[field.id] or "").strip().lower() in CHECKED_VALUES
    return field.checked


def _open_pdf(source_pdf: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=source_pdf, filetype="pdf")
    except Exception as e:
        raise SigningError(f"Invalid PDF file: {e}")


def measure_pages(pdf_bytes: bytes) -> List[Tuple[float, float]]:
    """(width, height) in points for every page."""
    doc = _open_pdf(pdf_bytes)
    try:
        return [(page.rect.width, page.rect.height) for page in doc]
    finally:
        doc.close()


def _fit_inside(img_w: float, img_h: float, area: fitz.Rect) -> fitz.Rect:
    """Largest aspect-preserving rect centred in area."""
    scale = min(area.width / img_w, area.height / img_h)
    w, h = img_w * scale, img_h * scale
    x0 = area.x0 + (area.width - w) / 2
    y0 = area.y0 + (area.height - h) / 2
    return fitz.Rect(x0, y0, x0 + w, y0 + h)


def _to_jpeg(data: bytes) -> bytes:
    with Image.open(io.BytesIO(data)) as img:
        buffer = io.BytesIO()
        img.convert("RGB").save(buffer, format="JPEG", quality=90)
        return buffer.getvalue()


class PDFEmbedder:
    """Signature and text field overlay using PyMuPDF."""

    def __init__(
        self,
        font_chain: Optional[FontResolverChain] = None,
        border_path: Optional[str] = None,
    ):
        self.font_chain = font_chain or FontResolverChain([])
        self.border_path = border_path
        self._border: Optional[Tuple[bytes, int, int]] = None
        self._border_loaded = False

    def _border_image(self) -> Optional[Tuple[bytes, int, int]]:
        """Decorative border PNG and its pixel size, loaded once."""
        if self._border_loaded:
            return self._border
        self._border_loaded = True
        if not self.border_path or not os.path.exists(self.border_path):
            logger.debug("Signature border image not found, drawing without it")
            return None
        try:
            with open(self.border_path, "rb") as f:
                data = f.read()
            with Image.open(io.BytesIO(data)) as img:
                self._border = (data, img.width, img.height)
        except (OSError, UnidentifiedImageError) as e:
            logger.warning(f"Signature border image unreadable: {e}")
        return self._border

    def embed(
        self,
        source_pdf: bytes,
        fields: Sequence,
        field_signatures: Optional[Dict[str, str]] = None,
        legacy_payload: Optional[str] = None,
        text_values: Optional[Dict[str, str]] = None,
        signer_label: str = "",
        record_id: str = "",
        render_width: Optional[float] = None,
        render_height: Optional[float] = None,
    ) -> bytes:
        """
        Burn one recipient's fields into the PDF.

        Args:
            source_pdf: Current working copy
            fields: Placed fields of the sign-request
            field_signatures: field id -> signature payload
            legacy_payload: Single payload shared by all signature fields
            text_values: field id -> submitted text
            signer_label: Signer's display name, last-resort signature text
            record_id: Sign-request id, printed under each signature
            render_width, render_height: Authoring render size for pixel fields

        Returns:
            New PDF bytes

        Raises:
            IntegrityViolationError: A required signature field has no payload
            SigningError: The PDF could not be opened or written
        """
        field_signatures = field_signatures or {}
        text_values = text_values or {}

        signature_fields = [f for f in fields if f.type in SIGNATURE_FIELD_TYPES]
        missing = [
            f.id for f in signature_fields
            if f.required and not (field_signatures.get(f.id) or legacy_payload)
        ]
        if missing:
            raise IntegrityViolationError(missing)

        if not fields and legacy_payload:
            signature_fields = [SignatureField(id="default", required=False, **DEFAULT_SIGNATURE_BOX)]

        doc = _open_pdf(source_pdf)
        try:
            for field in signature_fields:
                payload = field_signatures.get(field.id) or legacy_payload
                if not payload:
                    continue
                page = self._page_for(doc, field)
                if page is None:
                    continue
                self._draw_signature_field(
                    page, field, payload, signer_label, record_id, render_width, render_height
                )

            for field in fields:
                if field.type in TEXT_FIELD_TYPES:
                    value = resolve_text_value(field, text_values)
                    if value is None:
                        continue
                    page = self._page_for(doc, field)
                    if page is not None:
                        self._draw_text_field(page, field, value, render_width, render_height)
                elif isinstance(field, CheckboxField) and is_checked(field, text_values):
                    page = self._page_for(doc, field)
                    if page is not None:
                        self._draw_checkbox(page, field, render_width, render_height)

            output = doc.tobytes(garbage=3, deflate=True)
        finally:
            doc.close()

        logger.info(f"Embedded {len(signature_fields)} signature field(s) out of {len(fields)} placed")
        return output

    def _page_for(self, doc: fitz.Document, field) -> Optional[fitz.Page]:
        if field.page < 1 or field.page > doc.page_count:
            logger.warning(f"Field {field.id} targets page {field.page}, document has {doc.page_count}")
            return None
        return doc[field.page - 1]

    def _field_rect(self, page: fitz.Page, field, render_width, render_height) -> fitz.Rect:
        width, height = page.rect.width, page.rect.height
        box: PdfBox = to_pdf_box(field, width, height, render_width, render_height)
        return box.to_rect(height)

    # -------------------------------------------------------------------------
    # Signature / initial fields
    # -------------------------------------------------------------------------

    def _draw_signature_field(
        self,
        page: fitz.Page,
        field,
        payload: str,
        signer_label: str,
        record_id: str,
        render_width: Optional[float],
        render_height: Optional[float],
    ) -> None:
        rect = self._field_rect(page, field, render_width, render_height)
        scale_x, scale_y = render_scale(page.rect.width, page.rect.height, render_width, render_height)

        pad = BORDER_PADDING * min(scale_x, scale_y)
        inner_w = max(1.0, rect.width - 2 * pad)
        inner_h = max(1.0, rect.height - 2 * pad)
        inner = fitz.Rect(rect.x0 + pad, rect.y0 + pad, rect.x0 + pad + inner_w, rect.y0 + pad + inner_h)

        label_h = min(5.0, inner_h * 0.15)
        id_h = min(5.0, inner_h * 0.15)
        sig_h = max(inner_h * IMAGE_HEIGHT_SHARE, inner_h - label_h - id_h - 8)
        sig_bottom = inner.y1 - id_h - SIG_TEXT_MARGIN_V
        sig_area = fitz.Rect(inner.x0, sig_bottom - sig_h, inner.x1, sig_bottom)

        self._draw_border(page, rect)

        signature = decode(payload)
        drawn = False
        if isinstance(signature, ImageSignature):
            drawn = self._draw_image(page, sig_area, signature)
        elif isinstance(signature, TypedSignature):
            drawn = self._draw_typed(page, sig_area, inner, field, signature, signer_label)
        if not drawn:
            if isinstance(signature, AbsentSignature) and signature.raw:
                logger.info(f"Opaque signature payload on field {field.id}, drawing signer name")
            self._draw_fitted_text(
                page, sig_area, inner.height, signer_label or "Signed",
                fitz.Font(DEFAULT_FONT_NAME), MIN_TYPED_FONT_SIZE,
            )

        label_size = label_h + 3
        page.insert_text(
            (inner.x0 + SIG_TEXT_MARGIN_H, rect.y0 + SIG_TEXT_MARGIN_V + label_size),
            SIGNED_BY_LABEL,
            fontname=DEFAULT_FONT_NAME,
            fontsize=label_size,
            color=BLACK,
        )
        if record_id:
            page.insert_text(
                (inner.x0, rect.y1 - 1.5),
                short_record_id(record_id),
                fontname=DEFAULT_FONT_NAME,
                fontsize=id_h + 3,
                color=BLACK,
            )

    def _draw_border(self, page: fitz.Page, rect: fitz.Rect) -> None:
        border = self._border_image()
        if border is None:
            return
        data, img_w, img_h = border
        try:
            scale = min(rect.width / img_w, rect.height / img_h)
            w, h = img_w * scale, img_h * scale
            y0 = rect.y0 + (rect.height - h) / 2
            page.insert_image(fitz.Rect(rect.x0, y0, rect.x0 + w, y0 + h), stream=data)
        except Exception as e:
            logger.warning(f"Border draw failed: {e}")

    def _draw_image(self, page: fitz.Page, area: fitz.Rect, signature: ImageSignature) -> bool:
        try:
            with Image.open(io.BytesIO(signature.data)) as img:
                img_w, img_h = img.size
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Signature image unreadable: {e}")
            return False

        target = _fit_inside(img_w, img_h, area)
        try:
            page.insert_image(target, stream=signature.data)
            return True
        except Exception as e:
            logger.warning(f"Signature image insert failed ({signature.format}), retrying as JPEG: {e}")

        try:
            page.insert_image(target, stream=_to_jpeg(signature.data))
            return True
        except Exception as e:
            logger.error(f"Failed to draw signature image: {e}")
            return False

    def _draw_typed(
        self,
        page: fitz.Page,
        sig_area: fitz.Rect,
        inner: fitz.Rect,
        field,
        signature: TypedSignature,
        signer_label: str,
    ) -> bool:
        if field.type == "initial" and signature.initials:
            text = title_case(signature.initials)
        else:
            text = title_case(signature.name or signer_label) or signer_label
        if not text:
            return False

        resolved = self.font_chain.resolve(signature.font)
        try:
            font = resolved.to_fitz()
        except Exception as e:
            logger.warning(f"Font '{resolved.name}' unusable, using default: {e}")
            font = fitz.Font(DEFAULT_FONT_NAME)

        text_h = max(1.0, sig_area.height - 2 * SIG_TEXT_MARGIN_V)
        start = min(max(signature.font_size, text_h * TYPED_HEIGHT_RATIO), inner.height)
        text_area = fitz.Rect(
            sig_area.x0 + SIG_TEXT_MARGIN_H, sig_area.y0,
            max(sig_area.x0 + SIG_TEXT_MARGIN_H + 1, sig_area.x1 - SIG_TEXT_MARGIN_H), sig_area.y1,
        )
        return self._draw_fitted_text(page, text_area, start, text, font, MIN_TYPED_FONT_SIZE)

    def _draw_fitted_text(
        self,
        page: fitz.Page,
        area: fitz.Rect,
        start_size: float,
        text: str,
        font: fitz.Font,
        min_size: float,
    ) -> bool:
        """Shrink in 1pt steps until text fits area width, then centre it."""
        size = max(float(start_size), min_size)
        width = font.text_length(text, fontsize=size)
        while width > area.width and size > min_size:
            size = max(min_size, size - 1)
            width = font.text_length(text, fontsize=size)

        x = area.x0 + max(0.0, (area.width - width) / 2)
        baseline = area.y0 + area.height / 2 + size * 0.35
        try:
            writer = fitz.TextWriter(page.rect)
            writer.append((x, baseline), text, font=font, fontsize=size)
            writer.write_text(page, color=BLACK)
            return True
        except Exception as e:
            logger.error(f"Failed to draw signature text: {e}")
            return False

    # -------------------------------------------------------------------------
    # Text and checkbox fields
    # -------------------------------------------------------------------------

    def _draw_text_field(self, page: fitz.Page, field, value: str, render_width, render_height) -> None:
        rect = self._field_rect(page, field, render_width, render_height)
        fontname = standard_font_code(field.font_family, field.bold, field.italic)
        color = parse_color(field.font_color)
        size = (field.font_size or DEFAULT_TEXT_FONT_SIZE) * field.scale / 100
        size = min(size, max(4.0, rect.height))

        x = rect.x0 + TEXT_PADDING_X
        baseline = rect.y1 - min(3.0, rect.height * 0.2)
        page.insert_text((x, baseline), value, fontname=fontname, fontsize=size, color=color)

        if field.underline:
            text_width = fitz.get_text_length(value, fontname=fontname, fontsize=size)
            page.draw_line(
                (x, baseline + 1.5),
                (x + text_width, baseline + 1.5),
                color=color,
                width=max(0.5, size / 14),
            )

    def _draw_checkbox(self, page: fitz.Page, field: CheckboxField, render_width, render_height) -> None:
        rect = self._field_rect(page, field, render_width, render_height)
        size = max(4.0, min(rect.width, rect.height) * 0.8)
        mark_w = fitz.get_text_length("X", fontname="hebo", fontsize=size)
        x = rect.x0 + (rect.width - mark_w) / 2
        baseline = rect.y0 + rect.height / 2 + size * 0.35
        page.insert_text((x, baseline), "X", fontname="hebo", fontsize=size, color=BLACK)

    # -------------------------------------------------------------------------
    # Void pass
    # -------------------------------------------------------------------------

    def stamp_void(self, source_pdf: bytes, declined_by: str, reason: Optional[str] = None) -> bytes:
        """
        Stamp every page with a diagonal VOID watermark and a header line.

        Separate from embed(): nothing about the recipient's fields is drawn.
        """
        header = f"VOIDED: declined by {declined_by} on {utc_now().strftime('%Y-%m-%d %H:%M UTC')}"
        if reason:
            header += f". Reason: {reason.strip()[:120]}"

        font = fitz.Font("hebo")
        doc = _open_pdf(source_pdf)
        try:
            for page in doc:
                width, height = page.rect.width, page.rect.height
                size = min(width, height) * 0.25
                text_w = font.text_length("VOID", fontsize=size)
                center = fitz.Point(width / 2, height / 2)

                writer = fitz.TextWriter(page.rect)
                writer.append((center.x - text_w / 2, center.y + size * 0.35), "VOID", font=font, fontsize=size)
                writer.write_text(page, color=VOID_RED, opacity=0.3, morph=(center, fitz.Matrix(-35)))

                page.insert_text((24, 20), header, fontname="helv", fontsize=9, color=VOID_RED)

            output = doc.tobytes(garbage=3, deflate=True)
        finally:
            doc.close()

        logger.info("Rendered void pass")
        return output


# Singleton instance
_pdf_embedder: Optional[PDFEmbedder] = None


def get_pdf_embedder() -> PDFEmbedder:
    """Get the PDF embedder singleton."""
    global _pdf_embedder
    if _pdf_embedder is None:
        from app.config import get_settings
        from app.pdf.fonts import get_font_chain
        _pdf_embedder = PDFEmbedder(
            font_chain=get_font_chain(),
            border_path=get_settings().signature_border_path,
        )
    return _pdf_embedder
