"""
Tests for PDF embedding and the void pass.
"""
from unittest.mock import MagicMock, patch

import fitz  # PyMuPDF
import httpx
import pytest

from app.models import (
    CheckboxField,
    ChoiceField,
    ChoiceOption,
    NoteField,
    SignatureField,
    TextField,
)
from app.pdf.embed import (
    IntegrityViolationError,
    PDFEmbedder,
    SigningError,
    measure_pages,
    parse_color,
    resolve_text_value,
    short_record_id,
    standard_font_code,
)
from app.pdf.fonts import (
    BundledFontResolver,
    DEFAULT_FONT,
    FontResolver,
    FontResolverChain,
    RemoteFontResolver,
    ResolvedFont,
)
from conftest import A4_HEIGHT, A4_WIDTH, page_text, png_data_uri, signature_field

RECORD_ID = "7f1c2b9e-4d3a-4c1e-9b7a-0123456789ab"


def text_field(field_id, field_type="text", **kwargs):
    geometry = {"x_pct": 10.0, "y_pct": 20.0, "w_pct": 40.0, "h_pct": 3.0}
    geometry.update(kwargs)
    return TextField(id=field_id, type=field_type, **geometry)


class TestMeasurePages:

    def test_page_sizes(self, sample_pdf):
        assert measure_pages(sample_pdf) == [(A4_WIDTH, A4_HEIGHT), (A4_WIDTH, A4_HEIGHT)]

    def test_invalid_pdf_raises(self):
        with pytest.raises(SigningError):
            measure_pages(b"not a pdf")


class TestSignatureEmbedding:
    """Tests for signature and initial fields."""

    def test_image_signature_is_drawn(self, embedder, sample_pdf):
        output = embedder.embed(
            sample_pdf,
            [signature_field("sig1")],
            field_signatures={"sig1": png_data_uri()},
            signer_label="Jane Doe",
            record_id=RECORD_ID,
        )

        doc = fitz.open(stream=output, filetype="pdf")
        try:
            assert len(doc[0].get_images()) >= 1
            assert doc.page_count == 2
        finally:
            doc.close()
        text = page_text(output)
        assert "Signed by:" in text
        assert short_record_id(RECORD_ID) in text

    def test_typed_signature_is_title_cased(self, embedder, sample_pdf):
        output = embedder.embed(
            sample_pdf,
            [signature_field("sig1")],
            field_signatures={"sig1": "typed::jane doe::Allura::JD::14"},
            signer_label="Jane Doe",
            record_id=RECORD_ID,
        )
        assert "Jane Doe" in page_text(output)

    def test_initial_field_uses_initials(self, embedder, sample_pdf):
        field = SignatureField(id="ini", type="initial", x_pct=70, y_pct=90, w_pct=10, h_pct=5)
        output = embedder.embed(
            sample_pdf,
            [field],
            field_signatures={"ini": "typed::jane doe::::jd::11"},
            signer_label="Jane Doe",
        )
        text = page_text(output)
        assert "Jd" in text
        assert "Jane Doe" not in text

    def test_signature_on_second_page(self, embedder, sample_pdf):
        output = embedder.embed(
            sample_pdf,
            [signature_field("sig2", page=2)],
            field_signatures={"sig2": "typed::Jane Doe"},
            record_id=RECORD_ID,
        )
        assert "Signed by:" not in page_text(output, 0)
        assert "Signed by:" in page_text(output, 1)

    def test_legacy_payload_fills_every_signature_field(self, embedder, sample_pdf):
        fields = [signature_field("a"), signature_field("b", page=2)]
        output = embedder.embed(sample_pdf, fields, legacy_payload="typed::Jane Doe")

        assert "Jane Doe" in page_text(output, 0)
        assert "Jane Doe" in page_text(output, 1)

    def test_legacy_payload_without_fields_uses_default_box(self, embedder, sample_pdf):
        output = embedder.embed(sample_pdf, [], legacy_payload="typed::Jane Doe", record_id=RECORD_ID)
        text = page_text(output)
        assert "Jane Doe" in text
        assert "Signed by:" in text

    def test_opaque_payload_falls_back_to_signer_name(self, embedder, sample_pdf):
        output = embedder.embed(
            sample_pdf,
            [signature_field("sig1")],
            field_signatures={"sig1": "legacy-opaque-value"},
            signer_label="Jane Doe",
        )
        assert "Jane Doe" in page_text(output)

    def test_required_field_without_payload_raises(self, embedder, sample_pdf):
        fields = [signature_field("a"), signature_field("b")]
        with pytest.raises(IntegrityViolationError) as exc_info:
            embedder.embed(sample_pdf, fields, field_signatures={"a": "typed::Jane"})
        assert exc_info.value.field_ids == ["b"]

    def test_optional_field_without_payload_is_skipped(self, embedder, sample_pdf):
        field = SignatureField(id="opt", required=False, x_pct=10, y_pct=10, w_pct=20, h_pct=5)
        output = embedder.embed(sample_pdf, [field])
        assert "Signed by:" not in page_text(output)

    def test_successive_embeds_accumulate(self, embedder, sample_pdf):
        first = embedder.embed(
            sample_pdf,
            [signature_field("a", y_pct=60)],
            field_signatures={"a": "typed::Alice Adams"},
            record_id="aaaaaaaa-0000-0000-0000-000000000001",
        )
        second = embedder.embed(
            first,
            [signature_field("b", y_pct=80)],
            field_signatures={"b": "typed::Bob Brown"},
            record_id="bbbbbbbb-0000-0000-0000-000000000002",
        )
        text = page_text(second)
        assert "Alice Adams" in text
        assert "Bob Brown" in text

    def test_invalid_source_pdf_raises(self, embedder):
        with pytest.raises(SigningError):
            embedder.embed(b"%PDF-broken", [signature_field("a")], field_signatures={"a": "typed::X"})


class TestTextFieldEmbedding:
    """Tests for text, dropdown and checkbox fields."""

    def test_text_value_is_drawn(self, embedder, sample_pdf):
        output = embedder.embed(
            sample_pdf,
            [text_field("company", "company")],
            text_values={"company": "Acme Industries"},
        )
        assert "Acme Industries" in page_text(output)

    def test_empty_text_value_is_skipped(self, embedder, sample_pdf):
        output = embedder.embed(sample_pdf, [text_field("t")], text_values={"t": "   "})
        assert page_text(output) == page_text(sample_pdf)

    def test_checked_checkbox_draws_mark(self, embedder, sample_pdf):
        box = CheckboxField(id="cb", type="checkbox", x_pct=10, y_pct=30, w_pct=3, h_pct=2)
        output = embedder.embed(sample_pdf, [box], text_values={"cb": "true"})
        assert "X" in page_text(output)

    def test_unchecked_checkbox_draws_nothing(self, embedder, sample_pdf):
        box = CheckboxField(id="cb", type="checkbox", checked=True, x_pct=10, y_pct=30, w_pct=3, h_pct=2)
        output = embedder.embed(sample_pdf, [box], text_values={"cb": "false"})
        assert "X" not in page_text(output)

    def test_note_is_never_drawn(self, embedder, sample_pdf):
        note = NoteField(id="n", type="note", note_content="Please sign by Friday", x_pct=10, y_pct=10, w_pct=20, h_pct=5)
        output = embedder.embed(sample_pdf, [note])
        assert "Friday" not in page_text(output)


class TestResolveTextValue:

    def test_submitted_value_is_trimmed(self):
        assert resolve_text_value(text_field("t"), {"t": "  hello  "}) == "hello"

    def test_read_only_default(self):
        field = text_field("t", read_only=True, default_value="Preset")
        assert resolve_text_value(field, {}) == "Preset"

    def test_name_format_first_and_last(self):
        first = text_field("n", "name", name_format="First Name")
        last = text_field("n", "name", name_format="Last Name")
        assert resolve_text_value(first, {"n": "Jane Q Doe"}) == "Jane"
        assert resolve_text_value(last, {"n": "Jane Q Doe"}) == "Doe"

    def test_number_decimal_places(self):
        field = text_field("amt", "number", decimal_places=2)
        assert resolve_text_value(field, {"amt": "12.5"}) == "12.50"

    def test_character_limit_then_asterisks(self):
        field = text_field("pin", character_limit=4, hide_with_asterisks=True)
        assert resolve_text_value(field, {"pin": "123456"}) == "****"

    def test_dropdown_shows_label_and_default(self):
        field = ChoiceField(
            id="dd",
            type="dropdown",
            options=[ChoiceOption(label="Option A", value="a"), ChoiceOption(label="Option B", value="b")],
            default_option="a",
            x_pct=10, y_pct=10, w_pct=20, h_pct=3,
        )
        assert resolve_text_value(field, {"dd": "b"}) == "Option B"
        assert resolve_text_value(field, {}) == "Option A"

    def test_missing_value_is_none(self):
        assert resolve_text_value(text_field("t"), {}) is None


class TestFormatting:

    @pytest.mark.parametrize("family,bold,italic,expected", [
        ("Helvetica", False, False, "helv"),
        ("Arial", True, False, "hebo"),
        ("Times New Roman", False, True, "tiit"),
        ("courier", True, True, "cobi"),
        ("Comic Sans", False, False, "helv"),
        (None, False, False, "helv"),
    ])
    def test_standard_font_code(self, family, bold, italic, expected):
        assert standard_font_code(family, bold, italic) == expected

    @pytest.mark.parametrize("value,expected", [
        ("red", (0.8, 0, 0)),
        ("#ffffff", (1.0, 1.0, 1.0)),
        ("#000", (0.0, 0.0, 0.0)),
        ("not-a-colour", (0, 0, 0)),
        (None, (0, 0, 0)),
    ])
    def test_parse_color(self, value, expected):
        assert parse_color(value) == pytest.approx(expected)


class _ExplodingResolver(FontResolver):
    source = "exploding"

    def resolve(self, family):
        raise RuntimeError("network down")


class _CorruptResolver(FontResolver):
    source = "corrupt"

    def resolve(self, family):
        return ResolvedFont(name=family, source=self.source, buffer=b"not a font")


class TestFontFallback:

    def test_empty_family_is_default(self):
        assert FontResolverChain([_ExplodingResolver()]).resolve("") is DEFAULT_FONT

    def test_failing_resolvers_fall_back_to_default(self):
        chain = FontResolverChain([_ExplodingResolver(), _CorruptResolver()])
        assert chain.resolve("Great Vibes").is_default

    def test_bundled_font_missing_file(self, tmp_path):
        assert BundledFontResolver(str(tmp_path)).resolve("Allura") is None

    def test_typed_signature_survives_font_failure(self, sample_pdf):
        embedder = PDFEmbedder(font_chain=FontResolverChain([_ExplodingResolver()]))
        output = embedder.embed(
            sample_pdf,
            [signature_field("sig1")],
            field_signatures={"sig1": "typed::Jane Doe::Great Vibes"},
        )
        assert "Jane Doe" in page_text(output)


class TestRemoteFontResolver:

    def test_disabled_never_fetches(self):
        with patch("httpx.get") as mock_get:
            assert RemoteFontResolver(enabled=False).resolve("Allura") is None
        mock_get.assert_not_called()

    def test_unknown_family(self):
        with patch("httpx.get") as mock_get:
            assert RemoteFontResolver().resolve("Comic Sans") is None
        mock_get.assert_not_called()

    def test_fetch_is_cached(self):
        response = MagicMock(content=b"ttf-bytes")
        resolver = RemoteFontResolver(urls={"Allura": "https://fonts.example.com/allura.ttf"})

        with patch("httpx.get", return_value=response) as mock_get:
            first = resolver.resolve("Allura")
            second = resolver.resolve("Allura")

        assert mock_get.call_count == 1
        assert first.source == "remote"
        assert second.buffer == b"ttf-bytes"

    def test_http_error_falls_back_in_chain(self):
        resolver = RemoteFontResolver(urls={"Allura": "https://fonts.example.com/allura.ttf"})
        with patch("httpx.get", side_effect=RuntimeError("connection refused")):
            assert FontResolverChain([resolver]).resolve("Allura") is DEFAULT_FONT

    def test_failed_fetch_is_remembered(self):
        resolver = RemoteFontResolver(urls={"Allura": "https://fonts.example.com/allura.ttf"})
        chain = FontResolverChain([resolver])

        with patch("httpx.get", side_effect=httpx.ConnectError("network down")) as mock_get:
            assert chain.resolve("Allura") is DEFAULT_FONT
            assert chain.resolve("Allura") is DEFAULT_FONT

        assert mock_get.call_count == 1

    def test_failure_expires_after_ttl(self):
        resolver = RemoteFontResolver(urls={"Allura": "https://fonts.example.com/allura.ttf"}, failure_ttl=0)

        with patch("httpx.get", side_effect=httpx.ConnectError("network down")):
            with pytest.raises(httpx.ConnectError):
                resolver.resolve("Allura")
        with patch("httpx.get", return_value=MagicMock(content=b"ttf-bytes")):
            font = resolver.resolve("Allura")

        assert font.buffer == b"ttf-bytes"


class TestVoidPass:

    def test_every_page_is_stamped(self, embedder, sample_pdf):
        output = embedder.stamp_void(sample_pdf, "Bob Brown", "Terms changed")

        for page in range(2):
            text = page_text(output, page)
            assert "VOID" in text
            assert "declined by Bob Brown" in text
        assert "Terms changed" in page_text(output)

    def test_original_bytes_untouched(self, embedder, sample_pdf):
        before = bytes(sample_pdf)
        embedder.stamp_void(sample_pdf, "Bob Brown")
        assert sample_pdf == before
