# PDF module
from app.pdf.embed import (
    PDFEmbedder,
    get_pdf_embedder,
    measure_pages,
    SigningError,
    IntegrityViolationError,
)
from app.pdf.geometry import PlacementValidationError, to_pdf_box, to_display_box

__all__ = [
    "PDFEmbedder",
    "get_pdf_embedder",
    "measure_pages",
    "SigningError",
    "IntegrityViolationError",
    "PlacementValidationError",
    "to_pdf_box",
    "to_display_box",
]
