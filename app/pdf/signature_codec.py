"""
Signature payload codec.

A recipient's signature travels as one opaque string. Grammar:

    typed::<name>::<font>::<initials>::<fontSize>
    data:image/<fmt>;base64,<body>
    <anything else>                     legacy opaque value

Typed segments are optional from the right; missing ones default to empty
strings and an 11pt font size. Font size is clamped to [6, 24].
"""
import base64
import binascii
import math
import re
from dataclasses import dataclass
from typing import Optional, Union

TYPED_PREFIX = "typed::"
SEGMENT_SEPARATOR = "::"

DEFAULT_TYPED_FONT_SIZE = 11.0
MIN_TYPED_FONT_SIZE = 6.0
MAX_TYPED_FONT_SIZE = 24.0

_DATA_URI_RE = re.compile(r"^data:image/(?P<fmt>[\w.+-]+);base64,", re.IGNORECASE)


@dataclass(frozen=True)
class ImageSignature:
    data: bytes
    format: str = "png"


@dataclass(frozen=True)
class TypedSignature:
    name: str = ""
    font: str = ""
    initials: str = ""
    font_size: float = DEFAULT_TYPED_FONT_SIZE


@dataclass(frozen=True)
class AbsentSignature:
    """No drawable signature. raw keeps a legacy string for fallback text."""
    raw: Optional[str] = None


SignatureKind = Union[ImageSignature, TypedSignature, AbsentSignature]


def _parse_font_size(segment: Optional[str]) -> float:
    if segment is None or not segment.strip():
        return DEFAULT_TYPED_FONT_SIZE
    try:
        size = float(segment)
    except ValueError:
        return DEFAULT_TYPED_FONT_SIZE
    if math.isnan(size):
        return DEFAULT_TYPED_FONT_SIZE
    return max(MIN_TYPED_FONT_SIZE, min(MAX_TYPED_FONT_SIZE, size))


def _decode_typed(payload: str) -> TypedSignature:
    parts = payload.split(SEGMENT_SEPARATOR)

    def segment(i: int) -> str:
        return parts[i].strip() if len(parts) > i else ""

    return TypedSignature(
        name=segment(1),
        font=segment(2),
        initials=segment(3),
        font_size=_parse_font_size(parts[4] if len(parts) > 4 else None),
    )


def decode(payload: Optional[str]) -> SignatureKind:
    """Decode a signature payload string into its structured kind."""
    if not payload:
        return AbsentSignature(raw=None)

    if payload.startswith(TYPED_PREFIX):
        return _decode_typed(payload)

    match = _DATA_URI_RE.match(payload)
    if match:
        body = payload[match.end():]
        try:
            data = base64.b64decode(body)
        except (binascii.Error, ValueError):
            return AbsentSignature(raw=payload)
        if not data:
            return AbsentSignature(raw=payload)
        return ImageSignature(data=data, format=match.group("fmt").lower())

    return AbsentSignature(raw=payload)


def _format_size(size: float) -> str:
    return str(int(size)) if float(size).is_integer() else str(size)


def encode(signature: Union[TypedSignature, ImageSignature]) -> str:
    """Serialize a typed or image signature to its payload string."""
    if isinstance(signature, TypedSignature):
        return SEGMENT_SEPARATOR.join([
            "typed",
            signature.name,
            signature.font,
            signature.initials,
            _format_size(signature.font_size),
        ])
    if isinstance(signature, ImageSignature):
        body = base64.b64encode(signature.data).decode("ascii")
        return f"data:image/{signature.format};base64,{body}"
    raise TypeError(f"Cannot encode signature of type {type(signature).__name__}")
