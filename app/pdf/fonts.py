"""
Font resolution for typed signatures.

Resolvers are tried in order: bundled TTF on disk, then a remote fetch from
the Google Fonts GitHub mirror, then the default document font. A resolver
that fails is logged and skipped; FontResolverChain.resolve() never raises.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import fitz  # PyMuPDF
import httpx

logger = logging.getLogger(__name__)

# Base-14 Helvetica, always available without embedding a file
DEFAULT_FONT_NAME = "helv"

# Signature font family -> TTF file under FONTS_DIR
SIGNATURE_FONT_FILES = {
    "Dancing Script": "DancingScript-Regular.ttf",
    "Great Vibes": "GreatVibes-Regular.ttf",
    "Allura": "Allura-Regular.ttf",
    "Pacifico": "Pacifico-Regular.ttf",
    "Sacramento": "Sacramento-Regular.ttf",
}

_GOOGLE_FONTS_RAW = "https://raw.githubusercontent.com/google/fonts/main/ofl"

SIGNATURE_FONT_URLS = {
    "Dancing Script": f"{_GOOGLE_FONTS_RAW}/dancingscript/DancingScript%5Bwght%5D.ttf",
    "Great Vibes": f"{_GOOGLE_FONTS_RAW}/greatvibes/GreatVibes-Regular.ttf",
    "Allura": f"{_GOOGLE_FONTS_RAW}/allura/Allura-Regular.ttf",
    "Pacifico": f"{_GOOGLE_FONTS_RAW}/pacifico/Pacifico-Regular.ttf",
    "Sacramento": f"{_GOOGLE_FONTS_RAW}/sacramento/Sacramento-Regular.ttf",
}


@dataclass
class ResolvedFont:
    """A font ready to draw with: either a Base-14 code or a TTF buffer."""
    name: str
    source: str
    buffer: Optional[bytes] = None

    @property
    def is_default(self) -> bool:
        return self.source == "default"

    def to_fitz(self) -> fitz.Font:
        if self.buffer:
            return fitz.Font(fontbuffer=self.buffer)
        return fitz.Font(self.name)


DEFAULT_FONT = ResolvedFont(name=DEFAULT_FONT_NAME, source="default")


class FontResolver:
    """One step of the chain. Returns None when it has nothing for the name."""

    source = "base"

    def resolve(self, family: str) -> Optional[ResolvedFont]:
        raise NotImplementedError


class BundledFontResolver(FontResolver):
    source = "bundled"

    def __init__(self, fonts_dir: str, files: Optional[Dict[str, str]] = None):
        self.fonts_dir = fonts_dir
        self.files = files if files is not None else SIGNATURE_FONT_FILES

    def resolve(self, family: str) -> Optional[ResolvedFont]:
        filename = self.files.get(family)
        if not filename:
            return None
        path = os.path.join(self.fonts_dir, filename)
        if not os.path.exists(path):
            logger.debug(f"Bundled font not on disk: {path}")
            return None
        with open(path, "rb") as f:
            data = f.read()
        if not data:
            return None
        return ResolvedFont(name=family, source=self.source, buffer=data)


class RemoteFontResolver(FontResolver):
    """
    Fetches TTF files over HTTP and caches them for the process lifetime.
    A failed fetch is remembered for failure_ttl seconds so an unreachable
    host does not cost a full timeout on every embed.

    Runs inside the embedding threadpool, so it uses a blocking client.
    """

    source = "remote"

    def __init__(
        self,
        urls: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        enabled: bool = True,
        failure_ttl: float = 300.0,
    ):
        self.urls = urls if urls is not None else SIGNATURE_FONT_URLS
        self.timeout = timeout
        self.enabled = enabled
        self.failure_ttl = failure_ttl
        self._cache: Dict[str, bytes] = {}
        self._failed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def resolve(self, family: str) -> Optional[ResolvedFont]:
        if not self.enabled:
            return None
        url = self.urls.get(family)
        if not url:
            return None

        with self._lock:
            cached = self._cache.get(family)
            failed_at = self._failed.get(family)
        if cached:
            return ResolvedFont(name=family, source=self.source, buffer=cached)
        if failed_at is not None and time.monotonic() - failed_at < self.failure_ttl:
            logger.debug(f"Skipping font '{family}', last fetch failed")
            return None

        try:
            response = httpx.get(url, timeout=self.timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError:
            with self._lock:
                self._failed[family] = time.monotonic()
            raise
        data = response.content
        if not data:
            return None

        with self._lock:
            self._cache[family] = data
        logger.info(f"Fetched signature font '{family}' ({len(data)} bytes)")
        return ResolvedFont(name=family, source=self.source, buffer=data)


class FontResolverChain:
    """Ordered resolvers with the default document font as the last resort."""

    def __init__(self, resolvers: List[FontResolver]):
        self.resolvers = list(resolvers)

    def resolve(self, family: Optional[str]) -> ResolvedFont:
        if not family:
            return DEFAULT_FONT

        for resolver in self.resolvers:
            try:
                font = resolver.resolve(family)
                if font is None:
                    continue
                # Parse once so a corrupt file is rejected here, not mid-draw
                font.to_fitz()
                return font
            except Exception as e:
                logger.warning(f"Font resolver '{resolver.source}' failed for '{family}': {e}")

        logger.info(f"Falling back to default font for '{family}'")
        return DEFAULT_FONT


def build_font_chain(
    fonts_dir: str,
    remote_enabled: bool = True,
    timeout: float = 10.0,
    failure_ttl: float = 300.0,
) -> FontResolverChain:
    return FontResolverChain([
        BundledFontResolver(fonts_dir),
        RemoteFontResolver(timeout=timeout, enabled=remote_enabled, failure_ttl=failure_ttl),
    ])


# Singleton instance
_font_chain: Optional[FontResolverChain] = None


def get_font_chain() -> FontResolverChain:
    """Get the font resolver chain singleton."""
    global _font_chain
    if _font_chain is None:
        from app.config import get_settings
        settings = get_settings()
        _font_chain = build_font_chain(
            settings.fonts_dir,
            remote_enabled=settings.remote_fonts_enabled,
            timeout=settings.font_fetch_timeout_seconds,
            failure_ttl=settings.font_fetch_failure_ttl_seconds,
        )
    return _font_chain
