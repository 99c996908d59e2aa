"""
Document byte storage.

Opaque key -> bytes store with two backends: a Google Cloud Storage bucket
and a local directory (development and tests). Keys are never rewritten once
written; each embed produces a new key.
"""
import logging
import os
import unicodedata
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from google.cloud import storage

from app.config import Settings, get_settings
from app.exceptions import NotFoundError

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def validate_key(key: str) -> str:
    """
    Reject keys that could escape the store root.

    Raises ValueError for path traversal attempts or absolute paths.
    """
    if not key:
        raise ValueError("Storage key cannot be empty")
    if ".." in key:
        raise ValueError("Path traversal not allowed")
    if key.startswith("/"):
        raise ValueError("Absolute paths not allowed")
    return key


def original_key(document_id: str) -> str:
    return f"documents/{document_id}/original.pdf"


def signed_key(document_id: str) -> str:
    """Fresh key for a new working copy."""
    return f"documents/{document_id}/signed/{uuid.uuid4()}_signed.pdf"


def void_key(document_id: str) -> str:
    return f"documents/{document_id}/void/{uuid.uuid4()}_void.pdf"


def content_disposition(filename: str) -> str:
    """
    Content-Disposition header value for a download (RFC 6266).

    Non-ASCII names get an ASCII fallback plus the UTF-8 filename* form.
    """
    try:
        filename.encode("ascii")
        safe_filename = filename.replace('"', '\\"')
        return f'attachment; filename="{safe_filename}"'
    except UnicodeEncodeError:
        encoded = quote(filename, safe="")
        ascii_fallback = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode()
        ascii_fallback = ascii_fallback.replace('"', "") or "document.pdf"
        return f"attachment; filename=\"{ascii_fallback}\"; filename*=UTF-8''{encoded}"


class ByteStore:
    """get(key) -> bytes, put(key, bytes). Missing keys raise NotFoundError."""

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError


class GCSByteStore(ByteStore):
    """Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self._client = client
        self._bucket: Optional[storage.Bucket] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            self._bucket = self.client.bucket(self.bucket_name)
        return self._bucket

    def get(self, key: str) -> bytes:
        blob = self.bucket.blob(validate_key(key))
        if not blob.exists():
            raise NotFoundError("File", key)
        return blob.download_as_bytes()

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        blob = self.bucket.blob(validate_key(key))
        blob.upload_from_string(data, content_type=content_type)
        logger.info(f"Uploaded {len(data)} bytes to gs://{self.bucket_name}/{key}")
        return key

    def exists(self, key: str) -> bool:
        return self.bucket.blob(validate_key(key)).exists()


class LocalByteStore(ByteStore):
    """Directory on local disk."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / validate_key(key)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError("File", key)
        return path.read_bytes()

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        path = self._path(key)
        os.makedirs(path.parent, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored {len(data)} bytes at {key}")
        return key

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


def build_byte_store(settings: Settings) -> ByteStore:
    if settings.gcs_bucket:
        return GCSByteStore(settings.gcs_bucket)
    logger.info(f"GCS_BUCKET not set, storing documents under {settings.storage_dir}")
    return LocalByteStore(settings.storage_dir)


# Singleton instance
_byte_store: Optional[ByteStore] = None


def get_byte_store() -> ByteStore:
    """Get the byte store singleton."""
    global _byte_store
    if _byte_store is None:
        _byte_store = build_byte_store(get_settings())
    return _byte_store
