"""
Security utilities: sign-link token generation, byte hashing.
"""
import hashlib
import secrets

# 32 random bytes, hex encoded
SIGN_LINK_TOKEN_BYTES = 32


def generate_sign_link_token() -> str:
    """
    Generate a new sign-link capability token.

    Drawn from the OS CSPRNG. The token is the recipient's only credential,
    so never log it raw - use fingerprint() from app.utils.logging.
    """
    return secrets.token_hex(SIGN_LINK_TOKEN_BYTES)


def compute_bytes_hash(data: bytes) -> str:
    """Compute SHA-256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()
