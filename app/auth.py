"""
Authentication module for Google ID Token verification.

Document owners authenticate with a Google ID token. Recipients never
authenticate here: their sign-link token is the capability.
"""
import logging
from typing import Any, Dict, Optional

# Use Google's libraries for token verification
from google.oauth2 import id_token as google_id_token
from google.auth.transport import requests as google_requests

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import Settings, get_settings
from app.models import AuthenticatedOwner
from app.utils.logging import mask_email, set_context

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


class AuthenticationError(HTTPException):
    """Custom authentication error."""
    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(
            status_code=401,
            detail={"code": code, "message": message}
        )


def verify_google_id_token(token: str, settings: Settings) -> Dict[str, Any]:
    """
    Verifies a Google ID Token against Google's public keys.
    Returns the decoded payload if valid.
    """
    # The audience must be this application's OAuth client
    audience = settings.oauth_client_id
    if not audience:
        logger.error("OAUTH_CLIENT_ID is not configured.")
        raise AuthenticationError(
            "Authentication is not configured correctly.", "AUTH_CONFIG_ERROR"
        )

    try:
        return google_id_token.verify_oauth2_token(
            token, google_requests.Request(), audience=audience
        )
    except ValueError as e:
        # Raised by the library for bad format, expiry, wrong audience
        logger.error(f"Google ID token verification failed: {e}")
        raise AuthenticationError("Invalid or expired token", "INVALID_TOKEN")
    except Exception as e:
        logger.error(f"Unexpected error during token verification: {e}")
        raise AuthenticationError("Authentication service error", "AUTH_SERVICE_ERROR")


def owner_from_payload(payload: Dict[str, Any]) -> AuthenticatedOwner:
    owner_id = payload.get("sub")  # 'sub' is the standard claim for user ID
    email = payload.get("email")
    if not owner_id or not email:
        raise AuthenticationError("Invalid token: missing user ID or email", "INVALID_TOKEN")
    return AuthenticatedOwner(
        id=owner_id,
        email=email.strip().lower(),
        name=payload.get("name"),
    )


async def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedOwner:
    """Dependency resolving the document owner from the Authorization header."""
    if not credentials:
        raise AuthenticationError("Authorization header required", "MISSING_AUTH")

    payload = verify_google_id_token(credentials.credentials, settings)
    owner = owner_from_payload(payload)

    set_context(owner_id=owner.id)
    logger.debug(f"Authenticated owner {mask_email(owner.email)}")
    return owner


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    # Cloud Run / load balancer headers
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    # Real IP header (some proxies)
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    # Direct connection
    if request.client:
        return request.client.host

    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "")[:500]
