"""
Configuration module - loads secrets from Google Secret Manager.
Falls back to environment variables for local development.
"""
import json
import os
import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, model_validator, field_validator
from typing import List, Any

logger = logging.getLogger(__name__)


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch secret from Google Secret Manager.
    Returns None if not available (fallback to env vars).
    """
    try:
        from google.cloud import secretmanager

        project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")
        if not project:
            return None

        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings with Secret Manager integration."""

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")
    oauth_client_id: str = Field(default="", alias="OAUTH_CLIENT_ID")

    # Records (Supabase PostgREST, service role - recipients are anonymous token holders)
    record_store: str = Field(default="supabase", alias="RECORD_STORE")
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")

    # Document bytes: GCS bucket, or a local directory when no bucket is set
    gcs_bucket: str = Field(default="", alias="GCS_BUCKET")
    storage_dir: str = Field(default="./uploads", alias="STORAGE_DIR")

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="sign@example.com", alias="RESEND_FROM_EMAIL")
    email_sender_label: str = Field(default="eSign", alias="EMAIL_SENDER_LABEL")

    # Signing links
    app_base_url: str = Field(default="http://localhost:8000", alias="APP_BASE_URL")
    sign_app_url: str = Field(default="", alias="SIGN_APP_URL")
    sign_link_ttl_days: int = Field(
        default=7,
        alias="SIGN_LINK_TTL_DAYS",
        description="How long a sent signing link stays valid",
    )

    # PDF rendering assets
    fonts_dir: str = Field(default="./assets/fonts", alias="FONTS_DIR")
    signature_border_path: str = Field(default="./assets/no-bg-sign-border.png", alias="SIGNATURE_BORDER_PATH")
    remote_fonts_enabled: bool = Field(default=True, alias="REMOTE_FONTS_ENABLED")
    font_fetch_timeout_seconds: float = Field(default=10.0, alias="FONT_FETCH_TIMEOUT_SECONDS")
    font_fetch_failure_ttl_seconds: float = Field(default=300.0, alias="FONT_FETCH_FAILURE_TTL_SECONDS")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode='before')
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from JSON list, CSV, semicolon-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            # Semicolon is useful in Cloud Build where comma separates env vars
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    @field_validator("record_store")
    @classmethod
    def _validate_record_store(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("supabase", "memory"):
            raise ValueError(f"Unsupported RECORD_STORE: {v}")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._load_secrets_from_gcp()

    def _load_secrets_from_gcp(self):
        """Override settings with values from Secret Manager if available."""
        if not self.gcp_project_id:
            return

        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_service_role_key": "SUPABASE_SERVICE_ROLE_KEY",
            "gcs_bucket": "GCS_BUCKET",
            "resend_api_key": "RESEND_API_KEY",
            "oauth_client_id": "OAUTH_CLIENT_ID",
        }

        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode='after')
    def validate_urls(self) -> 'Settings':
        """Validate URL configuration for the environment."""
        if self.environment != "production":
            return self

        if not self.sign_app_url:
            logger.error(
                "CRITICAL: SIGN_APP_URL is not set in production! "
                "Signing links will use APP_BASE_URL which may be incorrect."
            )
        elif not self.sign_app_url.startswith("https://"):
            logger.error(
                f"CRITICAL: SIGN_APP_URL ('{self.sign_app_url}') must use HTTPS in production!"
            )
        elif "localhost" in self.sign_app_url:
            logger.error(
                f"CRITICAL: SIGN_APP_URL ('{self.sign_app_url}') contains localhost in production!"
            )

        return self

    def get_sign_app_url(self) -> str:
        """
        Get the frontend signing app URL.

        This URL goes into the emails sent to recipients, so it must be the
        publicly reachable frontend, not this backend.
        Falls back to app_base_url if SIGN_APP_URL is not set (development only).
        """
        if self.sign_app_url:
            return self.sign_app_url.rstrip("/")

        if self.environment != "development":
            logger.warning(
                f"SIGN_APP_URL not set, falling back to APP_BASE_URL ({self.app_base_url}). "
                "This is likely incorrect for production!"
            )
        return self.app_base_url.rstrip("/")

    def sign_url_for(self, token: str) -> str:
        """Public link a recipient opens to sign."""
        return f"{self.get_sign_app_url()}/sign/{token}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# CORS Configuration
# =============================================================================

DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def get_cors_origins() -> List[str]:
    """
    Get list of allowed CORS origins.

    Combines origins from ALLOWED_ORIGINS with development origins
    (outside production only).
    """
    settings = get_settings()
    origins = set(settings.allowed_origins)

    if settings.environment != "production":
        origins.update(DEV_CORS_ORIGINS)

    return sorted(origins)
