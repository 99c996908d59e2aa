"""
Email module using Resend for sending emails.

Three templates, rendered locally: signing invitation, "you've signed,
waiting for others", and "document completed". Sends retry transient
failures; failures the provider reports about the address itself are
classified as bounces and returned immediately.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from html import escape
from typing import List, Optional

import httpx

from app.config import Settings, get_settings
from app.models import EmailTemplateContext, EmailTemplateType
from app.utils.logging import fingerprint

logger = logging.getLogger(__name__)


# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = [0, 2, 4]  # Exponential backoff: immediate, 2s, 4s

# Provider messages that point at the recipient address rather than the transport
BOUNCE_PATTERN = re.compile(
    r"bounce|invalid|reject|not found|unknown|mailbox|address|550|551|552|553|554"
    r"|recipient|delivery failed|undeliverable",
    re.IGNORECASE,
)


class EmailDeliveryStatus(str, Enum):
    """Email delivery status for tracking."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email not configured or disabled


class FailureKind(str, Enum):
    BOUNCE = "bounce"
    GENERIC = "generic"


def classify_failure(error: Optional[str]) -> FailureKind:
    if error and BOUNCE_PATTERN.search(error):
        return FailureKind.BOUNCE
    return FailureKind.GENERIC


@dataclass
class EmailAttempt:
    """Record of a single email send attempt."""
    attempt_number: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class EmailResult:
    """Result of email send operation with delivery tracking."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.PENDING
    attempts: List[EmailAttempt] = field(default_factory=list)
    total_attempts: int = 0

    @property
    def is_delivered(self) -> bool:
        """Check if email was successfully delivered."""
        return self.delivery_status == EmailDeliveryStatus.SENT

    @property
    def is_failed(self) -> bool:
        """Check if all delivery attempts failed."""
        return self.delivery_status == EmailDeliveryStatus.FAILED

    @property
    def failure_kind(self) -> Optional[FailureKind]:
        if not self.is_failed:
            return None
        return classify_failure(self.error)


@dataclass
class RenderedEmail:
    """Rendered email ready to send."""
    subject: str
    html: str
    text: Optional[str] = None


def _layout(heading: str, body_html: str, button_url: Optional[str] = None, button_label: str = "") -> str:
    button = ""
    if button_url:
        button = (
            f'<p style="margin:24px 0;"><a href="{escape(button_url, quote=True)}" '
            f'style="background:#1d4ed8;color:#ffffff;padding:12px 24px;border-radius:4px;'
            f'text-decoration:none;font-weight:600;">{escape(button_label)}</a></p>'
        )
    return (
        "<!DOCTYPE html><html><body style=\"font-family:system-ui,-apple-system,'Segoe UI',sans-serif;"
        "line-height:1.6;color:#111827;\">"
        f"<h2 style=\"margin:0 0 16px;\">{escape(heading)}</h2>"
        f"{body_html}{button}"
        "</body></html>"
    )


def render_template(
    template_type: EmailTemplateType,
    context: EmailTemplateContext,
    sender_label: str = "eSign",
) -> RenderedEmail:
    """Render one of the notification templates."""
    title = context.document_title
    greeting = f"Hello {context.recipient_name}," if context.recipient_name else "Hello,"

    if template_type == EmailTemplateType.SIGN_REQUEST:
        sender = context.sender_name or context.sender_email or "Someone"
        subject = f"Please complete with {sender_label}: {title}"
        html = _layout(
            f"{sender} sent you a document to review and sign",
            f"<p>{escape(greeting)}</p>"
            f"<p>Please review and sign <strong>{escape(title)}</strong>.</p>",
            context.sign_url,
            "Review document",
        )
        text = f"{greeting}\n\n{sender} sent you {title} to sign.\n\n{context.sign_url or ''}"

    elif template_type == EmailTemplateType.SIGNED_WAITING_FOR_OTHERS:
        subject = f"You've signed: {title}"
        html = _layout(
            "You've signed the document",
            f"<p>{escape(greeting)}</p>"
            f"<p>Thanks for signing <strong>{escape(title)}</strong>. "
            "We'll email you once everyone else has signed.</p>",
        )
        text = f"{greeting}\n\nThanks for signing {title}. We'll let you know when everyone has signed."

    elif template_type == EmailTemplateType.DOCUMENT_COMPLETED:
        subject = f"Your document has been completed: {title}"
        html = _layout(
            "All parties have signed",
            f"<p>{escape(greeting)}</p>"
            f"<p><strong>{escape(title)}</strong> has been signed by everyone.</p>",
            context.view_url,
            "View completed document",
        )
        text = f"{greeting}\n\n{title} has been signed by everyone.\n\n{context.view_url or ''}"

    else:
        raise ValueError(f"Unknown email template: {template_type}")

    return RenderedEmail(subject=subject, html=html, text=text)


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class EmailService:
    """Email service using Resend HTTP API."""

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.settings.resend_api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> EmailResult:
        """
        Send email via Resend HTTP API with retry logic.

        Transient failures (timeouts, 5xx, 429) are retried up to
        MAX_RETRY_ATTEMPTS with backoff. Other 4xx responses are final.

        Returns:
            EmailResult with delivery_status and attempt history
        """
        email_fp = fingerprint(to_email, "email_")

        if not self.is_configured():
            logger.warning(f"Resend API key not configured, skipping email to {email_fp}")
            return EmailResult(
                success=False,
                error="Email service not configured",
                delivery_status=EmailDeliveryStatus.SKIPPED,
            )

        payload = {
            "from": f"{self.settings.email_sender_label} <{self.settings.resend_from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        attempts: List[EmailAttempt] = []
        last_error: Optional[str] = None

        for attempt_num in range(1, MAX_RETRY_ATTEMPTS + 1):
            # Wait before retry (skip delay for first attempt)
            if attempt_num > 1:
                delay = RETRY_DELAYS_SECONDS[attempt_num - 1] if attempt_num - 1 < len(RETRY_DELAYS_SECONDS) else 4
                logger.info(f"Email retry {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp}, waiting {delay}s")
                await asyncio.sleep(delay)

            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.RESEND_API_URL,
                        json=payload,
                        headers=headers,
                        timeout=30.0,
                    )

                if response.status_code in (200, 201):
                    message_id = response.json().get("id")
                    attempts.append(EmailAttempt(
                        attempt_number=attempt_num,
                        success=True,
                        message_id=message_id,
                    ))
                    logger.info(
                        f"Email sent to {email_fp} on attempt {attempt_num}, "
                        f"message_id: {message_id}"
                    )
                    return EmailResult(
                        success=True,
                        message_id=message_id,
                        delivery_status=EmailDeliveryStatus.SENT,
                        attempts=attempts,
                        total_attempts=attempt_num,
                    )

                last_error = f"API error {response.status_code}: {response.text[:200]}"
                attempts.append(EmailAttempt(
                    attempt_number=attempt_num,
                    success=False,
                    error=last_error,
                ))
                logger.warning(
                    f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                    f"failed: {last_error}"
                )
                if not _is_retryable(response.status_code):
                    break

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
                attempts.append(EmailAttempt(
                    attempt_number=attempt_num,
                    success=False,
                    error=last_error,
                ))
                logger.warning(
                    f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                    f"timed out"
                )

            except httpx.HTTPError as e:
                last_error = str(e)
                attempts.append(EmailAttempt(
                    attempt_number=attempt_num,
                    success=False,
                    error=last_error,
                ))
                logger.warning(
                    f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                    f"failed: {last_error}"
                )

        logger.error(
            f"Email to {email_fp} failed after {len(attempts)} attempt(s). "
            f"Last error: {last_error}"
        )
        return EmailResult(
            success=False,
            error=last_error,
            delivery_status=EmailDeliveryStatus.FAILED,
            attempts=attempts,
            total_attempts=len(attempts),
        )

    async def send(
        self,
        template_type: EmailTemplateType,
        to_email: str,
        context: EmailTemplateContext,
    ) -> EmailResult:
        """Render a template and send it."""
        rendered = render_template(template_type, context, self.settings.email_sender_label)
        logger.info(f"Sending {template_type.value} to {fingerprint(to_email, 'email_')}")
        return await self.send_email(
            to_email=to_email,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
        )


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


__all__ = [
    "EmailService",
    "EmailResult",
    "EmailDeliveryStatus",
    "EmailAttempt",
    "FailureKind",
    "RenderedEmail",
    "classify_failure",
    "render_template",
    "get_email_service",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
]
