"""
Tests for email rendering, retry logic and failure classification.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx

from app.config import Settings
from app.email import (
    EmailService,
    EmailResult,
    EmailDeliveryStatus,
    FailureKind,
    MAX_RETRY_ATTEMPTS,
    RETRY_DELAYS_SECONDS,
    classify_failure,
    render_template,
)
from app.models import EmailTemplateContext, EmailTemplateType


@pytest.fixture
def email_service():
    """Email service with an API key set."""
    settings = Settings(
        resend_api_key="test_api_key",
        resend_from_email="sign@example.com",
        email_sender_label="eSign",
    )
    return EmailService(settings=settings)


@pytest.fixture
def context():
    return EmailTemplateContext(
        document_title="Lease <Unit 4>",
        recipient_name="Alice Adams",
        sender_name="Olivia Owner",
        sender_email="owner@example.com",
        sign_url="https://sign.example.com/sign/abc",
        view_url="https://sign.example.com/sign/abc",
    )


def mock_client_returning(post):
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    if callable(post) and not isinstance(post, MagicMock):
        mock_client.post = post
    else:
        mock_client.post.return_value = post
    return mock_client


def response(status_code, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body or {}
    resp.text = text
    return resp


class TestEmailRetryLogic:
    """Test retry logic in send_email()."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, email_service):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_client_returning(response(200, {"id": "msg_123"}))
            mock_client_class.return_value = mock_client

            result = await email_service.send_email(
                to_email="test@test.com",
                subject="Test",
                html="<p>Test</p>",
            )

        assert result.success is True
        assert result.delivery_status == EmailDeliveryStatus.SENT
        assert result.message_id == "msg_123"
        assert result.total_attempts == 1
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["from"] == "eSign <sign@example.com>"
        assert payload["to"] == ["test@test.com"]

    @pytest.mark.asyncio
    async def test_fail_twice_succeed_third(self, email_service):
        """5xx responses are retried."""
        call_count = 0

        async def mock_post(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                return response(500, text="Internal Server Error")
            return response(200, {"id": "msg_456"})

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_client_returning(mock_post)

            with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                result = await email_service.send_email(
                    to_email="test@test.com",
                    subject="Test",
                    html="<p>Test</p>",
                )

        assert result.success is True
        assert result.total_attempts == 3
        assert [a.success for a in result.attempts] == [False, False, True]
        assert [c.args[0] for c in mock_sleep.call_args_list] == RETRY_DELAYS_SECONDS[1:]

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, email_service):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_client_returning(response(503, text="Service Unavailable"))

            with patch("asyncio.sleep", new_callable=AsyncMock):
                result = await email_service.send_email(
                    to_email="test@test.com",
                    subject="Test",
                    html="<p>Test</p>",
                )

        assert result.success is False
        assert result.delivery_status == EmailDeliveryStatus.FAILED
        assert result.total_attempts == MAX_RETRY_ATTEMPTS
        assert "503" in result.error
        assert result.failure_kind == FailureKind.GENERIC

    @pytest.mark.asyncio
    async def test_rejected_address_is_not_retried(self, email_service):
        """A 4xx about the recipient is final and classified as a bounce."""
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_client_returning(
                response(422, text='{"message": "Invalid `to` field. Please use our testing email address"}')
            )
            mock_client_class.return_value = mock_client

            with patch("asyncio.sleep", new_callable=AsyncMock):
                result = await email_service.send_email(
                    to_email="nobody@invalid",
                    subject="Test",
                    html="<p>Test</p>",
                )

        assert result.total_attempts == 1
        assert mock_client.post.call_count == 1
        assert result.failure_kind == FailureKind.BOUNCE

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, email_service):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_client_returning(response(429, text="Too many requests"))

            with patch("asyncio.sleep", new_callable=AsyncMock):
                result = await email_service.send_email(
                    to_email="test@test.com",
                    subject="Test",
                    html="<p>Test</p>",
                )

        assert result.total_attempts == MAX_RETRY_ATTEMPTS

    @pytest.mark.asyncio
    async def test_timeout_triggers_retry(self, email_service):
        call_count = 0

        async def mock_post(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise httpx.TimeoutException("Connection timed out")
            return response(200, {"id": "msg_789"})

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_client_returning(mock_post)

            with patch("asyncio.sleep", new_callable=AsyncMock):
                result = await email_service.send_email(
                    to_email="test@test.com",
                    subject="Test",
                    html="<p>Test</p>",
                )

        assert result.success is True
        assert result.total_attempts == 3
        assert "Timeout" in result.attempts[0].error
        assert result.attempts[2].success is True

    @pytest.mark.asyncio
    async def test_not_configured_returns_skipped(self):
        service = EmailService(settings=Settings(resend_api_key=""))

        with patch("httpx.AsyncClient") as mock_client_class:
            result = await service.send_email(
                to_email="test@test.com",
                subject="Test",
                html="<p>Test</p>",
            )

        mock_client_class.assert_not_called()
        assert result.success is False
        assert result.delivery_status == EmailDeliveryStatus.SKIPPED
        assert result.failure_kind is None
        assert "not configured" in result.error


class TestTemplateSend:

    @pytest.mark.asyncio
    async def test_send_renders_template(self, email_service, context):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_client_returning(response(200, {"id": "msg_tpl"}))
            mock_client_class.return_value = mock_client

            result = await email_service.send(EmailTemplateType.SIGN_REQUEST, "alice@example.com", context)

        assert result.is_delivered
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["subject"] == "Please complete with eSign: Lease <Unit 4>"
        assert "https://sign.example.com/sign/abc" in payload["text"]


class TestRenderTemplate:

    def test_sign_request_has_button_and_escapes_title(self, context):
        rendered = render_template(EmailTemplateType.SIGN_REQUEST, context)

        assert "Olivia Owner" in rendered.html
        assert 'href="https://sign.example.com/sign/abc"' in rendered.html
        assert "Lease &lt;Unit 4&gt;" in rendered.html
        assert "<Unit 4>" not in rendered.html

    def test_waiting_has_no_link(self, context):
        rendered = render_template(EmailTemplateType.SIGNED_WAITING_FOR_OTHERS, context)

        assert rendered.subject.startswith("You've signed")
        assert "href=" not in rendered.html

    def test_completed_links_to_document(self, context):
        rendered = render_template(EmailTemplateType.DOCUMENT_COMPLETED, context)

        assert "completed" in rendered.subject
        assert "View completed document" in rendered.html

    def test_greeting_without_name(self, context):
        context.recipient_name = None
        rendered = render_template(EmailTemplateType.DOCUMENT_COMPLETED, context)
        assert rendered.text.startswith("Hello,")


class TestClassifyFailure:

    @pytest.mark.parametrize("error", [
        "API error 422: Invalid `to` field",
        "550 5.1.1 mailbox unavailable",
        "Recipient address rejected",
        "message bounced",
    ])
    def test_bounces(self, error):
        assert classify_failure(error) == FailureKind.BOUNCE

    @pytest.mark.parametrize("error", [
        "API error 500: Internal Server Error",
        "Timeout: read timed out",
        None,
    ])
    def test_generic(self, error):
        assert classify_failure(error) == FailureKind.GENERIC


class TestEmailResultProperties:
    """Test EmailResult helper properties."""

    def test_is_delivered(self):
        result = EmailResult(success=True, delivery_status=EmailDeliveryStatus.SENT)
        assert result.is_delivered is True
        assert result.is_failed is False

    def test_skipped_is_not_delivered(self):
        result = EmailResult(success=False, delivery_status=EmailDeliveryStatus.SKIPPED)
        assert result.is_delivered is False
        assert result.is_failed is False


class TestRetryConfiguration:

    def test_retry_delays(self):
        """Retry delays are exponential backoff."""
        assert MAX_RETRY_ATTEMPTS == 3
        assert RETRY_DELAYS_SECONDS == [0, 2, 4]
