"""Outbound email clients.

Two interchangeable implementations of the ``EmailClient`` protocol:

- ``HttpEmailClient`` posts a JSON message to a transactional email REST
  API (Postmark-style payload) using ``httpx``.
- ``SmtpEmailClient`` hands a multipart/alternative message to an SMTP
  relay using ``smtplib``.

Neither client retries.  Every failure is raised as a ``DeliveryError``
subclass so the delivery worker can apply its retry / dead-letter policy:
``TransientDeliveryError`` is worth retrying, ``PermanentDeliveryError``
(rejected recipient, malformed request) is not.

Safety: recipient addresses are never logged.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

import httpx

from bulletin.core.settings import Settings
from bulletin.subscriptions.domain import SubscriberEmail

logger = logging.getLogger(__name__)

# 4xx statuses that still indicate a transient condition on the provider side
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DeliveryError(Exception):
    """Raised when an email could not be handed to the provider."""

    permanent = False


class TransientDeliveryError(DeliveryError):
    """Timeouts, connection failures, throttling and 5xx responses."""


class PermanentDeliveryError(DeliveryError):
    """The provider rejected the message; retrying will not help."""

    permanent = True


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class EmailClient(Protocol):
    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        ...


# ---------------------------------------------------------------------------
# HttpEmailClient
# ---------------------------------------------------------------------------

class HttpEmailClient:
    """Send email through a REST API with a server-token header."""

    def __init__(
        self,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: str | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.authorization_token = authorization_token
        self.timeout_s = timeout_s

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        payload = {
            "From": str(self.sender),
            "To": str(recipient),
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        headers = {}
        if self.authorization_token:
            headers["X-Postmark-Server-Token"] = self.authorization_token

        try:
            response = httpx.post(
                self.base_url,
                json=payload,
                headers=headers,
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(
                f"Email API request timed out after {self.timeout_s}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"Email API transport error: {exc}") from exc

        status = response.status_code
        if status < 400:
            logger.debug("Email accepted by API (status=%d)", status)
            return
        if status >= 500 or status in _RETRYABLE_CLIENT_STATUSES:
            raise TransientDeliveryError(f"Email API returned {status}")
        raise PermanentDeliveryError(f"Email API rejected message with {status}")


# ---------------------------------------------------------------------------
# SmtpEmailClient
# ---------------------------------------------------------------------------

class SmtpEmailClient:
    """Send email via an SMTP relay."""

    def __init__(
        self,
        smtp_host: str,
        sender: SubscriberEmail,
        smtp_port: int = 587,
        timeout_s: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.timeout_s = timeout_s

    def _build_message(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = str(self.sender)
        msg["To"] = str(recipient)
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        msg = self._build_message(recipient, subject, html_body, text_body)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_s) as server:
                server.sendmail(str(self.sender), [str(recipient)], msg.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentDeliveryError("SMTP relay refused the recipient") from exc
        except smtplib.SMTPResponseException as exc:
            if 500 <= exc.smtp_code < 600:
                raise PermanentDeliveryError(f"SMTP error {exc.smtp_code}") from exc
            raise TransientDeliveryError(f"SMTP error {exc.smtp_code}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(f"SMTP failure: {exc}") from exc
        logger.debug("Email handed to SMTP relay %s:%d", self.smtp_host, self.smtp_port)


def build_email_client(settings: Settings) -> EmailClient:
    """Return the client selected by ``EMAIL_BACKEND`` (``http`` or ``smtp``)."""
    sender = SubscriberEmail.parse(settings.email_sender)
    backend = settings.email_backend.lower()
    if backend == "http":
        return HttpEmailClient(
            base_url=settings.email_api_url,
            sender=sender,
            authorization_token=settings.email_api_token,
            timeout_s=settings.email_timeout_seconds,
        )
    if backend == "smtp":
        return SmtpEmailClient(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            sender=sender,
            timeout_s=settings.email_timeout_seconds,
        )
    raise ValueError(f"Unknown EMAIL_BACKEND {settings.email_backend!r}; must be 'http' or 'smtp'")
