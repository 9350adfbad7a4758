from __future__ import annotations

import html
import smtplib
import ssl
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional

from asphaltworks.logging import get_logger, redact_email

logger = get_logger(__name__)


def _layout(title: str, body_html: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, Helvetica, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 24px; }}
        .header {{ background: #2b2d31; color: #f5c518; padding: 16px 24px; }}
        .button {{ display: inline-block; background: #f5c518; color: #2b2d31; padding: 12px 24px;
                   text-decoration: none; border-radius: 4px; font-weight: bold; }}
        .footer {{ font-size: 12px; color: #7b8794; margin-top: 32px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h2>{html.escape(title)}</h2></div>
        {body_html}
        <p class="footer">This message was sent automatically, please do not reply.</p>
    </div>
</body>
</html>
"""


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Account emails (verification, reset, password changed, lockout)
    - Contact form notifications
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Asphalt Works",
        base_url: Optional[str] = None,
        admin_email: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.admin_email = admin_email or self.from_email

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, first_name: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email/{token}"
        name = html.escape(first_name or "")
        html_body = _layout(
            "Confirm your email address",
            f"""
        <p>Hello {name},</p>
        <p>Thanks for creating your account. Please confirm your email address:</p>
        <p><a class="button" href="{verify_url}">Verify my email</a></p>
        <p>This link expires in 24 hours.</p>
""",
        )
        text_body = (
            f"Hello {first_name},\n\nConfirm your email address by opening this link:\n"
            f"{verify_url}\n\nThis link expires in 24 hours."
        )
        return self._send_email(to_email, "Confirm your email address", html_body, text_body)

    def send_password_reset(self, to_email: str, first_name: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password/{token}"
        name = html.escape(first_name or "")
        html_body = _layout(
            "Reset your password",
            f"""
        <p>Hello {name},</p>
        <p>We received a request to reset your password.</p>
        <p><a class="button" href="{reset_url}">Choose a new password</a></p>
        <p>This link expires in 1 hour. If you did not ask for it, ignore this email.</p>
""",
        )
        text_body = (
            f"Hello {first_name},\n\nReset your password with this link:\n{reset_url}\n\n"
            "This link expires in 1 hour. If you did not ask for it, ignore this email."
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_password_changed(self, to_email: str, first_name: str) -> bool:
        name = html.escape(first_name or "")
        html_body = _layout(
            "Your password was changed",
            f"""
        <p>Hello {name},</p>
        <p>The password of your account was just changed and every other session was signed out.</p>
        <p>If this was not you, reset your password immediately.</p>
""",
        )
        text_body = (
            f"Hello {first_name},\n\nThe password of your account was just changed. "
            "If this was not you, reset your password immediately."
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_account_locked(self, to_email: str, first_name: str, locked_until: datetime) -> bool:
        until = locked_until.strftime("%Y-%m-%d %H:%M UTC")
        name = html.escape(first_name or "")
        html_body = _layout(
            "Sign-in temporarily blocked",
            f"""
        <p>Hello {name},</p>
        <p>Several failed sign-in attempts were made on your account. Sign-in is blocked until {until}.</p>
        <p>If this was not you, we recommend resetting your password.</p>
""",
        )
        text_body = (
            f"Hello {first_name},\n\nSeveral failed sign-in attempts were made on your account. "
            f"Sign-in is blocked until {until}."
        )
        return self._send_email(to_email, "Sign-in temporarily blocked", html_body, text_body)

    def send_temporary_password(self, to_email: str, first_name: str, password: str) -> bool:
        name = html.escape(first_name or "")
        html_body = _layout(
            "Your password was reset",
            f"""
        <p>Hello {name},</p>
        <p>An administrator reset your password. Your temporary password is:</p>
        <p><code>{html.escape(password)}</code></p>
        <p>Sign in and change it right away.</p>
""",
        )
        text_body = (
            f"Hello {first_name},\n\nAn administrator reset your password. "
            f"Temporary password: {password}\nSign in and change it right away."
        )
        return self._send_email(to_email, "Your password was reset", html_body, text_body)

    def send_contact_notification(self, contact: dict[str, Any]) -> bool:
        if not self.admin_email:
            logger.warning("contact_notification_no_recipient")
            return False
        rows = "".join(
            f"<tr><th align='left'>{html.escape(label)}</th><td>{html.escape(str(contact.get(key) or ''))}</td></tr>"
            for key, label in (
                ("name", "Name"),
                ("email", "Email"),
                ("phone", "Phone"),
                ("company", "Company"),
                ("project_type", "Project"),
                ("budget", "Budget"),
                ("timeline", "Timeline"),
            )
        )
        message = html.escape(str(contact.get("message") or ""))
        html_body = _layout(
            "New contact request",
            f"<table>{rows}</table><p>{message}</p>",
        )
        text_body = f"New contact request from {contact.get('name')}:\n\n{contact.get('message')}"
        subject = f"New contact request: {contact.get('subject') or contact.get('name')}"
        return self._send_email(self.admin_email, subject, html_body, text_body)

    def send_contact_confirmation(self, to_email: str, name: str) -> bool:
        html_body = _layout(
            "We received your request",
            f"""
        <p>Hello {html.escape(name or '')},</p>
        <p>Thank you for contacting us. Our team will get back to you within two business days.</p>
""",
        )
        text_body = (
            f"Hello {name},\n\nThank you for contacting us. "
            "Our team will get back to you within two business days."
        )
        return self._send_email(to_email, "We received your request", html_body, text_body)


class EmailDispatcher:
    """Runs email sends on a small thread pool, off the request path.

    Callers never wait on SMTP; failures are logged, not raised. ``flush``
    blocks until queued sends finish and exists for shutdown and tests.
    """

    def __init__(self, service: EmailService, *, max_workers: int = 2) -> None:
        self.service = service
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="email"
        )
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, send: Callable[..., bool], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(send, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.error(
                "email_dispatch_failed", error_type=type(exc).__name__, error=str(exc)
            )
        elif future.result() is False:
            logger.warning("email_dispatch_undelivered")

    def flush(self, timeout: float | None = 10.0) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
